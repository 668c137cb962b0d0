"""
Grade computation and results analytics.

A ScoreRecord is a dict with class_score, exam_score and max_marks plus the
student/class/subject identity fields. How the two components combine is an
explicit per-exam scoring config:

    capped    total = class_score + exam_score, each component capped at its
              weight's share of max_marks (30/70 or 40/60);
              percentage = total / max_marks * 100
    weighted  total = class_score * class_weight% + exam_score * exam_weight%
              (50/50 by default), used directly as the percentage
"""

import json
import logging
import math

from errors import ScoreValidationError

logger = logging.getLogger(__name__)

DEFAULT_GRADE_SCALE = (
    {'min_percent': 80, 'max_percent': 100, 'grade': '1', 'remark': 'Excellent'},
    {'min_percent': 70, 'max_percent': 79, 'grade': '2', 'remark': 'Very Good'},
    {'min_percent': 65, 'max_percent': 69, 'grade': '3', 'remark': 'Good'},
    {'min_percent': 60, 'max_percent': 64, 'grade': '4', 'remark': 'High Average'},
    {'min_percent': 55, 'max_percent': 59, 'grade': '5', 'remark': 'Average'},
    {'min_percent': 50, 'max_percent': 54, 'grade': '6', 'remark': 'Low Average'},
    {'min_percent': 45, 'max_percent': 49, 'grade': '7', 'remark': 'Pass'},
    {'min_percent': 40, 'max_percent': 44, 'grade': '8', 'remark': 'Pass'},
    {'min_percent': 0, 'max_percent': 39, 'grade': '9', 'remark': 'Fail'},
)

SCORING_MODES = ('capped', 'weighted')
DEFAULT_SCORING = {'mode': 'capped', 'class_weight': 30, 'exam_weight': 70}
DEFAULT_WEIGHTED_SCORING = {'mode': 'weighted', 'class_weight': 50, 'exam_weight': 50}
DEFAULT_PASS_MARK = 40

TOP_STUDENT_COUNT = 10
TOP_CLASS_COUNT = 5

# ==================== GRADE SCALE ====================


def calculate_grade(total_percentage, scale=None):
    """Map a percentage to {'grade', 'remarks'}; first band (highest first) whose floor is met wins."""
    bands = scale or DEFAULT_GRADE_SCALE
    for band in bands:
        if total_percentage >= band['min_percent']:
            return {'grade': str(band['grade']), 'remarks': band['remark']}
    # The lowest band has no floor: negatives and NaN land here.
    lowest = bands[-1]
    return {'grade': str(lowest['grade']), 'remarks': lowest['remark']}


def parse_grading_scale(raw):
    """Normalise a stored grading scale (list or JSON text); fall back to the default on bad data."""
    if not raw:
        return list(DEFAULT_GRADE_SCALE)
    try:
        bands = json.loads(raw) if isinstance(raw, str) else raw
        scale = []
        for band in bands:
            scale.append({
                'min_percent': float(band['min_percent']),
                'max_percent': float(band.get('max_percent', 100)),
                'grade': str(band['grade']),
                'remark': str(band.get('remark', '')),
            })
        if not scale:
            raise ValueError('empty grading scale')
    except (TypeError, ValueError, KeyError) as exc:
        logger.warning("Invalid grading scale, using default bands: %s", exc)
        return list(DEFAULT_GRADE_SCALE)
    scale.sort(key=lambda b: b['min_percent'], reverse=True)
    return scale

# ==================== SCORE COMBINATION ====================


def _as_number(value, field):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ScoreValidationError(field, f"{field} must be a number.")
    if not math.isfinite(number):
        raise ScoreValidationError(field, f"{field} is invalid.")
    return number


def normalize_scoring_config(config=None):
    """Fill defaults and validate a per-exam scoring config."""
    config = dict(config or {})
    mode = (config.get('mode') or DEFAULT_SCORING['mode']).strip().lower()
    if mode not in SCORING_MODES:
        raise ScoreValidationError('mode', f"Unknown scoring mode: {mode}")
    defaults = DEFAULT_SCORING if mode == 'capped' else DEFAULT_WEIGHTED_SCORING
    class_weight = config.get('class_weight')
    exam_weight = config.get('exam_weight')
    class_weight = defaults['class_weight'] if class_weight in (None, '') else _as_number(class_weight, 'class_weight')
    exam_weight = defaults['exam_weight'] if exam_weight in (None, '') else _as_number(exam_weight, 'exam_weight')
    if class_weight < 0 or exam_weight < 0 or abs(class_weight + exam_weight - 100) > 1e-9:
        raise ScoreValidationError('class_weight', 'class_weight and exam_weight must add up to 100.')
    return {'mode': mode, 'class_weight': class_weight, 'exam_weight': exam_weight}


def combine_scores(class_score, exam_score, max_marks=100, config=None):
    """Return (total_score, percentage) for one student's subject mark."""
    cfg = normalize_scoring_config(config)
    class_score = _as_number(class_score, 'class_score')
    exam_score = _as_number(exam_score, 'exam_score')
    if class_score < 0:
        raise ScoreValidationError('class_score', 'class_score cannot be negative.')
    if exam_score < 0:
        raise ScoreValidationError('exam_score', 'exam_score cannot be negative.')

    if cfg['mode'] == 'weighted':
        total = round(class_score * cfg['class_weight'] / 100 + exam_score * cfg['exam_weight'] / 100, 2)
        return total, total

    max_marks = _as_number(max_marks, 'max_marks')
    if max_marks <= 0:
        raise ScoreValidationError('max_marks', 'max_marks must be greater than 0.')
    class_cap = max_marks * cfg['class_weight'] / 100
    exam_cap = max_marks * cfg['exam_weight'] / 100
    if class_score > class_cap + 1e-9:
        raise ScoreValidationError('class_score', f"class_score cannot exceed {class_cap:g} ({cfg['class_weight']:g}% of {max_marks:g}).")
    if exam_score > exam_cap + 1e-9:
        raise ScoreValidationError('exam_score', f"exam_score cannot exceed {exam_cap:g} ({cfg['exam_weight']:g}% of {max_marks:g}).")
    total = class_score + exam_score
    return total, total / max_marks * 100


def grade_record(record, config=None, scale=None):
    """Copy of a ScoreRecord with total_score, percentage, grade and remarks filled in."""
    graded = dict(record)
    if record.get('is_absent'):
        graded.update({'total_score': 0.0, 'percentage': 0.0, 'grade': '', 'remarks': 'Absent'})
        return graded
    total, percentage = combine_scores(
        record.get('class_score', 0),
        record.get('exam_score', 0),
        record.get('max_marks', 100),
        config,
    )
    graded.update({'total_score': total, 'percentage': percentage})
    graded.update(calculate_grade(percentage, scale))
    return graded

# ==================== AGGREGATION ====================


def aggregate_results(records, config=None, scale=None):
    """Grade distribution and per-class averages for a set of score records.

    Recomputed from scratch on every call; the order of ``records`` does not
    affect the result.
    """
    graded = [grade_record(r, config, scale) for r in records if not r.get('is_absent')]

    distribution = {}
    class_groups = {}
    for row in graded:
        distribution[row['grade']] = distribution.get(row['grade'], 0) + 1
        group = class_groups.setdefault(row.get('class_id'), {'names': set(), 'scores': []})
        if row.get('class_name'):
            group['names'].add(row['class_name'])
        group['scores'].append(row['total_score'])

    class_averages = []
    for class_id, group in class_groups.items():
        class_averages.append({
            'class_id': class_id,
            'class_name': min(group['names']) if group['names'] else '',
            'average': round(sum(group['scores']) / len(group['scores']), 2),
            'count': len(group['scores']),
        })
    class_averages.sort(key=lambda c: (-c['average'], str(c['class_id'])))

    return {
        'grade_distribution': [
            {'grade': grade, 'count': count}
            for grade, count in sorted(distribution.items())
        ],
        'class_averages': class_averages,
    }


def summarize_exam(records, config=None, scale=None, pass_mark=DEFAULT_PASS_MARK):
    """Exam-wide analytics: overall counts, per-subject and per-class stats, top students and classes."""
    graded = [grade_record(r, config, scale) for r in records]
    present = [r for r in graded if not r.get('is_absent')]
    absent = [r for r in graded if r.get('is_absent')]
    passed = [r for r in present if r['percentage'] >= pass_mark]
    failed = [r for r in present if r['percentage'] < pass_mark]

    subject_stats = {}
    for row in present:
        stats = subject_stats.setdefault(row.get('subject_id'), {
            'subject_id': row.get('subject_id'),
            'subject_name': row.get('subject_name', ''),
            'student_count': 0,
            'percentage_sum': 0.0,
            'highest_score': None,
            'lowest_score': None,
            'pass_count': 0,
            'fail_count': 0,
        })
        stats['student_count'] += 1
        stats['percentage_sum'] += row['percentage']
        score = row['total_score']
        stats['highest_score'] = score if stats['highest_score'] is None else max(stats['highest_score'], score)
        stats['lowest_score'] = score if stats['lowest_score'] is None else min(stats['lowest_score'], score)
        if row['percentage'] >= pass_mark:
            stats['pass_count'] += 1
        else:
            stats['fail_count'] += 1
    for stats in subject_stats.values():
        stats['average_percentage'] = round(stats.pop('percentage_sum') / stats['student_count'], 2)

    class_stats = {}
    for row in graded:
        stats = class_stats.setdefault(row.get('class_id'), {
            'class_id': row.get('class_id'),
            'class_name': row.get('class_name', ''),
            'students': set(),
            'percentage_sum': 0.0,
            'pass_count': 0,
            'fail_count': 0,
            'absent_count': 0,
            'top_score': 0.0,
        })
        stats['students'].add(row.get('student_id'))
        if row.get('is_absent'):
            stats['absent_count'] += 1
            continue
        stats['percentage_sum'] += row['percentage']
        stats['top_score'] = max(stats['top_score'], row['total_score'])
        if row['percentage'] >= pass_mark:
            stats['pass_count'] += 1
        else:
            stats['fail_count'] += 1
    for stats in class_stats.values():
        stats['student_count'] = len(stats.pop('students'))
        sat = stats['pass_count'] + stats['fail_count']
        percentage_sum = stats.pop('percentage_sum')
        stats['average_percentage'] = round(percentage_sum / sat, 2) if sat else 0.0

    student_scores = {}
    for row in present:
        student = student_scores.setdefault(row.get('student_id'), {
            'student_id': row.get('student_id'),
            'student_name': row.get('student_name', ''),
            'class_name': row.get('class_name', ''),
            'total_score': 0.0,
            'percentages': [],
        })
        student['total_score'] += row['total_score']
        student['percentages'].append(row['percentage'])
    for student in student_scores.values():
        percentages = student.pop('percentages')
        student['subject_count'] = len(percentages)
        student['percentage'] = round(sum(percentages) / len(percentages), 2)

    def by_average(stats):
        return -stats['average_percentage'], str(stats.get('class_id') or stats.get('subject_id'))

    ranked_classes = sorted(class_stats.values(), key=by_average)
    top_students = sorted(student_scores.values(), key=lambda s: (-s['percentage'], str(s['student_id'])))

    sat_count = len(passed) + len(failed)
    return {
        'overall': {
            'total_students': len({r.get('student_id') for r in graded}),
            'total_marks_entered': len(graded),
            'average_percentage': round(sum(r['percentage'] for r in present) / len(present), 2) if present else 0.0,
            'passed_count': len(passed),
            'failed_count': len(failed),
            'absent_count': len(absent),
            'pass_rate': round(len(passed) / sat_count * 100, 2) if sat_count else 0.0,
        },
        'grade_distribution': aggregate_results(records, config, scale)['grade_distribution'],
        'subject_stats': sorted(subject_stats.values(), key=by_average),
        'class_stats': ranked_classes,
        'top_students': top_students[:TOP_STUDENT_COUNT],
        'top_classes': ranked_classes[:TOP_CLASS_COUNT],
    }


def rank_students(students, score_key='average'):
    """Class positions; equal scores share a position (1, 1, 3)."""
    def same_score(a, b):
        return abs(float(a or 0) - float(b or 0)) <= 1e-9

    groups = {}
    for student in students:
        groups.setdefault(student.get('class_id', ''), []).append(student)

    positions = {}
    for class_id, class_students in groups.items():
        ordered = sorted(class_students, key=lambda s: (-float(s.get(score_key) or 0), str(s.get('student_id'))))
        prev_score = None
        current_pos = 0
        for index, student in enumerate(ordered, 1):
            score = float(student.get(score_key) or 0)
            if prev_score is None or not same_score(score, prev_score):
                current_pos = index
            positions[student.get('student_id')] = {
                'pos': current_pos,
                'size': len(ordered),
                'class_id': class_id,
            }
            prev_score = score
    return positions


def performance_bands(records, config=None):
    """Bucket each student's average percentage into performance bands."""
    per_student = {}
    for row in records:
        if row.get('is_absent'):
            continue
        _, percentage = combine_scores(row.get('class_score', 0), row.get('exam_score', 0), row.get('max_marks', 100), config)
        per_student.setdefault(row.get('student_id'), []).append(percentage)

    averages = [sum(p) / len(p) for p in per_student.values()]
    return {
        'distribution': {
            'excellent': sum(1 for a in averages if a >= 80),
            'very_good': sum(1 for a in averages if 70 <= a < 80),
            'good': sum(1 for a in averages if 60 <= a < 70),
            'average': sum(1 for a in averages if 50 <= a < 60),
            'below_average': sum(1 for a in averages if 40 <= a < 50),
            'poor': sum(1 for a in averages if a < 40),
        },
        'total_students': len(averages),
        'class_average': round(sum(averages) / len(averages), 2) if averages else 0.0,
        'highest_score': round(max(averages), 2) if averages else 0.0,
        'lowest_score': round(min(averages), 2) if averages else 0.0,
    }
