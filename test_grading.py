import json
import random

import pytest

from errors import ScoreValidationError
from grading import (
    DEFAULT_GRADE_SCALE, aggregate_results, calculate_grade, combine_scores, grade_record,
    normalize_scoring_config, parse_grading_scale, performance_bands, rank_students, summarize_exam,
)


def mark(student_id, class_id, class_score, exam_score, subject_id='MATH', is_absent=False, **extra):
    record = {
        'student_id': student_id,
        'student_name': f'Student {student_id}',
        'class_id': class_id,
        'class_name': f'Class {class_id}',
        'subject_id': subject_id,
        'subject_name': subject_id.title(),
        'class_score': class_score,
        'exam_score': exam_score,
        'max_marks': 100,
        'is_absent': is_absent,
    }
    record.update(extra)
    return record


@pytest.mark.parametrize("percentage, grade, remarks", [
    (100, '1', 'Excellent'),
    (80, '1', 'Excellent'),
    (79.99, '2', 'Very Good'),
    (65, '3', 'Good'),
    (44.5, '8', 'Pass'),
    (40, '8', 'Pass'),
    (39.99, '9', 'Fail'),
    (39, '9', 'Fail'),
    (0, '9', 'Fail'),
    (-5, '9', 'Fail'),
    (150, '1', 'Excellent'),
])
def test_calculate_grade_band_boundaries(percentage, grade, remarks):
    assert calculate_grade(percentage) == {'grade': grade, 'remarks': remarks}


def test_calculate_grade_uses_custom_scale():
    scale = [
        {'min_percent': 50, 'grade': 'A', 'remark': 'Pass'},
        {'min_percent': 0, 'grade': 'F', 'remark': 'Fail'},
    ]
    assert calculate_grade(50, parse_grading_scale(scale)) == {'grade': 'A', 'remarks': 'Pass'}
    assert calculate_grade(49.9, parse_grading_scale(scale)) == {'grade': 'F', 'remarks': 'Fail'}


def test_parse_grading_scale_sorts_json_bands_descending():
    raw = json.dumps([
        {'min_percent': 0, 'max_percent': 49, 'grade': 'F', 'remark': 'Fail'},
        {'min_percent': 50, 'max_percent': 100, 'grade': 'P', 'remark': 'Pass'},
    ])
    scale = parse_grading_scale(raw)
    assert [b['grade'] for b in scale] == ['P', 'F']


@pytest.mark.parametrize("raw", [None, '', 'not json', '[]', '[{"grade": "A"}]'])
def test_parse_grading_scale_falls_back_to_default(raw):
    assert parse_grading_scale(raw) == list(DEFAULT_GRADE_SCALE)


def test_capped_scoring_adds_components():
    total, percentage = combine_scores(25, 60)
    assert total == 85
    assert percentage == 85
    total, percentage = combine_scores(15, 35, max_marks=50)
    assert total == 50
    assert percentage == 100


def test_capped_scoring_rejects_component_over_cap():
    with pytest.raises(ScoreValidationError) as exc:
        combine_scores(31, 50)
    assert exc.value.field == 'class_score'
    with pytest.raises(ScoreValidationError) as exc:
        combine_scores(20, 71)
    assert exc.value.field == 'exam_score'


def test_capped_scoring_allows_forty_sixty_split():
    config = {'mode': 'capped', 'class_weight': 40, 'exam_weight': 60}
    assert combine_scores(40, 60, config=config) == (100, 100)
    with pytest.raises(ScoreValidationError):
        combine_scores(20, 61, config=config)


def test_weighted_scoring_halves_each_component():
    total, percentage = combine_scores(70, 85, config={'mode': 'weighted'})
    assert total == 77.5
    assert percentage == 77.5


@pytest.mark.parametrize("class_score, exam_score, field", [
    (-1, 10, 'class_score'),
    (10, -1, 'exam_score'),
    ('abc', 10, 'class_score'),
    (10, float('nan'), 'exam_score'),
])
def test_combine_scores_rejects_invalid_components(class_score, exam_score, field):
    with pytest.raises(ScoreValidationError) as exc:
        combine_scores(class_score, exam_score)
    assert exc.value.field == field


def test_scoring_config_weights_must_sum_to_hundred():
    with pytest.raises(ScoreValidationError):
        normalize_scoring_config({'mode': 'capped', 'class_weight': 30, 'exam_weight': 60})
    with pytest.raises(ScoreValidationError):
        normalize_scoring_config({'mode': 'average'})
    assert normalize_scoring_config(None) == {'mode': 'capped', 'class_weight': 30, 'exam_weight': 70}


def test_grade_record_absent_student():
    graded = grade_record(mark('S1', 'A', None, None, is_absent=True))
    assert graded['total_score'] == 0
    assert graded['grade'] == ''
    assert graded['remarks'] == 'Absent'


def test_aggregate_results_is_order_independent():
    records = [
        mark('S1', 'A', 28, 60),
        mark('S2', 'A', 20, 40),
        mark('S3', 'B', 25, 55),
        mark('S4', 'B', 10, 20),
        mark('S5', 'C', 30, 70),
        mark('S6', 'C', 0, 0, is_absent=True),
    ]
    expected = aggregate_results(records)

    for seed in range(5):
        shuffled = list(records)
        random.Random(seed).shuffle(shuffled)
        assert aggregate_results(shuffled) == expected

    assert expected['class_averages'][0] == {'class_id': 'C', 'class_name': 'Class C', 'average': 100.0, 'count': 1}
    assert [c['class_id'] for c in expected['class_averages']] == ['C', 'A', 'B']
    assert sum(g['count'] for g in expected['grade_distribution']) == 5


def test_aggregate_results_ties_break_by_class_id():
    records = [mark('S1', 'B', 20, 50), mark('S2', 'A', 20, 50)]
    averages = aggregate_results(records)['class_averages']
    assert [c['class_id'] for c in averages] == ['A', 'B']


def test_summarize_exam_counts_and_pass_rate():
    records = [
        mark('S1', 'A', 28, 60),
        mark('S1', 'A', 20, 50, subject_id='ENGLISH'),
        mark('S2', 'A', 10, 20),
        mark('S3', 'B', 0, 0, is_absent=True),
    ]
    summary = summarize_exam(records)
    overall = summary['overall']

    assert overall['total_students'] == 3
    assert overall['total_marks_entered'] == 4
    assert overall['passed_count'] == 2
    assert overall['failed_count'] == 1
    assert overall['absent_count'] == 1
    assert overall['pass_rate'] == 66.67

    assert summary['top_students'][0]['student_id'] == 'S1'
    assert summary['top_students'][0]['percentage'] == 79.0
    class_b = next(c for c in summary['class_stats'] if c['class_id'] == 'B')
    assert class_b['absent_count'] == 1
    assert class_b['average_percentage'] == 0.0
    math_stats = next(s for s in summary['subject_stats'] if s['subject_id'] == 'MATH')
    assert math_stats['highest_score'] == 88
    assert math_stats['lowest_score'] == 30


def test_summarize_exam_with_no_records():
    summary = summarize_exam([])
    assert summary['overall']['average_percentage'] == 0.0
    assert summary['overall']['pass_rate'] == 0.0
    assert summary['top_students'] == []


def test_rank_students_shares_positions_on_ties():
    students = [
        {'student_id': 'S1', 'class_id': 'A', 'average': 90},
        {'student_id': 'S2', 'class_id': 'A', 'average': 90},
        {'student_id': 'S3', 'class_id': 'A', 'average': 75},
        {'student_id': 'S4', 'class_id': 'B', 'average': 50},
    ]
    positions = rank_students(students)
    assert positions['S1']['pos'] == 1
    assert positions['S2']['pos'] == 1
    assert positions['S3']['pos'] == 3
    assert positions['S4'] == {'pos': 1, 'size': 1, 'class_id': 'B'}


def test_performance_bands_use_student_averages():
    records = [
        mark('S1', 'A', 30, 40),
        mark('S1', 'A', 20, 50, subject_id='ENGLISH'),
        mark('S2', 'A', 10, 25),
        mark('S3', 'A', 0, 0, is_absent=True),
    ]
    bands = performance_bands(records)
    assert bands['total_students'] == 2
    assert bands['distribution']['very_good'] == 1
    assert bands['distribution']['poor'] == 1
    assert bands['highest_score'] == 70.0
    assert bands['class_average'] == 52.5
