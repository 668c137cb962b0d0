"""
Weekly timetables: period slots, teacher assignments and conflict checks.

Functions that read or write records take a ``store`` argument. In the app
this is the ``db`` module; tests pass an in-memory object with the same
function names (get_timetable, get_timetable_for_class,
insert_timetable_with_periods, get_period, update_period, get_assignment_for_period,
upsert_assignment, ...).
"""

import logging

from errors import ConflictError, DuplicateTimetableError, NotFoundError
from time_utils import calculate_duration, time_to_minutes, validate_period_times

logger = logging.getLogger(__name__)

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday')
PERIOD_TYPES = ('class', 'break')

DEFAULT_PERIODS = (
    {'period_name': 'Assembly', 'start_time': '07:30', 'end_time': '08:00', 'period_type': 'break'},
    {'period_name': 'Period 1', 'start_time': '08:00', 'end_time': '09:10', 'period_type': 'class'},
    {'period_name': 'Period 2', 'start_time': '09:10', 'end_time': '10:20', 'period_type': 'class'},
    {'period_name': 'Break Time', 'start_time': '10:20', 'end_time': '10:40', 'period_type': 'break'},
    {'period_name': 'Period 3', 'start_time': '10:45', 'end_time': '11:55', 'period_type': 'class'},
    {'period_name': 'Period 4', 'start_time': '11:55', 'end_time': '13:05', 'period_type': 'class'},
    {'period_name': 'Lunch Time', 'start_time': '13:05', 'end_time': '13:35', 'period_type': 'break'},
    {'period_name': 'Period 5', 'start_time': '13:35', 'end_time': '14:45', 'period_type': 'class'},
    {'period_name': 'Period 6', 'start_time': '14:45', 'end_time': '15:55', 'period_type': 'class'},
    {'period_name': 'Closing', 'start_time': '15:55', 'end_time': '16:00', 'period_type': 'break'},
)

# Teacher/subject fields replaced when a slot is re-assigned.
ASSIGNMENT_TEACHER_FIELDS = ('teacher_id', 'teacher_name', 'subject_id', 'subject_name')

CONSECUTIVE_PERIOD_LIMIT = 3
DAILY_PERIOD_LIMIT = 6

# ==================== OVERLAP & ASSIGNMENT ====================


def check_time_overlap(start1, end1, start2, end2):
    """Half-open interval test: a period ending exactly when another starts is not an overlap."""
    s1 = time_to_minutes(start1)
    e1 = time_to_minutes(end1)
    s2 = time_to_minutes(start2)
    e2 = time_to_minutes(end2)
    return s1 < e2 and s2 < e1


def find_teacher_conflict(candidate, existing_assignments):
    """Return the first same-teacher, same-day assignment overlapping the candidate, or None."""
    for assignment in existing_assignments:
        if assignment.get('teacher_id') != candidate.get('teacher_id'):
            continue
        if assignment.get('day') != candidate.get('day'):
            continue
        # Re-assigning a slot must not collide with its own current assignment.
        if assignment.get('period_id') == candidate.get('period_id'):
            continue
        if check_time_overlap(
            candidate['start_time'],
            candidate['end_time'],
            assignment['start_time'],
            assignment['end_time'],
        ):
            return assignment
    return None


def _raise_on_conflict(candidate, existing_assignments):
    conflict = find_teacher_conflict(candidate, existing_assignments)
    if conflict is None:
        return
    day = candidate.get('day', '')
    teacher_label = candidate.get('teacher_name') or candidate.get('teacher_id')
    class_name = conflict.get('class_name') or conflict.get('class_id') or ''
    logger.warning(
        "Timetable conflict: teacher %s already in %s on %s",
        candidate.get('teacher_id'), class_name, day,
    )
    raise ConflictError(
        f"Teacher {teacher_label} is already assigned to {class_name} "
        f"during this time on {day.capitalize()}",
        class_name=class_name,
        day=day,
    )


def assign_teacher_to_slot(candidate, existing_assignments, store):
    """Bind a teacher and subject to a period slot.

    Raises ConflictError when the teacher already teaches elsewhere during
    the candidate's time on the same day. Otherwise updates the slot's
    current assignment in place (keeping its id) or creates a new one, and
    returns the assignment id.
    """
    _raise_on_conflict(candidate, existing_assignments)

    existing = store.get_assignment_for_period(candidate['period_id'])
    if existing:
        record = dict(existing)
        for field in ASSIGNMENT_TEACHER_FIELDS:
            record[field] = candidate.get(field)
    else:
        record = {
            'timetable_id': candidate.get('timetable_id'),
            'period_id': candidate['period_id'],
            'school_id': candidate.get('school_id'),
            'teacher_id': candidate.get('teacher_id'),
            'teacher_name': candidate.get('teacher_name', ''),
            'subject_id': candidate.get('subject_id'),
            'subject_name': candidate.get('subject_name', ''),
            'class_id': candidate.get('class_id'),
            'class_name': candidate.get('class_name', ''),
            'day': candidate.get('day'),
            'start_time': candidate['start_time'],
            'end_time': candidate['end_time'],
        }
    assignment_id = store.upsert_assignment(record)
    logger.info("Assigned teacher %s to period %s", candidate.get('teacher_id'), candidate['period_id'])
    return assignment_id


def remove_assignment(period_id, store):
    """Free a slot. Returns True when an assignment was removed."""
    return bool(store.delete_assignment_for_period(period_id))


def update_period_times(period_id, start_time, end_time, store):
    """Inline edit of a slot's times; duration is always recomputed."""
    period = store.get_period(period_id)
    if not period:
        raise NotFoundError(f"Period {period_id} not found")
    duration = validate_period_times(start_time, end_time)
    assignment = store.get_assignment_for_period(period_id)
    if assignment:
        # The slot's teacher must still be free at the new times.
        candidate = {**assignment, 'start_time': start_time, 'end_time': end_time}
        _raise_on_conflict(candidate, store.get_assignments_for_teacher(
            assignment['school_id'], assignment['teacher_id'], assignment['day'],
        ))
    store.update_period(period_id, start_time, end_time, duration)
    return {**period, 'start_time': start_time, 'end_time': end_time, 'duration': duration}

# ==================== TIMETABLE CREATION ====================


def build_period_slots(timetable_id, structure=DEFAULT_PERIODS):
    """Expand one day's period structure to every weekday."""
    slots = []
    for day in WEEKDAYS:
        for period in structure:
            slots.append({
                'timetable_id': timetable_id,
                'day': day,
                'period_name': period['period_name'],
                'start_time': period['start_time'],
                'end_time': period['end_time'],
                'period_type': period.get('period_type', 'class'),
                'duration': calculate_duration(period['start_time'], period['end_time']),
            })
    return slots


def _ensure_no_timetable(store, school_id, class_id, class_name):
    if store.get_timetable_for_class(school_id, class_id):
        raise DuplicateTimetableError(f"Weekly timetable for {class_name or class_id} already exists")


def _insert_timetable_with_slots(store, school_id, class_id, class_name, structure,
                                 created_by='', academic_year_id=None, term_id=None, timetable_code=None):
    timetable = {
        'school_id': school_id,
        'class_id': class_id,
        'class_name': class_name,
        'timetable_code': timetable_code,
        'academic_year_id': academic_year_id,
        'term_id': term_id,
        'status': 'active',
        'created_by': created_by,
    }
    slots = build_period_slots(None, structure)
    timetable['id'], period_ids = store.insert_timetable_with_periods(timetable, slots)
    for slot, period_id in zip(slots, period_ids):
        slot['timetable_id'] = timetable['id']
        slot['id'] = period_id
    logger.info("Created timetable %s for class %s (%d slots)", timetable['id'], class_id, len(slots))
    return timetable, slots


def create_default_timetable(school_id, class_id, class_name, store, created_by='',
                             academic_year_id=None, term_id=None, timetable_code=None):
    """Create a class timetable from the default ten-period day. Returns the 50 slots."""
    _ensure_no_timetable(store, school_id, class_id, class_name)
    _, slots = _insert_timetable_with_slots(
        store, school_id, class_id, class_name, DEFAULT_PERIODS,
        created_by=created_by, academic_year_id=academic_year_id, term_id=term_id,
        timetable_code=timetable_code,
    )
    return slots


def delete_timetable(timetable_id, store):
    if not store.get_timetable(timetable_id):
        raise NotFoundError(f"Timetable {timetable_id} not found")
    store.delete_timetable_cascade(timetable_id)
    logger.info("Deleted timetable %s with its periods and assignments", timetable_id)


def bulk_delete_timetables(timetable_ids, store):
    """Delete every existing timetable in the list; unknown ids are skipped. Returns the count."""
    deleted = 0
    for timetable_id in timetable_ids:
        if store.get_timetable(timetable_id):
            store.delete_timetable_cascade(timetable_id)
            deleted += 1
    return deleted


def group_periods_by_day(periods):
    grouped = {day: [] for day in WEEKDAYS}
    for period in periods:
        grouped.setdefault(period['day'], []).append(period)
    for day_periods in grouped.values():
        day_periods.sort(key=lambda p: time_to_minutes(p['start_time']))
    return grouped

# ==================== TEMPLATES & CLONING ====================


def period_structure_from_periods(periods):
    """One day's structure, taken from Monday's slots."""
    monday = [p for p in periods if p.get('day') == 'monday']
    monday.sort(key=lambda p: time_to_minutes(p['start_time']))
    return [
        {
            'period_name': p['period_name'],
            'start_time': p['start_time'],
            'end_time': p['end_time'],
            'period_type': p.get('period_type', 'class'),
        }
        for p in monday
    ]


def create_template(school_id, template_name, timetable_id, store, description='', created_by=''):
    if not store.get_timetable(timetable_id):
        raise NotFoundError('Timetable not found')
    structure = period_structure_from_periods(store.get_periods_for_timetable(timetable_id))
    return store.insert_template({
        'school_id': school_id,
        'template_name': template_name,
        'description': description,
        'created_by': created_by,
        'period_structure': structure,
        'is_default': False,
        'status': 'active',
    })


def apply_template(template_id, school_id, class_id, class_name, store, created_by='', timetable_code=None):
    """Create a class timetable from a saved template. Returns the new slots."""
    _ensure_no_timetable(store, school_id, class_id, class_name)
    template = store.get_template(template_id)
    if not template or template.get('status') == 'archived':
        raise NotFoundError('Template not found')
    _, slots = _insert_timetable_with_slots(
        store, school_id, class_id, class_name, template['period_structure'],
        created_by=created_by, timetable_code=timetable_code,
    )
    return slots


def archive_template(template_id, store):
    if not store.get_template(template_id):
        raise NotFoundError('Template not found')
    store.archive_template(template_id)


def clone_timetable(source_timetable_id, school_id, target_class_id, target_class_name, store,
                    include_assignments=False, created_by='', timetable_code=None):
    """Copy a timetable's slots (and optionally its assignments) to another class."""
    _ensure_no_timetable(store, school_id, target_class_id, target_class_name)
    source = store.get_timetable(source_timetable_id)
    if not source:
        raise NotFoundError('Source timetable not found')

    timetable = {
        'school_id': school_id,
        'class_id': target_class_id,
        'class_name': target_class_name,
        'timetable_code': timetable_code,
        'academic_year_id': source.get('academic_year_id'),
        'term_id': source.get('term_id'),
        'status': 'active',
        'created_by': created_by,
    }

    source_periods = store.get_periods_for_timetable(source_timetable_id)
    new_slots = [
        {k: v for k, v in period.items() if k not in ('id', 'timetable_id', 'created_at')}
        for period in source_periods
    ]
    # Cloned assignments point at their slot by position in new_slots.
    slot_index = {period['id']: index for index, period in enumerate(source_periods)}

    cloned = []
    if include_assignments:
        for assignment in store.get_assignments_for_timetable(source_timetable_id):
            index = slot_index.get(assignment['period_id'])
            if index is None:
                continue
            record = {
                k: v for k, v in assignment.items()
                if k not in ('id', 'timetable_id', 'period_id', 'created_at', 'updated_at')
            }
            record.update({
                'slot_index': index,
                'class_id': target_class_id,
                'class_name': target_class_name,
                'school_id': school_id,
            })
            cloned.append(record)

    timetable_id, _ = store.insert_timetable_with_periods(timetable, new_slots, cloned)
    logger.info("Cloned timetable %s to class %s", source_timetable_id, target_class_id)
    return timetable_id

# ==================== CONFLICT REPORT ====================


def scan_timetable_conflicts(timetable_id, school_assignments):
    """Review one timetable against every assignment in the school.

    Reports teacher double-bookings (error), runs of consecutive periods and
    overloaded days (warning), and a subject repeated within a day (info).
    Only findings that involve ``timetable_id`` are returned.
    """
    conflicts = []
    own = [a for a in school_assignments if a.get('timetable_id') == timetable_id]
    if not own:
        return conflicts

    schedules = {}
    for assignment in school_assignments:
        schedules.setdefault(assignment['teacher_id'], {}).setdefault(assignment['day'], []).append(assignment)

    for teacher_id, schedule in schedules.items():
        for day, day_assignments in schedule.items():
            ordered = sorted(day_assignments, key=lambda a: time_to_minutes(a['start_time']))

            for i, first in enumerate(ordered):
                for second in ordered[i + 1:]:
                    if not check_time_overlap(first['start_time'], first['end_time'],
                                              second['start_time'], second['end_time']):
                        continue
                    if timetable_id not in (first.get('timetable_id'), second.get('timetable_id')):
                        continue
                    conflicts.append({
                        'type': 'teacher_double_booking',
                        'severity': 'error',
                        'message': f"{first.get('teacher_name', teacher_id)} is double-booked on {day} "
                                   f"({first['start_time']}-{first['end_time']})",
                        'details': {
                            'teacher_id': teacher_id,
                            'teacher_name': first.get('teacher_name'),
                            'day': day,
                            'periods': [first['start_time'], second['start_time']],
                            'class_names': [first.get('class_name'), second.get('class_name')],
                        },
                    })

            run = 1
            for i in range(1, len(ordered)):
                if ordered[i]['start_time'] != ordered[i - 1]['end_time']:
                    run = 1
                    continue
                run += 1
                window = ordered[i - run + 1:i + 1]
                if run >= CONSECUTIVE_PERIOD_LIMIT and any(a.get('timetable_id') == timetable_id for a in window):
                    conflicts.append({
                        'type': 'teacher_consecutive',
                        'severity': 'warning',
                        'message': f"{ordered[i].get('teacher_name', teacher_id)} has {run} consecutive periods on {day}",
                        'details': {
                            'teacher_id': teacher_id,
                            'teacher_name': ordered[i].get('teacher_name'),
                            'day': day,
                            'periods': [a['start_time'] for a in window],
                        },
                    })

            if len(ordered) >= DAILY_PERIOD_LIMIT and any(a.get('timetable_id') == timetable_id for a in ordered):
                conflicts.append({
                    'type': 'teacher_overload',
                    'severity': 'warning',
                    'message': f"{ordered[0].get('teacher_name', teacher_id)} has {len(ordered)} periods on {day}",
                    'details': {
                        'teacher_id': teacher_id,
                        'teacher_name': ordered[0].get('teacher_name'),
                        'day': day,
                        'periods': [a['start_time'] for a in ordered],
                    },
                })

    by_day = {}
    for assignment in own:
        by_day.setdefault(assignment['day'], {}).setdefault(assignment.get('subject_name', ''), []).append(assignment)
    for day, subjects in by_day.items():
        for subject_name, subject_assignments in subjects.items():
            if len(subject_assignments) >= 2:
                conflicts.append({
                    'type': 'subject_clustering',
                    'severity': 'info',
                    'message': f"{subject_name} appears {len(subject_assignments)} times on {day}",
                    'details': {
                        'day': day,
                        'subject_name': subject_name,
                        'periods': [a['start_time'] for a in subject_assignments],
                    },
                })

    return conflicts
