import copy
import itertools

import pytest


class MemoryStore:
    """In-memory stand-in for the ``db`` module's collaborator functions."""

    def __init__(self):
        self.timetables = {}
        self.periods = {}
        self.assignments = {}
        self.templates = {}
        self.exams = {}
        self.marks = []
        self.grading_scales = {}
        self.users = {}
        self.codes = set()
        self._ids = itertools.count(1)

    def _next_id(self):
        return next(self._ids)

    # timetables
    def get_timetable(self, timetable_id):
        row = self.timetables.get(timetable_id)
        return dict(row) if row else None

    def get_timetable_for_class(self, school_id, class_id):
        for row in self.timetables.values():
            if row['school_id'] == school_id and row['class_id'] == class_id:
                return dict(row)
        return None

    def get_timetables_for_school(self, school_id):
        rows = [dict(r) for r in self.timetables.values() if r['school_id'] == school_id]
        return sorted(rows, key=lambda r: r['class_name'])

    def insert_timetable_with_periods(self, record, slots, assignments=()):
        timetable_id = self._next_id()
        timetable = {**record, 'id': timetable_id}
        periods = {}
        period_ids = []
        for slot in slots:
            period_id = self._next_id()
            periods[period_id] = {**slot, 'timetable_id': timetable_id, 'id': period_id}
            period_ids.append(period_id)
        staged = {}
        for assignment in assignments:
            assignment_id = self._next_id()
            row = {k: v for k, v in assignment.items() if k != 'slot_index'}
            row.update({
                'id': assignment_id,
                'timetable_id': timetable_id,
                'period_id': period_ids[assignment['slot_index']],
            })
            staged[assignment_id] = row
        # Applied only once every row is built, like a committed transaction.
        self.timetables[timetable_id] = timetable
        self.periods.update(periods)
        self.assignments.update(staged)
        if record.get('timetable_code'):
            self.codes.add(record['timetable_code'])
        return timetable_id, period_ids

    def delete_timetable_cascade(self, timetable_id):
        self.assignments = {k: v for k, v in self.assignments.items() if v['timetable_id'] != timetable_id}
        self.periods = {k: v for k, v in self.periods.items() if v['timetable_id'] != timetable_id}
        self.timetables.pop(timetable_id, None)

    # periods
    def get_period(self, period_id):
        period = self.periods.get(period_id)
        if not period:
            return None
        timetable = self.timetables[period['timetable_id']]
        return {
            **period,
            'school_id': timetable['school_id'],
            'class_id': timetable['class_id'],
            'class_name': timetable['class_name'],
        }

    def get_periods_for_timetable(self, timetable_id):
        return [dict(p) for p in self.periods.values() if p['timetable_id'] == timetable_id]

    def update_period(self, period_id, start_time, end_time, duration):
        self.periods[period_id].update({'start_time': start_time, 'end_time': end_time, 'duration': duration})
        for assignment in self.assignments.values():
            if assignment['period_id'] == period_id:
                assignment.update({'start_time': start_time, 'end_time': end_time})

    # assignments
    def get_assignments_for_teacher(self, school_id, teacher_id, day):
        return [
            dict(a) for a in self.assignments.values()
            if a['school_id'] == school_id and a['teacher_id'] == teacher_id and a['day'] == day
        ]

    def get_assignments_for_timetable(self, timetable_id):
        return [dict(a) for a in self.assignments.values() if a['timetable_id'] == timetable_id]

    def get_assignments_for_school(self, school_id):
        return [dict(a) for a in self.assignments.values() if a['school_id'] == school_id]

    def get_assignment_for_period(self, period_id):
        for assignment in self.assignments.values():
            if assignment['period_id'] == period_id:
                return dict(assignment)
        return None

    def upsert_assignment(self, record):
        if record.get('id'):
            self.assignments[record['id']].update(record)
            return record['id']
        assignment_id = self._next_id()
        self.assignments[assignment_id] = {**record, 'id': assignment_id}
        return assignment_id

    def delete_assignment_for_period(self, period_id):
        matches = [k for k, v in self.assignments.items() if v['period_id'] == period_id]
        for key in matches:
            del self.assignments[key]
        return len(matches)

    # templates
    def get_template(self, template_id):
        row = self.templates.get(template_id)
        return copy.deepcopy(row) if row else None

    def insert_template(self, record):
        template_id = self._next_id()
        self.templates[template_id] = {**copy.deepcopy(record), 'id': template_id}
        return template_id

    def archive_template(self, template_id):
        self.templates[template_id]['status'] = 'archived'

    # exams
    def get_exam(self, exam_id):
        row = self.exams.get(exam_id)
        return dict(row) if row else None

    def load_score_records(self, exam_id, class_id=None):
        return [
            dict(m) for m in self.marks
            if m['exam_id'] == exam_id and (class_id is None or m['class_id'] == class_id)
        ]

    def get_grading_scale(self, school_id):
        return self.grading_scales.get(school_id)

    # users & codes
    def get_user_school_id(self, user_id):
        return self.users.get(user_id)

    def code_exists(self, table, column, code):
        return code in self.codes

    def init_db(self):
        pass


@pytest.fixture
def memory_store():
    return MemoryStore()
