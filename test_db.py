import contextlib
import json

import pytest

import db


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows.pop(0) if self.rows else None

    def fetchall(self):
        rows, self.rows = self.rows, []
        return rows


class FakeConn:
    def __init__(self, cursor):
        self._cursor = cursor

    def cursor(self):
        return self._cursor


@pytest.fixture
def fake_db(monkeypatch):
    """Capture (query, params) pairs; rows queued on the cursor are returned in order."""
    executed = []
    cursor = FakeCursor()
    commits = []

    @contextlib.contextmanager
    def fake_db_connection(commit=False):
        yield FakeConn(cursor)
        # Reached only when the block finished without raising.
        commits.append(commit)

    def fake_db_execute(_cursor, query, params=None):
        executed.append((query, params))

    monkeypatch.setattr(db, "db_connection", fake_db_connection)
    monkeypatch.setattr(db, "db_execute", fake_db_execute)
    return cursor, executed, commits


def assignment_record(**overrides):
    record = {
        'timetable_id': 1,
        'period_id': 5,
        'school_id': 'SCH1',
        'teacher_id': 'T1',
        'teacher_name': 'Mr Mensah',
        'subject_id': 'MATH',
        'subject_name': 'Mathematics',
        'class_id': 'CLS1',
        'class_name': 'Basic 1',
        'day': 'monday',
        'start_time': '08:00',
        'end_time': '09:10',
    }
    record.update(overrides)
    return record


def test_adapt_query_uses_psycopg2_placeholders():
    assert db._adapt_query('SELECT * FROM periods WHERE id = ? AND day = ?') == (
        'SELECT * FROM periods WHERE id = %s AND day = %s'
    )


def test_database_url_missing_raises(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    with pytest.raises(RuntimeError):
        db._database_url()


def test_upsert_assignment_inserts_new_record(fake_db):
    cursor, executed, commits = fake_db
    cursor.rows = [(42,)]

    assert db.upsert_assignment(assignment_record()) == 42
    query, params = executed[0]
    assert query.strip().startswith('INSERT INTO timetable_assignments')
    assert params[:4] == (1, 5, 'SCH1', 'T1')
    assert commits == [True]


def test_upsert_assignment_updates_existing_record(fake_db):
    _, executed, _ = fake_db

    assert db.upsert_assignment(assignment_record(id=9, teacher_id='T2')) == 9
    query, params = executed[0]
    assert query.strip().startswith('UPDATE timetable_assignments')
    assert params[0] == 'T2'
    assert params[-1] == 9


def test_update_period_also_moves_assignment_times(fake_db):
    _, executed, _ = fake_db

    db.update_period(5, '08:00', '08:45', 45)

    assert len(executed) == 2
    assert executed[0][1] == ('08:00', '08:45', 45, 5)
    assert 'timetable_assignments' in executed[1][0]
    assert executed[1][1] == ('08:00', '08:45', 5)


def test_insert_timetable_with_periods_uses_one_transaction(fake_db, monkeypatch):
    cursor, executed, commits = fake_db
    cursor.rows = [(7,), (11,), (12,)]
    batches = []
    monkeypatch.setattr(db, "execute_batch", lambda c, query, rows: batches.append((query, rows)))
    slots = [
        {'day': 'monday', 'period_name': 'Assembly', 'start_time': '07:30',
         'end_time': '08:00', 'period_type': 'break', 'duration': 30},
        {'day': 'monday', 'period_name': 'Period 1', 'start_time': '08:00',
         'end_time': '09:10', 'period_type': 'class', 'duration': 70},
    ]
    record = {'school_id': 'SCH1', 'class_id': 'CLS2', 'class_name': 'Basic 2', 'timetable_code': 'TT12345678'}
    assignment = assignment_record(slot_index=1, class_id='CLS2', class_name='Basic 2')
    del assignment['timetable_id']
    del assignment['period_id']

    assert db.insert_timetable_with_periods(record, slots, [assignment]) == (7, [11, 12])
    assert len(executed) == 3
    assert executed[1][1][0] == 7
    assert commits == [True]
    query, rows = batches[0]
    assert '%s' in query
    assert rows[0][:2] == (7, 12)


def test_insert_timetable_with_periods_keeps_nothing_when_a_slot_fails(fake_db, monkeypatch):
    cursor, _, commits = fake_db
    cursor.rows = [(7,)]

    def failing_db_execute(_cursor, query, params=None):
        if 'INSERT INTO periods' in query:
            raise RuntimeError('insert failed')

    monkeypatch.setattr(db, "db_execute", failing_db_execute)
    slots = [{'day': 'monday', 'period_name': 'Assembly', 'start_time': '07:30',
              'end_time': '08:00', 'period_type': 'break', 'duration': 30}]

    with pytest.raises(RuntimeError):
        db.insert_timetable_with_periods({'school_id': 'SCH1', 'class_id': 'CLS1'}, slots)
    assert commits == []


def test_delete_timetable_cascade_removes_children_first(fake_db):
    _, executed, _ = fake_db

    db.delete_timetable_cascade(3)

    tables = [query.split('FROM')[1].split()[0] for query, _ in executed]
    assert tables == ['timetable_assignments', 'periods', 'timetables']


def test_get_template_decodes_period_structure(fake_db):
    cursor, _, _ = fake_db
    structure = [{'period_name': 'Assembly', 'start_time': '07:30', 'end_time': '08:00', 'period_type': 'break'}]
    cursor.rows = [{'id': 1, 'status': 'active', 'period_structure': json.dumps(structure)}]

    template = db.get_template(1)

    assert template['period_structure'] == structure


def test_load_score_records_filters_by_class(fake_db):
    cursor, executed, _ = fake_db
    cursor.rows = [{'student_id': 'S1', 'is_absent': 1}]

    rows = db.load_score_records(7, class_id='CLS1')

    assert rows == [{'student_id': 'S1', 'is_absent': True}]
    query, params = executed[0]
    assert 'class_id = ?' in query
    assert params == (7, 'CLS1')


def test_code_exists_only_checks_known_columns(fake_db):
    cursor, executed, _ = fake_db
    cursor.rows = [{'found': 1}]

    assert db.code_exists('timetables', 'timetable_code', 'TT12345678') is True
    assert 'FROM timetables WHERE timetable_code = ?' in executed[0][0]
    assert db.code_exists('exams', 'exam_code', 'EX1') is False
    with pytest.raises(ValueError):
        db.code_exists('users', 'password_hash', 'x')
