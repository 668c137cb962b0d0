"""
PostgreSQL persistence for timetables, assignments, templates and marks.

Every function opens its own short-lived connection through db_connection();
queries are written with '?' placeholders and adapted for psycopg2.
Rows are returned as plain dicts.
"""

import json
import logging
import os
from contextlib import contextmanager

import psycopg2
from dotenv import load_dotenv
from psycopg2.extras import DictCursor, execute_batch

load_dotenv()

CODE_COLUMNS = {
    ('exams', 'exam_code'),
    ('timetables', 'timetable_code'),
}


def _database_url():
    url = (os.environ.get('DATABASE_URL') or '').strip()
    if not url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env")
    return url


def _adapt_query(query):
    return query.replace('?', '%s')


def db_execute(cursor, query, params=None):
    """Execute a '?'-style query; rolls back the connection on error."""
    try:
        if params is None:
            return cursor.execute(_adapt_query(query))
        return cursor.execute(_adapt_query(query), params)
    except psycopg2.Error as exc:
        cursor.connection.rollback()
        logging.error("SQL error: %s", exc)
        raise


def get_db():
    """Create a PostgreSQL DB connection."""
    return psycopg2.connect(_database_url(), cursor_factory=DictCursor, connect_timeout=10)


@contextmanager
def db_connection(commit=False):
    """Context manager for connections with optional commit."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()


def _fetch_one(query, params):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        row = c.fetchone()
    return dict(row) if row else None


def _fetch_all(query, params):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, query, params)
        rows = c.fetchall()
    return [dict(row) for row in rows]

# ==================== TIMETABLES ====================


def get_timetable(timetable_id):
    return _fetch_one('SELECT * FROM timetables WHERE id = ?', (timetable_id,))


def get_timetable_for_class(school_id, class_id):
    return _fetch_one(
        'SELECT * FROM timetables WHERE school_id = ? AND class_id = ? LIMIT 1',
        (school_id, class_id),
    )


def get_timetables_for_school(school_id):
    return _fetch_all('SELECT * FROM timetables WHERE school_id = ? ORDER BY class_name', (school_id,))


def insert_timetable_with_periods(record, slots, assignments=()):
    """Insert a timetable, its period slots and any assignments in one transaction.

    Assignments reference their slot by ``slot_index`` (position in ``slots``).
    Returns (timetable_id, period_ids in slot order). Nothing is kept if any
    insert fails.
    """
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO timetables
               (school_id, class_id, class_name, timetable_code, academic_year_id, term_id, status, created_by)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id''',
            (
                record['school_id'],
                record['class_id'],
                record.get('class_name', ''),
                record.get('timetable_code'),
                record.get('academic_year_id'),
                record.get('term_id'),
                record.get('status', 'active'),
                record.get('created_by', ''),
            ),
        )
        timetable_id = c.fetchone()[0]

        period_ids = []
        for slot in slots:
            db_execute(
                c,
                '''INSERT INTO periods
                   (timetable_id, day, period_name, start_time, end_time, period_type, duration)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   RETURNING id''',
                (
                    timetable_id,
                    slot['day'],
                    slot['period_name'],
                    slot['start_time'],
                    slot['end_time'],
                    slot.get('period_type', 'class'),
                    slot['duration'],
                ),
            )
            period_ids.append(c.fetchone()[0])

        if assignments:
            rows = [
                {**a, 'timetable_id': timetable_id, 'period_id': period_ids[a['slot_index']]}
                for a in assignments
            ]
            try:
                execute_batch(
                    c,
                    _adapt_query(
                        '''INSERT INTO timetable_assignments
                           (timetable_id, period_id, school_id, teacher_id, teacher_name, subject_id,
                            subject_name, class_id, class_name, day, start_time, end_time)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)'''
                    ),
                    [_assignment_params(r) for r in rows],
                )
            except psycopg2.Error as exc:
                conn.rollback()
                logging.error("SQL error: %s", exc)
                raise
    return timetable_id, period_ids


def delete_timetable_cascade(timetable_id):
    """Delete a timetable with its assignments and periods in one transaction."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM timetable_assignments WHERE timetable_id = ?', (timetable_id,))
        db_execute(c, 'DELETE FROM periods WHERE timetable_id = ?', (timetable_id,))
        db_execute(c, 'DELETE FROM timetables WHERE id = ?', (timetable_id,))

# ==================== PERIODS ====================


def get_period(period_id):
    """One period slot, with the owning timetable's school and class."""
    return _fetch_one(
        '''SELECT p.*, t.school_id, t.class_id, t.class_name
           FROM periods p
           JOIN timetables t ON t.id = p.timetable_id
           WHERE p.id = ?''',
        (period_id,),
    )


def get_periods_for_timetable(timetable_id):
    return _fetch_all(
        'SELECT * FROM periods WHERE timetable_id = ? ORDER BY day, start_time',
        (timetable_id,),
    )


def update_period(period_id, start_time, end_time, duration):
    """Store new times for a slot and carry them to the slot's assignment."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE periods SET start_time = ?, end_time = ?, duration = ? WHERE id = ?',
            (start_time, end_time, duration, period_id),
        )
        db_execute(
            c,
            '''UPDATE timetable_assignments
               SET start_time = ?, end_time = ?, updated_at = CURRENT_TIMESTAMP
               WHERE period_id = ?''',
            (start_time, end_time, period_id),
        )

# ==================== ASSIGNMENTS ====================


def get_assignments_for_teacher(school_id, teacher_id, day):
    return _fetch_all(
        '''SELECT * FROM timetable_assignments
           WHERE school_id = ? AND teacher_id = ? AND day = ?''',
        (school_id, teacher_id, day),
    )


def get_assignments_for_timetable(timetable_id):
    return _fetch_all('SELECT * FROM timetable_assignments WHERE timetable_id = ?', (timetable_id,))


def get_assignments_for_school(school_id):
    return _fetch_all('SELECT * FROM timetable_assignments WHERE school_id = ?', (school_id,))


def get_assignment_for_period(period_id):
    return _fetch_one('SELECT * FROM timetable_assignments WHERE period_id = ? LIMIT 1', (period_id,))


def upsert_assignment(record):
    """Update the assignment when the record has an id, insert it otherwise. Returns the id."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if record.get('id'):
            db_execute(
                c,
                '''UPDATE timetable_assignments
                   SET teacher_id = ?, teacher_name = ?, subject_id = ?, subject_name = ?,
                       updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?''',
                (
                    record['teacher_id'],
                    record.get('teacher_name', ''),
                    record['subject_id'],
                    record.get('subject_name', ''),
                    record['id'],
                ),
            )
            return record['id']
        db_execute(
            c,
            '''INSERT INTO timetable_assignments
               (timetable_id, period_id, school_id, teacher_id, teacher_name, subject_id,
                subject_name, class_id, class_name, day, start_time, end_time)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id''',
            _assignment_params(record),
        )
        return c.fetchone()[0]


def _assignment_params(record):
    return (
        record['timetable_id'],
        record['period_id'],
        record['school_id'],
        record['teacher_id'],
        record.get('teacher_name', ''),
        record['subject_id'],
        record.get('subject_name', ''),
        record['class_id'],
        record.get('class_name', ''),
        record['day'],
        record['start_time'],
        record['end_time'],
    )


def delete_assignment_for_period(period_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM timetable_assignments WHERE period_id = ?', (period_id,))
        return int(c.rowcount or 0)

# ==================== TEMPLATES ====================


def get_template(template_id):
    row = _fetch_one('SELECT * FROM timetable_templates WHERE id = ?', (template_id,))
    if row:
        row['period_structure'] = json.loads(row.get('period_structure') or '[]')
    return row


def insert_template(record):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO timetable_templates
               (school_id, template_name, description, created_by, period_structure, is_default, status)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               RETURNING id''',
            (
                record['school_id'],
                record['template_name'],
                record.get('description', ''),
                record.get('created_by', ''),
                json.dumps(record['period_structure']),
                1 if record.get('is_default') else 0,
                record.get('status', 'active'),
            ),
        )
        return c.fetchone()[0]


def archive_template(template_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, "UPDATE timetable_templates SET status = 'archived' WHERE id = ?", (template_id,))

# ==================== EXAMS & MARKS ====================


def get_exam(exam_id):
    return _fetch_one('SELECT * FROM exams WHERE id = ?', (exam_id,))


def load_score_records(exam_id, class_id=None):
    query = '''SELECT student_id, student_name, class_id, class_name, subject_id, subject_name,
                      class_score, exam_score, max_marks, is_absent
               FROM student_marks
               WHERE exam_id = ?'''
    params = [exam_id]
    if class_id:
        query += ' AND class_id = ?'
        params.append(class_id)
    rows = _fetch_all(query, tuple(params))
    for row in rows:
        row['is_absent'] = bool(row.get('is_absent'))
    return rows


def get_grading_scale(school_id):
    """The school's default grading scale as stored JSON text, or None."""
    row = _fetch_one(
        '''SELECT grades FROM grading_scales
           WHERE school_id = ? AND is_default = 1
           ORDER BY id DESC LIMIT 1''',
        (school_id,),
    )
    return row['grades'] if row else None

# ==================== USERS & CODES ====================


def get_user_school_id(user_id):
    row = _fetch_one('SELECT school_id FROM users WHERE id::text = ? OR username = ?', (str(user_id), str(user_id)))
    return row['school_id'] if row else None


def code_exists(table, column, code):
    if (table, column) not in CODE_COLUMNS:
        raise ValueError(f"No code column {table}.{column}")
    row = _fetch_one(f'SELECT 1 AS found FROM {table} WHERE {column} = ? LIMIT 1', (code,))
    return row is not None

# ==================== SCHEMA ====================

SCHEMA_STATEMENTS = (
    '''CREATE TABLE IF NOT EXISTS users (
            id SERIAL PRIMARY KEY,
            username TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            role TEXT DEFAULT 'teacher',
            school_id TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    '''CREATE TABLE IF NOT EXISTS timetables (
            id SERIAL PRIMARY KEY,
            school_id TEXT NOT NULL,
            class_id TEXT NOT NULL,
            class_name TEXT NOT NULL,
            timetable_code TEXT,
            academic_year_id TEXT,
            term_id TEXT,
            status TEXT DEFAULT 'active',
            created_by TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(school_id, class_id)
        )''',
    '''CREATE TABLE IF NOT EXISTS periods (
            id SERIAL PRIMARY KEY,
            timetable_id INTEGER NOT NULL REFERENCES timetables(id) ON DELETE CASCADE,
            day TEXT NOT NULL,
            period_name TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            period_type TEXT NOT NULL DEFAULT 'class',
            duration INTEGER NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    '''CREATE TABLE IF NOT EXISTS timetable_assignments (
            id SERIAL PRIMARY KEY,
            timetable_id INTEGER NOT NULL REFERENCES timetables(id) ON DELETE CASCADE,
            period_id INTEGER NOT NULL UNIQUE REFERENCES periods(id) ON DELETE CASCADE,
            school_id TEXT NOT NULL,
            teacher_id TEXT NOT NULL,
            teacher_name TEXT,
            subject_id TEXT NOT NULL,
            subject_name TEXT,
            class_id TEXT NOT NULL,
            class_name TEXT,
            day TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    '''CREATE INDEX IF NOT EXISTS idx_assignments_teacher_day
            ON timetable_assignments (school_id, teacher_id, day)''',
    '''CREATE TABLE IF NOT EXISTS timetable_templates (
            id SERIAL PRIMARY KEY,
            school_id TEXT NOT NULL,
            template_name TEXT NOT NULL,
            description TEXT,
            created_by TEXT,
            period_structure TEXT NOT NULL,
            is_default INTEGER DEFAULT 0,
            status TEXT DEFAULT 'active',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    '''CREATE TABLE IF NOT EXISTS exams (
            id SERIAL PRIMARY KEY,
            school_id TEXT NOT NULL,
            exam_code TEXT UNIQUE,
            exam_name TEXT NOT NULL,
            status TEXT DEFAULT 'draft',
            scoring_mode TEXT DEFAULT 'capped',
            class_weight REAL,
            exam_weight REAL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
    '''CREATE TABLE IF NOT EXISTS student_marks (
            id SERIAL PRIMARY KEY,
            exam_id INTEGER NOT NULL REFERENCES exams(id) ON DELETE CASCADE,
            school_id TEXT NOT NULL,
            student_id TEXT NOT NULL,
            student_name TEXT,
            class_id TEXT NOT NULL,
            class_name TEXT,
            subject_id TEXT NOT NULL,
            subject_name TEXT,
            class_score REAL DEFAULT 0,
            exam_score REAL DEFAULT 0,
            max_marks REAL DEFAULT 100,
            is_absent INTEGER DEFAULT 0,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE(exam_id, student_id, subject_id)
        )''',
    '''CREATE TABLE IF NOT EXISTS grading_scales (
            id SERIAL PRIMARY KEY,
            school_id TEXT NOT NULL,
            scale_name TEXT NOT NULL,
            grades TEXT NOT NULL,
            is_default INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )''',
)


def init_db():
    """Create all tables if they don't exist (local bootstrap; production uses migrations)."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for statement in SCHEMA_STATEMENTS:
            db_execute(c, statement)
    logging.info("Database schema ensured (%d statements).", len(SCHEMA_STATEMENTS))


if __name__ == "__main__":
    init_db()
