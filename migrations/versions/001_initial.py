"""Initial schema for timetables, assignments, templates and exam marks.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-16 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create all tables and indexes."""

    # Users are issued by the external login; only school membership is read here.
    op.execute('''CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT DEFAULT 'teacher',
                    school_id TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # One weekly timetable per class per school
    op.execute('''CREATE TABLE IF NOT EXISTS timetables (
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
                )''')

    # Period slots; duration is derived from start_time/end_time on write
    op.execute('''CREATE TABLE IF NOT EXISTS periods (
                    id SERIAL PRIMARY KEY,
                    timetable_id INTEGER NOT NULL REFERENCES timetables(id) ON DELETE CASCADE,
                    day TEXT NOT NULL,
                    period_name TEXT NOT NULL,
                    start_time TEXT NOT NULL,
                    end_time TEXT NOT NULL,
                    period_type TEXT NOT NULL DEFAULT 'class',
                    duration INTEGER NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')
    op.execute('CREATE INDEX IF NOT EXISTS idx_periods_timetable ON periods (timetable_id)')

    # At most one assignment per period
    op.execute('''CREATE TABLE IF NOT EXISTS timetable_assignments (
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
                )''')
    op.execute('''CREATE INDEX IF NOT EXISTS idx_assignments_teacher_day
                  ON timetable_assignments (school_id, teacher_id, day)''')
    op.execute('''CREATE INDEX IF NOT EXISTS idx_assignments_timetable
                  ON timetable_assignments (timetable_id)''')

    op.execute('''CREATE TABLE IF NOT EXISTS timetable_templates (
                    id SERIAL PRIMARY KEY,
                    school_id TEXT NOT NULL,
                    template_name TEXT NOT NULL,
                    description TEXT,
                    created_by TEXT,
                    period_structure TEXT NOT NULL,
                    is_default INTEGER DEFAULT 0,
                    status TEXT DEFAULT 'active',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Scoring mode and weights are set per exam
    op.execute('''CREATE TABLE IF NOT EXISTS exams (
                    id SERIAL PRIMARY KEY,
                    school_id TEXT NOT NULL,
                    exam_code TEXT UNIQUE,
                    exam_name TEXT NOT NULL,
                    status TEXT DEFAULT 'draft',
                    scoring_mode TEXT DEFAULT 'capped',
                    class_weight REAL,
                    exam_weight REAL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS student_marks (
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
                )''')
    op.execute('CREATE INDEX IF NOT EXISTS idx_student_marks_exam_class ON student_marks (exam_id, class_id)')

    # Grades column holds the JSON band list
    op.execute('''CREATE TABLE IF NOT EXISTS grading_scales (
                    id SERIAL PRIMARY KEY,
                    school_id TEXT NOT NULL,
                    scale_name TEXT NOT NULL,
                    grades TEXT NOT NULL,
                    is_default INTEGER DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')


def downgrade() -> None:
    """Drop all tables."""
    for table in (
        'grading_scales',
        'student_marks',
        'exams',
        'timetable_templates',
        'timetable_assignments',
        'periods',
        'timetables',
        'users',
    ):
        op.execute(f'DROP TABLE IF EXISTS {table} CASCADE')
