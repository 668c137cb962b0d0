"""
SchoolFlow - timetable and results service

Flask JSON endpoints over the timetable conflict checker and the grading
engine. Sessions are issued by the SchoolFlow login service and carry
role, school_id and user_id.
"""

from functools import wraps
import os
import logging

from flask import Flask, request, session, jsonify
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError
from wtforms import StringField, IntegerField, FloatField, BooleanField, validators
from dotenv import load_dotenv

import db
from codes import generate_unique_code
from errors import SchoolFlowError, NotFoundError
from grading import (
    aggregate_results, calculate_grade, grade_record, normalize_scoring_config,
    parse_grading_scale, performance_bands, rank_students, summarize_exam,
)
from tenancy import verify_tenant
from time_utils import convert_to_12_hour, convert_to_24_hour, format_time_range
from timetable import (
    apply_template, archive_template, assign_teacher_to_slot, bulk_delete_timetables, clone_timetable,
    create_default_timetable, create_template, delete_timetable, group_periods_by_day,
    remove_assignment, scan_timetable_conflicts, update_period_times,
)

load_dotenv()

app = Flask(__name__)
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None

csrf = CSRFProtect(app)

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")


def _env_float(name, default):
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        raise RuntimeError(f"{name} must be a number.")


PASS_MARK = _env_float('PASS_MARK', 40)
DEFAULT_SCORING_MODE = os.environ.get('DEFAULT_SCORING_MODE', 'capped').strip().lower() or 'capped'
DEFAULT_CLASS_WEIGHT = _env_float('DEFAULT_CLASS_WEIGHT', 30)
DEFAULT_EXAM_WEIGHT = _env_float('DEFAULT_EXAM_WEIGHT', 70)
TIMETABLE_CODE_PREFIX = 'TT'
TIMETABLE_CODE_DIGITS = 8

logging.basicConfig(filename='app.log', level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

# Persistence collaborator; tests swap in an in-memory store.
store = db

RUN_STARTUP_DDL = os.environ.get('RUN_STARTUP_DDL', '0').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_DDL:
    store.init_db()
else:
    logging.info("RUN_STARTUP_DDL is disabled. Schema is expected to be migrated (python migrate.py).")

# ==================== FORMS ====================


class CreateTimetableForm(FlaskForm):
    class_id = StringField('Class', [validators.InputRequired()])
    class_name = StringField('Class name', [validators.InputRequired()])
    academic_year_id = StringField('Academic year', [validators.Optional()])
    term_id = StringField('Term', [validators.Optional()])


class PeriodTimesForm(FlaskForm):
    start_time = StringField('Start time', [validators.InputRequired()])
    end_time = StringField('End time', [validators.InputRequired()])


class AssignTeacherForm(FlaskForm):
    teacher_id = StringField('Teacher', [validators.InputRequired()])
    teacher_name = StringField('Teacher name', [validators.Optional()])
    subject_id = StringField('Subject', [validators.InputRequired()])
    subject_name = StringField('Subject name', [validators.Optional()])


class TemplateForm(FlaskForm):
    template_name = StringField('Template name', [validators.InputRequired(), validators.Length(max=120)])
    description = StringField('Description', [validators.Optional()])
    timetable_id = IntegerField('Timetable', [validators.InputRequired()])


class TargetClassForm(FlaskForm):
    class_id = StringField('Class', [validators.InputRequired()])
    class_name = StringField('Class name', [validators.InputRequired()])
    include_assignments = BooleanField('Include assignments')


class GradeForm(FlaskForm):
    percentage = FloatField('Percentage', [validators.InputRequired()])

# ==================== HELPERS ====================


def role_required(*roles):
    """Reject requests whose session role is not one of ``roles``."""
    def deco(f):
        @wraps(f)
        def wrapper(*args, **kwargs):
            role = session.get('role')
            if not role:
                return jsonify({'error': 'Not signed in.'}), 401
            if role not in roles:
                return jsonify({'error': 'Forbidden for role.'}), 403
            return f(*args, **kwargs)
        return wrapper
    return deco


def form_error(form):
    return jsonify({'error': 'Invalid form data.', 'fields': form.errors}), 400


def verify_school(resource_school_id):
    """Tenant check for the signed-in user against a resource's school."""
    return verify_tenant(session.get('user_id'), resource_school_id, store.get_user_school_id)


def load_timetable(timetable_id):
    timetable = store.get_timetable(timetable_id)
    if not timetable:
        raise NotFoundError(f"Timetable {timetable_id} not found")
    verify_school(timetable['school_id'])
    return timetable


def load_period(period_id):
    period = store.get_period(period_id)
    if not period:
        raise NotFoundError(f"Period {period_id} not found")
    verify_school(period['school_id'])
    return period


def new_timetable_code():
    return generate_unique_code(
        TIMETABLE_CODE_PREFIX,
        TIMETABLE_CODE_DIGITS,
        lambda code: store.code_exists('timetables', 'timetable_code', code),
    )


def with_display_times(period):
    return {
        **period,
        'start_display': convert_to_12_hour(period['start_time']),
        'end_display': convert_to_12_hour(period['end_time']),
        'time_range': format_time_range(period['start_time'], period['end_time']),
    }


def exam_scoring_config(exam):
    mode = (exam.get('scoring_mode') or DEFAULT_SCORING_MODE).strip().lower()
    class_weight = exam.get('class_weight')
    exam_weight = exam.get('exam_weight')
    if mode == 'capped' and class_weight is None and exam_weight is None:
        class_weight, exam_weight = DEFAULT_CLASS_WEIGHT, DEFAULT_EXAM_WEIGHT
    return normalize_scoring_config({'mode': mode, 'class_weight': class_weight, 'exam_weight': exam_weight})


def load_exam_grading(exam_id):
    exam = store.get_exam(exam_id)
    if not exam:
        raise NotFoundError(f"Exam {exam_id} not found")
    verify_school(exam['school_id'])
    config = exam_scoring_config(exam)
    scale = parse_grading_scale(store.get_grading_scale(exam['school_id']))
    records = store.load_score_records(exam_id, class_id=request.args.get('class_id') or None)
    return exam, config, scale, records


def class_positions(graded_results):
    """Position in class by average percentage over the student's subjects."""
    students = {}
    for row in graded_results:
        if row.get('is_absent'):
            continue
        student = students.setdefault(row['student_id'], {
            'student_id': row['student_id'],
            'class_id': row.get('class_id'),
            'percentages': [],
        })
        student['percentages'].append(row['percentage'])
    for student in students.values():
        percentages = student.pop('percentages')
        student['average'] = round(sum(percentages) / len(percentages), 2)
    positions = rank_students(list(students.values()))
    return {str(student_id): info for student_id, info in positions.items()}

# ==================== ERRORS ====================


@app.errorhandler(SchoolFlowError)
def schoolflow_error(error):
    """Conflict, duplicate and validation messages go to the operator verbatim."""
    logging.info("%s on %s: %s", type(error).__name__, request.path, error.message)
    body = {'error': error.message}
    field = getattr(error, 'field', None)
    if field:
        body['field'] = field
    return jsonify(body), error.status_code


@app.errorhandler(CSRFError)
def csrf_error(error):
    return jsonify({'error': 'Form token expired/invalid. Please retry your last action.'}), 400

# ==================== TIMETABLE ROUTES ====================


@app.route('/school-admin/timetables', methods=['POST'])
@role_required('school_admin')
def school_admin_create_timetable():
    """Create a class timetable with the default ten periods on every weekday."""
    form = CreateTimetableForm()
    if not form.validate_on_submit():
        return form_error(form)
    school_id = session.get('school_id')
    verify_school(school_id)
    slots = create_default_timetable(
        school_id,
        form.class_id.data.strip(),
        form.class_name.data.strip(),
        store,
        created_by=session.get('user_id', ''),
        academic_year_id=form.academic_year_id.data or None,
        term_id=form.term_id.data or None,
        timetable_code=new_timetable_code(),
    )
    return jsonify({'timetable_id': slots[0]['timetable_id'], 'period_count': len(slots)}), 201


@app.route('/school-admin/timetables')
@role_required('school_admin')
def school_admin_list_timetables():
    school_id = session.get('school_id')
    verify_school(school_id)
    return jsonify({'timetables': store.get_timetables_for_school(school_id)})


@app.route('/school-admin/timetables/bulk-delete', methods=['POST'])
@role_required('school_admin')
def school_admin_bulk_delete_timetables():
    """Delete several timetables; ids come as repeated or comma-separated ``timetable_ids`` fields."""
    raw_ids = []
    for value in request.form.getlist('timetable_ids'):
        raw_ids.extend(v.strip() for v in value.split(',') if v.strip())
    try:
        timetable_ids = [int(v) for v in raw_ids]
    except ValueError:
        return jsonify({'error': 'timetable_ids must be integers.', 'field': 'timetable_ids'}), 400
    if not timetable_ids:
        return jsonify({'error': 'Select at least one timetable.', 'field': 'timetable_ids'}), 400
    for timetable_id in timetable_ids:
        timetable = store.get_timetable(timetable_id)
        if timetable:
            verify_school(timetable['school_id'])
    deleted = bulk_delete_timetables(timetable_ids, store)
    logging.info("Bulk deleted %d of %d timetables", deleted, len(timetable_ids))
    return jsonify({'deleted_count': deleted})


@app.route('/timetables/<int:timetable_id>')
@role_required('school_admin', 'teacher')
def view_timetable(timetable_id):
    timetable = load_timetable(timetable_id)
    assignments = {a['period_id']: a for a in store.get_assignments_for_timetable(timetable_id)}
    periods = []
    for period in store.get_periods_for_timetable(timetable_id):
        entry = with_display_times(period)
        entry['assignment'] = assignments.get(period['id'])
        periods.append(entry)
    return jsonify({'timetable': timetable, 'periods_by_day': group_periods_by_day(periods)})


@app.route('/school-admin/timetables/<int:timetable_id>/delete', methods=['POST'])
@role_required('school_admin')
def school_admin_delete_timetable(timetable_id):
    load_timetable(timetable_id)
    delete_timetable(timetable_id, store)
    return jsonify({'deleted': timetable_id})


@app.route('/school-admin/periods/<int:period_id>/times', methods=['POST'])
@role_required('school_admin')
def school_admin_update_period_times(period_id):
    """Inline edit; 12-hour input is accepted and stored as 24-hour."""
    form = PeriodTimesForm()
    if not form.validate_on_submit():
        return form_error(form)
    load_period(period_id)
    period = update_period_times(
        period_id,
        convert_to_24_hour(form.start_time.data.strip()),
        convert_to_24_hour(form.end_time.data.strip()),
        store,
    )
    return jsonify({'period': with_display_times(period)})


@app.route('/school-admin/periods/<int:period_id>/assign', methods=['POST'])
@role_required('school_admin')
def school_admin_assign_teacher(period_id):
    """Assign a teacher and subject to a period, refusing teacher double-booking."""
    form = AssignTeacherForm()
    if not form.validate_on_submit():
        return form_error(form)
    period = load_period(period_id)
    teacher_id = form.teacher_id.data.strip()
    candidate = {
        'timetable_id': period['timetable_id'],
        'period_id': period_id,
        'school_id': period['school_id'],
        'teacher_id': teacher_id,
        'teacher_name': (form.teacher_name.data or '').strip(),
        'subject_id': form.subject_id.data.strip(),
        'subject_name': (form.subject_name.data or '').strip(),
        'class_id': period['class_id'],
        'class_name': period.get('class_name', ''),
        'day': period['day'],
        'start_time': period['start_time'],
        'end_time': period['end_time'],
    }
    existing = store.get_assignments_for_teacher(period['school_id'], teacher_id, period['day'])
    assignment_id = assign_teacher_to_slot(candidate, existing, store)
    return jsonify({'assignment_id': assignment_id})


@app.route('/school-admin/periods/<int:period_id>/unassign', methods=['POST'])
@role_required('school_admin')
def school_admin_remove_assignment(period_id):
    load_period(period_id)
    return jsonify({'removed': remove_assignment(period_id, store)})


@app.route('/school-admin/timetables/<int:timetable_id>/conflicts')
@role_required('school_admin')
def school_admin_timetable_conflicts(timetable_id):
    timetable = load_timetable(timetable_id)
    conflicts = scan_timetable_conflicts(timetable_id, store.get_assignments_for_school(timetable['school_id']))
    return jsonify({'conflicts': conflicts})


@app.route('/school-admin/templates', methods=['POST'])
@role_required('school_admin')
def school_admin_create_template():
    """Save a timetable's period structure as a reusable template."""
    form = TemplateForm()
    if not form.validate_on_submit():
        return form_error(form)
    timetable = load_timetable(form.timetable_id.data)
    template_id = create_template(
        timetable['school_id'],
        form.template_name.data.strip(),
        timetable['id'],
        store,
        description=(form.description.data or '').strip(),
        created_by=session.get('user_id', ''),
    )
    return jsonify({'template_id': template_id}), 201


@app.route('/school-admin/templates/<int:template_id>/apply', methods=['POST'])
@role_required('school_admin')
def school_admin_apply_template(template_id):
    form = TargetClassForm()
    if not form.validate_on_submit():
        return form_error(form)
    school_id = session.get('school_id')
    verify_school(school_id)
    template = store.get_template(template_id)
    if template:
        verify_school(template['school_id'])
    slots = apply_template(
        template_id,
        school_id,
        form.class_id.data.strip(),
        form.class_name.data.strip(),
        store,
        created_by=session.get('user_id', ''),
        timetable_code=new_timetable_code(),
    )
    return jsonify({'timetable_id': slots[0]['timetable_id'] if slots else None, 'period_count': len(slots)}), 201


@app.route('/school-admin/templates/<int:template_id>/archive', methods=['POST'])
@role_required('school_admin')
def school_admin_archive_template(template_id):
    template = store.get_template(template_id)
    if template:
        verify_school(template['school_id'])
    archive_template(template_id, store)
    return jsonify({'archived': template_id})


@app.route('/school-admin/timetables/<int:timetable_id>/clone', methods=['POST'])
@role_required('school_admin')
def school_admin_clone_timetable(timetable_id):
    form = TargetClassForm()
    if not form.validate_on_submit():
        return form_error(form)
    timetable = load_timetable(timetable_id)
    new_id = clone_timetable(
        timetable_id,
        timetable['school_id'],
        form.class_id.data.strip(),
        form.class_name.data.strip(),
        store,
        include_assignments=bool(form.include_assignments.data),
        created_by=session.get('user_id', ''),
        timetable_code=new_timetable_code(),
    )
    return jsonify({'timetable_id': new_id}), 201

# ==================== RESULTS ROUTES ====================


@app.route('/exams/<int:exam_id>/results')
@role_required('school_admin', 'teacher')
def exam_results(exam_id):
    """Graded marks for an exam with grade distribution and class averages."""
    exam, config, scale, records = load_exam_grading(exam_id)
    results = [grade_record(r, config, scale) for r in records]
    return jsonify({
        'exam_id': exam_id,
        'exam_name': exam.get('exam_name', ''),
        'scoring': config,
        'results': results,
        'positions': class_positions(results),
        **aggregate_results(records, config, scale),
    })


@app.route('/exams/<int:exam_id>/analytics')
@role_required('school_admin', 'teacher')
def exam_analytics(exam_id):
    exam, config, scale, records = load_exam_grading(exam_id)
    if not records:
        return jsonify({'exam_id': exam_id, 'analytics': None})
    return jsonify({
        'exam_id': exam_id,
        'exam_name': exam.get('exam_name', ''),
        'analytics': summarize_exam(records, config, scale, pass_mark=PASS_MARK),
        'performance': performance_bands(records, config),
    })


@app.route('/grade', methods=['POST'])
@role_required('school_admin', 'teacher')
def grade_percentage():
    form = GradeForm()
    if not form.validate_on_submit():
        return form_error(form)
    scale = parse_grading_scale(store.get_grading_scale(session.get('school_id')))
    return jsonify(calculate_grade(form.percentage.data, scale))

# ==================== MAIN ====================

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
