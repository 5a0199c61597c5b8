#!/usr/bin/env python3
"""
Staff Rota Service

JSON API around the rota engine: generate a month of shifts for a branch,
analyse and hand-edit it, save it over the stored range, reload it later,
export it as CSV or import one from a spreadsheet.
"""

import calendar
import logging
import os
from datetime import datetime

from flask import Flask, jsonify, make_response, request
from sqlalchemy.exc import IntegrityError

from database import Employee, Schedule, db, init_db, schedulable_employees
from rota_engine import (
    DEFAULT_NIGHT_CREW_SIZE, RosterSchedule, RotaEngine, RotaInputError, ShiftType,
    UnknownEmployeeError, analyze, cycle_assignment,
)
from rota_import import RotaImportError, import_rota
from rota_records import ShiftRecord, export_csv, parse_time, to_records
from rota_store import (
    ConfirmationRequiredError, DeleteFailedError, PartialOverwriteError, RotaStore,
    SaveInProgressError, check_employees_exist, is_saving,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Configuration
app.config['SQLALCHEMY_DATABASE_URI'] = os.environ.get('DATABASE_URL', 'sqlite:///rota_scheduling.db')
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'rota-scheduling-secret-key-change-in-production')
app.config['ROTA_DEFAULT_BRANCH'] = os.environ.get('ROTA_DEFAULT_BRANCH', 'main')
app.config['ROTA_NIGHT_CREW_SIZE'] = int(os.environ.get('ROTA_NIGHT_CREW_SIZE', DEFAULT_NIGHT_CREW_SIZE))
app.config['MAX_CONTENT_LENGTH'] = 5 * 1024 * 1024

db.init_app(app)


def _parse_date(value, field_name):
    if not value:
        raise RotaInputError(f"{field_name} is required")
    try:
        return datetime.strptime(value, '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise RotaInputError(f"{field_name} must be YYYY-MM-DD, got {value!r}")


def _branch(value):
    return value or app.config['ROTA_DEFAULT_BRANCH']


def _json_body():
    return request.get_json(silent=True) or {}


def _schedule_from(data):
    if 'schedule' not in data:
        raise RotaInputError("schedule is required")
    return RosterSchedule.from_dict(data['schedule'])


def _rota_payload(schedule):
    return {
        'success': True,
        'schedule': schedule.to_dict(),
        'stats': analyze(schedule).to_dict(),
        'warning_count': schedule.warning_count,
    }


def _store_error_response(e):
    if isinstance(e, PartialOverwriteError):
        return jsonify({
            'success': False,
            'error': str(e),
            'stage': e.stage,
            'deleted_count': e.deleted_count,
            'pending_count': len(e.records),
        }), 502
    if isinstance(e, DeleteFailedError):
        return jsonify({'success': False, 'error': str(e), 'stage': e.stage}), 500
    return jsonify({'success': False, 'error': str(e)}), 409


# Employee directory
@app.route('/api/employees', methods=['GET', 'POST'])
def api_employees():
    if request.method == 'GET':
        try:
            branch = request.args.get('branch')
            if request.args.get('schedulable') in ('1', 'true'):
                employees = schedulable_employees(branch)
            else:
                query = Employee.query.filter_by(active=True)
                if branch:
                    query = query.filter_by(branch=branch)
                employees = query.order_by(Employee.id).all()
            return jsonify({
                'success': True,
                'employees': [emp.to_dict() for emp in employees],
                'count': len(employees)
            })
        except Exception as e:
            logger.error(f"Error fetching employees: {str(e)}")
            return jsonify({'success': False, 'error': str(e)}), 500

    try:
        data = _json_body()
        logger.info(f"Creating employee with data: {data}")

        if not data.get('name') or not data.get('username'):
            return jsonify({'success': False, 'error': 'name and username are required'}), 400

        employee = Employee(
            name=data['name'],
            username=data['username'],
            email=data.get('email'),
            role=data.get('role', 'staff'),
            avatar=data.get('avatar'),
            branch=_branch(data.get('branch'))
        )
        db.session.add(employee)
        db.session.commit()

        logger.info(f"Successfully created employee: {employee.name}")
        return jsonify({'success': True, 'employee': employee.to_dict()}), 201

    except IntegrityError:
        db.session.rollback()
        return jsonify({'success': False, 'error': 'A user with this username already exists'}), 409
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error creating employee: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 400


# Flat shift rows
@app.route('/api/schedule', methods=['GET'])
def get_schedule():
    try:
        query = Schedule.query
        start_date = request.args.get('start_date')
        end_date = request.args.get('end_date')
        branch = request.args.get('branch')
        employee_id = request.args.get('employee_id')

        if start_date:
            query = query.filter(Schedule.date >= _parse_date(start_date, 'start_date'))
        if end_date:
            query = query.filter(Schedule.date <= _parse_date(end_date, 'end_date'))
        if branch:
            query = query.filter(Schedule.branch == branch)
        if employee_id:
            query = query.filter(Schedule.user_id == employee_id)

        schedules = query.order_by(Schedule.date, Schedule.start_time).all()
        return jsonify({
            'success': True,
            'schedules': [sch.to_dict() for sch in schedules],
            'count': len(schedules)
        })

    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error fetching schedule: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/schedule', methods=['POST'])
def create_schedule():
    try:
        data = _json_body()
        logger.info(f"Creating schedule with data: {data}")

        record = ShiftRecord.from_dict(data, default_branch=app.config['ROTA_DEFAULT_BRANCH'])
        check_employees_exist([record])

        schedule = Schedule.from_record(record)
        db.session.add(schedule)
        db.session.commit()

        logger.info(f"Created shift {schedule.id} for employee {schedule.user_id} on {schedule.date}")
        return jsonify({'success': True, 'schedule': schedule.to_dict()}), 201

    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except IntegrityError:
        db.session.rollback()
        return jsonify({'success': False, 'error': 'A shift already exists for this employee, date and start time'}), 409
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error creating schedule: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/schedule/<int:schedule_id>', methods=['PUT'])
def update_schedule(schedule_id):
    """Partial update of times, shift type and notes."""
    try:
        schedule = db.session.get(Schedule, schedule_id)
        if schedule is None:
            return jsonify({'success': False, 'error': 'Schedule not found'}), 404

        data = _json_body()
        if 'start_time' in data:
            schedule.start_time = parse_time(data['start_time'])
        if 'end_time' in data:
            schedule.end_time = parse_time(data['end_time'])
        if 'shift_type' in data:
            schedule.shift_type = ShiftType.from_label(data['shift_type']).value
        if 'notes' in data:
            schedule.notes = data['notes']

        db.session.commit()
        logger.info(f"Updated shift {schedule_id}")
        return jsonify({'success': True, 'schedule': schedule.to_dict()})

    except RotaInputError as e:
        db.session.rollback()
        return jsonify({'success': False, 'error': str(e)}), 400
    except IntegrityError:
        db.session.rollback()
        return jsonify({'success': False, 'error': 'A shift already exists for this employee, date and start time'}), 409
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error updating schedule {schedule_id}: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/schedule/<int:schedule_id>', methods=['DELETE'])
def delete_schedule(schedule_id):
    try:
        schedule = db.session.get(Schedule, schedule_id)
        if schedule is None:
            return jsonify({'success': False, 'error': 'Schedule not found'}), 404

        db.session.delete(schedule)
        db.session.commit()
        logger.info(f"Deleted shift {schedule_id}")
        return jsonify({'success': True, 'message': 'Schedule deleted successfully'})

    except Exception as e:
        db.session.rollback()
        logger.error(f"Error deleting schedule {schedule_id}: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/schedule/bulk', methods=['POST'])
def bulk_create_schedules():
    try:
        rows = _json_body().get('schedules')
        if not isinstance(rows, list) or not rows:
            return jsonify({'success': False, 'error': 'schedules array is required'}), 400

        default_branch = app.config['ROTA_DEFAULT_BRANCH']
        records = [ShiftRecord.from_dict(row, default_branch=default_branch) for row in rows]
        inserted = RotaStore().bulk_insert_shifts(records)
        return jsonify({
            'success': True,
            'inserted': inserted,
            'message': f'{inserted} schedules processed successfully'
        }), 201

    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except IntegrityError as e:
        logger.error(f"Duplicate shift in bulk create: {str(e)}")
        return jsonify({'success': False, 'error': 'A shift already exists for this employee, date and start time'}), 409
    except Exception as e:
        logger.error(f"Error bulk creating schedules: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/schedule/range', methods=['DELETE'])
def delete_schedule_range():
    try:
        data = _json_body()
        start_date = _parse_date(data.get('start_date'), 'start_date')
        end_date = _parse_date(data.get('end_date'), 'end_date')
        deleted = RotaStore().delete_shifts_in_range(start_date, end_date, data.get('branch'))
        return jsonify({'success': True, 'deleted': deleted})

    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error deleting schedules by range: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


# Rota generation, analysis and editing
@app.route('/api/rota/generate', methods=['POST'])
def generate_rota_endpoint():
    """Generate a rota; ``days`` defaults to the rest of the starting month."""
    try:
        data = _json_body()
        start_date = _parse_date(data.get('start_date'), 'start_date')
        branch = _branch(data.get('branch'))
        days = data.get('days')
        if days is None:
            days = calendar.monthrange(start_date.year, start_date.month)[1] - start_date.day + 1
        night_crew_size = data.get('night_crew_size', app.config['ROTA_NIGHT_CREW_SIZE'])

        employees = [emp.to_rota_employee() for emp in schedulable_employees(branch)]
        if not employees:
            return jsonify({'success': False, 'error': 'No staff members found to generate a rota for'}), 400

        logger.info(f"Generating rota for {branch}: {days} days from {start_date}")
        schedule = RotaEngine(night_crew_size).generate(employees, start_date, days)
        return jsonify(_rota_payload(schedule))

    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error generating rota: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/rota/analyze', methods=['POST'])
def analyze_rota_endpoint():
    try:
        schedule = _schedule_from(_json_body())
        return jsonify({'success': True, 'stats': analyze(schedule).to_dict()})
    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error analysing rota: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/rota/cycle', methods=['POST'])
def cycle_rota_cell():
    """Advance one cell OFF -> AM -> PM -> NT -> OFF and return fresh stats."""
    try:
        data = _json_body()
        schedule = _schedule_from(data)
        cycle_assignment(schedule, data.get('day_index'), data.get('employee_id'))
        return jsonify(_rota_payload(schedule))
    except UnknownEmployeeError as e:
        return jsonify({'success': False, 'error': str(e)}), 404
    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error editing rota: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


# Rota persistence
@app.route('/api/rota', methods=['GET'])
def load_rota_endpoint():
    try:
        start_date = _parse_date(request.args.get('start_date'), 'start_date')
        end_date = _parse_date(request.args.get('end_date'), 'end_date')
        if end_date < start_date:
            raise RotaInputError("end_date must not be before start_date")
        branch = _branch(request.args.get('branch'))

        employees = [emp.to_rota_employee() for emp in schedulable_employees(branch)]
        stored = RotaStore().load_rota(start_date, end_date, branch, employees)

        if not stored.has_data:
            return jsonify({'success': True, 'status': stored.status, 'schedule': None})

        payload = _rota_payload(stored.schedule)
        payload['status'] = stored.status
        payload['record_count'] = len(stored.records)
        return jsonify(payload)

    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error loading rota: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/rota/save', methods=['POST'])
def save_rota_endpoint():
    """Overwrite the stored range with the posted rota. Requires ``confirm: true``."""
    try:
        data = _json_body()
        schedule = _schedule_from(data)
        if not len(schedule):
            raise RotaInputError("schedule has no days")
        branch = _branch(data.get('branch'))

        records = to_records(schedule, branch)
        result = RotaStore().overwrite_range(
            schedule.start_date, schedule.end_date, branch, records,
            confirm=data.get('confirm') is True
        )
        return jsonify({
            'success': True,
            'deleted_count': result.deleted_count,
            'inserted_count': result.inserted_count,
            'message': 'Rota saved to database successfully'
        })

    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except (ConfirmationRequiredError, SaveInProgressError, DeleteFailedError, PartialOverwriteError) as e:
        return _store_error_response(e)
    except Exception as e:
        logger.error(f"Error saving rota: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/rota/save-status', methods=['GET'])
def save_status_endpoint():
    try:
        start_date = _parse_date(request.args.get('start_date'), 'start_date')
        end_date = _parse_date(request.args.get('end_date'), 'end_date')
        branch = _branch(request.args.get('branch'))
        return jsonify({'success': True, 'saving': is_saving(start_date, end_date, branch)})
    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Error checking save status: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/rota/export', methods=['POST'])
def export_rota_endpoint():
    try:
        schedule = _schedule_from(_json_body())
        csv_data = export_csv(schedule)

        response = make_response(csv_data)
        response.headers['Content-Type'] = 'text/csv; charset=utf-8'
        if len(schedule):
            filename = f'rota_{schedule.start_date.isoformat()}_{schedule.end_date.isoformat()}.csv'
        else:
            filename = 'rota.csv'
        response.headers['Content-Disposition'] = f'attachment; filename={filename}'
        return response

    except RotaInputError as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except Exception as e:
        logger.error(f"CSV export error: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


@app.route('/api/rota/import', methods=['POST'])
def import_rota_endpoint():
    try:
        upload = request.files.get('file')
        if upload is None:
            return jsonify({'success': False, 'error': 'No file uploaded'}), 400

        branch = _branch(request.form.get('branch'))
        result = import_rota(upload.read(), upload.filename or '', branch, RotaStore())
        return jsonify({
            'success': True,
            'message': f'Import successful. Processed {result.parsed.rows_processed} days.',
            'stats': result.to_dict()
        })

    except (RotaImportError, RotaInputError) as e:
        return jsonify({'success': False, 'error': str(e)}), 400
    except (SaveInProgressError, DeleteFailedError, PartialOverwriteError) as e:
        return _store_error_response(e)
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error importing rota: {str(e)}")
        return jsonify({'success': False, 'error': str(e)}), 500


_db_init_done = False


# Database initialization
@app.before_request
def _init_db_once():
    global _db_init_done
    if _db_init_done or app.config.get("TESTING"):
        return
    init_db(app.config['ROTA_DEFAULT_BRANCH'])
    _db_init_done = True


# Error handlers
@app.errorhandler(404)
def not_found(error):
    return jsonify({'success': False, 'error': 'Resource not found'}), 404


@app.errorhandler(500)
def internal_error(error):
    logger.error(f"Internal server error: {str(error)}")
    return jsonify({'success': False, 'error': 'Internal server error'}), 500


if __name__ == '__main__':
    is_production = os.environ.get('FLASK_ENV') == 'production'

    if is_production:
        app.run(host='0.0.0.0', port=5005, debug=False)
    else:
        app.run(host='0.0.0.0', port=5005, debug=True)
