"""Flask application: JSON API over the scheduling services."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import click
from dotenv import load_dotenv
from flask import Blueprint, Flask, jsonify, request

from .availability import AvailabilityResolver
from .config import Config, configure_logging
from .errors import SchedulingError, ValidationError
from .models import ROLES, Shift, db
from .overrides import RosterEditor
from .priorities import PriorityRegistry
from .scheduling_engine import GreedyStrategy, OptimizerStrategy, make_generator
from .timewindows import parse_date
from .workdays import calendar_meta

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api/v1')

registry = PriorityRegistry()
editor = RosterEditor()


def _ok(data: Any = None, message: Optional[str] = None, status: int = 200):
    body: Dict[str, Any] = {'success': True}
    if message:
        body['message'] = message
    if data is not None:
        body['data'] = data
    return jsonify(body), status


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(detail='request body must be a JSON object')
    return data


def _int(source, name: str, required: bool = True, default=None):
    value = source.get(name)
    if value is None or value == '':
        if required:
            raise ValidationError(f'กรุณาระบุ {name}', detail=f'missing {name}')
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(detail=f'{name} must be an integer, got {value!r}') from None


def _required(source, name: str):
    value = source.get(name)
    if value is None or value == '':
        raise ValidationError(f'กรุณาระบุ {name}', detail=f'missing {name}')
    return value


def _id_list(source, name: str):
    values = source.get(name) or []
    if not isinstance(values, list):
        raise ValidationError(detail=f'{name} must be a list')
    try:
        return [int(v) for v in values]
    except (TypeError, ValueError):
        raise ValidationError(detail=f'{name} must contain staff ids') from None


def _actor() -> Optional[str]:
    return request.headers.get('X-User-Id')


# Priorities

@api.route('/priorities', methods=['GET'])
def list_priorities():
    department_id = _int(request.args, 'departmentId')
    priorities = registry.list(department_id)
    return _ok({
        'priorities': [p.to_dict() for p in priorities],
        'total': len(priorities),
        'activeCount': sum(1 for p in priorities if p.is_active),
    })


@api.route('/priorities/<int:priority_id>', methods=['PUT'])
def update_priority(priority_id):
    data = _payload()
    priority = registry.update(
        priority_id,
        is_active=data.get('isActive'),
        order=data.get('order'),
        setting_value=data.get('settingValue'),
    )
    return _ok(priority.to_dict(), 'อัปเดตลำดับความสำคัญสำเร็จ')


@api.route('/priorities/<int:priority_id>/setting', methods=['PUT'])
def update_priority_setting(priority_id):
    data = _payload()
    priority = registry.update(priority_id, setting_value=_required(data, 'settingValue'))
    return _ok(priority.to_dict(), 'อัปเดตการตั้งค่าสำเร็จ')


@api.route('/priorities/swap', methods=['POST'])
def swap_priorities():
    data = _payload()
    first, second = registry.swap(_int(data, 'aId'), _int(data, 'bId'))
    return _ok({'a': first.to_dict(), 'b': second.to_dict()}, 'สลับลำดับความสำคัญสำเร็จ')


# Calendar and shift configuration

@api.route('/calendar-meta', methods=['GET'])
def get_calendar_meta():
    department_id = _int(request.args, 'departmentId')
    return _ok(calendar_meta(department_id, _required(request.args, 'month')))


@api.route('/schedules/shifts', methods=['GET'])
def list_shifts():
    department_id = _int(request.args, 'departmentId')
    shifts = (Shift.query
              .filter_by(department_id=department_id, is_active=True)
              .order_by(Shift.start_time, Shift.id)
              .all())
    return _ok([s.to_dict() for s in shifts])


# Assignments

@api.route('/schedules/', methods=['GET'])
def list_assignments():
    department_id = _int(request.args, 'departmentId')
    include_cancelled = request.args.get('includeCancelled', '').lower() in ('1', 'true', 'yes')
    assignments = editor.list_assignments(department_id, _required(request.args, 'month'), include_cancelled)
    return _ok([a.to_dict() for a in assignments])


@api.route('/schedules/', methods=['POST'])
def create_assignment():
    data = _payload()
    role = data.get('departmentRole')
    if role is not None and role not in ROLES:
        raise ValidationError(detail=f'unknown departmentRole {role!r}')
    assignment = editor.create_assignment(
        _int(data, 'departmentId'),
        _required(data, 'date'),
        _int(data, 'shiftId'),
        _int(data, 'staffId'),
        department_role=role,
        notes=data.get('notes'),
        actor=_actor(),
    )
    return _ok(assignment.to_dict(), 'เพิ่มเวรสำเร็จ', 201)


@api.route('/schedules/<int:assignment_id>', methods=['PUT'])
def update_assignment(assignment_id):
    data = _payload()
    assignment = editor.update_assignment(
        assignment_id,
        status=data.get('status'),
        notes=data.get('notes'),
        shift_id=_int(data, 'shiftId', required=False),
        actor=_actor(),
    )
    return _ok(assignment.to_dict(), 'แก้ไขเวรสำเร็จ')


@api.route('/schedules/<int:assignment_id>', methods=['DELETE'])
def remove_assignment(assignment_id):
    assignment = editor.remove_assignment(assignment_id, actor=_actor())
    return _ok(assignment.to_dict(), 'ลบเวรสำเร็จ')


@api.route('/schedules/<int:assignment_id>/toggle', methods=['POST'])
def toggle_assignment(assignment_id):
    assignment = editor.toggle_assignment(assignment_id, actor=_actor())
    return _ok(assignment.to_dict(), 'เปลี่ยนสถานะเวรสำเร็จ')


@api.route('/schedules/stats', methods=['GET'])
def schedule_stats():
    department_id = _int(request.args, 'departmentId')
    return _ok(editor.shift_counts(department_id, _required(request.args, 'month')))


@api.route('/schedules/available-staff', methods=['GET'])
def available_staff():
    department_id = _int(request.args, 'departmentId')
    day = parse_date(_required(request.args, 'date'))
    shift_id = _int(request.args, 'shiftId')
    role = request.args.get('role') or None
    if role is not None and role not in ROLES:
        raise ValidationError(detail=f'unknown role {role!r}')
    staff = AvailabilityResolver.for_day(department_id, day).available_staff(day, shift_id, role)
    return _ok([s.to_dict() for s in staff])


# Generation

def _generate(strategy_name: str, message: str):
    data = _payload()
    generator = make_generator(strategy_name)
    result = generator.generate(
        _int(data, 'departmentId'),
        _required(data, 'month'),
        actor=_actor(),
        replace=bool(data.get('replace', False)),
        start_date=data.get('startDate'),
        end_date=data.get('endDate'),
    )
    return _ok(result.to_dict(), message)


@api.route('/schedules/auto-generate', methods=['POST'])
def auto_generate():
    return _generate(GreedyStrategy.name, 'สร้างตารางเวรอัตโนมัติสำเร็จ')


@api.route('/schedules/ai-generate', methods=['POST'])
def ai_generate():
    return _generate(OptimizerStrategy.name, 'สร้างตารางเวรด้วย AI สำเร็จ')


# Manual overrides

@api.route('/schedules/edit-shift', methods=['POST'])
def edit_shift():
    data = _payload()
    result = editor.edit_shift(
        _int(data, 'departmentId'),
        _required(data, 'date'),
        _int(data, 'shiftId'),
        add_nurses=_id_list(data, 'addNurses'),
        add_assistants=_id_list(data, 'addAssistants'),
        remove_nurses=_id_list(data, 'removeNurses'),
        remove_assistants=_id_list(data, 'removeAssistants'),
        actor=_actor(),
    )
    return _ok(result, 'แก้ไขเวรสำเร็จ')


@api.route('/schedules/check-overlap', methods=['POST'])
def check_overlap():
    data = _payload()
    result = editor.check_shift_overlap(
        _int(data, 'departmentId'),
        _required(data, 'date'),
        _int(data, 'shiftId'),
        _int(data, 'staffId'),
    )
    return _ok(result)


@api.route('/schedules/reduce-staff', methods=['POST'])
def reduce_staff():
    data = _payload()
    result = editor.reduce_staff(
        _required(data, 'date'),
        _int(data, 'shiftId'),
        nurses_to_reduce=_int(data, 'nursesToReduce', required=False, default=0),
        assistants_to_reduce=_int(data, 'assistantsToReduce', required=False, default=0),
        actor=_actor(),
    )
    return _ok(result, 'ลดจำนวนพนักงานสำเร็จ')


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(SchedulingError)
    def handle_scheduling_error(error):
        if error.status_code >= 500:
            logger.error(f"{error.code}: {error.detail or error.message}")
        else:
            logger.info(f"Rejected request {request.method} {request.path}: {error.code} {error.detail or ''}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'success': False, 'error': 'ไม่พบข้อมูลที่ร้องขอ', 'code': 'not_found'}), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({'success': False, 'error': 'ไม่รองรับคำขอนี้', 'code': 'method_not_allowed'}), 405

    @app.errorhandler(500)
    def internal_error(error):
        db.session.rollback()
        logger.error(f"Internal server error: {str(error)}")
        return jsonify({'success': False, 'error': 'เกิดข้อผิดพลาดภายในระบบ', 'code': 'internal_error'}), 500


def register_commands(app: Flask) -> None:
    @app.cli.command('init-db')
    def init_db():
        """Create all tables."""
        db.create_all()
        click.echo('Database tables created.')

    from .seed import register_seed_command
    register_seed_command(app)


def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
    load_dotenv()

    config = Config()
    configure_logging(config.LOG_LEVEL)

    app = Flask(__name__)
    app.config.from_object(config)
    if overrides:
        app.config.update(overrides)

    db.init_app(app)
    app.register_blueprint(api)
    register_error_handlers(app)
    register_commands(app)

    @app.route('/health')
    def health():
        return jsonify({'success': True, 'status': 'ok'})

    logger.info("Application created")
    return app


if __name__ == '__main__':
    application = create_app()
    with application.app_context():
        db.create_all()
    application.run(host='0.0.0.0', port=5005, debug=False)
