"""Session lifecycle, live token and reverify management endpoints."""
from datetime import datetime

from flask import Blueprint, request
from flask_jwt_extended import jwt_required

from attendiq.models.user import UserRole
from attendiq.services.attendance_service import AttendanceService
from attendiq.services.phase_service import PhaseService
from attendiq.services.reverify_service import ReverifyService
from attendiq.utils.decorators import (
    current_principal, require_session_staff, roles_required, staff_required, student_required
)
from attendiq.utils.errors import InvalidRequest
from attendiq.utils.helpers import json_body, success_response
from attendiq.utils.validators import Validator

sessions_bp = Blueprint('sessions', __name__)

# Optional per-session overrides: (name, minimum, maximum)
INT_OVERRIDES = [
    ('radius_meters', 10, 5000),
    ('initial_phase_seconds', 10, 3600),
    ('reverify_phase_seconds', 10, 7200),
    ('reverify_slot_capacity', 1, 500),
]

def _validate_create(data):
    validation = Validator.validate_required_fields(data, ['course_id'])
    errors = list(validation['errors'])

    if data.get('lat') is not None or data.get('lng') is not None:
        errors.extend(Validator.validate_coordinates(data.get('lat'), data.get('lng'))['errors'])

    for name, minimum, maximum in INT_OVERRIDES:
        if data.get(name) is not None:
            result = Validator.validate_int_range(data[name], name, minimum, maximum)
            errors.extend(result['errors'])
            if result['is_valid']:
                data[name] = int(data[name])

    rate = data.get('reverify_selection_rate')
    if rate is not None:
        try:
            if not 0 < float(rate) <= 1:
                errors.append("reverify_selection_rate must be in (0, 1]")
        except (TypeError, ValueError):
            errors.append("reverify_selection_rate must be a number")

    if errors:
        raise InvalidRequest(', '.join(errors), reason='invalid_session_request')

def _staff_session(session_id, now):
    session = PhaseService.load_synced(session_id, now)
    require_session_staff(session, current_principal())
    return session

@sessions_bp.route('', methods=['POST'])
@jwt_required()
@roles_required(UserRole.LECTURER)
def create_session():
    """Start a live session for one of the lecturer's courses."""
    data = json_body()
    _validate_create(data)

    session = AttendanceService.create_session(current_principal(), data, datetime.utcnow())
    return success_response(
        data=session.to_dict(),
        message="Attendance session started",
        status_code=201
    )

@sessions_bp.route('', methods=['GET'])
@jwt_required()
@roles_required(UserRole.STUDENT, UserRole.LECTURER, UserRole.ADMIN)
def list_sessions():
    sessions = AttendanceService.list_sessions(current_principal(), datetime.utcnow())
    return success_response(data=[session.to_dict() for session in sessions])

@sessions_bp.route('/<int:session_id>', methods=['GET'])
@jwt_required()
@staff_required
def monitor_session(session_id):
    """Live monitor of marks and reverification progress."""
    now = datetime.utcnow()
    session = _staff_session(session_id, now)
    return success_response(data=AttendanceService.monitor(session, now))

@sessions_bp.route('/<int:session_id>/token', methods=['GET'])
@jwt_required()
@staff_required
def live_token(session_id):
    """Current rotating QR payload for the lecturer's display."""
    now = datetime.utcnow()
    session = _staff_session(session_id, now)
    include_image = request.args.get('image') in ('1', 'true')
    return success_response(data=AttendanceService.live_token(session, now, include_image))

@sessions_bp.route('/<int:session_id>/close', methods=['POST'])
@jwt_required()
@staff_required
def close_session(session_id):
    now = datetime.utcnow()
    session = PhaseService.load_synced(session_id, now)
    session = AttendanceService.close_session(session, current_principal(), now)
    return success_response(data=session.to_dict(), message="Session closed")

@sessions_bp.route('/<int:session_id>/me', methods=['GET'])
@jwt_required()
@student_required
def my_status(session_id):
    """Student view: phase, own record, slot and retry availability."""
    now = datetime.utcnow()
    session = PhaseService.load_synced(session_id, now)
    return success_response(data=AttendanceService.student_status(session, current_principal(), now))

@sessions_bp.route('/<int:session_id>/reverify/request', methods=['POST'])
@jwt_required()
@student_required
def request_retry(session_id):
    """Ask for a new slot after a missed one."""
    now = datetime.utcnow()
    session = PhaseService.load_synced(session_id, now)
    record, outcome = ReverifyService.request_retry(session, current_principal().id, now)

    message = "Retry slot assigned" if 'slot' in outcome else "Reverification failed"
    return success_response(data={'record': record.to_dict(), 'outcome': outcome}, message=message)

@sessions_bp.route('/<int:session_id>/reverify/target', methods=['POST'])
@jwt_required()
@staff_required
def target_students(session_id):
    """Lecturer spot check of specific students."""
    data = json_body()
    student_ids = data.get('student_ids')
    if not isinstance(student_ids, list) or not student_ids:
        raise InvalidRequest("student_ids must be a non-empty list", reason='missing_fields')
    try:
        student_ids = [int(student_id) for student_id in student_ids]
    except (TypeError, ValueError):
        raise InvalidRequest("student_ids must be integers", reason='missing_fields')

    now = datetime.utcnow()
    session = _staff_session(session_id, now)
    result = ReverifyService.target_students(session, student_ids, now)
    return success_response(data=result, message="Reverification slots assigned")

@sessions_bp.route('/<int:session_id>/reverify/manual-mark', methods=['POST'])
@jwt_required()
@staff_required
def manual_mark(session_id):
    """Staff override after an in-person check."""
    data = json_body()
    validation = Validator.validate_int_range(data.get('student_id'), 'student_id', 1, 2 ** 31 - 1)
    if not validation['is_valid']:
        raise InvalidRequest(', '.join(validation['errors']), reason='missing_fields')

    now = datetime.utcnow()
    session = _staff_session(session_id, now)
    principal = current_principal()
    record = ReverifyService.manual_present(session, int(data['student_id']), principal.id, now)
    return success_response(data=record.to_dict(), message="Student marked present")
