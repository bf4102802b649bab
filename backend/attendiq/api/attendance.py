"""Student-facing mark and reverification endpoints."""
from datetime import datetime

from flask import Blueprint, request
from flask_jwt_extended import jwt_required

from attendiq import limiter
from attendiq.services.attendance_service import AttendanceService
from attendiq.services.network_service import NetworkService
from attendiq.services.phase_service import PhaseService
from attendiq.services.reverify_service import ReverifyService
from attendiq.utils.decorators import current_principal, student_required
from attendiq.utils.errors import InvalidRequest
from attendiq.utils.helpers import json_body, success_response
from attendiq.utils.validators import Validator

attendance_bp = Blueprint('attendance', __name__)

def _require(data, fields):
    validation = Validator.validate_required_fields(data, fields)
    if not validation['is_valid']:
        raise InvalidRequest(', '.join(validation['errors']), reason='missing_fields')

def _session_id(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest("session_id must be an integer", reason='invalid_session_id')

@attendance_bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint."""
    return success_response(message='Attendance service is running')

@attendance_bp.route('/mark', methods=['POST'])
@limiter.limit("30 per minute")
@jwt_required()
@student_required
def mark():
    """Initial mark: token + GPS + biometric + network."""
    data = json_body()
    _require(data, ['session_id', 'token', 'latitude', 'longitude'])

    coordinates = Validator.validate_coordinates(data['latitude'], data['longitude'])
    if not coordinates['is_valid']:
        raise InvalidRequest(', '.join(coordinates['errors']), reason='invalid_coordinates')

    data['session_id'] = _session_id(data['session_id'])
    record, created = AttendanceService.mark_attendance(
        current_principal(),
        data,
        NetworkService.client_ip(request),
        datetime.utcnow()
    )

    if not created:
        return success_response(
            data=record.to_dict(),
            message="Attendance already recorded",
            already_marked=True
        )

    return success_response(
        data=record.to_dict(),
        message="Attendance recorded",
        status_code=201,
        already_marked=False
    )

@attendance_bp.route('/reverify', methods=['POST'])
@limiter.limit("30 per minute")
@jwt_required()
@student_required
def reverify():
    """Scan the QR of the assigned slot with a fresh passkey assertion."""
    data = json_body()
    _require(data, ['session_id', 'token'])

    now = datetime.utcnow()
    session = PhaseService.load_synced(_session_id(data['session_id']), now)
    record, slot = ReverifyService.submit(
        session,
        current_principal().id,
        data['token'],
        Validator.is_true(data.get('biometric_verified')),
        now
    )

    return success_response(
        data={'record': record.to_dict(), 'slot': slot.to_dict()},
        message="Reverification passed"
    )
