"""Anomaly review queue for staff."""
from datetime import datetime

from flask import Blueprint, request
from flask_jwt_extended import jwt_required

from attendiq.models.anomaly import AnomalyEvent
from attendiq.models.attendance_session import AttendanceSession
from attendiq.models.course import Course
from attendiq.models.user import UserRole
from attendiq.utils.decorators import current_principal, staff_required
from attendiq.utils.errors import Conflict, NotFound
from attendiq.utils.helpers import success_response

anomalies_bp = Blueprint('anomalies', __name__)

def _visible_events():
    """Events on sessions the caller may manage."""
    principal = current_principal()
    query = AnomalyEvent.query.join(
        AttendanceSession, AnomalyEvent.session_id == AttendanceSession.id
    ).join(Course, AttendanceSession.course_id == Course.id)

    if principal.role == UserRole.LECTURER:
        return query.filter(AttendanceSession.lecturer_id == principal.id)
    return query.filter(Course.organization_id == principal.organization_id)

@anomalies_bp.route('', methods=['GET'])
@jwt_required()
@staff_required
def list_anomalies():
    query = _visible_events()

    session_id = request.args.get('session_id', type=int)
    if session_id is not None:
        query = query.filter(AnomalyEvent.session_id == session_id)
    if request.args.get('unreviewed') in ('1', 'true'):
        query = query.filter(AnomalyEvent.reviewed_at.is_(None))

    limit = min(request.args.get('limit', 50, type=int), 200)
    events = query.order_by(AnomalyEvent.detected_at.desc()).limit(limit).all()

    return success_response(data=[event.to_dict() for event in events])

@anomalies_bp.route('/<int:event_id>/review', methods=['POST'])
@jwt_required()
@staff_required
def review_anomaly(event_id):
    """Mark an event as reviewed. The event itself is never edited."""
    event = _visible_events().filter(AnomalyEvent.id == event_id).first()
    if event is None:
        raise NotFound("Anomaly not found", reason='anomaly_not_found')
    if event.reviewed_at is not None:
        raise Conflict("Anomaly already reviewed", reason='already_reviewed', reviewed_by=event.reviewed_by)

    event.reviewed_at = datetime.utcnow()
    event.reviewed_by = current_principal().id
    event.save()

    return success_response(data=event.to_dict(), message="Anomaly reviewed")
