"""Models package with all models."""
from .base import BaseModel
from .organization import Organization
from .user import User, UserRole
from .course import Course, Enrollment
from .attendance_session import AttendanceSession, AttendancePhase, SessionStatus
from .attendance import AttendanceRecord, ReverifyStatus
from .anomaly import AnomalyEvent, AnomalyType, AnomalySeverity

__all__ = [
    'BaseModel', 'Organization', 'User', 'UserRole',
    'Course', 'Enrollment',
    'AttendanceSession', 'AttendancePhase', 'SessionStatus',
    'AttendanceRecord', 'ReverifyStatus',
    'AnomalyEvent', 'AnomalyType', 'AnomalySeverity'
]
