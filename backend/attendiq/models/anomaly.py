"""Append-only anomaly events for staff review."""
from datetime import datetime
from enum import Enum
from attendiq import db
from attendiq.models.base import BaseModel

class AnomalyType(Enum):
    VELOCITY_ANOMALY = 'VELOCITY_ANOMALY'
    LOCATION_JUMP = 'LOCATION_JUMP'

class AnomalySeverity(Enum):
    LOW = 'LOW'
    MEDIUM = 'MEDIUM'
    HIGH = 'HIGH'

SEVERITY_SCORES = {
    AnomalySeverity.LOW: 30,
    AnomalySeverity.MEDIUM: 60,
    AnomalySeverity.HIGH: 90
}

class AnomalyEvent(BaseModel):
    """One row per detected anomaly. Review state is the only mutable part."""

    __tablename__ = 'anomaly_events'

    session_id = db.Column(db.Integer, db.ForeignKey('attendance_sessions.id'), nullable=False, index=True)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    record_id = db.Column(db.Integer, db.ForeignKey('attendance_records.id'), nullable=True)
    type = db.Column(db.Enum(AnomalyType), nullable=False)
    severity = db.Column(db.Enum(AnomalySeverity), nullable=False)
    score = db.Column(db.Integer, nullable=False, default=0)
    details = db.Column(db.JSON, nullable=True)
    detected_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    reviewed_at = db.Column(db.DateTime, nullable=True)
    reviewed_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    def __repr__(self) -> str:
        return f'<AnomalyEvent {self.type.value} student={self.student_id}>'
