"""Attendance record with verification signals and reverify sub-state."""
from datetime import datetime
from enum import Enum
from attendiq import db
from attendiq.models.base import BaseModel

class ReverifyStatus(Enum):
    """Reverification state of a single record."""
    NOT_REQUIRED = 'NOT_REQUIRED'
    PENDING = 'PENDING'
    RETRY_PENDING = 'RETRY_PENDING'
    PASSED = 'PASSED'
    MANUAL_PRESENT = 'MANUAL_PRESENT'
    MISSED = 'MISSED'
    FAILED = 'FAILED'

OPEN_SLOT_STATUSES = (ReverifyStatus.PENDING, ReverifyStatus.RETRY_PENDING)
FAILURE_STATUSES = (ReverifyStatus.MISSED, ReverifyStatus.RETRY_PENDING, ReverifyStatus.FAILED)

class AttendanceRecord(BaseModel):
    """One mark per (session, student); the audit trail of a presence proof."""

    __tablename__ = 'attendance_records'
    __table_args__ = (
        db.UniqueConstraint('session_id', 'student_id', name='uq_attendance_records_session_student'),
        db.Index('ix_attendance_records_student_marked', 'student_id', 'marked_at'),
        db.Index('ix_attendance_records_session_slot', 'session_id', 'reverify_slot_sequence'),
    )

    session_id = db.Column(db.Integer, db.ForeignKey('attendance_sessions.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    # Core mark
    marked_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    confidence = db.Column(db.Integer, nullable=False, default=0)
    flagged = db.Column(db.Boolean, nullable=False, default=False)
    anomaly_score = db.Column(db.Integer, nullable=False, default=0)

    # Signals
    gps_lat = db.Column(db.Float, nullable=False)
    gps_lng = db.Column(db.Float, nullable=False)
    gps_distance = db.Column(db.Float, nullable=False)
    ip_address = db.Column(db.String(64), nullable=True)
    network_trusted = db.Column(db.Boolean, nullable=False, default=False)
    token_valid = db.Column(db.Boolean, nullable=False, default=False)
    biometric_verified = db.Column(db.Boolean, nullable=False, default=False)
    credential_id = db.Column(db.String(255), nullable=True)

    # Reverification
    reverify_required = db.Column(db.Boolean, nullable=False, default=False)
    reverify_status = db.Column(db.Enum(ReverifyStatus), nullable=False, default=ReverifyStatus.NOT_REQUIRED)
    reverify_slot_sequence = db.Column(db.BigInteger, nullable=True)
    reverify_requested_at = db.Column(db.DateTime, nullable=True)  # slot start
    reverify_deadline_at = db.Column(db.DateTime, nullable=True)
    reverify_attempt_count = db.Column(db.Integer, nullable=False, default=0)
    reverify_retry_count = db.Column(db.Integer, nullable=False, default=0)
    reverify_marked_at = db.Column(db.DateTime, nullable=True)
    reverify_manual_override = db.Column(db.Boolean, nullable=False, default=False)
    reverify_overridden_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    reverify_passkey_used = db.Column(db.Boolean, nullable=False, default=False)

    student = db.relationship('User', foreign_keys=[student_id])

    @property
    def has_open_slot(self) -> bool:
        return self.reverify_status in OPEN_SLOT_STATUSES and self.reverify_deadline_at is not None

    @property
    def reverify_failed(self) -> bool:
        return self.reverify_status in FAILURE_STATUSES

    def to_dict(self, exclude: list = None) -> dict:
        exclude = (exclude or []) + ['ip_address']
        return super().to_dict(exclude=exclude)

    def __repr__(self):
        return f'<AttendanceRecord {self.session_id}-{self.student_id}>'
