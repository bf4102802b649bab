"""Attendance session with a phase lifecycle and rotating tokens."""
from datetime import datetime
from enum import Enum
from attendiq import db
from attendiq.models.base import BaseModel

class SessionStatus(Enum):
    """Session status enumeration."""
    ACTIVE = 'ACTIVE'
    CLOSED = 'CLOSED'

class AttendancePhase(Enum):
    """Phase of a live session."""
    INITIAL = 'INITIAL'
    REVERIFY = 'REVERIFY'
    CLOSED = 'CLOSED'

class AttendanceSession(BaseModel):
    """One live lecture instance of a course.

    ``phase`` and ``status`` are a cache of the derivation done by
    ``PhaseService.sync_phase``; never trust them without syncing first.
    """

    __tablename__ = 'attendance_sessions'
    __table_args__ = (
        db.Index(
            'uq_attendance_sessions_active_course',
            'course_id',
            unique=True,
            sqlite_where=db.text("status = 'ACTIVE'"),
            postgresql_where=db.text("status = 'ACTIVE'")
        ),
    )

    course_id = db.Column(db.Integer, db.ForeignKey('courses.id'), nullable=False, index=True)
    lecturer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    # Geofence
    lat = db.Column(db.Float, nullable=False)
    lng = db.Column(db.Float, nullable=False)
    radius_meters = db.Column(db.Integer, nullable=False)

    # Written once at creation, never serialized
    token_secret = db.Column(db.String(128), nullable=False)

    # Lifecycle
    status = db.Column(db.Enum(SessionStatus), nullable=False, default=SessionStatus.ACTIVE)
    phase = db.Column(db.Enum(AttendancePhase), nullable=False, default=AttendancePhase.INITIAL)
    started_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    initial_ends_at = db.Column(db.DateTime, nullable=False)
    reverify_ends_at = db.Column(db.DateTime, nullable=False)
    closed_at = db.Column(db.DateTime, nullable=True)

    # Token protocol
    token_rotation_ms = db.Column(db.Integer, nullable=False, default=5000)
    token_grace_ms = db.Column(db.Integer, nullable=False, default=1000)

    # Reverification bookkeeping
    reverify_selection_rate = db.Column(db.Float, nullable=False, default=0.35)
    reverify_slot_capacity = db.Column(db.Integer, nullable=False, default=4)
    reverify_selection_done = db.Column(db.Boolean, nullable=False, default=False)
    reverify_selected_count = db.Column(db.Integer, nullable=False, default=0)
    slot_lock_version = db.Column(db.Integer, nullable=False, default=0)

    # Relationships
    course = db.relationship('Course', backref=db.backref('sessions', lazy='dynamic'))
    lecturer = db.relationship('User')
    records = db.relationship('AttendanceRecord', backref='session', lazy='dynamic')

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    def to_dict(self, exclude: list = None) -> dict:
        """Convert to dictionary, never exposing the token secret."""
        exclude = (exclude or []) + ['token_secret', 'slot_lock_version']
        return super().to_dict(exclude=exclude)

    def __repr__(self) -> str:
        return f'<AttendanceSession {self.id} course={self.course_id} {self.phase}>'
