"""Lazy INITIAL -> REVERIFY -> CLOSED phase transitions."""
from datetime import datetime
from typing import List, Optional

from flask import current_app
from sqlalchemy import update

from attendiq import db
from attendiq.models.attendance_session import AttendancePhase, AttendanceSession, SessionStatus
from attendiq.services.notification_service import NotificationReason, NotificationService
from attendiq.services.reverify_service import ReverifyService, SlotAssignment
from attendiq.utils.errors import NotFound

class PhaseService:
    """Derives a session's phase from its timestamps and applies side effects.

    There is no timer: every read path calls ``sync_phase`` first, so the
    stored phase catches up with the clock on the next request.
    """

    @staticmethod
    def derive_phase(session: AttendanceSession, now: datetime) -> AttendancePhase:
        if session.status == SessionStatus.CLOSED:
            return AttendancePhase.CLOSED
        if now < session.initial_ends_at:
            return AttendancePhase.INITIAL
        if now < session.reverify_ends_at:
            return AttendancePhase.REVERIFY
        return AttendancePhase.CLOSED

    @staticmethod
    def phase_ends_at(session: AttendanceSession) -> Optional[datetime]:
        if session.phase == AttendancePhase.INITIAL:
            return session.initial_ends_at
        if session.phase == AttendancePhase.REVERIFY:
            return session.reverify_ends_at
        return None

    @staticmethod
    def sync_phase(session: AttendanceSession, now: datetime = None) -> AttendanceSession:
        """Persist the derived phase and run any transitions that are due."""
        now = now or datetime.utcnow()
        phase = PhaseService.derive_phase(session, now)

        if session.phase != phase:
            current_app.logger.info(
                'Session %s phase %s -> %s', session.id, session.phase.value, phase.value
            )
            session.phase = phase

        if phase == AttendancePhase.CLOSED and session.status != SessionStatus.CLOSED:
            session.status = SessionStatus.CLOSED
            session.closed_at = session.closed_at or now

        assignments: List[SlotAssignment] = []
        if phase == AttendancePhase.REVERIFY and session.status == SessionStatus.ACTIVE:
            assignments = PhaseService.ensure_reverify_selection(session, now)
            ReverifyService.expire_missed_slots(session, now)
        elif phase == AttendancePhase.CLOSED:
            ReverifyService.finalize_outstanding(session)

        db.session.commit()

        if assignments:
            NotificationService.notify_reverify_slots(assignments, NotificationReason.INITIAL_SELECTION)

        return session

    @staticmethod
    def ensure_reverify_selection(session: AttendanceSession, now: datetime) -> List[SlotAssignment]:
        """Run selection once per session, whoever gets here first."""
        if session.reverify_selection_done:
            return []

        # Only the caller that flips the flag proceeds.
        result = db.session.execute(
            update(AttendanceSession)
            .where(
                AttendanceSession.id == session.id,
                AttendanceSession.reverify_selection_done.is_(False)
            )
            .values(reverify_selection_done=True)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return []

        assignments = ReverifyService.select_for_reverify(session, now)
        session.reverify_selection_done = True
        session.reverify_selected_count = len(assignments)

        current_app.logger.info(
            'Session %s: selected %d student(s) for reverification', session.id, len(assignments)
        )
        return assignments

    @staticmethod
    def load_synced(session_id, now: datetime = None) -> AttendanceSession:
        session = AttendanceSession.get_by_id(session_id)
        if session is None:
            raise NotFound("Session not found", reason='session_not_found')
        return PhaseService.sync_phase(session, now)
