"""Reverification slot allocation and the per-record retry state machine."""
import math
import random
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Tuple

from flask import current_app
from sqlalchemy import func, update

from attendiq import db
from attendiq.models.attendance import (
    AttendanceRecord, ReverifyStatus, OPEN_SLOT_STATUSES
)
from attendiq.models.attendance_session import AttendancePhase, AttendanceSession
from attendiq.services.confidence_service import ConfidenceService
from attendiq.services.notification_service import NotificationReason, NotificationService
from attendiq.services.token_service import TokenService
from attendiq.utils.errors import Conflict, Forbidden, Gone, InvalidRequest, NotFound

@dataclass
class ReverifySlot:
    """One token-sequence window inside REVERIFY."""
    sequence: int
    index: int
    starts_at: datetime
    ends_at: datetime
    deadline_at: datetime

    @property
    def sequence_id(self) -> str:
        return TokenService.format_sequence_id(self.sequence)

    def to_dict(self) -> Dict:
        return {
            'sequence': self.sequence,
            'sequence_id': self.sequence_id,
            'index': self.index,
            'starts_at': self.starts_at.isoformat(),
            'ends_at': self.ends_at.isoformat(),
            'deadline_at': self.deadline_at.isoformat()
        }

@dataclass
class SlotAssignment:
    """A slot handed to a record, kept for post-commit notification."""
    session_id: int
    student_id: int
    record_id: int
    slot: ReverifySlot
    attempt_count: int
    retry_count: int

    def to_dict(self) -> Dict:
        return {
            'student_id': self.student_id,
            'slot': self.slot.to_dict(),
            'attempt_count': self.attempt_count,
            'retry_count': self.retry_count
        }

class SlotAllocator:
    """Fixed-capacity slots aligned to the token rotation grid.

    Slot k covers sequence ``first + k`` where ``first`` is the sequence that
    starts at ``initial_ends_at``. A slot is usable only while its deadline
    (window end plus grace) still falls inside the REVERIFY window.
    """

    @staticmethod
    def first_sequence(session: AttendanceSession) -> int:
        rotation = session.token_rotation_ms
        return TokenService.sequence(TokenService.align_up(session.initial_ends_at, rotation), rotation)

    @staticmethod
    def last_sequence(session: AttendanceSession) -> int:
        end_ms = TokenService.epoch_ms(session.reverify_ends_at) - session.token_grace_ms
        return end_ms // session.token_rotation_ms - 1

    @staticmethod
    def slot_index(session: AttendanceSession, sequence: int) -> int:
        return sequence - SlotAllocator.first_sequence(session)

    @staticmethod
    def slot_for_sequence(session: AttendanceSession, sequence: int) -> ReverifySlot:
        starts_at, ends_at = TokenService.sequence_bounds(sequence, session.token_rotation_ms)
        return ReverifySlot(
            sequence=sequence,
            index=SlotAllocator.slot_index(session, sequence),
            starts_at=starts_at,
            ends_at=ends_at,
            deadline_at=ends_at + timedelta(milliseconds=session.token_grace_ms)
        )

    @staticmethod
    def slot_from_record(session: AttendanceSession, record: AttendanceRecord) -> Optional[ReverifySlot]:
        if record.reverify_slot_sequence is None:
            return None
        return SlotAllocator.slot_for_sequence(session, record.reverify_slot_sequence)

    @staticmethod
    def start_sequence(session: AttendanceSession, now: datetime) -> int:
        """First slot a new allocation may use: starts no earlier than now + lead."""
        lead = timedelta(milliseconds=current_app.config['REVERIFY_SLOT_LEAD_MS'])
        earliest = max(now + lead, session.initial_ends_at)
        aligned = TokenService.align_up(earliest, session.token_rotation_ms)
        return TokenService.sequence(aligned, session.token_rotation_ms)

    @staticmethod
    def total_seats(session: AttendanceSession, now: datetime) -> int:
        slots = SlotAllocator.last_sequence(session) - SlotAllocator.start_sequence(session, now) + 1
        return max(0, slots) * max(0, session.reverify_slot_capacity)

    @staticmethod
    def lock_session(session: AttendanceSession) -> None:
        """Take the session row write lock for the rest of the transaction."""
        db.session.execute(
            update(AttendanceSession)
            .where(AttendanceSession.id == session.id)
            .values(slot_lock_version=AttendanceSession.slot_lock_version + 1)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    def occupancy(session: AttendanceSession, from_sequence: int) -> Counter:
        rows = db.session.query(
            AttendanceRecord.reverify_slot_sequence, func.count(AttendanceRecord.id)
        ).filter(
            AttendanceRecord.session_id == session.id,
            AttendanceRecord.reverify_slot_sequence >= from_sequence
        ).group_by(AttendanceRecord.reverify_slot_sequence).all()
        return Counter({sequence: count for sequence, count in rows})

    @staticmethod
    def allocate_slot(
        session: AttendanceSession,
        now: datetime,
        occupancy: Optional[Counter] = None
    ) -> Optional[ReverifySlot]:
        """Nearest slot with a free seat, or None when the window is full.

        Without ``occupancy`` the session row is locked and seats are counted
        here; callers allocating in a batch lock once and pass the counter.
        """
        capacity = session.reverify_slot_capacity
        if capacity <= 0:
            current_app.logger.warning('Session %s has no reverify slot capacity', session.id)
            return None

        start = SlotAllocator.start_sequence(session, now)
        last = SlotAllocator.last_sequence(session)

        if occupancy is None:
            SlotAllocator.lock_session(session)
            occupancy = SlotAllocator.occupancy(session, start)

        for sequence in range(start, last + 1):
            if occupancy[sequence] < capacity:
                occupancy[sequence] += 1
                return SlotAllocator.slot_for_sequence(session, sequence)

        return None

class ReverifyService:
    """Selection, slot assignment and the student-facing reverify FSM."""

    @staticmethod
    def compute_selection_count(
        eligible: int,
        selection_rate: float,
        total_seats: int,
        expected_retry_rate: float
    ) -> int:
        """Sample size bounded by the rate and by what the window can absorb."""
        if eligible <= 0 or total_seats <= 0:
            return 0

        rate = min(1.0, max(0.05, selection_rate))
        base_target = max(1, math.ceil(eligible * rate))

        # A selected student costs one slot plus expected retries.
        attempts_per_selected = 1 + expected_retry_rate + expected_retry_rate ** 2
        max_by_capacity = max(1, math.floor(total_seats / attempts_per_selected))

        return min(eligible, base_target, max_by_capacity)

    @staticmethod
    def _threshold(session: AttendanceSession) -> int:
        return session.course.organization.confidence_threshold

    @staticmethod
    def _find_record(session: AttendanceSession, student_id: int) -> Optional[AttendanceRecord]:
        return AttendanceRecord.query.filter_by(
            session_id=session.id, student_id=student_id
        ).populate_existing().first()

    @staticmethod
    def assign_slot(
        record: AttendanceRecord,
        slot: ReverifySlot,
        status: ReverifyStatus,
        count_retry: bool = False
    ) -> SlotAssignment:
        record.reverify_required = True
        record.reverify_status = status
        record.reverify_slot_sequence = slot.sequence
        record.reverify_requested_at = slot.starts_at
        record.reverify_deadline_at = slot.deadline_at
        record.reverify_attempt_count = (record.reverify_attempt_count or 0) + 1
        if count_retry:
            record.reverify_retry_count = (record.reverify_retry_count or 0) + 1

        return SlotAssignment(
            session_id=record.session_id,
            student_id=record.student_id,
            record_id=record.id,
            slot=slot,
            attempt_count=record.reverify_attempt_count,
            retry_count=record.reverify_retry_count
        )

    @staticmethod
    def caps_exhausted(record: AttendanceRecord) -> bool:
        config = current_app.config
        return (
            record.reverify_retry_count >= config['REVERIFY_MAX_RETRIES'] or
            record.reverify_attempt_count >= config['REVERIFY_MAX_ATTEMPTS']
        )

    @staticmethod
    def can_request_retry(session: AttendanceSession, record: Optional[AttendanceRecord]) -> bool:
        return (
            record is not None and
            session.is_active and
            session.phase == AttendancePhase.REVERIFY and
            record.reverify_status == ReverifyStatus.MISSED and
            not ReverifyService.caps_exhausted(record)
        )

    # =================== SELECTION ===================

    @staticmethod
    def select_for_reverify(session: AttendanceSession, now: datetime, rng: random.Random = None) -> List[SlotAssignment]:
        """Sample marked records and give each an initial slot.

        Must only run for the caller that won the selection guard.
        """
        config = current_app.config
        candidates = [
            row.id for row in AttendanceRecord.query.filter_by(
                session_id=session.id, reverify_status=ReverifyStatus.NOT_REQUIRED
            ).with_entities(AttendanceRecord.id).all()
        ]

        count = ReverifyService.compute_selection_count(
            len(candidates),
            session.reverify_selection_rate,
            SlotAllocator.total_seats(session, now),
            config['REVERIFY_EXPECTED_RETRY_RATE']
        )
        if count == 0:
            return []

        selected_ids = (rng or random).sample(candidates, count)

        SlotAllocator.lock_session(session)
        occupancy = SlotAllocator.occupancy(session, SlotAllocator.start_sequence(session, now))

        assignments = []
        for record in AttendanceRecord.query.filter(AttendanceRecord.id.in_(selected_ids)).all():
            slot = SlotAllocator.allocate_slot(session, now, occupancy)
            if slot is None:
                break
            assignments.append(ReverifyService.assign_slot(record, slot, ReverifyStatus.PENDING))

        return assignments

    # =================== LAZY TRANSITIONS ===================

    @staticmethod
    def expire_missed_slots(session: AttendanceSession, now: datetime) -> int:
        """PENDING/RETRY_PENDING past their deadline become MISSED and flagged."""
        stale_ids = [
            row.id for row in AttendanceRecord.query.filter(
                AttendanceRecord.session_id == session.id,
                AttendanceRecord.reverify_status.in_(OPEN_SLOT_STATUSES),
                AttendanceRecord.reverify_deadline_at <= now
            ).with_entities(AttendanceRecord.id).all()
        ]
        if not stale_ids:
            return 0

        AttendanceRecord.query.filter(
            AttendanceRecord.id.in_(stale_ids),
            AttendanceRecord.reverify_status.in_(OPEN_SLOT_STATUSES)
        ).update(
            {'reverify_status': ReverifyStatus.MISSED, 'flagged': True},
            synchronize_session='fetch'
        )
        current_app.logger.info('Session %s: %d reverify slot(s) missed', session.id, len(stale_ids))
        return len(stale_ids)

    @staticmethod
    def finalize_outstanding(session: AttendanceSession) -> int:
        """On close, anything still waiting on a slot has failed."""
        outstanding = (ReverifyStatus.PENDING, ReverifyStatus.RETRY_PENDING, ReverifyStatus.MISSED)
        exists = AttendanceRecord.query.filter(
            AttendanceRecord.session_id == session.id,
            AttendanceRecord.reverify_status.in_(outstanding)
        ).first()
        if exists is None:
            return 0

        failed = AttendanceRecord.query.filter(
            AttendanceRecord.session_id == session.id,
            AttendanceRecord.reverify_status.in_(outstanding)
        ).update(
            {'reverify_status': ReverifyStatus.FAILED, 'flagged': True},
            synchronize_session='fetch'
        )
        current_app.logger.info('Session %s closed with %d failed reverification(s)', session.id, failed)
        return failed

    # =================== STUDENT ACTIONS ===================

    @staticmethod
    def _require_reverify_window(session: AttendanceSession) -> None:
        if not session.is_active:
            raise Gone("Reverification window is closed", reason='session_closed')
        if session.phase != AttendancePhase.REVERIFY:
            raise Conflict("Session is not in the reverification phase", reason='wrong_phase')

    @staticmethod
    def submit(
        session: AttendanceSession,
        student_id: int,
        token: str,
        biometric_verified: bool,
        now: datetime
    ) -> Tuple[AttendanceRecord, ReverifySlot]:
        """Prove presence again using the token of the student's own slot."""
        ReverifyService._require_reverify_window(session)

        record = ReverifyService._find_record(session, student_id)
        if record is None or not record.reverify_required:
            raise Forbidden("You are not selected for reverification", reason='not_selected')

        if record.reverify_status in (ReverifyStatus.PASSED, ReverifyStatus.MANUAL_PRESENT):
            raise Conflict("Reverification already completed", reason='slot_already_used')
        if record.reverify_status == ReverifyStatus.FAILED:
            raise Conflict("Reverification has failed for this session", reason='reverify_failed')
        if record.reverify_status not in OPEN_SLOT_STATUSES:
            raise Conflict(
                "No active reverification slot. Request a retry if available.",
                reason='no_open_slot',
                can_request_retry=ReverifyService.can_request_retry(session, record)
            )

        if not biometric_verified:
            raise InvalidRequest("Passkey verification is required for reverification", reason='biometric_required')

        slot = SlotAllocator.slot_from_record(session, record)
        if slot is None:
            raise Conflict("Your reverification slot has not been assigned yet", reason='no_open_slot')

        if now < slot.starts_at:
            raise Conflict(
                f"Your slot has not started yet. Scan {slot.sequence_id} when it appears.",
                reason='slot_not_started',
                slot=slot.to_dict()
            )

        token_valid = TokenService.verify_for_slot(
            session.token_secret, token, session.id, AttendancePhase.REVERIFY,
            slot.sequence, now, session.token_rotation_ms, session.token_grace_ms
        )
        if not token_valid:
            raise InvalidRequest(
                f"Invalid QR for your slot. Wait for {slot.sequence_id} and scan that exact code.",
                reason='token_not_valid_for_slot',
                slot=slot.to_dict()
            )

        record.reverify_status = ReverifyStatus.PASSED
        record.reverify_marked_at = now
        record.reverify_passkey_used = True
        ConfidenceService.refresh_record_flag(record, ReverifyService._threshold(session))
        db.session.commit()

        current_app.logger.info('Session %s: student %s passed reverification', session.id, student_id)
        return record, slot

    @staticmethod
    def request_retry(session: AttendanceSession, student_id: int, now: datetime) -> Tuple[AttendanceRecord, Dict]:
        """MISSED -> RETRY_PENDING with a new slot, or FAILED when out of attempts or seats."""
        ReverifyService._require_reverify_window(session)

        SlotAllocator.lock_session(session)
        record = ReverifyService._find_record(session, student_id)
        if record is None or not record.reverify_required:
            db.session.rollback()
            raise Forbidden("You are not selected for reverification", reason='not_selected')

        if record.reverify_status != ReverifyStatus.MISSED:
            status = record.reverify_status.value
            db.session.rollback()
            raise Conflict(
                "Retry can only be requested after a missed reverification slot",
                reason='retry_not_available',
                reverify_status=status
            )

        if ReverifyService.caps_exhausted(record):
            return ReverifyService._fail(session, record, 'retry_limit_reached'), {
                'status': ReverifyStatus.FAILED.value,
                'reason': 'retry_limit_reached'
            }

        occupancy = SlotAllocator.occupancy(session, SlotAllocator.start_sequence(session, now))
        slot = SlotAllocator.allocate_slot(session, now, occupancy)
        if slot is None:
            return ReverifyService._fail(session, record, 'slot_capacity_exhausted'), {
                'status': ReverifyStatus.FAILED.value,
                'reason': 'slot_capacity_exhausted'
            }

        assignment = ReverifyService.assign_slot(record, slot, ReverifyStatus.RETRY_PENDING, count_retry=True)
        ConfidenceService.refresh_record_flag(record, ReverifyService._threshold(session))
        db.session.commit()

        current_app.logger.info(
            'Session %s: retry slot %s for student %s (attempt %d)',
            session.id, slot.sequence_id, student_id, record.reverify_attempt_count
        )
        NotificationService.notify_reverify_slots([assignment], NotificationReason.MANUAL_RETRY)

        return record, {
            'status': ReverifyStatus.RETRY_PENDING.value,
            'slot': slot.to_dict()
        }

    @staticmethod
    def _fail(session: AttendanceSession, record: AttendanceRecord, reason: str) -> AttendanceRecord:
        record.reverify_status = ReverifyStatus.FAILED
        record.flagged = True
        db.session.commit()
        current_app.logger.info(
            'Session %s: reverification FAILED for student %s (%s)', session.id, record.student_id, reason
        )
        return record

    # =================== STAFF ACTIONS ===================

    @staticmethod
    def target_students(session: AttendanceSession, student_ids: Iterable[int], now: datetime) -> Dict:
        """Spot-check specific marked students with the nearest free slots."""
        ReverifyService._require_reverify_window(session)

        student_ids = list(dict.fromkeys(student_ids))
        max_attempts = current_app.config['REVERIFY_MAX_ATTEMPTS']

        SlotAllocator.lock_session(session)
        records = AttendanceRecord.query.filter(
            AttendanceRecord.session_id == session.id,
            AttendanceRecord.student_id.in_(student_ids)
        ).populate_existing().all()
        if not records:
            db.session.rollback()
            raise NotFound("No matching attendance records found for selected students", reason='not_marked')

        by_student = {record.student_id: record for record in records}
        occupancy = SlotAllocator.occupancy(session, SlotAllocator.start_sequence(session, now))
        threshold = ReverifyService._threshold(session)

        assignments: List[SlotAssignment] = []
        skipped = []
        for student_id in student_ids:
            record = by_student.get(student_id)
            if record is None:
                skipped.append({'student_id': student_id, 'reason': 'not_marked'})
                continue
            if record.reverify_status not in (ReverifyStatus.NOT_REQUIRED, ReverifyStatus.MISSED):
                skipped.append({'student_id': student_id, 'reason': 'already_' + record.reverify_status.value.lower()})
                continue
            if record.reverify_attempt_count >= max_attempts:
                skipped.append({'student_id': student_id, 'reason': 'retry_limit_reached'})
                continue

            slot = SlotAllocator.allocate_slot(session, now, occupancy)
            if slot is None:
                skipped.append({'student_id': student_id, 'reason': 'slot_capacity_exhausted'})
                continue

            status = ReverifyStatus.RETRY_PENDING if record.reverify_status == ReverifyStatus.MISSED \
                else ReverifyStatus.PENDING
            assignments.append(ReverifyService.assign_slot(record, slot, status))
            ConfidenceService.refresh_record_flag(record, threshold)

        if not assignments:
            db.session.rollback()
            raise Conflict(
                "No reverification slots were assigned",
                reason='nothing_assigned',
                skipped=skipped
            )

        db.session.commit()
        current_app.logger.info('Session %s: lecturer targeted %d student(s)', session.id, len(assignments))
        NotificationService.notify_reverify_slots(assignments, NotificationReason.LECTURER_TARGET)

        return {
            'assigned': [assignment.to_dict() for assignment in assignments],
            'skipped': skipped
        }

    @staticmethod
    def manual_present(session: AttendanceSession, student_id: int, staff_id: int, now: datetime) -> AttendanceRecord:
        """Staff override: terminal MANUAL_PRESENT, clears the flag."""
        record = ReverifyService._find_record(session, student_id)
        if record is None:
            raise NotFound("Attendance record not found for student", reason='not_marked')

        record.reverify_required = True
        record.reverify_status = ReverifyStatus.MANUAL_PRESENT
        record.reverify_marked_at = now
        record.reverify_manual_override = True
        record.reverify_overridden_by = staff_id
        record.flagged = False
        db.session.commit()

        current_app.logger.info(
            'Session %s: student %s manually marked present by %s', session.id, student_id, staff_id
        )
        return record
