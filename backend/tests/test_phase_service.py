"""Phase derivation, lazy transitions and exactly-once selection."""
import threading
from datetime import timedelta

import pytest

from attendiq import db
from attendiq.models import (
    AttendancePhase, AttendanceRecord, AttendanceSession, ReverifyStatus, SessionStatus
)
from attendiq.services.notification_service import NotificationService
from attendiq.services.phase_service import PhaseService
from attendiq.services.reverify_service import ReverifyService
from attendiq.services.token_service import TokenService
from attendiq.utils.errors import NotFound

from conftest import T0, build_record, build_session

@pytest.fixture
def marked_session(make_session, make_record, students):
    session = make_session(started_at=T0)
    for student in students:
        make_record(session, student, marked_at=T0 + timedelta(seconds=5))
    return session

def _selected(session):
    return AttendanceRecord.query.filter_by(session_id=session.id, reverify_required=True).all()

def test_derive_phase_follows_timestamps(app, make_session):
    session = make_session(started_at=T0)

    assert PhaseService.derive_phase(session, T0) == AttendancePhase.INITIAL
    assert PhaseService.derive_phase(session, T0 + timedelta(seconds=59)) == AttendancePhase.INITIAL
    assert PhaseService.derive_phase(session, T0 + timedelta(seconds=60)) == AttendancePhase.REVERIFY
    assert PhaseService.derive_phase(session, T0 + timedelta(seconds=299)) == AttendancePhase.REVERIFY
    assert PhaseService.derive_phase(session, T0 + timedelta(seconds=300)) == AttendancePhase.CLOSED

    session.status = SessionStatus.CLOSED
    assert PhaseService.derive_phase(session, T0) == AttendancePhase.CLOSED

def test_initial_end_is_aligned_to_token_grid(app, make_session):
    session = make_session(started_at=T0 + timedelta(milliseconds=1300))
    assert TokenService.epoch_ms(session.initial_ends_at) % session.token_rotation_ms == 0

@pytest.mark.parametrize('eligible, rate, seats, expected', [
    (10, 0.35, 176, 4),
    (0, 0.35, 176, 0),
    (10, 0.35, 0, 0),
    (100, 1.0, 10, 6),
    (3, 0.01, 100, 1),
    (2, 1.0, 100, 2),
])
def test_selection_count(eligible, rate, seats, expected):
    assert ReverifyService.compute_selection_count(eligible, rate, seats, 0.35) == expected

def test_sync_selects_once(app, marked_session):
    now = T0 + timedelta(seconds=61)

    PhaseService.sync_phase(marked_session, now)
    PhaseService.sync_phase(marked_session, now + timedelta(seconds=1))

    assert marked_session.phase == AttendancePhase.REVERIFY
    assert marked_session.reverify_selection_done is True
    assert marked_session.reverify_selected_count == 4

    selected = _selected(marked_session)
    assert len(selected) == 4
    first_slot = TokenService.sequence(T0 + timedelta(seconds=75), 5000)
    for record in selected:
        assert record.reverify_status == ReverifyStatus.PENDING
        assert record.reverify_attempt_count == 1
        assert record.reverify_retry_count == 0
        assert record.reverify_slot_sequence == first_slot
        assert record.reverify_deadline_at == T0 + timedelta(seconds=81)

    outbox = NotificationService.outbox()
    assert len(outbox) == 4
    assert {event['reason'] for event in outbox} == {'INITIAL_SELECTION'}

def test_sync_in_initial_does_nothing(app, marked_session):
    PhaseService.sync_phase(marked_session, T0 + timedelta(seconds=30))

    assert marked_session.phase == AttendancePhase.INITIAL
    assert marked_session.reverify_selection_done is False
    assert _selected(marked_session) == []

def test_missed_deadline_expires_lazily(app, marked_session):
    PhaseService.sync_phase(marked_session, T0 + timedelta(seconds=61))
    PhaseService.sync_phase(marked_session, T0 + timedelta(seconds=80))
    assert all(r.reverify_status == ReverifyStatus.PENDING for r in _selected(marked_session))

    PhaseService.sync_phase(marked_session, T0 + timedelta(seconds=81))

    for record in _selected(marked_session):
        assert record.reverify_status == ReverifyStatus.MISSED
        assert record.flagged is True
        assert record.reverify_deadline_at is not None

def test_close_finalizes_outstanding(app, marked_session):
    PhaseService.sync_phase(marked_session, T0 + timedelta(seconds=61))
    selected_ids = {record.id for record in _selected(marked_session)}

    PhaseService.sync_phase(marked_session, T0 + timedelta(seconds=300))

    assert marked_session.status == SessionStatus.CLOSED
    assert marked_session.phase == AttendancePhase.CLOSED
    assert marked_session.closed_at == T0 + timedelta(seconds=300)
    for record in AttendanceRecord.query.filter_by(session_id=marked_session.id):
        if record.id in selected_ids:
            assert record.reverify_status == ReverifyStatus.FAILED
            assert record.flagged is True
        else:
            assert record.reverify_status == ReverifyStatus.NOT_REQUIRED

def test_session_that_skipped_reverify_closes_cleanly(app, marked_session):
    # Nobody looked at the session during REVERIFY
    PhaseService.sync_phase(marked_session, T0 + timedelta(minutes=30))

    assert marked_session.status == SessionStatus.CLOSED
    assert marked_session.reverify_selection_done is False
    assert _selected(marked_session) == []

def test_load_synced_unknown_session(app):
    with pytest.raises(NotFound):
        PhaseService.load_synced(999, T0)

def test_concurrent_sync_selects_exactly_once(file_app, seed_tenant):
    with file_app.app_context():
        _, lecturer, course, students = seed_tenant(20)
        session = build_session(course, lecturer, T0)
        for student in students:
            build_record(session, student, marked_at=T0 + timedelta(seconds=5))
        session_id = session.id

    now = T0 + timedelta(seconds=61)
    workers, calls_per_worker = 20, 5
    barrier = threading.Barrier(workers)
    errors = []

    def worker():
        with file_app.app_context():
            try:
                barrier.wait()
                for _ in range(calls_per_worker):
                    PhaseService.load_synced(session_id, now)
                    db.session.remove()
            except Exception as e:  # collected and asserted below
                errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []

    with file_app.app_context():
        session = db.session.get(AttendanceSession, session_id)
        selected = AttendanceRecord.query.filter_by(session_id=session_id, reverify_required=True).all()

        # 20 eligible at rate 0.35 -> 7
        assert session.reverify_selected_count == 7
        assert len(selected) == 7
        assert all(record.reverify_attempt_count == 1 for record in selected)
        assert len(NotificationService.outbox()) == 7
