"""Slot allocation, the retry state machine and staff actions."""
import threading
from collections import Counter
from datetime import timedelta

import pytest

from attendiq.models import AttendancePhase, AttendanceRecord, ReverifyStatus, UserRole
from attendiq.services.attendance_service import AttendanceService
from attendiq.services.notification_service import NotificationService
from attendiq.services.phase_service import PhaseService
from attendiq.services.reverify_service import ReverifyService, SlotAllocator
from attendiq.services.token_service import TokenService
from attendiq.utils.decorators import Principal
from attendiq.utils.errors import Conflict, Forbidden, InvalidRequest, NotFound

from conftest import T0, build_record, build_session

NOW = T0 + timedelta(seconds=61)

def _seq(offset_seconds):
    return TokenService.sequence(T0 + timedelta(seconds=offset_seconds), 5000)

@pytest.fixture
def reverify_session(make_session):
    """Session already in REVERIFY with selection done."""
    session = make_session(
        started_at=T0,
        phase=AttendancePhase.REVERIFY,
        reverify_selection_done=True
    )
    return session

def _pending(session, student, slot_offset=75, **overrides):
    sequence = _seq(slot_offset)
    slot = SlotAllocator.slot_for_sequence(session, sequence)
    values = dict(
        reverify_required=True,
        reverify_status=ReverifyStatus.PENDING,
        reverify_slot_sequence=sequence,
        reverify_requested_at=slot.starts_at,
        reverify_deadline_at=slot.deadline_at,
        reverify_attempt_count=1
    )
    values.update(overrides)
    return build_record(session, student, **values)

def _reverify_token(session, sequence):
    return TokenService.mint(session.token_secret, session.id, AttendancePhase.REVERIFY, sequence)

# =================== SLOT GRID ===================

def test_slot_grid_bounds(app, reverify_session):
    assert SlotAllocator.first_sequence(reverify_session) == _seq(60)
    # Last slot 290-295 s, deadline 296 s inside the 300 s window
    assert SlotAllocator.last_sequence(reverify_session) == _seq(290)
    assert SlotAllocator.start_sequence(reverify_session, NOW) == _seq(75)

    slot = SlotAllocator.slot_for_sequence(reverify_session, _seq(75))
    assert slot.starts_at == T0 + timedelta(seconds=75)
    assert slot.ends_at == T0 + timedelta(seconds=80)
    assert slot.deadline_at == T0 + timedelta(seconds=81)
    assert SlotAllocator.slot_index(reverify_session, _seq(75)) == 3
    assert slot.index == 3
    assert slot.to_dict()['index'] == 3

def test_allocation_respects_capacity(app, reverify_session, students):
    for student in students[:4]:
        _pending(reverify_session, student)

    slot = SlotAllocator.allocate_slot(reverify_session, NOW)

    assert slot.sequence == _seq(80)

def test_allocation_returns_none_when_window_full(app, make_session):
    session = make_session(started_at=T0, reverify_seconds=25, reverify_slot_capacity=1,
                           phase=AttendancePhase.REVERIFY, reverify_selection_done=True)
    occupancy = Counter()

    # Slots start at 75 s; last usable slot 75-80 s with a 81 s deadline
    assert SlotAllocator.allocate_slot(session, NOW, occupancy).sequence == _seq(75)
    assert SlotAllocator.allocate_slot(session, NOW, occupancy) is None

# =================== SUBMIT ===================

def test_submit_passes_with_own_slot_token(app, reverify_session, students):
    record = _pending(reverify_session, students[0])
    now = T0 + timedelta(seconds=76)

    record, slot = ReverifyService.submit(
        reverify_session, students[0].id, _reverify_token(reverify_session, _seq(75)), True, now
    )

    assert record.reverify_status == ReverifyStatus.PASSED
    assert record.reverify_marked_at == now
    assert record.reverify_passkey_used is True
    assert record.flagged is False
    assert slot.sequence == _seq(75)

    with pytest.raises(Conflict) as excinfo:
        ReverifyService.submit(
            reverify_session, students[0].id, _reverify_token(reverify_session, _seq(75)), True, now
        )
    assert excinfo.value.reason == 'slot_already_used'

def test_submit_rejects_other_sequence_token(app, reverify_session, students):
    _pending(reverify_session, students[0])
    now = T0 + timedelta(seconds=80, milliseconds=500)

    # The 80 s token is globally fresh but is not this student's slot
    with pytest.raises(InvalidRequest) as excinfo:
        ReverifyService.submit(
            reverify_session, students[0].id, _reverify_token(reverify_session, _seq(80)), True, now
        )
    assert excinfo.value.reason == 'token_not_valid_for_slot'

@pytest.mark.parametrize('now_offset, biometric, reason, error', [
    (70, True, 'slot_not_started', Conflict),
    (76, False, 'biometric_required', InvalidRequest),
])
def test_submit_rejections(app, reverify_session, students, now_offset, biometric, reason, error):
    _pending(reverify_session, students[0])

    with pytest.raises(error) as excinfo:
        ReverifyService.submit(
            reverify_session, students[0].id, _reverify_token(reverify_session, _seq(75)),
            biometric, T0 + timedelta(seconds=now_offset)
        )
    assert excinfo.value.reason == reason

def test_submit_requires_selection(app, reverify_session, students):
    build_record(reverify_session, students[0])

    with pytest.raises(Forbidden) as excinfo:
        ReverifyService.submit(reverify_session, students[0].id, 'x' * 16, True, NOW)
    assert excinfo.value.reason == 'not_selected'

def test_submit_after_miss_has_no_open_slot(app, reverify_session, students):
    _pending(reverify_session, students[0], reverify_status=ReverifyStatus.MISSED)

    with pytest.raises(Conflict) as excinfo:
        ReverifyService.submit(reverify_session, students[0].id, 'x' * 16, True, NOW)
    assert excinfo.value.reason == 'no_open_slot'
    assert excinfo.value.extra['can_request_retry'] is True

def test_submit_outside_reverify_phase(app, make_session, students):
    session = make_session(started_at=T0)

    with pytest.raises(Conflict) as excinfo:
        ReverifyService.submit(session, students[0].id, 'x' * 16, True, T0)
    assert excinfo.value.reason == 'wrong_phase'

# =================== RETRY ===================

def test_retry_assigns_new_slot(app, reverify_session, students):
    _pending(reverify_session, students[0], slot_offset=60,
             reverify_status=ReverifyStatus.MISSED, flagged=True)

    record, outcome = ReverifyService.request_retry(reverify_session, students[0].id, NOW)

    assert outcome['status'] == 'RETRY_PENDING'
    assert outcome['slot']['sequence'] == _seq(75)
    assert outcome['slot']['index'] == 3
    assert record.reverify_status == ReverifyStatus.RETRY_PENDING
    assert record.reverify_attempt_count == 2
    assert record.reverify_retry_count == 1
    assert record.reverify_deadline_at == T0 + timedelta(seconds=81)
    assert record.flagged is True
    assert NotificationService.outbox()[-1]['reason'] == 'MANUAL_RETRY'

def test_retry_at_limit_fails(app, reverify_session, students):
    _pending(reverify_session, students[0], slot_offset=60, reverify_status=ReverifyStatus.MISSED,
             reverify_attempt_count=3, reverify_retry_count=2)

    record, outcome = ReverifyService.request_retry(reverify_session, students[0].id, NOW)

    assert outcome == {'status': 'FAILED', 'reason': 'retry_limit_reached'}
    assert record.reverify_status == ReverifyStatus.FAILED
    assert record.flagged is True
    assert record.reverify_slot_sequence == _seq(60)
    assert NotificationService.outbox() == []

def test_retry_without_capacity_fails(app, make_session, students):
    session = make_session(started_at=T0, reverify_seconds=25, reverify_slot_capacity=1,
                           phase=AttendancePhase.REVERIFY, reverify_selection_done=True)
    _pending(session, students[0])
    _pending(session, students[1], slot_offset=60, reverify_status=ReverifyStatus.MISSED)

    record, outcome = ReverifyService.request_retry(session, students[1].id, NOW)

    assert outcome['reason'] == 'slot_capacity_exhausted'
    assert record.reverify_status == ReverifyStatus.FAILED

def test_retry_only_after_miss(app, reverify_session, students):
    _pending(reverify_session, students[0])

    with pytest.raises(Conflict) as excinfo:
        ReverifyService.request_retry(reverify_session, students[0].id, NOW)
    assert excinfo.value.reason == 'retry_not_available'

def test_concurrent_retries_never_overfill_slots(file_app, seed_tenant):
    with file_app.app_context():
        _, lecturer, course, students = seed_tenant(12)
        session = build_session(course, lecturer, T0, reverify_seconds=40, reverify_slot_capacity=2,
                                phase=AttendancePhase.REVERIFY, reverify_selection_done=True)
        for student in students:
            _pending(session, student, slot_offset=60, reverify_status=ReverifyStatus.MISSED, flagged=True)
        session_id = session.id
        student_ids = [student.id for student in students]

    barrier = threading.Barrier(len(student_ids))
    outcomes, errors = [], []

    def worker(student_id):
        with file_app.app_context():
            try:
                barrier.wait()
                session = PhaseService.load_synced(session_id, NOW)
                _, outcome = ReverifyService.request_retry(session, student_id, NOW)
                outcomes.append(outcome)
            except Exception as e:  # collected and asserted below
                errors.append(e)

    threads = [threading.Thread(target=worker, args=(sid,)) for sid in student_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []

    # Slots 75, 80, 85, 90 s with two seats each
    statuses = Counter(outcome['status'] for outcome in outcomes)
    assert statuses == {'RETRY_PENDING': 8, 'FAILED': 4}

    with file_app.app_context():
        occupancy = Counter(
            record.reverify_slot_sequence
            for record in AttendanceRecord.query.filter_by(
                session_id=session_id, reverify_status=ReverifyStatus.RETRY_PENDING
            )
        )
        assert max(occupancy.values()) <= 2
        assert set(occupancy) == {_seq(75), _seq(80), _seq(85), _seq(90)}

# =================== STAFF ===================

def test_target_students(app, reverify_session, students):
    build_record(reverify_session, students[0])
    _pending(reverify_session, students[1], slot_offset=60, reverify_status=ReverifyStatus.MISSED)
    _pending(reverify_session, students[2], reverify_status=ReverifyStatus.PASSED)

    result = ReverifyService.target_students(
        reverify_session, [students[0].id, students[1].id, students[2].id, students[3].id], NOW
    )

    assigned = {item['student_id']: item for item in result['assigned']}
    assert set(assigned) == {students[0].id, students[1].id}
    assert assigned[students[0].id]['attempt_count'] == 1
    assert assigned[students[1].id]['attempt_count'] == 2
    assert {item['student_id']: item['reason'] for item in result['skipped']} == {
        students[2].id: 'already_passed',
        students[3].id: 'not_marked'
    }

    first = AttendanceRecord.query.filter_by(session_id=reverify_session.id, student_id=students[0].id).one()
    second = AttendanceRecord.query.filter_by(session_id=reverify_session.id, student_id=students[1].id).one()
    assert first.reverify_status == ReverifyStatus.PENDING
    assert first.reverify_required is True
    assert second.reverify_status == ReverifyStatus.RETRY_PENDING
    assert {event['reason'] for event in NotificationService.outbox()} == {'LECTURER_TARGET'}

def test_target_with_nothing_eligible(app, reverify_session, students):
    _pending(reverify_session, students[0], reverify_status=ReverifyStatus.PASSED)

    with pytest.raises(Conflict) as excinfo:
        ReverifyService.target_students(reverify_session, [students[0].id], NOW)
    assert excinfo.value.reason == 'nothing_assigned'

    with pytest.raises(NotFound):
        ReverifyService.target_students(reverify_session, [students[5].id], NOW)

def test_manual_present_overrides_failure(app, reverify_session, students, lecturer):
    _pending(reverify_session, students[0], reverify_status=ReverifyStatus.FAILED, flagged=True)

    record = ReverifyService.manual_present(reverify_session, students[0].id, lecturer.id, NOW)

    assert record.reverify_status == ReverifyStatus.MANUAL_PRESENT
    assert record.reverify_manual_override is True
    assert record.reverify_overridden_by == lecturer.id
    assert record.flagged is False

    with pytest.raises(NotFound):
        ReverifyService.manual_present(reverify_session, students[1].id, lecturer.id, NOW)

def test_early_close_fails_open_slots(app, reverify_session, students, lecturer):
    _pending(reverify_session, students[0])
    _pending(reverify_session, students[1], reverify_status=ReverifyStatus.PASSED)
    principal = Principal(id=lecturer.id, role=UserRole.LECTURER, organization_id=lecturer.organization_id)

    AttendanceService.close_session(reverify_session, principal, NOW)

    statuses = {
        record.student_id: record.reverify_status
        for record in AttendanceRecord.query.filter_by(session_id=reverify_session.id)
    }
    assert statuses == {students[0].id: ReverifyStatus.FAILED, students[1].id: ReverifyStatus.PASSED}
    assert reverify_session.closed_at == NOW
    assert reverify_session.phase == AttendancePhase.CLOSED
