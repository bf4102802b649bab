"""Session lifecycle and initial attendance marking."""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from flask import current_app
from sqlalchemy.exc import IntegrityError

from attendiq import db
from attendiq.models.anomaly import AnomalyEvent
from attendiq.models.attendance import AttendanceRecord, ReverifyStatus
from attendiq.models.attendance_session import AttendancePhase, AttendanceSession, SessionStatus
from attendiq.models.course import Course, Enrollment
from attendiq.models.user import UserRole
from attendiq.services.confidence_service import ConfidenceService, VerificationSignals
from attendiq.services.geolocation_service import GeolocationService
from attendiq.services.network_service import NetworkService
from attendiq.services.phase_service import PhaseService
from attendiq.services.reverify_service import ReverifyService, SlotAllocator
from attendiq.services.token_service import TokenService
from attendiq.utils.decorators import Principal, require_session_staff
from attendiq.utils.errors import Conflict, Forbidden, Gone, InvalidRequest, NotFound
from attendiq.utils.helpers import isoformat

class AttendanceService:
    """Service for attendance sessions and marks."""

    # =================== SESSIONS ===================

    @staticmethod
    def _active_session_for(course_id: int) -> Optional[AttendanceSession]:
        return AttendanceSession.query.filter_by(
            course_id=course_id, status=SessionStatus.ACTIVE
        ).populate_existing().first()

    @staticmethod
    def create_session(principal: Principal, data: Dict, now: datetime = None) -> AttendanceSession:
        """Open a live session for one of the lecturer's courses."""
        now = now or datetime.utcnow()
        config = current_app.config

        course = Course.get_by_id(data['course_id'])
        if course is None or course.lecturer_id != principal.id:
            raise NotFound("Course not found or not assigned to you", reason='course_not_found')

        existing = AttendanceService._active_session_for(course.id)
        if existing is not None:
            PhaseService.sync_phase(existing, now)
            if existing.is_active:
                raise Conflict(
                    "An active session already exists for this course",
                    reason='active_session_exists',
                    session_id=existing.id
                )

        geofence = {key: data.get(key) for key in ('lat', 'lng', 'radius_meters')}
        if geofence['lat'] is None or geofence['lng'] is None:
            campus = course.organization.campus_geofence
            if campus is None:
                raise InvalidRequest(
                    "Location is required when the organization has no campus geofence",
                    reason='missing_location'
                )
            geofence['lat'], geofence['lng'] = campus['lat'], campus['lng']
            if geofence['radius_meters'] is None:
                geofence['radius_meters'] = campus['radius_meters']
        if geofence['radius_meters'] is None:
            geofence['radius_meters'] = 100

        rotation_ms = config['TOKEN_ROTATION_MS']
        initial_seconds = data.get('initial_phase_seconds') or config['INITIAL_PHASE_SECONDS']
        reverify_seconds = data.get('reverify_phase_seconds') or config['REVERIFY_PHASE_SECONDS']

        # Phase boundaries sit on the token grid so slots line up with QR rotations.
        initial_ends_at = TokenService.align_up(now + timedelta(seconds=initial_seconds), rotation_ms)
        reverify_ends_at = initial_ends_at + timedelta(seconds=reverify_seconds)

        session = AttendanceSession(
            course_id=course.id,
            lecturer_id=principal.id,
            lat=float(geofence['lat']),
            lng=float(geofence['lng']),
            radius_meters=int(geofence['radius_meters']),
            token_secret=TokenService.generate_secret(),
            status=SessionStatus.ACTIVE,
            phase=AttendancePhase.INITIAL,
            started_at=now,
            initial_ends_at=initial_ends_at,
            reverify_ends_at=reverify_ends_at,
            token_rotation_ms=rotation_ms,
            token_grace_ms=config['TOKEN_GRACE_MS'],
            reverify_selection_rate=float(data.get('reverify_selection_rate') or config['REVERIFY_SELECTION_RATE']),
            reverify_slot_capacity=int(data.get('reverify_slot_capacity') or config['REVERIFY_SLOT_CAPACITY'])
        )

        db.session.add(session)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            winner = AttendanceService._active_session_for(course.id)
            raise Conflict(
                "An active session already exists for this course",
                reason='active_session_exists',
                session_id=winner.id if winner else None
            )

        current_app.logger.info(
            'Session %s started for course %s by lecturer %s', session.id, course.code, principal.id
        )
        return session

    @staticmethod
    def close_session(session: AttendanceSession, principal: Principal, now: datetime = None) -> AttendanceSession:
        """End a session early; outstanding reverifications fail."""
        now = now or datetime.utcnow()
        require_session_staff(session, principal)
        PhaseService.sync_phase(session, now)

        if session.is_active:
            session.status = SessionStatus.CLOSED
            session.phase = AttendancePhase.CLOSED
            session.closed_at = now
            ReverifyService.finalize_outstanding(session)
            db.session.commit()
            current_app.logger.info('Session %s closed early by %s', session.id, principal.id)

        return session

    @staticmethod
    def list_sessions(principal: Principal, now: datetime = None, limit: int = 20) -> List[AttendanceSession]:
        now = now or datetime.utcnow()
        query = AttendanceSession.query.join(Course)

        if principal.role == UserRole.LECTURER:
            query = query.filter(AttendanceSession.lecturer_id == principal.id)
        elif principal.role == UserRole.ADMIN:
            query = query.filter(Course.organization_id == principal.organization_id)
        else:
            query = query.join(Enrollment, Enrollment.course_id == Course.id).filter(
                Enrollment.student_id == principal.id,
                AttendanceSession.status == SessionStatus.ACTIVE
            )

        sessions = query.order_by(AttendanceSession.started_at.desc()).limit(limit).all()
        for session in sessions:
            if session.is_active:
                PhaseService.sync_phase(session, now)
        return sessions

    @staticmethod
    def live_token(session: AttendanceSession, now: datetime = None, include_image: bool = False) -> Dict:
        """Current rotating token for the lecturer's display."""
        now = now or datetime.utcnow()
        PhaseService.sync_phase(session, now)
        if not session.is_active:
            raise Gone("Session is closed", reason='session_closed')

        payload = TokenService.build_payload(session, session.phase, now)
        result = {
            'qr': payload,
            'phase': session.phase.value,
            'phase_ends_at': isoformat(PhaseService.phase_ends_at(session)),
            'rotation_ms': session.token_rotation_ms,
            'next_rotation_ms': TokenService.next_rotation_ms(now, session.token_rotation_ms)
        }
        if include_image:
            result['image'] = TokenService.render_qr_image(payload)
        return result

    @staticmethod
    def monitor(session: AttendanceSession, now: datetime = None) -> Dict:
        """Lecturer view of a session with every record."""
        now = now or datetime.utcnow()
        PhaseService.sync_phase(session, now)

        records = session.records.order_by(AttendanceRecord.marked_at).all()
        counts = {status.value: 0 for status in ReverifyStatus}
        for record in records:
            counts[record.reverify_status.value] += 1

        return {
            'session': session.to_dict(),
            'phase_ends_at': isoformat(PhaseService.phase_ends_at(session)),
            'records': [record.to_dict() for record in records],
            'summary': {
                'marked': len(records),
                'flagged': sum(1 for record in records if record.flagged),
                'reverify': counts
            }
        }

    # =================== MARKING ===================

    @staticmethod
    def _insert_record(values: Dict) -> bool:
        """Insert unless (session, student) already exists; True when this call won."""
        dialect = db.session.get_bind().dialect.name
        if dialect == 'postgresql':
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == 'sqlite':
            from sqlalchemy.dialects.sqlite import insert
        else:
            try:
                with db.session.begin_nested():
                    db.session.add(AttendanceRecord(**values))
                return True
            except IntegrityError:
                return False

        stmt = insert(AttendanceRecord).values(**values).on_conflict_do_nothing(
            index_elements=['session_id', 'student_id']
        )
        return db.session.execute(stmt).rowcount == 1

    @staticmethod
    def mark_attendance(
        principal: Principal,
        data: Dict,
        client_ip: Optional[str],
        now: datetime = None
    ) -> Tuple[AttendanceRecord, bool]:
        """Record an initial mark; returns (record, created)."""
        now = now or datetime.utcnow()
        session = PhaseService.load_synced(data['session_id'], now)

        if not session.is_active:
            raise Gone("Session is no longer active", reason='session_closed')
        if session.phase != AttendancePhase.INITIAL:
            raise Conflict("Initial attendance window has ended", reason='wrong_phase')

        course = session.course
        if course.organization_id != principal.organization_id or not course.is_enrolled(principal.id):
            raise Forbidden("You are not enrolled in this course", reason='not_enrolled')

        existing = AttendanceRecord.query.filter_by(session_id=session.id, student_id=principal.id).first()
        if existing is not None:
            return existing, False

        token_valid = TokenService.verify(
            session.token_secret, data.get('token'), session.id, AttendancePhase.INITIAL,
            now, session.token_rotation_ms, session.token_grace_ms
        )
        if not token_valid:
            raise InvalidRequest("QR code has expired. Scan the current code.", reason='expired_token')

        lat, lng = float(data['latitude']), float(data['longitude'])
        gps = GeolocationService.within_radius(lat, lng, session.lat, session.lng, session.radius_meters)
        max_distance = session.radius_meters * current_app.config['GPS_MAX_DISTANCE_FACTOR']
        if gps['distance'] > max_distance:
            raise InvalidRequest(
                "You are too far from the lecture location",
                reason='out_of_radius',
                distance=gps['distance']
            )

        organization = course.organization
        network_trusted = NetworkService.is_trusted(client_ip, organization.trusted_networks)
        biometric_verified = data.get('biometric_verified') is True

        confidence = ConfidenceService.score(VerificationSignals(
            biometric_verified=biometric_verified,
            within_radius=gps['within'],
            token_valid=True,
            network_trusted=network_trusted
        ))

        findings = GeolocationService.detect_anomalies(principal.id, lat, lng, now, session.id)
        anomaly_score = max((finding.score for finding in findings), default=0)
        flagged = ConfidenceService.is_flagged(
            confidence, organization.confidence_threshold, anomaly_detected=bool(findings)
        )

        inserted = AttendanceService._insert_record({
            'session_id': session.id,
            'student_id': principal.id,
            'marked_at': now,
            'confidence': confidence,
            'flagged': flagged,
            'anomaly_score': anomaly_score,
            'gps_lat': lat,
            'gps_lng': lng,
            'gps_distance': gps['distance'],
            'ip_address': client_ip,
            'network_trusted': network_trusted,
            'token_valid': True,
            'biometric_verified': biometric_verified,
            'credential_id': data.get('credential_id'),
            'reverify_status': ReverifyStatus.NOT_REQUIRED
        })

        record = AttendanceRecord.query.filter_by(
            session_id=session.id, student_id=principal.id
        ).populate_existing().one()

        if not inserted:
            db.session.commit()
            return record, False

        for finding in findings:
            db.session.add(AnomalyEvent(
                session_id=session.id,
                student_id=principal.id,
                record_id=record.id,
                type=finding.type,
                severity=finding.severity,
                score=finding.score,
                details=dict(finding.details, reason=finding.reason),
                detected_at=now
            ))
        db.session.commit()

        current_app.logger.info(
            'Session %s: student %s marked (confidence=%d flagged=%s)',
            session.id, principal.id, confidence, flagged
        )
        return record, True

    # =================== STUDENT VIEW ===================

    @staticmethod
    def student_status(session: AttendanceSession, principal: Principal, now: datetime = None) -> Dict:
        """What a student needs to know to act in the current phase."""
        now = now or datetime.utcnow()
        PhaseService.sync_phase(session, now)

        if not session.course.is_enrolled(principal.id):
            raise Forbidden("You are not enrolled in this course", reason='not_enrolled')

        record = AttendanceRecord.query.filter_by(session_id=session.id, student_id=principal.id).first()
        slot = SlotAllocator.slot_from_record(session, record) if record else None

        result = {
            'session_id': session.id,
            'status': session.status.value,
            'phase': session.phase.value,
            'phase_ends_at': isoformat(PhaseService.phase_ends_at(session)),
            'current_sequence_id': TokenService.format_sequence_id(
                TokenService.sequence(now, session.token_rotation_ms)
            ),
            'marked': record is not None,
            'record': record.to_dict() if record else None,
            'slot': slot.to_dict() if slot else None,
            'can_request_retry': ReverifyService.can_request_retry(session, record)
        }
        if slot and record.has_open_slot:
            result['seconds_until_slot'] = max(0, int((slot.starts_at - now).total_seconds()))
        return result
