"""Shared fixtures: app, client, model factories and bearer tokens."""
import math
from datetime import datetime, timedelta

import pytest
from flask_jwt_extended import create_access_token

from attendiq import create_app, db
from attendiq.models import (
    AttendancePhase, AttendanceRecord, AttendanceSession, Course, Enrollment,
    Organization, ReverifyStatus, SessionStatus, User, UserRole
)
from attendiq.services.token_service import TokenService

CAMPUS_LAT = 33.3152
CAMPUS_LNG = 44.3661

# Fixed timeline for deterministic service tests; on the 5 s token grid.
T0 = datetime(2026, 1, 5, 9, 0, 0)

def offset_north(lat: float, meters: float) -> float:
    """Latitude ``meters`` north of ``lat``."""
    return lat + meters / (6371000 * math.pi / 180)

def _seed_tenant(student_count: int):
    organization = Organization(
        name='Test University',
        settings={
            'confidenceThreshold': 70,
            'trustedNetworks': ['10.0.0.0/8'],
            'campus': {'lat': CAMPUS_LAT, 'lng': CAMPUS_LNG, 'radiusMeters': 500}
        }
    )
    db.session.add(organization)
    db.session.flush()

    lecturer = User(email='lecturer@test.edu', name='Lecturer', role=UserRole.LECTURER,
                    organization_id=organization.id)
    db.session.add(lecturer)
    db.session.flush()

    course = Course(code='CS101', name='Intro', organization_id=organization.id, lecturer_id=lecturer.id)
    db.session.add(course)
    db.session.flush()

    students = []
    for index in range(student_count):
        student = User(email=f'student{index}@test.edu', name=f'Student {index}',
                       student_number=f'S{index:04d}', role=UserRole.STUDENT,
                       organization_id=organization.id)
        db.session.add(student)
        db.session.flush()
        db.session.add(Enrollment(course_id=course.id, student_id=student.id))
        students.append(student)

    db.session.commit()
    return organization, lecturer, course, students

def build_session(course, lecturer, started_at, initial_seconds=60, reverify_seconds=240, **overrides):
    """Persist a session with aligned phase boundaries."""
    initial_ends_at = TokenService.align_up(started_at + timedelta(seconds=initial_seconds), 5000)
    values = dict(
        course_id=course.id,
        lecturer_id=lecturer.id,
        lat=CAMPUS_LAT,
        lng=CAMPUS_LNG,
        radius_meters=500,
        token_secret=TokenService.generate_secret(),
        status=SessionStatus.ACTIVE,
        phase=AttendancePhase.INITIAL,
        started_at=started_at,
        initial_ends_at=initial_ends_at,
        reverify_ends_at=initial_ends_at + timedelta(seconds=reverify_seconds),
        token_rotation_ms=5000,
        token_grace_ms=1000,
        reverify_selection_rate=0.35,
        reverify_slot_capacity=4
    )
    values.update(overrides)
    session = AttendanceSession(**values)
    db.session.add(session)
    db.session.commit()
    return session

def build_record(session, student, marked_at=None, **overrides):
    values = dict(
        session_id=session.id,
        student_id=student.id,
        marked_at=marked_at or session.started_at,
        confidence=90,
        flagged=False,
        gps_lat=session.lat,
        gps_lng=session.lng,
        gps_distance=0.0,
        token_valid=True,
        biometric_verified=True,
        reverify_status=ReverifyStatus.NOT_REQUIRED
    )
    values.update(overrides)
    record = AttendanceRecord(**values)
    db.session.add(record)
    db.session.commit()
    return record

@pytest.fixture
def app():
    """Create application for testing."""
    app = create_app('testing')

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()

@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()

@pytest.fixture
def tenant(app):
    """Organization, lecturer, course and ten enrolled students."""
    return _seed_tenant(10)

@pytest.fixture
def organization(tenant):
    return tenant[0]

@pytest.fixture
def lecturer(tenant):
    return tenant[1]

@pytest.fixture
def course(tenant):
    return tenant[2]

@pytest.fixture
def students(tenant):
    return tenant[3]

@pytest.fixture
def make_session(course, lecturer):
    def _make(started_at=None, **kwargs):
        return build_session(course, lecturer, started_at or datetime.utcnow(), **kwargs)
    return _make

@pytest.fixture
def make_record():
    return build_record

@pytest.fixture
def auth_headers(app):
    """Bearer header factory for a user."""
    def _headers(user):
        token = create_access_token(
            identity=str(user.id),
            additional_claims={'role': user.role.value, 'organization_id': user.organization_id}
        )
        return {'Authorization': f'Bearer {token}'}
    return _headers

@pytest.fixture
def file_app(tmp_path):
    """App on a file-backed SQLite database so worker threads share state."""
    app = create_app('testing', {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'attendiq_concurrency.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}, 'pool_size': 25, 'max_overflow': 10}
    })

    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.drop_all()
        db.engine.dispose()

@pytest.fixture
def seed_tenant():
    return _seed_tenant
