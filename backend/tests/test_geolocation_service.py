"""Distance, radius and movement anomaly tests."""
from datetime import timedelta

import pytest

from attendiq.models import AnomalySeverity, AnomalyType, SessionStatus
from attendiq.services.geolocation_service import GeolocationService, PositionSample

from conftest import CAMPUS_LAT, CAMPUS_LNG, T0, offset_north

def test_distance_of_one_degree_latitude():
    distance = GeolocationService.calculate_distance(0, 0, 1, 0)
    assert distance == pytest.approx(111195, rel=1e-3)

def test_within_radius_boundary():
    inside = GeolocationService.within_radius(
        offset_north(CAMPUS_LAT, 480), CAMPUS_LNG, CAMPUS_LAT, CAMPUS_LNG, 500
    )
    outside = GeolocationService.within_radius(
        offset_north(CAMPUS_LAT, 900), CAMPUS_LNG, CAMPUS_LAT, CAMPUS_LNG, 500
    )

    assert inside['within'] is True
    assert inside['distance'] == pytest.approx(480, abs=1)
    assert outside['within'] is False
    assert outside['distance'] == pytest.approx(900, abs=1)

@pytest.mark.parametrize('velocity, expected', [
    (5, None),
    (10, None),
    (15, AnomalySeverity.LOW),
    (50, AnomalySeverity.MEDIUM),
    (150, AnomalySeverity.HIGH),
])
def test_velocity_classification(velocity, expected):
    assert GeolocationService.classify_velocity(velocity) == expected

def test_velocity_check_flags_impossible_travel():
    previous = PositionSample(CAMPUS_LAT, CAMPUS_LNG, T0)
    # 60 km in 10 minutes is 100 m/s; push it just above
    lat = offset_north(CAMPUS_LAT, 61000)

    finding = GeolocationService.check_velocity(previous, lat, CAMPUS_LNG, T0 + timedelta(minutes=10), 60)

    assert finding.type == AnomalyType.VELOCITY_ANOMALY
    assert finding.severity == AnomalySeverity.HIGH
    assert finding.score == 90

def test_velocity_check_ignores_short_gaps():
    previous = PositionSample(CAMPUS_LAT, CAMPUS_LNG, T0)
    lat = offset_north(CAMPUS_LAT, 5000)

    assert GeolocationService.check_velocity(previous, lat, CAMPUS_LNG, T0 + timedelta(seconds=30), 60) is None
    assert GeolocationService.check_velocity(None, lat, CAMPUS_LNG, T0, 60) is None

def test_location_jump_uses_median_of_history():
    history = [PositionSample(CAMPUS_LAT, CAMPUS_LNG, T0 - timedelta(days=i)) for i in range(1, 4)]
    far_lat = offset_north(CAMPUS_LAT, 80000)

    finding = GeolocationService.check_location_jump(history, far_lat, CAMPUS_LNG, 50000, 3)

    assert finding.type == AnomalyType.LOCATION_JUMP
    assert finding.severity == AnomalySeverity.HIGH
    assert GeolocationService.check_location_jump(history, CAMPUS_LAT, CAMPUS_LNG, 50000, 3) is None

def test_location_jump_needs_enough_history():
    history = [PositionSample(CAMPUS_LAT, CAMPUS_LNG, T0 - timedelta(days=1))]
    far_lat = offset_north(CAMPUS_LAT, 80000)

    assert GeolocationService.check_location_jump(history, far_lat, CAMPUS_LNG, 50000, 3) is None

def test_detect_anomalies_reads_other_sessions(app, make_session, make_record, students):
    student = students[0]
    earlier = make_session(started_at=T0 - timedelta(hours=1), status=SessionStatus.CLOSED)
    make_record(earlier, student, marked_at=T0 - timedelta(minutes=50))

    current = make_session(started_at=T0, lat=CAMPUS_LAT, lng=CAMPUS_LNG)
    far_lat = offset_north(CAMPUS_LAT, 400000)

    findings = GeolocationService.detect_anomalies(student.id, far_lat, CAMPUS_LNG, T0, current.id)

    assert [f.type for f in findings] == [AnomalyType.VELOCITY_ANOMALY]
    assert findings[0].severity == AnomalySeverity.HIGH
