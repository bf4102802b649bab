"""GPS proximity and movement anomaly service."""
import math
import statistics
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from flask import current_app

from attendiq.models.anomaly import AnomalySeverity, AnomalyType, SEVERITY_SCORES
from attendiq.models.attendance import AttendanceRecord

@dataclass
class AnomalyFinding:
    """A single advisory signal raised against a new mark."""
    type: AnomalyType
    severity: AnomalySeverity
    reason: str
    details: Dict = field(default_factory=dict)

    @property
    def score(self) -> int:
        return SEVERITY_SCORES[self.severity]

@dataclass
class PositionSample:
    """A previously recorded position of the same student."""
    lat: float
    lng: float
    marked_at: datetime

class GeolocationService:
    """Service for GPS verification and location anomalies."""

    EARTH_RADIUS_METERS = 6371000

    # Velocity thresholds (m/s)
    VELOCITY_LOW_MPS = 10
    VELOCITY_MEDIUM_MPS = 40
    VELOCITY_HIGH_MPS = 100

    @staticmethod
    def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        """Calculate great-circle distance between two GPS points in meters."""
        R = GeolocationService.EARTH_RADIUS_METERS

        lat1_rad = math.radians(lat1)
        lat2_rad = math.radians(lat2)
        delta_lat = math.radians(lat2 - lat1)
        delta_lon = math.radians(lon2 - lon1)

        a = (math.sin(delta_lat/2) ** 2 +
             math.cos(lat1_rad) * math.cos(lat2_rad) *
             math.sin(delta_lon/2) ** 2)
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

        return R * c

    @staticmethod
    def within_radius(
        student_lat: float,
        student_lng: float,
        session_lat: float,
        session_lng: float,
        radius_meters: float
    ) -> Dict:
        """Check campus-radius containment."""
        distance = GeolocationService.calculate_distance(
            student_lat, student_lng, session_lat, session_lng
        )

        return {
            'within': distance <= radius_meters,
            'distance': round(distance, 2)
        }

    # =================== ANOMALIES ===================

    @staticmethod
    def classify_velocity(velocity_mps: float) -> Optional[AnomalySeverity]:
        if velocity_mps > GeolocationService.VELOCITY_HIGH_MPS:
            return AnomalySeverity.HIGH
        if velocity_mps > GeolocationService.VELOCITY_MEDIUM_MPS:
            return AnomalySeverity.MEDIUM
        if velocity_mps > GeolocationService.VELOCITY_LOW_MPS:
            return AnomalySeverity.LOW
        return None

    @staticmethod
    def check_velocity(
        previous: Optional[PositionSample],
        lat: float,
        lng: float,
        now: datetime,
        min_gap_seconds: float
    ) -> Optional[AnomalyFinding]:
        """Compare against the immediately preceding mark."""
        if previous is None:
            return None

        elapsed = (now - previous.marked_at).total_seconds()
        if elapsed < min_gap_seconds:
            return None

        distance = GeolocationService.calculate_distance(previous.lat, previous.lng, lat, lng)
        velocity = distance / elapsed
        severity = GeolocationService.classify_velocity(velocity)
        if severity is None:
            return None

        return AnomalyFinding(
            type=AnomalyType.VELOCITY_ANOMALY,
            severity=severity,
            reason=f"Impossible movement speed: {velocity * 3.6:.0f} km/h",
            details={
                'velocity_mps': round(velocity, 2),
                'distance_meters': round(distance, 2),
                'elapsed_seconds': round(elapsed, 1)
            }
        )

    @staticmethod
    def check_location_jump(
        history: Sequence[PositionSample],
        lat: float,
        lng: float,
        threshold_meters: float,
        min_history: int
    ) -> Optional[AnomalyFinding]:
        """Median distance from the student's recent positions."""
        if len(history) < max(1, min_history):
            return None

        distances = [
            GeolocationService.calculate_distance(sample.lat, sample.lng, lat, lng)
            for sample in history
        ]
        median = statistics.median(distances)
        if median <= threshold_meters:
            return None

        return AnomalyFinding(
            type=AnomalyType.LOCATION_JUMP,
            severity=AnomalySeverity.HIGH,
            reason=f"Position is {median / 1000:.0f} km from the usual locations",
            details={
                'median_distance_meters': round(median, 2),
                'history_size': len(history)
            }
        )

    @staticmethod
    def recent_positions(student_id: int, before: datetime, exclude_session_id: int, limit: int) -> List[PositionSample]:
        """Most recent positions first, from other sessions."""
        rows = AttendanceRecord.query.filter(
            AttendanceRecord.student_id == student_id,
            AttendanceRecord.session_id != exclude_session_id,
            AttendanceRecord.marked_at <= before
        ).order_by(AttendanceRecord.marked_at.desc()).limit(limit).all()

        return [PositionSample(r.gps_lat, r.gps_lng, r.marked_at) for r in rows]

    @staticmethod
    def detect_anomalies(
        student_id: int,
        lat: float,
        lng: float,
        now: datetime,
        exclude_session_id: int
    ) -> List[AnomalyFinding]:
        """Run velocity and jump checks against the student's own history."""
        config = current_app.config
        history = GeolocationService.recent_positions(
            student_id, now, exclude_session_id, config['ANOMALY_HISTORY_SIZE']
        )

        findings = []
        velocity = GeolocationService.check_velocity(
            history[0] if history else None, lat, lng, now,
            config['ANOMALY_MIN_TIME_GAP_SECONDS']
        )
        if velocity:
            findings.append(velocity)

        jump = GeolocationService.check_location_jump(
            history, lat, lng,
            config['ANOMALY_JUMP_DISTANCE_METERS'],
            config['ANOMALY_JUMP_MIN_HISTORY']
        )
        if jump:
            findings.append(jump)

        if findings:
            current_app.logger.info(
                'Anomalies for student %s: %s', student_id,
                ', '.join(f'{f.type.value}/{f.severity.value}' for f in findings)
            )

        return findings
