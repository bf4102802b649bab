"""Tenant model holding attendance settings."""
from typing import List, Optional, Dict

from flask import current_app

from attendiq import db
from attendiq.models.base import BaseModel

class Organization(BaseModel):
    """University tenant. Settings are read-only from the engine's side."""

    __tablename__ = 'organizations'

    name = db.Column(db.String(255), nullable=False)
    settings = db.Column(db.JSON, nullable=False, default=dict)

    users = db.relationship('User', backref='organization', lazy='dynamic')
    courses = db.relationship('Course', backref='organization', lazy='dynamic')

    def _settings(self) -> dict:
        if not isinstance(self.settings, dict):
            return {}
        return self.settings

    @property
    def confidence_threshold(self) -> int:
        """Score below which a record is flagged for review."""
        default = current_app.config['DEFAULT_CONFIDENCE_THRESHOLD']
        value = self._settings().get('confidenceThreshold', default)
        try:
            value = int(value)
        except (TypeError, ValueError):
            return default
        return max(0, min(100, value))

    @property
    def trusted_networks(self) -> List[str]:
        ranges = self._settings().get('trustedNetworks') or []
        return [r for r in ranges if isinstance(r, str)]

    @property
    def campus_geofence(self) -> Optional[Dict[str, float]]:
        """Default geofence used when a lecturer does not supply one."""
        campus = self._settings().get('campus')
        if not isinstance(campus, dict):
            return None
        if campus.get('lat') is None or campus.get('lng') is None:
            return None
        return {
            'lat': float(campus['lat']),
            'lng': float(campus['lng']),
            'radius_meters': int(campus.get('radiusMeters', 100))
        }

    def __repr__(self) -> str:
        return f'<Organization {self.name}>'
