"""Confidence fusion of the four presence signals."""
from dataclasses import dataclass
from typing import Dict

@dataclass
class VerificationSignals:
    """Independent signals collected for one mark."""
    biometric_verified: bool
    within_radius: bool
    token_valid: bool
    network_trusted: bool

class ConfidenceService:
    """Additive 0-100 scoring and review flagging."""

    WEIGHTS = {
        'biometric': 40,
        'gps': 30,
        'token': 20,
        'network': 10
    }

    @staticmethod
    def breakdown(signals: VerificationSignals) -> Dict[str, int]:
        weights = ConfidenceService.WEIGHTS
        return {
            'biometric': weights['biometric'] if signals.biometric_verified else 0,
            'gps': weights['gps'] if signals.within_radius else 0,
            'token': weights['token'] if signals.token_valid else 0,
            'network': weights['network'] if signals.network_trusted else 0
        }

    @staticmethod
    def score(signals: VerificationSignals) -> int:
        total = sum(ConfidenceService.breakdown(signals).values())
        return max(0, min(100, total))

    @staticmethod
    def is_flagged(
        score: int,
        threshold: int,
        anomaly_detected: bool = False,
        reverify_failed: bool = False
    ) -> bool:
        """Low score, an anomaly, or a reverify failure each flag the record."""
        return score < threshold or anomaly_detected or reverify_failed

    @staticmethod
    def refresh_record_flag(record, threshold: int) -> bool:
        """Recompute ``record.flagged`` from its current state."""
        record.flagged = ConfidenceService.is_flagged(
            record.confidence,
            threshold,
            anomaly_detected=record.anomaly_score > 0,
            reverify_failed=record.reverify_failed
        )
        return record.flagged
