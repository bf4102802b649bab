"""Rotating QR token generation and validation service."""
import base64
import hashlib
import hmac
import io
import json
import secrets
from datetime import datetime, timedelta
from typing import Dict, Tuple, Union

import qrcode

from attendiq.models.attendance_session import AttendancePhase

EPOCH = datetime(1970, 1, 1)
ONE_MS = timedelta(milliseconds=1)

PhaseLike = Union[AttendancePhase, str]

class TokenService:
    """Time-sliced, session-bound tokens shown on the lecturer's display.

    A token is an HMAC over ``(session_id, phase, sequence)`` where the
    sequence is a global time bucket: ``floor(epoch_ms / rotation_ms)``.
    """

    TOKEN_LENGTH = 16

    @staticmethod
    def generate_secret() -> str:
        """Per-session signing key."""
        return secrets.token_hex(32)

    # =================== TIME GRID ===================

    @staticmethod
    def epoch_ms(moment: datetime) -> int:
        """Milliseconds since the epoch for a naive UTC datetime."""
        return (moment - EPOCH) // ONE_MS

    @staticmethod
    def from_epoch_ms(value: int) -> datetime:
        return EPOCH + timedelta(milliseconds=value)

    @staticmethod
    def sequence(moment: datetime, rotation_ms: int) -> int:
        """Global time bucket containing ``moment``."""
        return TokenService.epoch_ms(moment) // rotation_ms

    @staticmethod
    def sequence_bounds(sequence: int, rotation_ms: int) -> Tuple[datetime, datetime]:
        """Return (start, end) of a sequence window; end is exclusive."""
        start = TokenService.from_epoch_ms(sequence * rotation_ms)
        end = TokenService.from_epoch_ms((sequence + 1) * rotation_ms)
        return start, end

    @staticmethod
    def align_up(moment: datetime, rotation_ms: int) -> datetime:
        """Round up to the next rotation boundary (no-op when aligned)."""
        ms = TokenService.epoch_ms(moment)
        aligned = -(-ms // rotation_ms) * rotation_ms
        return TokenService.from_epoch_ms(aligned)

    @staticmethod
    def next_rotation_ms(moment: datetime, rotation_ms: int) -> int:
        """Milliseconds until the next token rotation."""
        ms = TokenService.epoch_ms(moment)
        return (ms // rotation_ms + 1) * rotation_ms - ms

    @staticmethod
    def format_sequence_id(sequence: int) -> str:
        """Short id shown next to the QR code so students can match their slot."""
        return f"E{sequence % 1000:03d}"

    # =================== SIGNING ===================

    @staticmethod
    def _phase_name(phase: PhaseLike) -> str:
        return phase.value if isinstance(phase, AttendancePhase) else str(phase)

    @staticmethod
    def mint(secret: str, session_id: int, phase: PhaseLike, sequence: int) -> str:
        """Deterministic token for one session, phase and sequence."""
        message = f"{session_id}:{TokenService._phase_name(phase)}:{sequence}"
        digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
        return digest[:TokenService.TOKEN_LENGTH]

    @staticmethod
    def _matches(secret: str, token: str, session_id: int, phase: PhaseLike, sequence: int) -> bool:
        expected = TokenService.mint(secret, session_id, phase, sequence)
        return hmac.compare_digest(token.encode(), expected.encode())

    @staticmethod
    def verify(
        secret: str,
        token: str,
        session_id: int,
        phase: PhaseLike,
        now: datetime,
        rotation_ms: int,
        grace_ms: int
    ) -> bool:
        """Accept the current sequence, or the previous one inside the grace window."""
        if not isinstance(token, str) or not token:
            return False

        current = TokenService.sequence(now, rotation_ms)
        if TokenService._matches(secret, token, session_id, phase, current):
            return True

        into_bucket_ms = TokenService.epoch_ms(now) - current * rotation_ms
        if into_bucket_ms < grace_ms:
            return TokenService._matches(secret, token, session_id, phase, current - 1)

        return False

    @staticmethod
    def verify_for_slot(
        secret: str,
        token: str,
        session_id: int,
        phase: PhaseLike,
        slot_sequence: int,
        now: datetime,
        rotation_ms: int,
        grace_ms: int
    ) -> bool:
        """Accept only the token of the student's own slot, while that slot is open."""
        if not isinstance(token, str) or not token:
            return False

        starts_at, ends_at = TokenService.sequence_bounds(slot_sequence, rotation_ms)
        if now < starts_at or now >= ends_at + timedelta(milliseconds=grace_ms):
            return False

        return TokenService._matches(secret, token, session_id, phase, slot_sequence)

    # =================== DISPLAY ===================

    @staticmethod
    def build_payload(session, phase: PhaseLike, now: datetime) -> Dict:
        """Payload encoded into the lecturer's rotating QR code."""
        sequence = TokenService.sequence(now, session.token_rotation_ms)
        return {
            'session_id': session.id,
            'phase': TokenService._phase_name(phase),
            'sequence': sequence,
            'sequence_id': TokenService.format_sequence_id(sequence),
            'token': TokenService.mint(session.token_secret, session.id, phase, sequence)
        }

    @staticmethod
    def render_qr_image(payload: Dict) -> str:
        """Render a payload as a base64 PNG data URI."""
        qr_string = json.dumps(payload, separators=(',', ':'))

        qr = qrcode.QRCode(
            version=None,  # Auto-determine size
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )
        qr.add_data(qr_string)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
        img_str = base64.b64encode(buffered.getvalue()).decode()

        return f"data:image/png;base64,{img_str}"
