"""Engine error types rendered as client-facing JSON errors."""
from typing import Any, Dict, Optional

class AttendanceError(Exception):
    """Base error carrying an HTTP status and a machine-readable reason."""

    status_code = 400
    default_reason = 'invalid_request'

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        status_code: Optional[int] = None,
        **extra: Any
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        if status_code is not None:
            self.status_code = status_code
        self.extra: Dict[str, Any] = extra

class InvalidRequest(AttendanceError):
    status_code = 400
    default_reason = 'invalid_request'

class Forbidden(AttendanceError):
    status_code = 403
    default_reason = 'forbidden'

class NotFound(AttendanceError):
    status_code = 404
    default_reason = 'not_found'

class Conflict(AttendanceError):
    status_code = 409
    default_reason = 'conflict'

class Gone(AttendanceError):
    status_code = 410
    default_reason = 'gone'
