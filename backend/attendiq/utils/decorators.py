"""Custom decorators for authorization."""
from dataclasses import dataclass
from functools import wraps

from flask import g
from flask_jwt_extended import get_jwt_identity

from attendiq import db
from attendiq.models.user import User, UserRole
from attendiq.utils.errors import Forbidden
from attendiq.utils.helpers import error_response

@dataclass(frozen=True)
class Principal:
    """Authenticated caller as seen by the engine."""
    id: int
    role: UserRole
    organization_id: int

def _load_principal():
    identity = get_jwt_identity()
    try:
        user = db.session.get(User, int(identity))
    except (TypeError, ValueError):
        user = None

    if not user or not user.is_active:
        return None

    return Principal(id=user.id, role=user.role, organization_id=user.organization_id)

def current_principal() -> Principal:
    """Principal resolved by the role decorators for this request."""
    principal = getattr(g, 'principal', None)
    if principal is None:
        principal = _load_principal()
        if principal is None:
            raise Forbidden("User not found", reason='unknown_user')
        g.principal = principal
    return principal

def roles_required(*roles: UserRole):
    """Require one of the given roles; must run after jwt_required()."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            principal = _load_principal()

            if principal is None:
                return error_response("User not found", 404)

            if principal.role not in roles:
                names = ' or '.join(role.value for role in roles)
                return error_response(f"{names.capitalize()} access required", 403)

            g.principal = principal
            return f(*args, **kwargs)
        return decorated_function
    return decorator

student_required = roles_required(UserRole.STUDENT)
staff_required = roles_required(UserRole.LECTURER, UserRole.ADMIN)

def require_session_staff(session, principal: Principal) -> None:
    """Only the session's lecturer or an admin of its organization may manage it."""
    if principal.role == UserRole.LECTURER and session.lecturer_id == principal.id:
        return
    if principal.role == UserRole.ADMIN and session.course.organization_id == principal.organization_id:
        return
    raise Forbidden("You cannot manage this session", reason='not_session_staff')
