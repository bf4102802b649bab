"""User model for the identity context consumed by the engine."""
from enum import Enum
from attendiq import db
from attendiq.models.base import BaseModel

class UserRole(Enum):
    """User roles enumeration."""
    STUDENT = 'student'
    LECTURER = 'lecturer'
    ADMIN = 'admin'

class User(BaseModel):
    """Principal known to the identity collaborator."""

    __tablename__ = 'users'

    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    student_number = db.Column(db.String(50), unique=True, nullable=True, index=True)
    role = db.Column(db.Enum(UserRole), nullable=False, default=UserRole.STUDENT)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f'<User {self.email}>'
