"""Course and enrollment models (owned by the course collaborator)."""
from attendiq import db
from attendiq.models.base import BaseModel

class Course(BaseModel):
    """Course taught by a lecturer within an organization."""

    __tablename__ = 'courses'

    code = db.Column(db.String(20), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    organization_id = db.Column(db.Integer, db.ForeignKey('organizations.id'), nullable=False)
    lecturer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    lecturer = db.relationship('User', foreign_keys=[lecturer_id])
    enrollments = db.relationship('Enrollment', backref='course', lazy='dynamic')

    def is_enrolled(self, student_id: int) -> bool:
        return self.enrollments.filter_by(student_id=student_id).first() is not None

    def __repr__(self) -> str:
        return f'<Course {self.code}>'

class Enrollment(BaseModel):
    """Student enrollment in a course."""

    __tablename__ = 'enrollments'
    __table_args__ = (
        db.UniqueConstraint('course_id', 'student_id', name='uq_enrollments_course_student'),
    )

    course_id = db.Column(db.Integer, db.ForeignKey('courses.id'), nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)

    student = db.relationship('User')
