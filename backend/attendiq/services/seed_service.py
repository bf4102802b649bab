"""Database seeding service for demo data."""
from typing import Dict

from flask_jwt_extended import create_access_token

from attendiq import db
from attendiq.models.course import Course, Enrollment
from attendiq.models.organization import Organization
from attendiq.models.user import User, UserRole

# Baghdad campus used by the demo tenant
CAMPUS = {'lat': 33.3152, 'lng': 44.3661, 'radiusMeters': 150}

class SeedService:
    """Service to seed database with demo data."""

    @staticmethod
    def issue_token(user: User) -> str:
        return create_access_token(
            identity=str(user.id),
            additional_claims={
                'role': user.role.value,
                'organization_id': user.organization_id
            }
        )

    @staticmethod
    def seed_all(student_count: int = 12) -> Dict[str, str]:
        """Seed one tenant, a lecturer, a course and its students.

        Returns a bearer token per seeded user, keyed by email.
        """
        organization = Organization.query.filter_by(name='Demo University').first()
        if organization is None:
            organization = Organization(
                name='Demo University',
                settings={
                    'confidenceThreshold': 70,
                    'trustedNetworks': ['10.0.0.0/8', '192.168.0.0/16'],
                    'campus': CAMPUS
                }
            )
            db.session.add(organization)
            db.session.flush()

        lecturer = SeedService._user(
            organization, 'lecturer@demo.edu', 'Dr. Ahmed Hassan', UserRole.LECTURER
        )
        admin = SeedService._user(
            organization, 'admin@demo.edu', 'System Administrator', UserRole.ADMIN
        )

        course = Course.query.filter_by(code='CS101', organization_id=organization.id).first()
        if course is None:
            course = Course(
                code='CS101',
                name='Introduction to Computer Science',
                organization_id=organization.id,
                lecturer_id=lecturer.id
            )
            db.session.add(course)
            db.session.flush()

        students = []
        for index in range(1, student_count + 1):
            student = SeedService._user(
                organization,
                f'student{index:02d}@demo.edu',
                f'Student {index:02d}',
                UserRole.STUDENT,
                student_number=f'CS{index:04d}'
            )
            if not course.is_enrolled(student.id):
                db.session.add(Enrollment(course_id=course.id, student_id=student.id))
            students.append(student)

        db.session.commit()

        return {user.email: SeedService.issue_token(user) for user in [lecturer, admin] + students}

    @staticmethod
    def _user(organization, email, name, role, student_number=None) -> User:
        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(
                email=email,
                name=name,
                role=role,
                student_number=student_number,
                organization_id=organization.id
            )
            db.session.add(user)
            db.session.flush()
        return user
