"""Course roster entries."""
from qr_attendance import db
from qr_attendance.models.base import BaseModel
from qr_attendance.utils.validators import Validator


class CourseEnrollment(BaseModel):
    """One student on a course roster."""

    __tablename__ = 'course_enrollments'
    __table_args__ = (
        db.UniqueConstraint('institution_id', 'course_id', 'university_roll_no',
                            name='uq_enrollment_roll_no'),
        db.UniqueConstraint('institution_id', 'course_id', 'email',
                            name='uq_enrollment_email'),
        db.Index('ix_enrollment_name_key', 'institution_id', 'course_id', 'name_key'),
    )

    institution_id = db.Column(db.String(64), nullable=False, index=True)
    course_id = db.Column(db.Integer, db.ForeignKey('courses.id'), nullable=False, index=True)
    university_roll_no = db.Column(db.String(64), nullable=False)
    email = db.Column(db.String(254), nullable=True)
    full_name = db.Column(db.String(200), nullable=False)
    # Normalized full name, used for the name fallback lookup
    name_key = db.Column(db.String(200), nullable=False)
    section = db.Column(db.String(32), nullable=False, default='')
    class_roll_no = db.Column(db.String(32), nullable=False, default='')
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    course = db.relationship('Course', backref=db.backref('enrollments', lazy='dynamic'))

    @db.validates('full_name')
    def _set_name_key(self, key, value):
        value = str(value or '').strip()
        self.name_key = Validator.normalize_name(value)
        return value

    @db.validates('email')
    def _normalize_email(self, key, value):
        return Validator.normalize_email(value) or None

    @db.validates('university_roll_no', 'section', 'class_roll_no')
    def _upper(self, key, value):
        return str(value or '').strip().upper()

    def __repr__(self):
        return f'<CourseEnrollment {self.university_roll_no}>'
