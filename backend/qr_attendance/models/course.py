"""Course model with its attendance policy."""
from qr_attendance import db
from qr_attendance.models.base import BaseModel


class Course(BaseModel):
    """Course instance that attendance sessions are issued for.

    ``attendance_policy`` holds the raw policy JSON; it is only ever read
    through the policy resolver.
    """

    __tablename__ = 'courses'
    __table_args__ = (
        db.UniqueConstraint('institution_id', 'code', 'section', name='uq_course_code_section'),
    )

    institution_id = db.Column(db.String(64), nullable=False, index=True)
    code = db.Column(db.String(32), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    section = db.Column(db.String(32), nullable=False, default='')
    delivery_mode = db.Column(db.String(20), nullable=False, default='in_person')
    attendance_policy = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    @db.validates('code', 'section')
    def _upper(self, key, value):
        return str(value or '').strip().upper()

    def __repr__(self):
        return f'<Course {self.code}-{self.section}>'
