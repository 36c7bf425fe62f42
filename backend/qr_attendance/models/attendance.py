"""Attendance model with verification details."""
from datetime import datetime, timezone

from qr_attendance import db
from qr_attendance.models.base import BaseModel


class AttendanceRecord(BaseModel):
    """Durable outcome of one accepted submission.

    The two unique constraints are the authoritative duplicate guard.
    ``device_lock`` mirrors ``device_fingerprint`` only when the course
    enforced one device per day; NULLs never collide, so records marked
    without that rule do not take part in the device constraint.
    """

    __tablename__ = 'attendance_records'
    __table_args__ = (
        db.UniqueConstraint('institution_id', 'course_id', 'student_identifier', 'attendance_date',
                            name='uq_attendance_student_day'),
        db.UniqueConstraint('institution_id', 'course_id', 'device_lock', 'attendance_date',
                            name='uq_attendance_device_day'),
        db.Index('ix_attendance_device_day', 'institution_id', 'course_id',
                 'device_fingerprint', 'attendance_date'),
    )

    institution_id = db.Column(db.String(64), nullable=False, index=True)
    course_id = db.Column(db.Integer, db.ForeignKey('courses.id'), nullable=False)
    course_code = db.Column(db.String(32), nullable=True)
    course_name = db.Column(db.String(200), nullable=True)

    # Canonical identity
    student_identifier = db.Column(db.String(254), nullable=False)
    student_name = db.Column(db.String(200), nullable=False)
    university_roll_no = db.Column(db.String(64), nullable=True)
    section = db.Column(db.String(32), nullable=False, default='N/A')
    class_roll_no = db.Column(db.String(32), nullable=False, default='N/A')

    attendance_date = db.Column(db.Date, nullable=False)
    check_in_time = db.Column(db.DateTime(timezone=True), nullable=False,
                              default=lambda: datetime.now(timezone.utc))
    status = db.Column(db.String(20), nullable=False, default='present')

    # Session provenance
    session_id = db.Column(db.String(64), nullable=False)
    issuer_id = db.Column(db.String(64), nullable=True)
    issuer_role = db.Column(db.String(20), nullable=True)

    # Verification details
    device_fingerprint = db.Column(db.String(256), nullable=False)
    device_lock = db.Column(db.String(256), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)
    distance_from_class = db.Column(db.Float, nullable=True)
    signature_hash = db.Column(db.String(64), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(512), nullable=True)
    delivery_mode = db.Column(db.String(20), nullable=False, default='in_person')
    policy_snapshot = db.Column(db.JSON, nullable=True)

    def to_dict(self, exclude: list = None):
        return super().to_dict(exclude=exclude or ['device_lock'])

    def __repr__(self):
        return f'<AttendanceRecord {self.student_identifier}-{self.course_id}-{self.attendance_date}>'
