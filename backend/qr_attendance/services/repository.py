"""Data access for courses, rosters and attendance records."""
import logging
import re
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from qr_attendance import db
from qr_attendance.models import AttendanceRecord, Course, CourseEnrollment
from qr_attendance.services.session_store import CourseSnapshot
from qr_attendance.utils.errors import DuplicateRecord, TransientStoreError

logger = logging.getLogger(__name__)

_COURSE_PK_PATTERN = re.compile(r'[0-9]{1,18}')


@dataclass(frozen=True)
class CourseInfo:
    course_id: str
    institution_id: str
    code: str
    name: str
    section: str
    delivery_mode: str
    raw_policy: Dict[str, Any] = field(default_factory=dict)
    is_active: bool = True

    def snapshot(self) -> CourseSnapshot:
        return CourseSnapshot(code=self.code, name=self.name, section=self.section)


@dataclass(frozen=True)
class EnrollmentRow:
    university_roll_no: str
    email: Optional[str]
    full_name: str
    section: str = ''
    class_roll_no: str = ''


class AttendanceRepository(ABC):
    """Storage contract the session and submission services depend on.

    ``insert_attendance`` must enforce one record per (institution, course,
    student, day) and, for single-device courses, per (institution, course,
    device, day), raising :class:`DuplicateRecord` on a violation.
    Unavailability is reported as :class:`TransientStoreError`.
    """

    @abstractmethod
    def get_course(self, institution_id: str, course_id: str) -> Optional[CourseInfo]:
        ...

    @abstractmethod
    def find_enrollment(self, institution_id: str, course_id: str,
                        identifier: str) -> Optional[EnrollmentRow]:
        ...

    @abstractmethod
    def find_enrollment_by_name(self, institution_id: str, course_id: str,
                                name_key: str) -> Optional[EnrollmentRow]:
        ...

    @abstractmethod
    def find_attendance(self, institution_id: str, course_id: str,
                        identifier: str, day: date) -> Optional[Dict]:
        ...

    @abstractmethod
    def find_attendance_by_device(self, institution_id: str, course_id: str,
                                  device_fingerprint: str, day: date) -> Optional[Dict]:
        ...

    @abstractmethod
    def insert_attendance(self, record: Dict[str, Any]) -> Dict:
        ...

    @abstractmethod
    def update_course_policy(self, institution_id: str, course_id: str,
                             policy: Dict[str, Any], delivery_mode: str) -> Optional[CourseInfo]:
        ...


def _course_pk(course_id) -> Optional[int]:
    text = str(course_id or '').strip()
    return int(text) if _COURSE_PK_PATTERN.fullmatch(text) else None


def _course_info(course: Course) -> CourseInfo:
    return CourseInfo(
        course_id=str(course.id),
        institution_id=course.institution_id,
        code=course.code,
        name=course.name,
        section=course.section or '',
        delivery_mode=course.delivery_mode,
        raw_policy=dict(course.attendance_policy or {}),
        is_active=bool(course.is_active)
    )


def _enrollment_row(enrollment: Optional[CourseEnrollment]) -> Optional[EnrollmentRow]:
    if enrollment is None:
        return None
    return EnrollmentRow(
        university_roll_no=enrollment.university_roll_no,
        email=enrollment.email,
        full_name=enrollment.full_name,
        section=enrollment.section or '',
        class_roll_no=enrollment.class_roll_no or ''
    )


class SqlAttendanceRepository(AttendanceRepository):
    """Flask-SQLAlchemy implementation.

    Each call runs in its own application context, and therefore its own
    database session, so calls are safe from worker threads.
    """

    def __init__(self, app=None):
        self._app = app

    def init_app(self, app) -> None:
        self._app = app

    @contextmanager
    def _unit_of_work(self):
        with self._app.app_context():
            try:
                yield db.session
            except (OperationalError, PoolTimeoutError) as exc:
                db.session.rollback()
                logger.error('Attendance store unavailable: %s', exc)
                raise TransientStoreError() from exc

    def get_course(self, institution_id, course_id):
        pk = _course_pk(course_id)
        if pk is None:
            return None
        with self._unit_of_work() as session:
            course = session.get(Course, pk)
            if course is None or course.institution_id != str(institution_id):
                return None
            return _course_info(course)

    def find_enrollment(self, institution_id, course_id, identifier):
        pk = _course_pk(course_id)
        if pk is None or not identifier:
            return None
        with self._unit_of_work():
            enrollment = CourseEnrollment.query.filter(
                CourseEnrollment.institution_id == str(institution_id),
                CourseEnrollment.course_id == pk,
                CourseEnrollment.is_active.is_(True),
                or_(
                    CourseEnrollment.email == identifier.lower(),
                    CourseEnrollment.university_roll_no == identifier.upper()
                )
            ).order_by(CourseEnrollment.id).first()
            return _enrollment_row(enrollment)

    def find_enrollment_by_name(self, institution_id, course_id, name_key):
        pk = _course_pk(course_id)
        if pk is None or not name_key:
            return None
        with self._unit_of_work():
            enrollment = CourseEnrollment.query.filter_by(
                institution_id=str(institution_id),
                course_id=pk,
                name_key=name_key,
                is_active=True
            ).order_by(CourseEnrollment.id).first()
            return _enrollment_row(enrollment)

    def find_attendance(self, institution_id, course_id, identifier, day):
        pk = _course_pk(course_id)
        if pk is None:
            return None
        with self._unit_of_work():
            record = AttendanceRecord.query.filter_by(
                institution_id=str(institution_id),
                course_id=pk,
                student_identifier=identifier,
                attendance_date=day
            ).first()
            return record.to_dict() if record else None

    def find_attendance_by_device(self, institution_id, course_id, device_fingerprint, day):
        pk = _course_pk(course_id)
        if pk is None:
            return None
        with self._unit_of_work():
            record = AttendanceRecord.query.filter_by(
                institution_id=str(institution_id),
                course_id=pk,
                device_fingerprint=device_fingerprint,
                attendance_date=day
            ).first()
            return record.to_dict() if record else None

    def insert_attendance(self, record):
        values = dict(record)
        values['course_id'] = _course_pk(values.get('course_id'))
        with self._unit_of_work() as session:
            row = AttendanceRecord(**values)
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise DuplicateRecord() from exc
            return row.to_dict()

    def update_course_policy(self, institution_id, course_id, policy, delivery_mode):
        pk = _course_pk(course_id)
        if pk is None:
            return None
        with self._unit_of_work() as session:
            course = session.get(Course, pk)
            if course is None or course.institution_id != str(institution_id):
                return None
            course.attendance_policy = policy
            course.delivery_mode = delivery_mode
            session.commit()
            return _course_info(course)
