"""Shared fixtures for the QR attendance tests."""
import base64
import threading
from datetime import datetime, timedelta, timezone

import pytest
from flask_jwt_extended import create_access_token

from qr_attendance import create_app, db
from qr_attendance.models import Course, CourseEnrollment
from qr_attendance.services.repository import AttendanceRepository, CourseInfo, EnrollmentRow
from qr_attendance.utils.errors import DuplicateRecord
from qr_attendance.utils.validators import Validator

CLASSROOM = {'lat': 31.5204, 'lng': 74.3587}


def signature_data_url(size: int = 200) -> str:
    """PNG-prefixed data URL with ``size`` bytes of payload."""
    payload = b'\x89PNG\r\n\x1a\n' + b'\x00' * (size - 8)
    return 'data:image/png;base64,' + base64.b64encode(payload).decode('ascii')


def offset_north(lat: float, lng: float, meters: float) -> dict:
    """Point ``meters`` due north of (lat, lng)."""
    return {'lat': lat + meters / 111195.0, 'lng': lng}


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryRepository(AttendanceRepository):
    """Thread-safe repository fake enforcing the storage unique keys."""

    def __init__(self):
        self.courses = {}
        self.enrollments = []
        self.records = []
        self._lock = threading.Lock()
        self.lookup_delay = None

    def add_course(self, course_id='1', institution_id='inst-1', code='CS101', name='Intro to CS',
                   section='A', delivery_mode='in_person', policy=None, is_active=True):
        self.courses[(institution_id, course_id)] = CourseInfo(
            course_id=course_id, institution_id=institution_id, code=code, name=name,
            section=section, delivery_mode=delivery_mode, raw_policy=policy or {},
            is_active=is_active
        )

    def add_enrollment(self, institution_id, course_id, full_name, email, roll_no,
                       section='A', class_roll_no='1'):
        self.enrollments.append((institution_id, course_id, EnrollmentRow(
            university_roll_no=roll_no, email=email, full_name=full_name,
            section=section, class_roll_no=class_roll_no
        )))

    def get_course(self, institution_id, course_id):
        return self.courses.get((institution_id, course_id))

    def find_enrollment(self, institution_id, course_id, identifier):
        for inst, course, row in self.enrollments:
            if (inst, course) == (institution_id, course_id) and (
                    row.email == identifier.lower() or row.university_roll_no == identifier.upper()):
                return row
        return None

    def find_enrollment_by_name(self, institution_id, course_id, name_key):
        for inst, course, row in self.enrollments:
            if (inst, course) == (institution_id, course_id) and \
                    Validator.normalize_name(row.full_name) == name_key:
                return row
        return None

    def _find(self, **match):
        with self._lock:
            for record in self.records:
                if all(record.get(k) == v for k, v in match.items()):
                    return dict(record)
        return None

    def find_attendance(self, institution_id, course_id, identifier, day):
        if self.lookup_delay:
            self.lookup_delay.wait()
        return self._find(institution_id=institution_id, course_id=course_id,
                          student_identifier=identifier, attendance_date=day)

    def find_attendance_by_device(self, institution_id, course_id, device_fingerprint, day):
        return self._find(institution_id=institution_id, course_id=course_id,
                          device_fingerprint=device_fingerprint, attendance_date=day)

    def insert_attendance(self, record):
        with self._lock:
            for existing in self.records:
                same_day = (
                    existing['institution_id'] == record['institution_id'] and
                    existing['course_id'] == record['course_id'] and
                    existing['attendance_date'] == record['attendance_date']
                )
                if not same_day:
                    continue
                if existing['student_identifier'] == record['student_identifier']:
                    raise DuplicateRecord()
                if record['device_lock'] and existing['device_lock'] == record['device_lock']:
                    raise DuplicateRecord()
            self.records.append(dict(record))
        return dict(record)

    def update_course_policy(self, institution_id, course_id, policy, delivery_mode):
        course = self.courses.get((institution_id, course_id))
        if course is None:
            return None
        updated = CourseInfo(
            course_id=course.course_id, institution_id=course.institution_id, code=course.code,
            name=course.name, section=course.section, delivery_mode=delivery_mode,
            raw_policy=dict(policy), is_active=course.is_active
        )
        self.courses[(institution_id, course_id)] = updated
        return updated


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def app(tmp_path):
    """Create test app backed by a temporary SQLite file."""
    app = create_app('testing', config_overrides={
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'attendance.db'}"
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()
    app.extensions['submission_pipeline'].close()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def course(app):
    """Active in-person course with a geofence and one enrolled student."""
    course = Course(
        institution_id='inst-1',
        code='cs101',
        name='Intro to CS',
        section='a',
        delivery_mode='in_person',
        attendance_policy={
            'single_device_per_day': True,
            'require_signature': True,
            'require_enrollment': True,
            'require_geofence': True,
            'geofence': dict(CLASSROOM, radius_meters=100)
        }
    )
    db.session.add(course)
    db.session.flush()
    db.session.add(CourseEnrollment(
        institution_id='inst-1',
        course_id=course.id,
        university_roll_no='2023-cs-001',
        email='Ayesha.Khan@Example.com',
        full_name='Ayesha  Khan',
        section='a',
        class_roll_no='7'
    ))
    db.session.commit()
    return course


def _auth_header(app, role, institution_id='inst-1', identity='staff-1'):
    with app.app_context():
        token = create_access_token(
            identity=identity,
            additional_claims={'role': role, 'institution_id': institution_id}
        )
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def teacher_headers(app):
    return _auth_header(app, 'teacher')


@pytest.fixture
def admin_headers(app):
    return _auth_header(app, 'admin', identity='admin-1')


@pytest.fixture
def student_headers(app):
    return _auth_header(app, 'student', identity='student-1')
