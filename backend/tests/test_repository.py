"""Tests for the SQL attendance repository."""
from datetime import date, datetime, timezone

import pytest

from qr_attendance.utils.errors import DuplicateRecord

DAY = date(2024, 3, 4)


@pytest.fixture
def repo(app):
    return app.extensions['attendance_repository']


def make_record(course, identifier='ayesha.khan@example.com', device='device-aaa', lock=True):
    return {
        'institution_id': 'inst-1',
        'course_id': str(course.id),
        'course_code': 'CS101',
        'course_name': 'Intro to CS',
        'student_identifier': identifier,
        'student_name': 'Ayesha Khan',
        'university_roll_no': '2023-CS-001',
        'section': 'A',
        'class_roll_no': '7',
        'attendance_date': DAY,
        'check_in_time': datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc),
        'session_id': 'session-1',
        'device_fingerprint': device,
        'device_lock': device if lock else None,
        'delivery_mode': 'in_person',
        'policy_snapshot': {'single_device_per_day': lock},
    }


def test_get_course_is_scoped_to_institution(repo, course):
    info = repo.get_course('inst-1', str(course.id))

    assert info.code == 'CS101'
    assert info.raw_policy['require_geofence'] is True
    assert repo.get_course('inst-2', str(course.id)) is None
    assert repo.get_course('inst-1', 'abc') is None


def test_find_enrollment_by_email_roll_number_and_name(repo, course):
    by_email = repo.find_enrollment('inst-1', str(course.id), 'ayesha.khan@example.com')
    by_roll = repo.find_enrollment('inst-1', str(course.id), '2023-cs-001')
    by_name = repo.find_enrollment_by_name('inst-1', str(course.id), 'ayesha khan')

    assert by_email.university_roll_no == '2023-CS-001'
    assert by_roll.email == 'ayesha.khan@example.com'
    assert by_name.class_roll_no == '7'
    assert repo.find_enrollment('inst-1', str(course.id), 'nobody@example.com') is None


def test_insert_and_find_attendance(repo, course):
    stored = repo.insert_attendance(make_record(course))

    assert stored['attendance_date'] == DAY.isoformat()
    assert repo.find_attendance('inst-1', str(course.id), 'ayesha.khan@example.com', DAY)
    assert repo.find_attendance_by_device('inst-1', str(course.id), 'device-aaa', DAY)
    assert repo.find_attendance('inst-1', str(course.id), 'ayesha.khan@example.com',
                                date(2024, 3, 5)) is None


def test_second_record_for_student_and_day_is_duplicate(repo, course):
    repo.insert_attendance(make_record(course))

    with pytest.raises(DuplicateRecord):
        repo.insert_attendance(make_record(course, device='device-bbb'))


def test_locked_device_cannot_be_reused_the_same_day(repo, course):
    repo.insert_attendance(make_record(course))

    with pytest.raises(DuplicateRecord):
        repo.insert_attendance(make_record(course, identifier='bilal@example.com'))


def test_unlocked_records_may_share_a_device(repo, course):
    repo.insert_attendance(make_record(course, lock=False))
    repo.insert_attendance(make_record(course, identifier='bilal@example.com', lock=False))

    assert repo.find_attendance('inst-1', str(course.id), 'bilal@example.com', DAY)


def test_update_course_policy(repo, course):
    updated = repo.update_course_policy('inst-1', str(course.id), {'require_signature': False}, 'online')

    assert updated.delivery_mode == 'online'
    assert repo.get_course('inst-1', str(course.id)).raw_policy == {'require_signature': False}
    assert repo.update_course_policy('inst-2', str(course.id), {}, 'online') is None


def test_failed_commit_surfaces_as_transient_error(repo, course, monkeypatch):
    from sqlalchemy.exc import OperationalError
    from sqlalchemy.orm import Session

    from qr_attendance.utils.errors import TransientStoreError

    def timed_out(self):
        raise OperationalError('INSERT INTO attendance_records', {}, Exception('statement timeout'))

    monkeypatch.setattr(Session, 'commit', timed_out)

    with pytest.raises(TransientStoreError):
        repo.insert_attendance(make_record(course))

    monkeypatch.undo()
    assert repo.find_attendance('inst-1', str(course.id), 'ayesha.khan@example.com', DAY) is None
