"""Tests for the attendance submission pipeline."""
import threading
from datetime import timedelta

import pytest

from qr_attendance.services.attendance_service import Submission, SubmissionPipeline
from qr_attendance.services.policy_service import PolicyDefaults
from qr_attendance.services.qr_service import RedeemTokenCodec
from qr_attendance.services.session_store import CourseSnapshot, IssuanceContext, SessionStore
from qr_attendance.utils.errors import ErrorCategory, RejectReason, TransientStoreError
from tests.conftest import CLASSROOM, offset_north, signature_data_url

GEOFENCED_POLICY = {
    'single_device_per_day': True,
    'require_signature': True,
    'require_enrollment': True,
    'require_geofence': True,
    'geofence': dict(CLASSROOM, radius_meters=100),
}


@pytest.fixture
def store(clock):
    return SessionStore(ttl_seconds=90, clock=clock)


@pytest.fixture
def codec(clock):
    return RedeemTokenCodec('pipeline-secret', clock=clock)


@pytest.fixture
def pipeline(store, codec, repository, clock):
    repository.add_course(policy=GEOFENCED_POLICY)
    repository.add_enrollment('inst-1', '1', 'Ayesha Khan', 'ayesha@example.com', '2023-CS-001')
    repository.add_enrollment('inst-1', '1', 'Bilal Ahmed', 'bilal@example.com', '2023-CS-002')
    pipeline = SubmissionPipeline(store, codec, repository, PolicyDefaults(),
                                  store_timeout=2, clock=clock)
    yield pipeline
    pipeline.close()


@pytest.fixture
def token(store, codec):
    session = store.create(IssuanceContext(
        issuer_id='staff-1',
        issuer_role='teacher',
        institution_id='inst-1',
        course_id='1',
        course=CourseSnapshot(code='CS101', name='Intro to CS', section='A'),
        origin_ip='10.0.0.1'
    ))
    return codec.encode(session.session_id, session.issued_at)


def make_submission(token, **overrides):
    values = dict(
        session_token=token,
        full_name='Ayesha Khan',
        email='ayesha@example.com',
        device_fingerprint='device-aaa',
        signature_data_url=signature_data_url(),
        location=offset_north(CLASSROOM['lat'], CLASSROOM['lng'], 50),
        client_ip='10.0.0.50',
        user_agent='pytest'
    )
    values.update(overrides)
    return Submission(**values)


def test_submission_within_geofence_is_accepted(pipeline, token, repository, clock):
    result = pipeline.submit(make_submission(token))

    assert result.accepted is True
    record = repository.records[0]
    assert record['student_identifier'] == 'ayesha@example.com'
    assert record['university_roll_no'] == '2023-CS-001'
    assert record['attendance_date'] == clock.now.date()
    assert record['distance_from_class'] == pytest.approx(50, abs=1)
    assert record['device_lock'] == 'device-aaa'
    assert len(record['signature_hash']) == 64
    assert record['policy_snapshot']['require_geofence'] is True


def test_submission_outside_geofence_is_rejected(pipeline, token, repository):
    result = pipeline.submit(make_submission(
        token, location=offset_north(CLASSROOM['lat'], CLASSROOM['lng'], 150)
    ))

    assert result.accepted is False
    assert result.reason is RejectReason.OUT_OF_RANGE
    assert result.reason.category is ErrorCategory.POLICY_DENIED
    assert result.extra['distance_meters'] == pytest.approx(150, abs=1)
    assert 'within 100 meters' in result.detail
    assert repository.records == []


def test_missing_location_is_rejected_when_geofence_required(pipeline, token):
    result = pipeline.submit(make_submission(token, location=None))
    assert result.reason is RejectReason.LOCATION_REQUIRED


@pytest.mark.parametrize('field', ['full_name', 'email', 'device_fingerprint', 'session_token'])
def test_missing_required_field_is_invalid_input(pipeline, token, field):
    result = pipeline.submit(make_submission(token, **{field: ''}))
    assert result.reason is RejectReason.INVALID_INPUT


def test_malformed_email_is_invalid_input(pipeline, token):
    result = pipeline.submit(make_submission(token, email='not-an-email'))
    assert result.reason is RejectReason.INVALID_INPUT


def test_unknown_token_is_invalid_session(pipeline):
    result = pipeline.submit(make_submission('bogus.123.' + '0' * 64))
    assert result.reason is RejectReason.INVALID_SESSION
    assert result.reason.category is ErrorCategory.SESSION_INVALID


def test_expired_session_is_invalid_session(pipeline, token, clock):
    clock.advance(seconds=91)
    result = pipeline.submit(make_submission(token))
    assert result.reason is RejectReason.INVALID_SESSION


def test_inactive_course_is_unavailable(pipeline, token, repository):
    repository.add_course(policy=GEOFENCED_POLICY, is_active=False)
    result = pipeline.submit(make_submission(token))
    assert result.reason is RejectReason.COURSE_UNAVAILABLE


def test_signature_required(pipeline, token):
    result = pipeline.submit(make_submission(token, signature_data_url=''))
    assert result.reason is RejectReason.SIGNATURE_REQUIRED


@pytest.mark.parametrize('signature', [
    'data:image/jpeg;base64,AAAA',
    'data:image/png;base64,@@@@',
    signature_data_url(size=20),
])
def test_bad_signature_is_rejected(pipeline, token, signature):
    result = pipeline.submit(make_submission(token, signature_data_url=signature))
    assert result.reason is RejectReason.INVALID_SIGNATURE


def test_unenrolled_student_is_rejected(pipeline, token):
    result = pipeline.submit(make_submission(token, full_name='Zara Malik', email='zara@example.com'))
    assert result.reason is RejectReason.NOT_ENROLLED
    assert result.reason.category is ErrorCategory.UNENROLLED


def test_roster_email_with_wrong_name_is_rejected(pipeline, token):
    result = pipeline.submit(make_submission(token, full_name='Bilal Ahmed'))
    assert result.reason is RejectReason.NOT_ENROLLED


def test_second_submission_same_day_is_already_marked(pipeline, token):
    assert pipeline.submit(make_submission(token)).accepted

    result = pipeline.submit(make_submission(token, device_fingerprint='device-bbb'))

    assert result.reason is RejectReason.ALREADY_MARKED
    assert result.extra['already_recorded'] is True


def test_same_device_for_another_student_is_rejected(pipeline, token):
    assert pipeline.submit(make_submission(token)).accepted

    result = pipeline.submit(make_submission(token, full_name='Bilal Ahmed', email='bilal@example.com'))

    assert result.reason is RejectReason.DEVICE_ALREADY_USED
    assert result.reason.category is ErrorCategory.DUPLICATE


def test_shared_device_allowed_without_single_device_rule(pipeline, token, repository):
    repository.add_course(policy=dict(GEOFENCED_POLICY, single_device_per_day=False))

    assert pipeline.submit(make_submission(token)).accepted
    result = pipeline.submit(make_submission(token, full_name='Bilal Ahmed', email='bilal@example.com'))

    assert result.accepted is True
    assert repository.records[1]['device_lock'] is None


def test_next_day_is_a_new_attendance_day(pipeline, store, codec, repository, clock):
    session = store.create(IssuanceContext('staff-1', 'teacher', 'inst-1', '1'))
    assert pipeline.submit(make_submission(codec.encode(session.session_id, session.issued_at))).accepted

    clock.advance(days=1)
    session = store.create(IssuanceContext('staff-1', 'teacher', 'inst-1', '1'))
    result = pipeline.submit(make_submission(codec.encode(session.session_id, session.issued_at)))

    assert result.accepted is True
    assert len(repository.records) == 2


def test_ip_allowlist_enforced(pipeline, token, repository):
    repository.add_course(policy={
        'require_signature': False,
        'require_ip_allowlist': True,
        'ip_allowlist': ['10.20.0.0/16'],
    })

    denied = pipeline.submit(make_submission(token, client_ip='10.0.0.50'))
    allowed = pipeline.submit(make_submission(token, client_ip='10.20.3.4'))

    assert denied.reason is RejectReason.NETWORK_NOT_ALLOWED
    assert allowed.accepted is True


def test_allowlist_without_usable_entries_is_misconfigured(pipeline, token, repository):
    repository.add_course(policy={'require_ip_allowlist': True, 'ip_allowlist': ['campus-wifi']})

    result = pipeline.submit(make_submission(token))

    assert result.reason is RejectReason.POLICY_MISCONFIGURED
    assert result.reason.category is ErrorCategory.POLICY_MISCONFIGURED


def test_broken_geofence_is_coerced_off(pipeline, token, repository):
    repository.add_course(policy={'require_geofence': True, 'geofence': {'lat': 'north'}})

    result = pipeline.submit(make_submission(token, location=None))

    assert result.accepted is True


def test_concurrent_identical_submissions_record_once(pipeline, token, repository):
    results = []
    barrier = threading.Barrier(2)

    def submit():
        barrier.wait()
        results.append(pipeline.submit(make_submission(token)))

    threads = [threading.Thread(target=submit) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    accepted = [r for r in results if r.accepted]
    rejected = [r for r in results if not r.accepted]
    assert len(accepted) == 1
    assert len(rejected) == 1
    assert rejected[0].reason.category is ErrorCategory.DUPLICATE
    assert len(repository.records) == 1


def test_slow_store_raises_transient_error(pipeline, token, repository):
    repository.lookup_delay = threading.Event()
    pipeline.store_timeout = 0.05
    try:
        with pytest.raises(TransientStoreError):
            pipeline.submit(make_submission(token))
    finally:
        repository.lookup_delay.set()
    assert repository.records == []


def test_from_payload_trims_fields():
    submission = Submission.from_payload({
        'token': ' abc ',
        'full_name': ' Ayesha Khan ',
        'email': 'ayesha@example.com ',
        'device_fingerprint': 'dev',
        'location': {'lat': 1, 'lng': 2},
    }, client_ip='10.0.0.1', user_agent='ua')

    assert submission.session_token == 'abc'
    assert submission.full_name == 'Ayesha Khan'
    assert submission.signature_data_url == ''
    assert submission.location == {'lat': 1, 'lng': 2}
    assert submission.client_ip == '10.0.0.1'


def test_allowlist_with_non_ascii_prefix_is_misconfigured(pipeline, token, repository):
    repository.add_course(policy={'require_ip_allowlist': True, 'ip_allowlist': ['10.0.0.0/²']})

    result = pipeline.submit(make_submission(token, client_ip='10.0.0.5'))

    assert result.reason is RejectReason.POLICY_MISCONFIGURED


def test_token_with_non_ascii_timestamp_is_invalid_session(pipeline):
    result = pipeline.submit(make_submission('abcdefghijklmnopqrstuvwxyz.².' + '0' * 64))
    assert result.reason is RejectReason.INVALID_SESSION
