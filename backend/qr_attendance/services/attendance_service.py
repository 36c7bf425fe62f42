"""Attendance submission pipeline.

A submission moves through a fixed sequence of checks and stops at the first
failure::

    structure -> session -> course -> policy -> network -> geofence
      -> signature -> identity -> duplicates -> commit

Everything before the commit is a read, so an abandoned or retried
submission never leaves a trace. The commit relies on the storage unique
constraints; the duplicate lookups before it only produce friendlier
rejections.
"""
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from qr_attendance.services.gps_service import GPSService
from qr_attendance.services.identity_service import CanonicalIdentity, IdentityResolver
from qr_attendance.services.network_service import NetworkService
from qr_attendance.services.policy_service import EffectivePolicy, PolicyDefaults, resolve_policy
from qr_attendance.services.qr_service import RedeemTokenCodec
from qr_attendance.services.repository import AttendanceRepository, CourseInfo
from qr_attendance.services.session_service import find_redeemable_session
from qr_attendance.services.session_store import Session, SessionStore, utc_now
from qr_attendance.utils.errors import (
    DuplicateRecord, RejectReason, SubmissionRejected, TransientStoreError
)
from qr_attendance.utils.validators import SIGNATURE_PREFIX, Validator

logger = logging.getLogger(__name__)

MAX_FINGERPRINT_LENGTH = 256
MAX_USER_AGENT_LENGTH = 512


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ''


@dataclass(frozen=True)
class Submission:
    """One redemption attempt, alive for a single request."""
    session_token: str
    full_name: str
    email: str
    device_fingerprint: str
    signature_data_url: str = ''
    location: Optional[Mapping] = None
    client_ip: str = ''
    user_agent: str = ''

    @classmethod
    def from_payload(cls, data: Mapping, client_ip: str = '', user_agent: str = '') -> 'Submission':
        data = data or {}
        return cls(
            session_token=_text(data.get('token')),
            full_name=_text(data.get('full_name')),
            email=_text(data.get('email')),
            device_fingerprint=_text(data.get('device_fingerprint')),
            signature_data_url=_text(data.get('signature_data_url')),
            location=data.get('location'),
            client_ip=client_ip or '',
            user_agent=user_agent or ''
        )


@dataclass(frozen=True)
class SubmissionResult:
    accepted: bool
    record: Optional[Dict] = None
    reason: Optional[RejectReason] = None
    detail: str = ''
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def accept(cls, record: Dict) -> 'SubmissionResult':
        return cls(accepted=True, record=record, detail='Attendance marked successfully')

    @classmethod
    def reject(cls, error: SubmissionRejected) -> 'SubmissionResult':
        return cls(accepted=False, reason=error.reason, detail=error.detail, extra=dict(error.extra))


@dataclass(frozen=True)
class SignatureLimits:
    max_length: int = 700000
    min_bytes: int = 120
    max_bytes: int = 500000

    @classmethod
    def from_config(cls, config: Mapping) -> 'SignatureLimits':
        return cls(
            max_length=config.get('SIGNATURE_MAX_DATA_URL_LENGTH', 700000),
            min_bytes=config.get('SIGNATURE_MIN_BYTES', 120),
            max_bytes=config.get('SIGNATURE_MAX_BYTES', 500000),
        )


class SubmissionPipeline:
    """Validates a submission against its session's course policy and records it."""

    def __init__(self, session_store: SessionStore, token_codec: RedeemTokenCodec,
                 repository: AttendanceRepository,
                 policy_defaults: PolicyDefaults = None,
                 signature_limits: SignatureLimits = None,
                 store_timeout: float = 5.0,
                 lookup_workers: int = 8,
                 clock: Optional[Callable[[], datetime]] = None):
        self.session_store = session_store
        self.token_codec = token_codec
        self.repository = repository
        self.identity_resolver = IdentityResolver(repository)
        self.policy_defaults = policy_defaults or PolicyDefaults()
        self.signature_limits = signature_limits or SignatureLimits()
        self.store_timeout = store_timeout
        self.clock = clock or utc_now
        self._executor = ThreadPoolExecutor(
            max_workers=lookup_workers, thread_name_prefix='attendance-lookup'
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def submit(self, submission: Submission) -> SubmissionResult:
        """Run the pipeline.

        Rejections come back as a result; :class:`TransientStoreError`
        propagates so the caller can retry with backoff.
        """
        try:
            record = self._run(submission)
        except SubmissionRejected as exc:
            logger.warning('Attendance rejected (%s): %s', exc.reason.value, exc.detail)
            return SubmissionResult.reject(exc)

        logger.info('Attendance marked for %s course=%s on %s',
                    record.get('student_identifier'), record.get('course_code'),
                    record.get('attendance_date'))
        return SubmissionResult.accept(record)

    def _run(self, submission: Submission) -> Dict:
        self._check_structure(submission)
        session = self._resolve_session(submission.session_token)
        course = self._resolve_course(session)
        policy = resolve_policy(course.raw_policy, course.delivery_mode,
                                defaults=self.policy_defaults)
        self._check_network(policy, submission.client_ip)
        location, distance = self._check_geofence(policy, submission.location)
        signature_hash = self._check_signature(policy, submission.signature_data_url)
        identity = self.identity_resolver.resolve(
            session.institution_id,
            session.course_id,
            submission.full_name,
            submission.email,
            policy.require_enrollment,
            default_section=course.section or session.course.section
        )

        now = self.clock()
        today = now.date()
        self._check_duplicates(session, policy, identity, submission.device_fingerprint, today)

        record = {
            'institution_id': session.institution_id,
            'course_id': course.course_id,
            'course_code': course.code or session.course.code,
            'course_name': course.name or session.course.name,
            'student_identifier': identity.identifier,
            'student_name': identity.name,
            'university_roll_no': identity.university_roll_no,
            'section': identity.section,
            'class_roll_no': identity.class_roll_no,
            'attendance_date': today,
            'check_in_time': now,
            'status': 'present',
            'session_id': session.session_id,
            'issuer_id': session.issuer_id or None,
            'issuer_role': session.issuer_role or None,
            'device_fingerprint': submission.device_fingerprint,
            'device_lock': submission.device_fingerprint if policy.single_device_per_day else None,
            'latitude': location[0] if location else None,
            'longitude': location[1] if location else None,
            'distance_from_class': distance,
            'signature_hash': signature_hash,
            'ip_address': submission.client_ip or None,
            'user_agent': submission.user_agent[:MAX_USER_AGENT_LENGTH] or None,
            'delivery_mode': policy.delivery_mode,
            'policy_snapshot': policy.to_snapshot(),
        }
        return self._commit(record, session, identity, submission.device_fingerprint, today)

    def _check_structure(self, submission: Submission) -> None:
        missing = [
            name for name, value in (
                ('token', submission.session_token),
                ('full_name', submission.full_name),
                ('email', submission.email),
                ('device_fingerprint', submission.device_fingerprint),
            ) if not value
        ]
        if missing:
            raise SubmissionRejected(
                RejectReason.INVALID_INPUT,
                f"Missing required fields: {', '.join(missing)}"
            )

        if not Validator.validate_email(Validator.normalize_email(submission.email)):
            raise SubmissionRejected(RejectReason.INVALID_INPUT, "Valid email is required")

        name_check = Validator.validate_name(submission.full_name)
        if not name_check['is_valid']:
            raise SubmissionRejected(RejectReason.INVALID_INPUT, name_check['errors'][0])

        if len(submission.device_fingerprint) > MAX_FINGERPRINT_LENGTH:
            raise SubmissionRejected(RejectReason.INVALID_INPUT, "Device fingerprint is too long")

    def _resolve_session(self, token: str) -> Session:
        session = find_redeemable_session(self.session_store, self.token_codec, token)
        if session is None:
            raise SubmissionRejected(
                RejectReason.INVALID_SESSION,
                "Invalid or expired session. Please scan a fresh QR."
            )
        return session

    def _resolve_course(self, session: Session) -> CourseInfo:
        course = self.repository.get_course(session.institution_id, session.course_id)
        if course is None or not course.is_active:
            raise SubmissionRejected(RejectReason.COURSE_UNAVAILABLE, "Course not found or inactive")
        return course

    def _check_network(self, policy: EffectivePolicy, client_ip: str) -> None:
        if not policy.require_ip_allowlist:
            return
        allowlist = NetworkService.usable_entries(policy.ip_allowlist)
        if not allowlist:
            raise SubmissionRejected(
                RejectReason.POLICY_MISCONFIGURED,
                "Course policy requires IP allowlist but no usable ranges are configured"
            )
        if not NetworkService.is_ip_allowed(client_ip, allowlist):
            raise SubmissionRejected(
                RejectReason.NETWORK_NOT_ALLOWED,
                "Attendance is only allowed from approved campus network ranges"
            )

    def _check_geofence(self, policy: EffectivePolicy,
                        raw_location: Any) -> Tuple[Optional[Tuple[float, float]], Optional[float]]:
        location = GPSService.parse_location(raw_location)
        if not policy.require_geofence:
            return location, None

        if location is None:
            raise SubmissionRejected(
                RejectReason.LOCATION_REQUIRED,
                "This course requires geolocation. Enable location and try again."
            )

        result = GPSService.verify_location(location[0], location[1], policy.geofence)
        if not result['is_inside']:
            raise SubmissionRejected(
                RejectReason.OUT_OF_RANGE,
                f"You must be within {result['radius']:.0f} meters of the class location. "
                f"Current distance: {result['distance']:.0f}m",
                distance_meters=round(result['distance'], 1),
                radius_meters=result['radius']
            )
        return location, result['distance']

    def _check_signature(self, policy: EffectivePolicy, signature: str) -> Optional[str]:
        if not signature:
            if policy.require_signature:
                raise SubmissionRejected(RejectReason.SIGNATURE_REQUIRED, "Signature is required")
            return None

        # A signature sent to a course that does not require one is still checked
        error = Validator.validate_signature_data_url(
            signature,
            max_length=self.signature_limits.max_length,
            min_bytes=self.signature_limits.min_bytes,
            max_bytes=self.signature_limits.max_bytes
        )
        if error:
            raise SubmissionRejected(RejectReason.INVALID_SIGNATURE, error)

        payload = signature[len(SIGNATURE_PREFIX):]
        return hashlib.sha256(payload.encode('ascii')).hexdigest()

    def _check_duplicates(self, session: Session, policy: EffectivePolicy,
                          identity: CanonicalIdentity, device_fingerprint: str,
                          today: date) -> None:
        lookups = {
            'student': self._executor.submit(
                self.repository.find_attendance,
                session.institution_id, session.course_id, identity.identifier, today
            )
        }
        if policy.single_device_per_day:
            lookups['device'] = self._executor.submit(
                self.repository.find_attendance_by_device,
                session.institution_id, session.course_id, device_fingerprint, today
            )

        _, pending = wait(lookups.values(), timeout=self.store_timeout)
        if pending:
            for future in pending:
                future.cancel()
            logger.error('Attendance duplicate lookup timed out after %ss', self.store_timeout)
            raise TransientStoreError('Attendance store lookup timed out')

        if lookups['student'].result():
            raise self._already_marked()
        if 'device' in lookups and lookups['device'].result():
            raise self._device_used()

    def _commit(self, record: Dict, session: Session, identity: CanonicalIdentity,
                device_fingerprint: str, today: date) -> Dict:
        try:
            return self.repository.insert_attendance(record)
        except DuplicateRecord:
            # Lost a race with a concurrent submission for the same key
            existing = self.repository.find_attendance(
                session.institution_id, session.course_id, identity.identifier, today
            )
            if existing:
                raise self._already_marked()
            raise self._device_used()

    @staticmethod
    def _already_marked() -> SubmissionRejected:
        return SubmissionRejected(
            RejectReason.ALREADY_MARKED,
            "You've already marked attendance for this course today",
            already_recorded=True
        )

    @staticmethod
    def _device_used() -> SubmissionRejected:
        return SubmissionRejected(
            RejectReason.DEVICE_ALREADY_USED,
            "This device has already been used for this course today",
            already_recorded=True
        )
