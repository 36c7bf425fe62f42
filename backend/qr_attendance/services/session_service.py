"""Session issuance, validation and course policy updates."""
import logging
from typing import Any, Dict, Optional

from qr_attendance.services.policy_service import PolicyDefaults, resolve_policy
from qr_attendance.services.qr_service import QRService, RedeemTokenCodec
from qr_attendance.services.rate_limiter import RateLimiter
from qr_attendance.services.repository import AttendanceRepository
from qr_attendance.services.session_store import IssuanceContext, Session, SessionStore
from qr_attendance.utils.errors import CourseUnavailableError, RateLimitExceeded

logger = logging.getLogger(__name__)


def find_redeemable_session(store: SessionStore, codec: RedeemTokenCodec,
                            token: str) -> Optional[Session]:
    """Session behind ``token`` if the token verifies and the session is live."""
    decoded = codec.decode(token)
    if decoded is None:
        return None
    session = store.lookup(decoded.session_id)
    if session is None:
        return None
    if codec.to_millis(session.issued_at) != decoded.issued_at_ms:
        return None
    if not session.institution_id or not session.course_id:
        return None
    return session


class SessionService:
    """Issuer-facing and participant-facing session operations."""

    def __init__(self, session_store: SessionStore, token_codec: RedeemTokenCodec,
                 rate_limiter: RateLimiter, repository: AttendanceRepository,
                 base_url: str, policy_defaults: PolicyDefaults = None):
        self.session_store = session_store
        self.token_codec = token_codec
        self.rate_limiter = rate_limiter
        self.repository = repository
        self.base_url = base_url
        self.policy_defaults = policy_defaults or PolicyDefaults()

    def issue(self, issuer_id: str, issuer_role: str, institution_id: str,
              course_id: str, origin_ip: str) -> Dict[str, Any]:
        """Create a session for a course and the artifacts to distribute it."""
        decision = self.rate_limiter.admit(origin_ip)
        if not decision.allowed:
            raise RateLimitExceeded(decision.retry_after)

        course = self.repository.get_course(institution_id, course_id)
        if course is None or not course.is_active:
            raise CourseUnavailableError("Course not found")

        session = self.session_store.create(IssuanceContext(
            issuer_id=str(issuer_id),
            issuer_role=issuer_role or '',
            institution_id=str(institution_id),
            course_id=course.course_id,
            course=course.snapshot(),
            origin_ip=origin_ip or ''
        ))
        token = self.token_codec.encode(session.session_id, session.issued_at)
        redeem_url = QRService.build_redeem_url(self.base_url, token)

        logger.info('Generated QR session for IP %s course=%s-%s',
                    origin_ip, course.code, course.section)

        return {
            'session_id': session.session_id,
            'redeem_token': token,
            'redeem_url': redeem_url,
            'qr_image': QRService.render_qr_image(redeem_url),
            'expires_in': int(self.session_store.ttl.total_seconds()),
            'expires_at': session.expires_at.isoformat(),
            'course': dict(course.snapshot().to_dict(), id=course.course_id),
            'institution_id': session.institution_id
        }

    def validate(self, token: str) -> Optional[Dict[str, Any]]:
        """Describe a redeemable session, or None when it cannot be redeemed."""
        session = find_redeemable_session(self.session_store, self.token_codec, token)
        if session is None:
            return None

        course = self.repository.get_course(session.institution_id, session.course_id)
        if course is None or not course.is_active:
            return None
        policy = resolve_policy(course.raw_policy, course.delivery_mode,
                                defaults=self.policy_defaults)

        return {
            'valid': True,
            'session_id': session.session_id,
            'expires_at': session.expires_at.isoformat(),
            'institution_id': session.institution_id,
            'course': dict(session.course.to_dict(), id=session.course_id),
            'delivery_mode': policy.delivery_mode,
            'policy': policy.public_flags(),
            'requires_location': policy.require_geofence,
            'requires_signature': policy.require_signature
        }

    def update_course_policy(self, institution_id: str, course_id: str,
                             raw_policy: Any, delivery_mode: Any = None) -> Dict[str, Any]:
        """Validate a policy edit strictly and persist it."""
        course = self.repository.get_course(institution_id, course_id)
        if course is None:
            raise CourseUnavailableError("Course not found")

        policy = resolve_policy(
            raw_policy,
            delivery_mode if delivery_mode is not None else course.delivery_mode,
            strict=True,
            base=course.raw_policy,
            defaults=self.policy_defaults
        )
        stored = policy.to_snapshot()
        stored.pop('delivery_mode')

        updated = self.repository.update_course_policy(
            institution_id, course_id, stored, policy.delivery_mode
        )
        if updated is None:
            raise CourseUnavailableError("Course not found")

        logger.info('Attendance policy updated for course %s-%s', updated.code, updated.section)
        return {
            'course_id': updated.course_id,
            'delivery_mode': updated.delivery_mode,
            'attendance_policy': updated.raw_policy
        }
