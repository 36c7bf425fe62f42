"""Error taxonomy for session issuance and attendance submission."""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """How a failure should be surfaced and whether it is retryable."""

    CLIENT_INPUT = 'ClientInputError'
    POLICY_DENIED = 'PolicyDenied'
    DUPLICATE = 'DuplicateSubmission'
    SESSION_INVALID = 'SessionInvalid'
    UNENROLLED = 'Unenrolled'
    POLICY_MISCONFIGURED = 'PolicyMisconfigured'
    TRANSIENT = 'TransientStoreError'


class RejectReason(str, Enum):
    """Terminal rejection reasons of the submission pipeline."""

    INVALID_INPUT = 'InvalidInput'
    INVALID_SESSION = 'InvalidSession'
    COURSE_UNAVAILABLE = 'CourseUnavailable'
    NETWORK_NOT_ALLOWED = 'NetworkNotAllowed'
    POLICY_MISCONFIGURED = 'PolicyMisconfigured'
    LOCATION_REQUIRED = 'LocationRequired'
    OUT_OF_RANGE = 'OutOfRange'
    SIGNATURE_REQUIRED = 'SignatureRequired'
    INVALID_SIGNATURE = 'InvalidSignature'
    NOT_ENROLLED = 'NotEnrolled'
    ALREADY_MARKED = 'AlreadyMarked'
    DEVICE_ALREADY_USED = 'DeviceAlreadyUsed'

    @property
    def category(self) -> ErrorCategory:
        return _REASON_CATEGORY[self]

    @property
    def status_code(self) -> int:
        return _REASON_STATUS.get(self, 400)


_REASON_CATEGORY = {
    RejectReason.INVALID_INPUT: ErrorCategory.CLIENT_INPUT,
    RejectReason.INVALID_SESSION: ErrorCategory.SESSION_INVALID,
    RejectReason.COURSE_UNAVAILABLE: ErrorCategory.CLIENT_INPUT,
    RejectReason.NETWORK_NOT_ALLOWED: ErrorCategory.POLICY_DENIED,
    RejectReason.POLICY_MISCONFIGURED: ErrorCategory.POLICY_MISCONFIGURED,
    RejectReason.LOCATION_REQUIRED: ErrorCategory.POLICY_DENIED,
    RejectReason.OUT_OF_RANGE: ErrorCategory.POLICY_DENIED,
    RejectReason.SIGNATURE_REQUIRED: ErrorCategory.POLICY_DENIED,
    RejectReason.INVALID_SIGNATURE: ErrorCategory.CLIENT_INPUT,
    RejectReason.NOT_ENROLLED: ErrorCategory.UNENROLLED,
    RejectReason.ALREADY_MARKED: ErrorCategory.DUPLICATE,
    RejectReason.DEVICE_ALREADY_USED: ErrorCategory.DUPLICATE,
}

_REASON_STATUS = {
    RejectReason.COURSE_UNAVAILABLE: 404,
    RejectReason.NETWORK_NOT_ALLOWED: 403,
    RejectReason.POLICY_MISCONFIGURED: 500,
    RejectReason.NOT_ENROLLED: 403,
    RejectReason.ALREADY_MARKED: 409,
    RejectReason.DEVICE_ALREADY_USED: 409,
}


class AttendanceError(Exception):
    """Base class for errors raised by the attendance services."""

    status_code = 500
    category: Optional[ErrorCategory] = None

    def __init__(self, message: str = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class SubmissionRejected(AttendanceError):
    """Submission was rejected by one of the pipeline checks."""

    def __init__(self, reason: RejectReason, detail: str, **extra: Any):
        super().__init__(detail)
        self.reason = reason
        self.detail = detail
        self.extra: Dict[str, Any] = extra

    @property
    def status_code(self) -> int:
        return self.reason.status_code

    @property
    def category(self) -> ErrorCategory:
        return self.reason.category


class TransientStoreError(AttendanceError):
    """Attendance store is temporarily unavailable, retry later."""

    status_code = 503
    category = ErrorCategory.TRANSIENT


class DuplicateRecord(AttendanceError):
    """Storage uniqueness constraint rejected an attendance record."""

    status_code = 409
    category = ErrorCategory.DUPLICATE


class RateLimitExceeded(AttendanceError):
    """Too many QR requests. Please wait a minute."""

    status_code = 429
    category = ErrorCategory.CLIENT_INPUT

    def __init__(self, retry_after: int, message: str = None):
        super().__init__(message)
        self.retry_after = retry_after


class CourseUnavailableError(AttendanceError):
    """Course not found or inactive."""

    status_code = 404
    category = ErrorCategory.CLIENT_INPUT
