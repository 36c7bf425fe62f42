"""Maps a free-form submission to a canonical student identity."""
from dataclasses import dataclass

from qr_attendance.services.repository import AttendanceRepository
from qr_attendance.utils.errors import RejectReason, SubmissionRejected
from qr_attendance.utils.validators import Validator


@dataclass(frozen=True)
class CanonicalIdentity:
    identifier: str
    name: str
    university_roll_no: str
    section: str
    class_roll_no: str


class IdentityResolver:
    """Resolve submissions against the course roster.

    The email is tried first (against roster email and roll number), then an
    exact normalized full-name match. A roster hit is authoritative, but the
    submitted name must still match it so a known email cannot be used under
    someone else's name.
    """

    def __init__(self, repository: AttendanceRepository):
        self.repository = repository

    def resolve(self, institution_id: str, course_id: str, submitted_name: str,
                submitted_email: str, require_enrollment: bool,
                default_section: str = '') -> CanonicalIdentity:
        email = Validator.normalize_email(submitted_email)
        name_key = Validator.normalize_name(submitted_name)

        enrollment = self.repository.find_enrollment(institution_id, course_id, email)
        if enrollment is None:
            enrollment = self.repository.find_enrollment_by_name(institution_id, course_id, name_key)

        if enrollment is None:
            if require_enrollment:
                raise SubmissionRejected(
                    RejectReason.NOT_ENROLLED,
                    "You are not enrolled in this course roster"
                )
            return CanonicalIdentity(
                identifier=email,
                name=' '.join(str(submitted_name).split()),
                university_roll_no=email.upper(),
                section=(default_section or '').strip().upper() or 'N/A',
                class_roll_no='N/A'
            )

        if Validator.normalize_name(enrollment.full_name) != name_key:
            raise SubmissionRejected(
                RejectReason.NOT_ENROLLED,
                "Student name does not match course enrollment record"
            )

        return CanonicalIdentity(
            identifier=Validator.normalize_email(enrollment.email) or email,
            name=enrollment.full_name,
            university_roll_no=enrollment.university_roll_no,
            section=enrollment.section or (default_section or '').upper() or 'N/A',
            class_roll_no=enrollment.class_roll_no or 'N/A'
        )
