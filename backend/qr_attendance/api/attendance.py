"""Attendance submission endpoint."""
from flask import Blueprint, current_app, request

from qr_attendance.services.attendance_service import Submission
from qr_attendance.utils.helpers import (
    error_response, get_client_ip, get_json_payload, success_response
)

attendance_bp = Blueprint('attendance', __name__)


@attendance_bp.route('/mark', methods=['POST'])
def mark_attendance():
    """Redeem a session token and record attendance for the submitting student."""
    submission = Submission.from_payload(
        get_json_payload(),
        client_ip=get_client_ip(),
        user_agent=request.headers.get('User-Agent', '')
    )
    result = current_app.extensions['submission_pipeline'].submit(submission)

    if not result.accepted:
        return error_response(
            result.detail,
            result.reason.status_code,
            reason=result.reason.value,
            category=result.reason.category.value,
            **result.extra
        )

    return success_response(
        data=result.record,
        message=result.detail,
        status_code=201
    )
