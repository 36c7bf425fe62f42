"""Course attendance policy endpoints."""
from flask import Blueprint, current_app
from flask_jwt_extended import get_jwt, jwt_required

from qr_attendance.services.policy_service import PolicyValidationError
from qr_attendance.utils.decorators import admin_required
from qr_attendance.utils.helpers import error_response, get_json_payload, success_response

courses_bp = Blueprint('courses', __name__)


@courses_bp.route('/<course_id>/attendance-policy', methods=['PUT'])
@jwt_required()
@admin_required
def update_attendance_policy(course_id):
    """Replace parts of a course's attendance policy.

    Body: ``{"attendance_policy": {...}, "delivery_mode": "hybrid"}``. Fields
    left out keep their stored values. Invalid values are rejected instead of
    being coerced.
    """
    data = get_json_payload()
    if 'attendance_policy' not in data and 'delivery_mode' not in data:
        return error_response("attendance_policy or delivery_mode is required", 400)

    try:
        result = current_app.extensions['session_service'].update_course_policy(
            institution_id=get_jwt().get('institution_id'),
            course_id=course_id,
            raw_policy=data.get('attendance_policy'),
            delivery_mode=data.get('delivery_mode')
        )
    except PolicyValidationError as e:
        return error_response(str(e), e.status_code)

    return success_response(data=result, message="Attendance policy updated")
