"""QR session API endpoints."""
from urllib.parse import urlencode

from flask import Blueprint, current_app, redirect, request
from flask_jwt_extended import get_jwt, get_jwt_identity, jwt_required

from qr_attendance.utils.decorators import issuer_required
from qr_attendance.utils.helpers import (
    error_response, get_client_ip, get_json_payload, success_response
)

qr_bp = Blueprint('qr', __name__)
redeem_bp = Blueprint('redeem', __name__)

INVALID_SESSION_MESSAGE = "Invalid or expired session. Please scan a fresh QR."


def _session_service():
    return current_app.extensions['session_service']


@qr_bp.route('', methods=['POST'])
@jwt_required()
@issuer_required
def issue_session():
    """Issue a short-lived attendance session for a course."""
    data = get_json_payload()
    course_id = str(data.get('course_id') or '').strip()
    if not course_id:
        return error_response("course_id is required", 400)

    claims = get_jwt()
    result = _session_service().issue(
        issuer_id=get_jwt_identity(),
        issuer_role=claims.get('role'),
        institution_id=claims.get('institution_id'),
        course_id=course_id,
        origin_ip=get_client_ip()
    )
    return success_response(data=result, message="QR code generated successfully", status_code=201)


@qr_bp.route('/validate', methods=['POST'])
def validate_session():
    """Check whether a redeem token can still be used and describe its course."""
    token = str(get_json_payload().get('token') or '').strip()
    if not token:
        return error_response("token is required", 400, valid=False)

    result = _session_service().validate(token)
    if result is None:
        return error_response(INVALID_SESSION_MESSAGE, 400, valid=False, reason='InvalidSession')

    return success_response(data=result, message="Session is valid")


@redeem_bp.route('/verify-attendance', methods=['GET'])
def verify_attendance():
    """Landing URL encoded in the QR image; forwards to the attendance form."""
    token = str(request.args.get('token') or '').strip()
    result = _session_service().validate(token) if token else None
    if result is None:
        return error_response("Invalid or expired QR code", 400, valid=False, reason='InvalidSession')

    query = urlencode({'token': token, 'institution_id': result['institution_id']})
    return redirect(f"{current_app.config['ATTENDANCE_FORM_PATH']}?{query}")
