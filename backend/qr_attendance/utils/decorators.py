"""Custom decorators for authorization."""
from functools import wraps

from flask_jwt_extended import get_jwt

from qr_attendance.utils.helpers import error_response

ISSUER_ROLES = ('teacher', 'admin', 'super_admin')
ADMIN_ROLES = ('admin', 'super_admin')


def _require_role(roles, message):
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            claims = get_jwt()

            if not claims.get('institution_id'):
                return error_response("Token is missing institution scope", 403)

            if claims.get('role') not in roles:
                return error_response(message, 403)

            return f(*args, **kwargs)
        return decorated_function
    return decorator


def issuer_required(f):
    """Decorator to require a role allowed to issue attendance sessions."""
    return _require_role(ISSUER_ROLES, "Teacher access required")(f)


def admin_required(f):
    """Decorator to require admin role."""
    return _require_role(ADMIN_ROLES, "Admin access required")(f)
