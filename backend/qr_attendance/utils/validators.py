"""Validation utilities for the application."""
import base64
import binascii
import re
from typing import Any, Dict, Optional

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
BASE64_PATTERN = re.compile(r'^[A-Za-z0-9+/=]+$')
SIGNATURE_PREFIX = 'data:image/png;base64,'


class ValidationError(Exception):
    """Custom validation error."""
    status_code = 400


class Validator:
    """Validation helper class."""

    @staticmethod
    def normalize_email(email) -> str:
        return str(email or '').strip().lower()

    @staticmethod
    def normalize_name(name) -> str:
        """Trim, collapse inner whitespace and lowercase."""
        return ' '.join(str(name or '').split()).lower()

    @staticmethod
    def validate_email(email: str) -> bool:
        """Validate email format."""
        if not email:
            return False
        return bool(EMAIL_PATTERN.match(email))

    @staticmethod
    def validate_name(name: str) -> Dict[str, Any]:
        """Validate participant full name."""
        errors = []

        if not name or not name.strip():
            errors.append("Full name is required")
        elif len(name.strip()) < 2:
            errors.append("Name must be at least 2 characters long")
        elif len(name.strip()) > 100:
            errors.append("Name is too long")

        return {
            "is_valid": len(errors) == 0,
            "errors": errors
        }

    @staticmethod
    def validate_signature_data_url(
        signature: str,
        max_length: int = 700000,
        min_bytes: int = 120,
        max_bytes: int = 500000
    ) -> Optional[str]:
        """Check a drawn-signature PNG data URL.

        Returns an error message, or None when the payload is acceptable.
        Very small images are blank or near-blank strokes.
        """
        if not signature:
            return "Signature is required"
        if not signature.startswith(SIGNATURE_PREFIX):
            return "Invalid signature format"
        if len(signature) > max_length:
            return "Signature image is too large"

        payload = signature[len(SIGNATURE_PREFIX):]
        if not BASE64_PATTERN.match(payload):
            return "Invalid signature encoding"
        try:
            decoded = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError):
            return "Invalid signature encoding"

        if len(decoded) < min_bytes or len(decoded) > max_bytes:
            return "Invalid signature data size"
        return None
