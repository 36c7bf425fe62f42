"""QR code generation and redeem token signing."""
import base64
import hashlib
import hmac
import io
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from urllib.parse import urlencode

import qrcode

from qr_attendance.services.session_store import utc_now

_SESSION_ID_PATTERN = re.compile(r'[A-Za-z0-9_-]{16,128}')
_TAG_PATTERN = re.compile(r'[0-9a-f]{64}')
_MILLIS_PATTERN = re.compile(r'[0-9]{1,13}')


@dataclass(frozen=True)
class DecodedToken:
    session_id: str
    issued_at: datetime
    issued_at_ms: int


class RedeemTokenCodec:
    """Signs and verifies the opaque token embedded in the QR code.

    Token layout: ``<session_id>.<issued_at_ms>.<hex hmac-sha256>``. The tag
    covers the session id and issue time. Decoding compares the hex text in
    constant time and applies its own redemption window, so a token stays
    time-bounded even when checked outside the session store.
    """

    def __init__(self, secret: str, redemption_window_seconds: int = 900,
                 clock: Optional[Callable[[], datetime]] = None):
        if not secret:
            raise ValueError('QR token secret must not be empty')
        self._secret = secret.encode('utf-8')
        self.redemption_window = timedelta(seconds=redemption_window_seconds)
        self.clock = clock or utc_now

    @staticmethod
    def to_millis(moment: datetime) -> int:
        return int(moment.timestamp() * 1000)

    def _sign(self, session_id: str, issued_at_ms: int) -> str:
        message = f'{session_id}.{issued_at_ms}'.encode('utf-8')
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def encode(self, session_id: str, issued_at: datetime) -> str:
        issued_at_ms = self.to_millis(issued_at)
        return f'{session_id}.{issued_at_ms}.{self._sign(session_id, issued_at_ms)}'

    def decode(self, token: str) -> Optional[DecodedToken]:
        """Return the token contents, or None if it is malformed, forged or stale."""
        if not isinstance(token, str):
            return None
        parts = token.strip().split('.')
        if len(parts) != 3:
            return None
        session_id, issued_at_raw, tag = parts
        if not _SESSION_ID_PATTERN.fullmatch(session_id):
            return None
        if not _MILLIS_PATTERN.fullmatch(issued_at_raw):
            return None
        if not _TAG_PATTERN.fullmatch(tag):
            return None

        issued_at_ms = int(issued_at_raw)
        expected = self._sign(session_id, issued_at_ms)
        if not hmac.compare_digest(expected.encode('ascii'), tag.encode('ascii')):
            return None

        issued_at = datetime.fromtimestamp(issued_at_ms / 1000, tz=timezone.utc)
        now = self.clock()
        if now < issued_at or now - issued_at > self.redemption_window:
            return None
        return DecodedToken(session_id=session_id, issued_at=issued_at, issued_at_ms=issued_at_ms)


class QRService:
    """Service for QR code operations."""

    @staticmethod
    def build_redeem_url(base_url: str, token: str) -> str:
        """URL encoded in the QR code; scanning it lands on the verify endpoint."""
        return f"{base_url.rstrip('/')}/verify-attendance?{urlencode({'token': token})}"

    @staticmethod
    def render_qr_image(data: str) -> str:
        """Render ``data`` as a PNG QR code and return it as a data URL."""
        qr = qrcode.QRCode(
            version=None,  # Auto-determine size
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=2,
        )
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
        img_str = base64.b64encode(buffered.getvalue()).decode()

        return f"data:image/png;base64,{img_str}"
