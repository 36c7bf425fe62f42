"""Moving-window limiter for QR session issuance."""
import logging
import math
import time
from dataclasses import dataclass

from limits import parse
from limits.storage import storage_from_string
from limits.strategies import MovingWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0


class RateLimiter:
    """Caps session issuance per issuing address.

    Only issuance goes through here. Redemption volume is bounded by class
    size and is never throttled.
    """

    def __init__(self, limit: str = '5 per minute', storage_uri: str = 'memory://',
                 enabled: bool = True):
        self.configure(limit, storage_uri, enabled)

    def configure(self, limit: str, storage_uri: str, enabled: bool = True) -> None:
        self.limit = parse(limit)
        self.enabled = enabled
        self._strategy = MovingWindowRateLimiter(storage_from_string(storage_uri))

    def init_app(self, app) -> None:
        self.configure(
            app.config.get('QR_ISSUE_RATE_LIMIT', '5 per minute'),
            app.config.get('RATELIMIT_STORAGE_URL', 'memory://'),
            app.config.get('RATELIMIT_ENABLED', True)
        )
        app.extensions['issue_rate_limiter'] = self

    def admit(self, key: str) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(allowed=True)

        key = key or 'unknown'
        if self._strategy.hit(self.limit, 'qr-issue', key):
            return RateLimitDecision(allowed=True)

        stats = self._strategy.get_window_stats(self.limit, 'qr-issue', key)
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        logger.warning('Rate limit exceeded for IP: %s', key)
        return RateLimitDecision(allowed=False, retry_after=retry_after)
