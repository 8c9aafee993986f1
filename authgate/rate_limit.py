"""Sliding-window rate limiting for mutating auth operations.

Counters live in a ``limits`` moving-window store (the same engine slowapi
uses). A hit and the budget comparison happen under the store's per-key lock,
so concurrent requests for one key cannot overspend it. Expired hits are
discarded when the window is read; nothing sweeps in the background.
"""

import logging
import math
import time
from collections.abc import Callable

from fastapi import Depends, Request
from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import MovingWindowRateLimiter
from slowapi.util import get_remote_address

from authgate.config import get_settings
from authgate.errors import RateLimitedError

logger = logging.getLogger("authgate")

# Operation classes
SIGN_UP = "sign-up"
SIGN_IN = "sign-in"
TWO_FACTOR = "two-factor"
PASSWORD = "password"
EMAIL = "email"
ACCOUNT = "account"


class RateLimiter:
    """Request budget per (client key, operation class)."""

    def __init__(
        self,
        window_seconds: int = 60,
        max_requests: int = 120,
        rules: dict[str, tuple[int, int]] | None = None,
        storage: Storage | None = None,
        enabled: bool = True,
    ) -> None:
        self.enabled = enabled
        self.storage = storage or MemoryStorage()
        self._strategy = MovingWindowRateLimiter(self.storage)
        self._default = RateLimitItemPerSecond(max_requests, window_seconds)
        # operation class -> (window_seconds, max_requests)
        self._rules = {
            op: RateLimitItemPerSecond(max_requests_, window) for op, (window, max_requests_) in (rules or {}).items()
        }

    def item_for(self, operation_class: str) -> RateLimitItemPerSecond:
        return self._rules.get(operation_class, self._default)

    def admit(self, key: str, operation_class: str) -> None:
        """Record one request for ``key``. Raises RateLimitedError when the budget is spent."""
        if not self.enabled:
            return
        item = self.item_for(operation_class)
        if self._strategy.hit(item, key, operation_class):
            return

        stats = self._strategy.get_window_stats(item, key, operation_class)
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        logger.warning("Rate limit exceeded for %s on %s (retry in %ds)", key, operation_class, retry_after)
        raise RateLimitedError(retry_after)

    def remaining(self, key: str, operation_class: str) -> int:
        item = self.item_for(operation_class)
        return self._strategy.get_window_stats(item, key, operation_class).remaining

    def reset(self) -> None:
        self.storage.reset()


_rate_limiter: RateLimiter | None = None


def get_rate_limiter() -> RateLimiter:
    """Get singleton rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        settings = get_settings()
        _rate_limiter = RateLimiter(
            window_seconds=settings.RATE_LIMIT_WINDOW_SECONDS,
            max_requests=settings.RATE_LIMIT_MAX,
            # Credential guessing gets a tighter budget than the global default.
            rules={SIGN_IN: (10, 3), TWO_FACTOR: (10, 3)},
            enabled=settings.RATE_LIMIT_ENABLED,
        )
    return _rate_limiter


def rate_limit(operation_class: str) -> Callable[..., None]:
    """Build a route dependency that admits the caller for ``operation_class``."""

    def dependency(request: Request, limiter: RateLimiter = Depends(get_rate_limiter)) -> None:
        limiter.admit(get_remote_address(request), operation_class)

    return dependency
