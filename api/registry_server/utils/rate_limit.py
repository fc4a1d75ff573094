import math
import time
import hashlib
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger("agrinet.registry")

DEFAULT_MAX_TRACKED_KEYS = 10_000


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0
    remaining: Optional[int] = None


@dataclass
class _Window:
    count: int
    reset_at_ms: float


def _now_ms() -> float:
    return time.monotonic() * 1000.0


def credential_key(token: Optional[str], remote_addr: Optional[str]) -> str:
    """Bucket key for a caller: the presented credential, else the remote address.

    Tokens are hashed so the limiter never holds the secret itself.
    """
    if token:
        return "token:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
    return f"ip:{remote_addr or 'unknown'}"


class FixedWindowRateLimiter:
    """
    Fixed-window write counter per key.

    The first hit for a key opens a window of `window_ms`; later hits in the
    same window increment the counter, and a hit after the window has passed
    starts a new one at 1. When the counter exceeds `max_writes` the hit is
    rejected with the whole seconds left until the window resets.

    `max_writes == 0` disables limiting. Expired windows are purged when more
    than `max_tracked_keys` keys are tracked, so no background timer is needed.
    """

    def __init__(
        self,
        window_ms: int,
        max_writes: int,
        clock: Callable[[], float] = _now_ms,
        max_tracked_keys: int = DEFAULT_MAX_TRACKED_KEYS,
    ):
        self.window_ms = window_ms
        self.max_writes = max_writes
        self.max_tracked_keys = max_tracked_keys
        self._clock = clock
        self._windows: Dict[str, _Window] = {}

    @property
    def enabled(self) -> bool:
        return self.max_writes > 0

    def __len__(self) -> int:
        return len(self._windows)

    def hit(self, key: str) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(allowed=True)

        now = self._clock()
        window = self._windows.get(key)
        if window is None or now >= window.reset_at_ms:
            window = _Window(count=1, reset_at_ms=now + self.window_ms)
            self._windows[key] = window
            if len(self._windows) > self.max_tracked_keys:
                self._purge(now)
        else:
            window.count += 1

        if window.count > self.max_writes:
            retry_after = max(1, math.ceil((window.reset_at_ms - now) / 1000.0))
            return RateLimitDecision(allowed=False, retry_after=retry_after, remaining=0)

        return RateLimitDecision(allowed=True, remaining=self.max_writes - window.count)

    def _purge(self, now: float) -> None:
        expired = [key for key, window in self._windows.items() if now >= window.reset_at_ms]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("[rate-limit] purged %d expired window(s)", len(expired))
