"""Token-bucket limiter for outbound embedding calls."""

import logging
import threading
import time
from typing import Callable, Optional

from .errors import RateLimitExceeded

logger = logging.getLogger(__name__)


class TokenBucketRateLimiter:
    """
    Thread-safe token bucket sized for ``calls_per_minute``.

    The bucket starts full and refills continuously. ``acquire`` blocks until
    a token is available; if that would take longer than ``max_wait_seconds``
    it raises RateLimitExceeded without consuming anything.

    Example:
        >>> limiter = TokenBucketRateLimiter(calls_per_minute=60, max_wait_seconds=5)
        >>> limiter.acquire()  # returns immediately while tokens remain
    """

    def __init__(
        self,
        calls_per_minute: int,
        max_wait_seconds: float = 30.0,
        burst: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.calls_per_minute = calls_per_minute
        self.max_wait_seconds = max_wait_seconds
        self.capacity = float(burst or max(1, calls_per_minute))
        self.rate = calls_per_minute / 60.0  # tokens per second
        self._clock = clock
        self._tokens = self.capacity
        self._updated = clock()
        self._cond = threading.Condition()

    @property
    def enabled(self) -> bool:
        return self.calls_per_minute > 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._updated = now

    def available(self) -> float:
        with self._cond:
            self._refill()
            return self._tokens

    def acquire(self, timeout: Optional[float] = None) -> float:
        """
        Take one token, blocking while the bucket is empty.

        Args:
            timeout: Override for ``max_wait_seconds``

        Returns:
            Seconds spent waiting

        Raises:
            RateLimitExceeded: If no token became available within the bound
        """
        if not self.enabled:
            return 0.0

        bound = self.max_wait_seconds if timeout is None else timeout
        started = self._clock()
        deadline = started + bound

        with self._cond:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    waited = self._clock() - started
                    if waited > 0.05:
                        logger.debug("Rate limiter granted token after %.2fs", waited)
                    return waited

                needed = (1.0 - self._tokens) / self.rate
                remaining = deadline - self._clock()
                if needed > remaining:
                    raise RateLimitExceeded(
                        f"Embedding rate limit of {self.calls_per_minute}/min exhausted; "
                        f"next slot in {needed:.1f}s exceeds the {bound:.1f}s wait bound"
                    )
                self._cond.wait(timeout=needed)
