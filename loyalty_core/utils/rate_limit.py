"""
Token bucket rate limiter for outbound calls.

Constructed explicitly and handed to whatever needs throttling (the HTTP
delivery transport); there is no process-wide instance.
"""
import threading
import time
from typing import Callable, Optional


class TokenBucketRateLimiter:
    """Token bucket rate limiter for steady outbound requests.

    Parameters
    ----------
    rate : float
        Target requests per second.
    burst : int | None
        Maximum burst size. Defaults to max(1, rate // 10).
    """

    def __init__(
        self,
        rate: float,
        burst: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if rate <= 0:
            raise ValueError('rate must be positive')
        self.rate = rate
        self.burst = burst or max(1, int(rate // 10))
        self.tokens = float(self.burst)
        self._clock = clock
        self._sleep = sleep
        self.last_refill = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self.tokens = min(self.burst, self.tokens + (now - self.last_refill) * self.rate)
        self.last_refill = now

    def try_acquire(self) -> bool:
        """Consume a token if one is available, without blocking."""
        with self._lock:
            self._refill()
            if self.tokens >= 1.0:
                self.tokens -= 1.0
                return True
            return False

    def acquire(self) -> None:
        """Block until a token is available, then consume one."""
        while True:
            with self._lock:
                self._refill()
                if self.tokens >= 1.0:
                    self.tokens -= 1.0
                    return
                wait = (1.0 - self.tokens) / self.rate
            self._sleep(wait)
