"""
Backoff Policies

Two bounded policies used by connectors:

    ReconnectPolicy - transport reconnects.
        delay(n) = min(base * 2^(n-1) * multiplier(category) + U(0, jitter_max), max_delay)
        where n is the 1-based reconnect attempt. After max_attempts the
        session gives up and stays Disconnected.

    RetryPolicy - single REST request retries.
        delay(attempt) = base * 2^attempt + U(0, jitter_max), attempt is 0-based,
        at most `attempts` tries in total.

Error-category multipliers:
    dns_error, connection_refused -> x2.0 (the remote is unreachable, back off harder)
    server_error                  -> x1.5
    everything else               -> x1.0

The random source is injectable so tests can pin the jitter.
"""

import random
from typing import Callable, Dict, Optional


CATEGORY_MULTIPLIERS: Dict[str, float] = {
    "dns_error": 2.0,
    "connection_refused": 2.0,
    "server_error": 1.5,
}


class ReconnectPolicy:
    """
    Exponential reconnect backoff with jitter and a hard cap.

    Args:
        base: Base delay in seconds
        max_delay: Upper bound for any single delay in seconds
        max_attempts: Attempts before the session stops retrying
        jitter_max: Maximum random jitter added, in seconds
        rng: Callable returning a float in [0, 1) (defaults to random.random)

    Example:
        >>> policy = ReconnectPolicy(base=1.0, max_delay=30.0, max_attempts=5, jitter_max=0.0)
        >>> policy.delay(3)
        4.0
        >>> policy.delay(2, "server_error")
        3.0
    """

    def __init__(
        self,
        base: float = 1.0,
        max_delay: float = 60.0,
        max_attempts: int = 5,
        jitter_max: float = 0.5,
        rng: Optional[Callable[[], float]] = None,
    ):
        if base <= 0:
            raise ValueError("base must be positive")
        self.base = base
        self.max_delay = max_delay
        self.max_attempts = max_attempts
        self.jitter_max = max(0.0, jitter_max)
        self._rng = rng or random.random

    def should_retry(self, attempt: int) -> bool:
        return attempt <= self.max_attempts

    def delay(self, attempt: int, category: Optional[str] = None) -> float:
        attempt = max(1, attempt)
        multiplier = CATEGORY_MULTIPLIERS.get(category or "", 1.0)
        raw = self.base * (2 ** (attempt - 1)) * multiplier
        jitter = self._rng() * self.jitter_max
        return min(raw + jitter, self.max_delay)


class RetryPolicy:
    """
    Bounded exponential retry for one REST request.

    Defaults: 300ms * 2^attempt + up to 100ms jitter, 3 tries in total.
    """

    def __init__(
        self,
        attempts: int = 3,
        base: float = 0.3,
        jitter_max: float = 0.1,
        max_delay: float = 10.0,
        rng: Optional[Callable[[], float]] = None,
    ):
        self.attempts = max(1, attempts)
        self.base = base
        self.jitter_max = jitter_max
        self.max_delay = max_delay
        self._rng = rng or random.random

    def delay(self, attempt: int) -> float:
        return min(self.base * (2 ** attempt) + self._rng() * self.jitter_max, self.max_delay)
