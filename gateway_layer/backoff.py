"""
Backoff Policy

Deterministic exponential delay schedule shared by the retry executor and the
stream supervisor:

    delay(attempt) = min(base_delay * multiplier ** (attempt - 1), max_delay)

Jitter is optional and off by default.
"""

import random
from dataclasses import dataclass, field
from typing import Callable, Optional


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits and delay curve. max_attempts=None means no limit."""
    max_attempts: Optional[int] = 5
    base_delay: float = 0.5       # seconds
    max_delay: float = 5.0        # seconds
    multiplier: float = 2.0
    jitter: float = 0.0           # fraction of the delay, 0.2 = +/-20%

    def __post_init__(self):
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1 or None")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")
        if not 0.0 <= self.jitter < 1.0:
            raise ValueError("jitter must be in [0, 1)")

    @property
    def unbounded(self) -> bool:
        return self.max_attempts is None

    def allows(self, attempt: int) -> bool:
        """True if `attempt` (1-based) is within the limit."""
        return self.max_attempts is None or attempt <= self.max_attempts


# Unary calls: bounded attempts. Streams: retry while the caller is alive.
DEFAULT_CALL_POLICY = RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=5.0, multiplier=2.0)
DEFAULT_STREAM_POLICY = RetryPolicy(max_attempts=None, base_delay=0.5, max_delay=5.0, multiplier=2.0)


@dataclass(frozen=True)
class BackoffPolicy:
    """Pure attempt -> delay function built from a RetryPolicy."""
    policy: RetryPolicy = DEFAULT_CALL_POLICY
    rand: Callable[[float, float], float] = field(default=random.uniform, compare=False, repr=False)

    def base(self, attempt: int) -> float:
        """Delay before jitter. Non-decreasing in attempt, capped at max_delay."""
        if attempt < 1:
            raise ValueError("attempt is 1-based")
        p = self.policy
        if p.base_delay == 0:
            return 0.0
        # Stop multiplying once the cap is reached so large attempts cannot overflow
        delay = p.base_delay
        for _ in range(attempt - 1):
            delay *= p.multiplier
            if delay >= p.max_delay:
                return p.max_delay
        return min(delay, p.max_delay)

    def delay(self, attempt: int) -> float:
        delay = self.base(attempt)
        if not self.policy.jitter or not delay:
            return delay
        spread = delay * self.policy.jitter
        jittered = delay + self.rand(-spread, spread)
        return max(0.0, min(jittered, self.policy.max_delay))

    def schedule(self, attempts: int) -> list[float]:
        """First `attempts` delays, handy for logging the retry plan."""
        return [self.delay(n) for n in range(1, attempts + 1)]
