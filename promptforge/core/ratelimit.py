"""
Token-bucket rate limiting, held in process memory.

Buckets are keyed per caller and per category (read or mutation). The
limiter is off unless RATE_LIMIT_ENABLED is set.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Tuple

DEFAULT_PER_MINUTE = 120
DEFAULT_BURST = 30


@dataclass
class RateLimitConfig:
    enabled: bool = False
    per_minute_default: int = DEFAULT_PER_MINUTE
    burst_default: int = DEFAULT_BURST
    # Public write endpoints get this share of the default budget
    strict_prefixes: Tuple[str, ...] = ("/api/waitlist", "/api/notifications")
    strict_factor: float = 0.5
    # Only behind a proxy that overwrites X-Forwarded-For
    trust_forwarded_for: bool = False


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    retry_after: int


class TokenBucket:
    def __init__(self, capacity: int, refill_rate_per_sec: float, time_fn: Callable[[], float] = time.monotonic):
        self.capacity = max(1, capacity)
        self.refill_rate = max(0.0, refill_rate_per_sec)
        self.tokens = float(self.capacity)
        self.time_fn = time_fn
        self.updated_at = time_fn()

    def _refill(self) -> None:
        now = self.time_fn()
        if now > self.updated_at:
            self.tokens = min(float(self.capacity), self.tokens + (now - self.updated_at) * self.refill_rate)
            self.updated_at = now

    def seconds_until_token(self) -> float:
        missing = 1.0 - self.tokens
        if missing <= 0:
            return 0.0
        if self.refill_rate == 0:
            return math.inf
        return missing / self.refill_rate

    def take(self) -> bool:
        self._refill()
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            return True
        return False


class InMemoryRateLimiter:
    def __init__(self, time_fn: Callable[[], float] = time.monotonic):
        self.time_fn = time_fn
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def check(self, key: str, *, per_minute: int, burst: int) -> RateLimitDecision:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = TokenBucket(burst, per_minute / 60.0, self.time_fn)
            allowed = bucket.take()
            wait = bucket.seconds_until_token()
            remaining = int(bucket.tokens)
        retry_after = 0 if allowed else (60 if math.isinf(wait) else max(1, math.ceil(wait)))
        return RateLimitDecision(allowed=allowed, remaining=remaining, retry_after=retry_after)


def build_rate_limit_config(settings_obj) -> RateLimitConfig:
    """Limiter config from Settings; non-positive budgets fall back to the defaults."""
    per_minute = getattr(settings_obj, "RATE_LIMIT_PER_MINUTE_DEFAULT", 0) or 0
    burst = getattr(settings_obj, "RATE_LIMIT_BURST_DEFAULT", 0) or 0
    return RateLimitConfig(
        enabled=bool(getattr(settings_obj, "RATE_LIMIT_ENABLED", False)),
        per_minute_default=per_minute if per_minute > 0 else DEFAULT_PER_MINUTE,
        burst_default=burst if burst > 0 else DEFAULT_BURST,
        trust_forwarded_for=bool(getattr(settings_obj, "RATE_LIMIT_TRUST_FORWARDED_FOR", False)),
    )
