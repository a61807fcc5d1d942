import time
from typing import Callable, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from promptforge.core.auth import identify_caller
from promptforge.core.config import get_settings
from promptforge.core.errors import RateLimitError, app_error_handler
from promptforge.core.logging import get_request_id
from promptforge.core.metrics import ratelimit_block_total
from promptforge.core.middleware.metrics import route_label
from promptforge.core.ratelimit import InMemoryRateLimiter, RateLimitConfig

MUTATION_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rejects callers that exhaust their bucket with a 429 in the standard error body."""

    def __init__(self, app, *, config: Optional[RateLimitConfig] = None, time_fn: Optional[Callable[[], float]] = None):
        super().__init__(app)
        self.config = config or RateLimitConfig()
        self.limiter = InMemoryRateLimiter(time_fn=time_fn or time.monotonic)

    def is_public_write(self, request: Request) -> bool:
        return request.method.upper() in MUTATION_METHODS and request.url.path.startswith(self.config.strict_prefixes)

    def budget_for(self, request: Request) -> Tuple[int, int]:
        """(per_minute, burst) for this request."""
        per_minute, burst = self.config.per_minute_default, self.config.burst_default
        if self.is_public_write(request):
            factor = self.config.strict_factor
            per_minute, burst = max(1, int(per_minute * factor)), max(1, int(burst * factor))
        return per_minute, burst

    def caller_key(self, request: Request) -> str:
        """Verified user id, else client address. Public writes are always keyed by address."""
        if not self.is_public_write(request):
            user_id = identify_caller(request, get_settings(request))
            if user_id:
                return f"user:{user_id}"
        address = request.client.host if request.client else "unknown"
        if self.config.trust_forwarded_for:
            address = request.headers.get("x-forwarded-for", "").split(",")[0].strip() or address
        return f"ip:{address}"

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled:
            return await call_next(request)

        per_minute, burst = self.budget_for(request)
        category = "mutation" if request.method.upper() in MUTATION_METHODS else "read"
        decision = self.limiter.check(f"{self.caller_key(request)}:{category}", per_minute=per_minute, burst=burst)

        if decision.allowed:
            response = await call_next(request)
        else:
            ratelimit_block_total.inc(labels={"route": route_label(request)})
            rid = getattr(request.state, "request_id", None) or get_request_id()
            response = await app_error_handler(
                request,
                RateLimitError("Rate limit exceeded for this endpoint", request_id=rid),
            )
            response.headers["Retry-After"] = str(decision.retry_after)

        response.headers["X-RateLimit-Limit"] = str(per_minute)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response
