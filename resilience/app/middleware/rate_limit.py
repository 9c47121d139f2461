"""Rate limiting middleware for the service.

Per-client sliding-window admission gate. Each limiter instance keeps an
ordered log of admitted request timestamps per client key and rejects a
request once the trailing window already holds ``max_requests`` entries.

State is in-process only: with several workers, each worker keeps its own
independent view.
"""

import math
import random
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from resilience.app.core.config import settings
from resilience.app.core.logging import get_log_context, get_logger
from resilience.app.exceptions import RateLimitExceededError
from resilience.app.middleware.identity import get_client_key

logger = get_logger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass(frozen=True)
class RateLimitConfig:
    """Configuration of one limiter instance."""
    window_ms: int
    max_requests: int
    message: str = "Too many requests"

    @property
    def retry_after(self) -> int:
        """Retry hint in whole seconds."""
        return math.ceil(self.window_ms / 1000)


@dataclass
class RateLimitDecision:
    """Result of a rate limit check."""
    allowed: bool
    client_key: str
    limit: int
    remaining: int
    retry_after: Optional[int] = None
    message: Optional[str] = None


class SlidingWindowRateLimiter:
    """In-memory sliding-window limiter keyed by client.

    Stale timestamps are evicted lazily when their key is checked. Keys that
    are never seen again are reclaimed by a compaction sweep which runs with
    a small fixed probability on each check, so no background timer is
    needed.
    """

    def __init__(
        self,
        config: RateLimitConfig,
        sweep_probability: float = 0.01,
        clock: Callable[[], float] = _monotonic_ms,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize rate limiter.

        Args:
            config: Window length, admission ceiling and rejection message
            sweep_probability: Chance of running a compaction sweep per check
            clock: Monotonic clock returning milliseconds
            rng: Random source in [0, 1) used to trigger compaction
        """
        self.config = config
        self.sweep_probability = sweep_probability
        self._clock = clock
        self._rng = rng
        self._requests: Dict[str, List[float]] = {}

    @property
    def tracked_clients(self) -> int:
        return len(self._requests)

    def get_log(self, key: str) -> List[float]:
        """Return a copy of the admitted timestamps recorded for ``key``."""
        return list(self._requests.get(key, ()))

    def admit(self, request: Request) -> RateLimitDecision:
        """Check an incoming request against its client's budget."""
        return self.check(get_client_key(request))

    def check(self, key: str) -> RateLimitDecision:
        """Admit or reject one request for an already derived client key."""
        now = self._clock()
        window_start = now - self.config.window_ms

        recent = [t for t in self._requests.get(key, ()) if t > window_start]

        if len(recent) >= self.config.max_requests:
            # Rejections leave the stored log untouched
            decision = RateLimitDecision(
                allowed=False,
                client_key=key,
                limit=self.config.max_requests,
                remaining=0,
                retry_after=self.config.retry_after,
                message=self.config.message,
            )
        else:
            recent.append(now)
            self._requests[key] = recent
            decision = RateLimitDecision(
                allowed=True,
                client_key=key,
                limit=self.config.max_requests,
                remaining=self.config.max_requests - len(recent),
            )

        if self._rng() < self.sweep_probability:
            self.compact(now)

        return decision

    def compact(self, now: Optional[float] = None) -> int:
        """Drop stale timestamps and forget clients with nothing left.

        Returns:
            Number of client keys removed
        """
        if now is None:
            now = self._clock()
        window_start = now - self.config.window_ms
        removed = 0
        for key, timestamps in list(self._requests.items()):
            recent = [t for t in timestamps if t > window_start]
            if recent:
                self._requests[key] = recent
            else:
                del self._requests[key]
                removed += 1
        if removed:
            logger.debug(f"Rate limiter compaction removed {removed} idle clients")
        return removed

    def reset(self) -> None:
        """Forget all tracked clients."""
        self._requests.clear()


def create_rate_limiter(
    window_ms: int,
    max_requests: int,
    message: str = "Too many requests",
    sweep_probability: Optional[float] = None,
) -> SlidingWindowRateLimiter:
    """Build a limiter with its own independent state."""
    if sweep_probability is None:
        sweep_probability = settings.rate_limit_sweep_probability
    return SlidingWindowRateLimiter(
        RateLimitConfig(window_ms=window_ms, max_requests=max_requests, message=message),
        sweep_probability=sweep_probability,
    )


def create_auth_rate_limiter() -> SlidingWindowRateLimiter:
    """Strict limiter for authentication endpoints."""
    return create_rate_limiter(
        window_ms=settings.auth_rate_limit_window_ms,
        max_requests=settings.auth_rate_limit_max_requests,
        message=settings.auth_rate_limit_message,
    )


def create_api_rate_limiter() -> SlidingWindowRateLimiter:
    """Lenient limiter for general API traffic."""
    return create_rate_limiter(
        window_ms=settings.api_rate_limit_window_ms,
        max_requests=settings.api_rate_limit_max_requests,
        message=settings.api_rate_limit_message,
    )


def rate_limit_response(retry_after: int, message: str, limit: Optional[int] = None) -> JSONResponse:
    """Build the 429 response returned to rejected clients."""
    headers = {"Retry-After": str(retry_after)}
    if limit is not None:
        headers["X-RateLimit-Limit"] = str(limit)
        headers["X-RateLimit-Remaining"] = "0"
    return JSONResponse(
        status_code=429,
        content={"message": message, "retryAfter": retry_after},
        headers=headers,
    )


def _log_rejection(request: Request, decision: RateLimitDecision) -> None:
    logger.warning(
        "Rate limit exceeded",
        extra=get_log_context(
            request_id=getattr(request.state, "request_id", None),
            client_key=decision.client_key,
            path=request.url.path,
            method=request.method,
            retry_after=decision.retry_after,
        ),
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce one limiter on a set of path prefixes.

    Requests are keyed by authenticated identity if available, otherwise by
    network address.
    """

    def __init__(
        self,
        app,
        limiter: Optional[SlidingWindowRateLimiter] = None,
        path_prefixes: Iterable[str] = ("/api",),
    ):
        super().__init__(app)
        self.limiter = limiter if limiter is not None else create_api_rate_limiter()
        self.path_prefixes = tuple(path_prefixes)

    def _applies_to(self, request: Request) -> bool:
        if not self.path_prefixes:
            return True
        return request.url.path.startswith(self.path_prefixes)

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not self._applies_to(request):
            return await call_next(request)

        decision = self.limiter.admit(request)

        if not decision.allowed:
            _log_rejection(request, decision)
            return rate_limit_response(
                decision.retry_after, decision.message, limit=decision.limit
            )

        response = await call_next(request)

        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)

        return response


def enforce_rate_limit(
    limiter: SlidingWindowRateLimiter,
    request: Request,
    client_key: Optional[str] = None,
) -> RateLimitDecision:
    """Admit ``request`` or raise ``RateLimitExceededError``.

    ``client_key`` overrides the key derived from the request, for routes
    where the caller is not the party being limited.
    """
    if client_key is None:
        decision = limiter.admit(request)
    else:
        decision = limiter.check(client_key)
    if not decision.allowed:
        _log_rejection(request, decision)
        raise RateLimitExceededError(decision.retry_after, decision.message)
    return decision


def rate_limit_dependency(limiter: SlidingWindowRateLimiter) -> Callable[[Request], None]:
    """Create a FastAPI dependency that applies ``limiter`` to one route.

    Usage:
        auth_limit = rate_limit_dependency(create_auth_rate_limiter())

        @router.post("/login", dependencies=[Depends(auth_limit)])
        async def login(...): ...
    """

    def _enforce(request: Request) -> None:
        enforce_rate_limit(limiter, request)

    return _enforce
