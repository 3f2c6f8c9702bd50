"""
Admission control (rate limiting) for API endpoints.

Two interchangeable backends behind one interface:
- In-process counters: always available, and the fallback when Redis fails
- Redis sliding window: shared across processes, used when RATE_LIMIT_REDIS_URL is set

The backend is chosen once, when the process-wide limiter is built.
"""
import asyncio
import functools
import logging
import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis
import redis.asyncio as aioredis
from asgiref.sync import iscoroutinefunction
from django.conf import settings
from django.http import JsonResponse

from .audit import audit_ratelimit_degraded, audit_ratelimit_exceeded
from .middleware import get_caller_identity

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time as unix milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitConfig:
    """Limit and window for one named operation."""
    limit: int
    window_ms: int

    def __post_init__(self):
        for name in ('limit', 'window_ms'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

    @property
    def signature(self) -> str:
        """Key under which shared limiters with this configuration are reused."""
        return f"{self.limit}-{self.window_ms}"


# Rate limit presets, one per named scope
CHAT_MESSAGE_RATE_LIMIT = RateLimitConfig(limit=30, window_ms=60 * 1000)
CONVERSATION_CREATE_RATE_LIMIT = RateLimitConfig(limit=5, window_ms=60 * 1000)
FILE_UPLOAD_RATE_LIMIT = RateLimitConfig(limit=10, window_ms=10 * 60 * 1000)
API_REQUEST_RATE_LIMIT = RateLimitConfig(limit=100, window_ms=60 * 1000)

RATE_LIMIT_PRESETS: Dict[str, RateLimitConfig] = {
    'chat': CHAT_MESSAGE_RATE_LIMIT,
    'conversation-create': CONVERSATION_CREATE_RATE_LIMIT,
    'file-upload': FILE_UPLOAD_RATE_LIMIT,
    'api': API_REQUEST_RATE_LIMIT,
}


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: int  # Unix timestamp in milliseconds
    degraded: bool = False  # answered by the local fallback after a shared-store error

    def retry_after(self, now: Optional[int] = None) -> int:
        """Seconds the caller should wait before retrying (at least 1)."""
        if now is None:
            now = now_ms()
        return max(1, math.ceil((self.reset_at - now) / 1000))


@dataclass
class RequestRecord:
    count: int
    reset_at: int


class LocalRateLimiter:
    """
    In-process fixed-window counters keyed by rate limit key.

    A record is only valid while ``now < reset_at``; expired records are
    treated as absent and removed by a background sweep.
    """

    def __init__(self, clock: Callable[[], int] = now_ms, sweep_interval: float = 60.0):
        self._clock = clock
        self._records: Dict[str, RequestRecord] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._sweeper: Optional[threading.Thread] = None
        self._stopped = threading.Event()

    def check(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        """
        Count one request for ``identifier`` and decide whether it may proceed.

        Args:
            identifier: Rate limit key (e.g., "chat:user123")
            config: Limit and window for the operation

        Returns:
            RateLimitResult with allow/deny and metadata
        """
        self._ensure_sweeper()

        with self._lock:
            now = self._clock()
            record = self._records.get(identifier)

            if record is None or now >= record.reset_at:
                reset_at = now + config.window_ms
                self._records[identifier] = RequestRecord(count=1, reset_at=reset_at)
                return RateLimitResult(
                    allowed=True,
                    limit=config.limit,
                    remaining=config.limit - 1,
                    reset_at=reset_at,
                )

            record.count += 1

            if record.count > config.limit:
                return RateLimitResult(
                    allowed=False,
                    limit=config.limit,
                    remaining=0,
                    reset_at=record.reset_at,
                )

            return RateLimitResult(
                allowed=True,
                limit=config.limit,
                remaining=config.limit - record.count,
                reset_at=record.reset_at,
            )

    def sweep(self) -> int:
        """Remove expired records. Returns the number removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, record in self._records.items() if now >= record.reset_at]
            for key in expired:
                del self._records[key]

        if expired:
            logger.debug(f"Swept {len(expired)} expired rate limit records")
        return len(expired)

    def _ensure_sweeper(self):
        if self._sweep_interval <= 0 or self._sweeper is not None:
            return
        with self._lock:
            if self._sweeper is not None:
                return
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                name='ratelimit-sweeper',
                daemon=True,
            )
            self._sweeper.start()

    def _sweep_loop(self):
        while not self._stopped.wait(self._sweep_interval):
            self.sweep()

    def stop(self):
        """Stop the background sweeper (tests and shutdown)."""
        self._stopped.set()

    def clear(self):
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        return len(self._records)


# Lua script for atomic sliding window rate limiting.
# Approximates a true sliding log with two fixed windows: the previous
# window's count is weighted by how much of it still overlaps the trailing
# window. Times are in milliseconds.
SLIDING_WINDOW_SCRIPT = """
local current_key = KEYS[1]
local previous_key = KEYS[2]
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local current = tonumber(redis.call('GET', current_key) or '0')
local previous = tonumber(redis.call('GET', previous_key) or '0')

-- Weight the previous window by its remaining overlap
local elapsed = (now % window) / window
local weighted = math.floor((1 - elapsed) * previous)

if weighted + current >= limit then
    return {0, 0}
end

local count = redis.call('INCR', current_key)
if count == 1 then
    redis.call('PEXPIRE', current_key, window * 2 + 1000)
end

return {1, limit - (count + weighted)}
"""


class SlidingWindowLimiter:
    """Redis-backed sliding window limiter for one configuration."""

    def __init__(self, client: aioredis.Redis, config: RateLimitConfig, prefix: str = 'ratelimit'):
        self.config = config
        self.prefix = prefix
        self._script = client.register_script(SLIDING_WINDOW_SCRIPT)

    async def limit(self, identifier: str, now: int) -> RateLimitResult:
        window = self.config.window_ms
        current_window = now // window

        allowed, remaining = await self._script(
            keys=[
                f"{self.prefix}:{identifier}:{current_window}",
                f"{self.prefix}:{identifier}:{current_window - 1}",
            ],
            args=[self.config.limit, window, now],
        )

        return RateLimitResult(
            allowed=bool(allowed),
            limit=self.config.limit,
            remaining=max(0, int(remaining)),
            reset_at=(current_window + 1) * window,
        )


class RateLimiter:
    """
    Admission controller.

    ``check`` is always local and synchronous. ``check_async`` uses the shared
    Redis backend when one was configured, and falls back to the local
    counters for that single check if Redis errors or times out, so an outage
    neither blocks all traffic nor lifts the limit.
    """

    def __init__(
        self,
        local: Optional[LocalRateLimiter] = None,
        redis_client: Optional[aioredis.Redis] = None,
        clock: Callable[[], int] = now_ms,
        timeout: Optional[float] = None,
    ):
        self.local = local or LocalRateLimiter(clock=clock)
        self._redis = redis_client
        self._clock = clock
        self._timeout = timeout
        self._shared_limiters: Dict[str, SlidingWindowLimiter] = {}

    @property
    def uses_shared_backend(self) -> bool:
        return self._redis is not None

    def check(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        """Local, synchronous, best-effort decision."""
        return self.local.check(identifier, config)

    def _shared_limiter(self, config: RateLimitConfig) -> SlidingWindowLimiter:
        limiter = self._shared_limiters.get(config.signature)
        if limiter is None:
            limiter = SlidingWindowLimiter(self._redis, config)
            self._shared_limiters[config.signature] = limiter
        return limiter

    async def check_async(self, identifier: str, config: RateLimitConfig) -> RateLimitResult:
        """Same decision as ``check``, but through the shared store when configured."""
        if self._redis is None:
            return self.local.check(identifier, config)

        try:
            pending = self._shared_limiter(config).limit(identifier, self._clock())
            if self._timeout:
                return await asyncio.wait_for(pending, self._timeout)
            return await pending
        except (redis.RedisError, OSError, asyncio.TimeoutError, ValueError, TypeError) as e:
            error = str(e) or e.__class__.__name__
            logger.warning(f"Redis rate limit error, falling back to in-process counters: {error}")
            audit_ratelimit_degraded(identifier, error)

            result = self.local.check(identifier, config)
            result.degraded = True
            return result


def build_limiter() -> RateLimiter:
    """Build the admission controller from settings."""
    redis_url = getattr(settings, 'RATE_LIMIT_REDIS_URL', '')
    local = LocalRateLimiter(
        sweep_interval=getattr(settings, 'RATE_LIMIT_SWEEP_INTERVAL', 60.0),
    )

    if redis_url:
        timeout = getattr(settings, 'RATE_LIMIT_TIMEOUT', 0.5)
        client = aioredis.from_url(
            redis_url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        logger.info("Rate limiter: using Redis sliding window for distributed rate limiting")
        return RateLimiter(local=local, redis_client=client, timeout=timeout)

    logger.warning(
        "Rate limiter: using in-process counters (not shared between processes). "
        "Set RATE_LIMIT_REDIS_URL to enable Redis."
    )
    return RateLimiter(local=local)


# Singleton instance
_limiter: Optional[RateLimiter] = None


def get_limiter() -> RateLimiter:
    """Get the process-wide rate limiter instance."""
    global _limiter
    if _limiter is None:
        _limiter = build_limiter()
    return _limiter


def reset_limiter():
    """Drop the process-wide limiter. Useful for testing."""
    global _limiter
    if _limiter is not None:
        _limiter.local.stop()
    _limiter = None


def is_rate_limiting_disabled() -> bool:
    """Check if rate limiting is disabled (dev mode only)."""
    return os.getenv('DISABLE_RATE_LIMITING', '').lower() in ('true', '1', 'yes')


def rate_limit_key(scope: str, identity: str) -> str:
    """Build a rate limit key, e.g. ``chat:user123``."""
    return f"{scope}:{identity}"


def add_rate_limit_headers(response, config: RateLimitConfig, result: RateLimitResult):
    """Add standard rate limit headers to a response."""
    response['X-RateLimit-Limit'] = str(config.limit)
    response['X-RateLimit-Remaining'] = str(result.remaining)
    response['X-RateLimit-Reset'] = str(result.reset_at // 1000)  # seconds
    return response


def rate_limit_response(config: RateLimitConfig, result: RateLimitResult) -> JsonResponse:
    """Generate a 429 rate limit exceeded response."""
    retry_after = result.retry_after()
    response = JsonResponse(
        {
            'error': 'Too Many Requests',
            'code': 'RATE_LIMITED',
            'message': 'You have exceeded the rate limit. Please try again later.',
            'retryAfter': retry_after,
        },
        status=429
    )
    response['Retry-After'] = str(retry_after)
    add_rate_limit_headers(response, config, result)
    return response


def rate_limited(scope: str, config: Optional[RateLimitConfig] = None, limiter: Optional[RateLimiter] = None):
    """
    Decorator to apply rate limiting to a view.

    The key is ``<scope>:<user id or client ip>``. Async views go through
    ``check_async`` (shared backend when configured); sync views use the
    local ``check``.

    Usage:
        @rate_limited('file-upload')
        @auth_required
        async def upload_document(request):
            ...

    Args:
        scope: Name of the operation; also selects the preset when no config is given
        config: Explicit limit/window, overriding the preset
        limiter: Explicit admission controller (defaults to the process-wide one)
    """
    if config is None:
        try:
            config = RATE_LIMIT_PRESETS[scope]
        except KeyError:
            raise ValueError(f"Unknown rate limit scope: {scope}")

    def _denied(request, key: str, result: RateLimitResult):
        logger.warning(f"Rate limit exceeded for {key}")
        audit_ratelimit_exceeded(request, scope, config.limit, config.window_ms)
        return rate_limit_response(config, result)

    def decorator(view_func):
        if iscoroutinefunction(view_func):
            @functools.wraps(view_func)
            async def async_wrapper(request, *args, **kwargs):
                if is_rate_limiting_disabled():
                    return await view_func(request, *args, **kwargs)

                key = rate_limit_key(scope, get_caller_identity(request))
                result = await (limiter or get_limiter()).check_async(key, config)

                if not result.allowed:
                    return _denied(request, key, result)

                response = await view_func(request, *args, **kwargs)
                add_rate_limit_headers(response, config, result)
                return response

            return async_wrapper

        @functools.wraps(view_func)
        def wrapper(request, *args, **kwargs):
            if is_rate_limiting_disabled():
                return view_func(request, *args, **kwargs)

            key = rate_limit_key(scope, get_caller_identity(request))
            result = (limiter or get_limiter()).check(key, config)

            if not result.allowed:
                return _denied(request, key, result)

            response = view_func(request, *args, **kwargs)
            add_rate_limit_headers(response, config, result)
            return response

        return wrapper
    return decorator
