from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Callable, Protocol

from fastapi import HTTPException, Request, Response, status
from redis.asyncio import Redis

from docsync.core.config import TierLimits, get_settings, tier_limits
from docsync.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class PrincipalLike(Protocol):
    # Minimal principal shape needed for rate limiting.
    tenant_id: str
    tier: str


@dataclass(frozen=True)
class BucketConfig:
    # Sustained refill rate in tokens per second and the bucket capacity.
    rate: float
    capacity: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_ms: int
    remaining: float
    capacity: int
    degraded: bool = False


# One bucket per tenant: every device sharing a tenant's identity draws from it.
_TOKEN_BUCKET_LUA = r"""
local now_ms = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])

local data = redis.call("HMGET", KEYS[1], "tokens", "ts")
local tokens = tonumber(data[1])
local ts = tonumber(data[2])
if tokens == nil then
  tokens = capacity
  ts = now_ms
end
if now_ms < ts then
  ts = now_ms
end
tokens = math.min(capacity, tokens + ((now_ms - ts) / 1000.0) * rate)

local allowed = tokens >= cost
local retry = 0
if not allowed then
  if rate <= 0 then
    retry = 1000
  else
    retry = math.ceil(((cost - tokens) / rate) * 1000)
  end
else
  tokens = tokens - cost
end

redis.call("HSET", KEYS[1], "tokens", tokens, "ts", now_ms)
redis.call("EXPIRE", KEYS[1], ttl)

return {allowed and 1 or 0, tostring(tokens), retry}
"""


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


def bucket_for_tier(limits: TierLimits) -> BucketConfig:
    # A full minute's allowance may burst; it refills evenly across the minute.
    capacity = max(1, int(limits.requests_per_minute))
    return BucketConfig(rate=capacity / 60.0, capacity=capacity)


def _ttl_seconds(bucket: BucketConfig) -> int:
    # Expire idle buckets once they would have refilled twice over.
    if bucket.rate <= 0:
        return max(1, bucket.capacity)
    return max(1, int(math.ceil((bucket.capacity / bucket.rate) * 2)))


async def _get_redis() -> Redis:
    # Cache Redis connections per event loop to avoid reconnecting per request.
    global _redis_pool, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    async with _redis_lock:
        if _redis_pool is None or _redis_loop != current_loop:
            _redis_pool = Redis.from_url(
                get_settings().redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            _redis_loop = current_loop
    return _redis_pool


class RateLimiter:
    def __init__(
        self,
        *,
        redis: Redis | None = None,
        time_provider: Callable[[], float] | None = None,
    ) -> None:
        self._redis = redis
        self._time_provider = time_provider or time.time

    async def check(self, *, tenant_id: str, bucket: BucketConfig, cost: int = 1) -> RateLimitDecision:
        # Evaluate and debit the tenant bucket atomically in Redis.
        key = f"{get_settings().rl_redis_prefix}:tenant:{tenant_id}"
        now_ms = int(self._time_provider() * 1000)
        redis = self._redis or await _get_redis()
        result = await redis.eval(
            _TOKEN_BUCKET_LUA,
            1,
            key,
            now_ms,
            bucket.rate,
            bucket.capacity,
            cost,
            _ttl_seconds(bucket),
        )
        return RateLimitDecision(
            allowed=int(result[0]) == 1,
            remaining=float(result[1]),
            retry_after_ms=int(float(result[2])),
            capacity=bucket.capacity,
        )


_rate_limiter: RateLimiter | None = None


def _get_rate_limiter() -> RateLimiter:
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter_state() -> None:
    # Reset cached Redis connections for deterministic test setup.
    global _rate_limiter, _redis_pool, _redis_loop
    _rate_limiter = None
    _redis_pool = None
    _redis_loop = None


def _throttle_exception(*, decision: RateLimitDecision, tier: str) -> HTTPException:
    retry_after_s = max(1, int(math.ceil(decision.retry_after_ms / 1000.0)))
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "tier": tier,
            "limit_per_minute": decision.capacity,
            "retry_after_ms": decision.retry_after_ms,
        },
        headers={
            "Retry-After": str(retry_after_s),
            "X-RateLimit-Limit": str(decision.capacity),
            "X-RateLimit-Remaining": "0",
        },
    )


async def enforce_rate_limit(
    *,
    request: Request,
    response: Response,
    principal: PrincipalLike,
) -> None:
    # Runs before any sync operation; honours the configured fail mode when Redis is down.
    settings = get_settings()
    if not settings.rate_limit_enabled:
        return

    limits = tier_limits(settings, principal.tier)
    try:
        decision = await _get_rate_limiter().check(
            tenant_id=principal.tenant_id, bucket=bucket_for_tier(limits)
        )
    except Exception as exc:  # noqa: BLE001 - guard against Redis connectivity failures
        if settings.rl_fail_mode.lower() == "closed":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={"code": "RATE_LIMIT_UNAVAILABLE", "message": "Rate limiting unavailable"},
            ) from exc
        response.headers["X-RateLimit-Status"] = "degraded"
        increment_counter("rate_limit.degraded")
        logger.warning("rate_limit_degraded path=%s", request.url.path)
        return

    response.headers["X-RateLimit-Limit"] = str(decision.capacity)
    response.headers["X-RateLimit-Remaining"] = str(int(decision.remaining))
    if decision.allowed:
        return
    increment_counter("rate_limit.throttled")
    logger.info(
        "rate_limited tenant_id=%s tier=%s retry_after_ms=%s",
        principal.tenant_id,
        limits.tier,
        decision.retry_after_ms,
    )
    raise _throttle_exception(decision=decision, tier=limits.tier)
