import asyncio
import logging
import time
from collections import defaultdict, deque
from ipaddress import ip_address, ip_network
from typing import Deque, Dict, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError
from starlette.requests import Request

logger = logging.getLogger("secure_booking.rate_limit")

KEY_PREFIX = "secure-booking:rl"


class RateLimiter(Protocol):
    async def allow(self, key: str) -> bool: ...

    async def reset(self) -> None: ...

    async def close(self) -> None: ...


class InMemoryRateLimiter:
    """Sliding one-minute window per key, for single-process deployments and tests."""

    def __init__(self, requests_per_minute: int, cleanup_minutes: int = 10) -> None:
        self.requests_per_minute = requests_per_minute
        self.cleanup_minutes = cleanup_minutes
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._last_seen: Dict[str, float] = {}
        self._last_prune: float = 0.0
        self._lock = asyncio.Lock()

    async def allow(self, key: str) -> bool:
        async with self._lock:
            now = time.monotonic()
            self._maybe_prune(now)
            timestamps = self._requests[key]
            while timestamps and timestamps[0] <= now - 60:
                timestamps.popleft()
            self._last_seen[key] = now
            if len(timestamps) >= self.requests_per_minute:
                return False
            timestamps.append(now)
            return True

    async def reset(self) -> None:
        async with self._lock:
            self._requests.clear()
            self._last_seen.clear()

    async def close(self) -> None:
        return None

    def _maybe_prune(self, now: float) -> None:
        if now - self._last_prune < 60:
            return
        idle_before = now - self.cleanup_minutes * 60
        for key, seen in list(self._last_seen.items()):
            if seen < idle_before:
                self._requests.pop(key, None)
                self._last_seen.pop(key, None)
        self._last_prune = now


# Sorted-set window evaluated atomically on the Redis side; uses server time so
# API replicas with skewed clocks share one view of the window.
RATE_LIMIT_LUA = r'''
local limit = tonumber(ARGV[1])
local ttl_seconds = tonumber(ARGV[2])

local time = redis.call('TIME')
local now_ms = (time[1] * 1000) + math.floor(time[2] / 1000)

redis.call('ZREMRANGEBYSCORE', KEYS[1], 0, now_ms - 60000)
if redis.call('ZCARD', KEYS[1]) >= limit then
  return 0
end

local seq = redis.call('INCR', KEYS[2])
redis.call('ZADD', KEYS[1], now_ms, tostring(now_ms) .. ':' .. tostring(seq))
redis.call('EXPIRE', KEYS[1], ttl_seconds)
redis.call('EXPIRE', KEYS[2], ttl_seconds)
return 1
'''


class RedisRateLimiter:
    """Shared limiter; falls back to an in-process window while Redis is unreachable."""

    def __init__(
        self,
        redis_url: str,
        requests_per_minute: int,
        cleanup_minutes: int = 10,
        redis_client: redis.Redis | None = None,
        fail_open_seconds: int = 300,
        health_probe_seconds: float = 5.0,
    ) -> None:
        self.requests_per_minute = requests_per_minute
        self.ttl_seconds = max(int(cleanup_minutes * 60), 62)
        self.redis = redis_client or redis.from_url(redis_url, encoding="utf-8", decode_responses=False)
        self.fail_open_seconds = max(1, fail_open_seconds)
        self.health_probe_seconds = max(0.5, health_probe_seconds)
        self._script_sha: str | None = None
        self._fallback = InMemoryRateLimiter(requests_per_minute, cleanup_minutes=cleanup_minutes)
        self._fallback_until: float = 0.0
        self._last_probe: float = 0.0

    async def allow(self, key: str) -> bool:
        now = time.monotonic()
        if self._fallback_until > now:
            if not await self._probe(now):
                return await self._fallback.allow(key)
        try:
            return bool(await self._eval_script(f"{KEY_PREFIX}:{key}", f"{KEY_PREFIX}:{key}:seq"))
        except RedisError:
            if self._fallback_until <= now:
                logger.warning(
                    "rate_limit_redis_unavailable",
                    extra={"extra": {"fallback_seconds": self.fail_open_seconds}},
                )
                self._fallback_until = now + self.fail_open_seconds
                self._last_probe = now
                await self._fallback.reset()
            return await self._fallback.allow(key)

    async def _probe(self, now: float) -> bool:
        if now - self._last_probe < self.health_probe_seconds:
            return False
        self._last_probe = now
        try:
            await self.redis.ping()
        except RedisError:
            return False
        self._fallback_until = 0.0
        logger.info("rate_limit_redis_recovered")
        return True

    async def reset(self) -> None:
        try:
            cursor = 0
            while True:
                cursor, keys = await self.redis.scan(cursor=cursor, match=f"{KEY_PREFIX}:*", count=100)
                if keys:
                    await self.redis.delete(*keys)
                if cursor == 0:
                    break
        except RedisError:
            logger.warning("rate_limit_reset_failed")
        await self._fallback.reset()

    async def close(self) -> None:
        try:
            await self.redis.aclose()
        except RedisError:
            logger.warning("rate_limit_close_failed")

    async def _eval_script(self, set_key: str, seq_key: str) -> int:
        if not self._script_sha:
            self._script_sha = await self.redis.script_load(RATE_LIMIT_LUA)
        try:
            return await self.redis.evalsha(
                self._script_sha, 2, set_key, seq_key, self.requests_per_minute, self.ttl_seconds
            )
        except ResponseError as exc:
            if "NOSCRIPT" not in str(exc):
                raise
        self._script_sha = None
        return await self.redis.eval(
            RATE_LIMIT_LUA, 2, set_key, seq_key, self.requests_per_minute, self.ttl_seconds
        )


def create_rate_limiter(app_settings, requests_per_minute: int | None = None) -> RateLimiter:
    limit = requests_per_minute or app_settings.rate_limit_per_minute
    if getattr(app_settings, "redis_url", None):
        return RedisRateLimiter(
            app_settings.redis_url,
            limit,
            cleanup_minutes=app_settings.rate_limit_cleanup_minutes,
            fail_open_seconds=app_settings.rate_limit_fail_open_seconds,
            health_probe_seconds=app_settings.rate_limit_redis_probe_seconds,
        )
    return InMemoryRateLimiter(limit, cleanup_minutes=app_settings.rate_limit_cleanup_minutes)


_MAX_FORWARDED_HOPS = 20


def _is_trusted(host: str, cidrs: list[str]) -> bool:
    try:
        address = ip_address(host)
    except ValueError:
        return False
    for cidr in cidrs:
        try:
            if address in ip_network(cidr, strict=False):
                return True
        except ValueError:
            continue
    return False


def get_client_ip(request: Request, trusted_cidrs: list[str]) -> str:
    """Client address, honouring ``X-Forwarded-For`` only from a trusted proxy."""
    source_ip = request.client.host if request.client else "unknown"
    if not trusted_cidrs or not _is_trusted(source_ip, trusted_cidrs):
        return source_ip
    header = request.headers.get("x-forwarded-for")
    if not header:
        return source_ip
    hops = [hop.strip() for hop in header.split(",")]
    if len(hops) > _MAX_FORWARDED_HOPS:
        return source_ip
    try:
        ip_address(hops[0])
    except ValueError:
        return source_ip
    return hops[0]


def resolve_client_key(
    request: Request,
    trust_proxy_headers: bool,
    trusted_proxy_ips: list[str],
    trusted_proxy_cidrs: list[str],
) -> str:
    if not trust_proxy_headers:
        return request.client.host if request.client else "unknown"
    cidrs = list(trusted_proxy_cidrs)
    for ip_str in trusted_proxy_ips:
        try:
            cidrs.append(f"{ip_str}/{ip_address(ip_str).max_prefixlen}")
        except ValueError:
            continue
    return get_client_ip(request, cidrs)
