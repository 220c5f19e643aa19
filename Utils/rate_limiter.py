"""
IP-based rate limiting for consent OTP verification endpoint.
Prevents brute force attacks from the same IP address.

Two sliding-window backends share the RateLimiter interface:
- InMemoryRateLimiter: process-wide, per-key timestamp windows with TTL eviction of idle keys
- RedisRateLimiter: sorted-set window shared across workers; fails closed if Redis is down
"""
import logging
import threading
import time
import uuid
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

import redis

from config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Sliding-window counter keyed by an arbitrary string."""

    def __init__(self, max_hits: int, window_seconds: int):
        self.max_hits = max_hits
        self.window_seconds = window_seconds

    def hit(self, key: str) -> Tuple[bool, int]:
        """
        Record one hit for `key`.
        Returns (is_allowed, remaining_hits). Rejected hits are not recorded.
        """
        raise NotImplementedError

    def reset(self, key: str) -> None:
        raise NotImplementedError


class InMemoryRateLimiter(RateLimiter):
    def __init__(
        self,
        max_hits: int,
        window_seconds: int,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval_seconds: Optional[int] = None
    ):
        super().__init__(max_hits, window_seconds)
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval_seconds or window_seconds
        self._last_sweep = clock()

    def _evict_expired(self, window: Deque[float], now: float) -> None:
        cutoff = now - self.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()

    def _sweep(self, now: float) -> None:
        """Drop keys whose whole window has aged out."""
        if now - self._last_sweep < self._sweep_interval:
            return
        for key in list(self._hits):
            window = self._hits[key]
            self._evict_expired(window, now)
            if not window:
                del self._hits[key]
        self._last_sweep = now

    def hit(self, key: str) -> Tuple[bool, int]:
        with self._lock:
            now = self._clock()
            self._sweep(now)

            window = self._hits.setdefault(key, deque())
            self._evict_expired(window, now)

            if len(window) >= self.max_hits:
                return False, 0

            window.append(now)
            return True, max(0, self.max_hits - len(window))

    def reset(self, key: str) -> None:
        with self._lock:
            self._hits.pop(key, None)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)


class RedisRateLimiter(RateLimiter):
    def __init__(self, client: "redis.Redis", max_hits: int, window_seconds: int, prefix: str = "ip_rate_limit"):
        super().__init__(max_hits, window_seconds)
        self._client = client
        self._prefix = prefix

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def hit(self, key: str) -> Tuple[bool, int]:
        redis_key = self._key(key)
        now = time.time()
        try:
            pipe = self._client.pipeline()
            pipe.zremrangebyscore(redis_key, 0, now - self.window_seconds)
            pipe.zcard(redis_key)
            _, current = pipe.execute()

            if int(current) >= self.max_hits:
                return False, 0

            pipe = self._client.pipeline()
            pipe.zadd(redis_key, {f"{now}:{uuid.uuid4().hex}": now})
            pipe.expire(redis_key, self.window_seconds)
            pipe.execute()
            return True, max(0, self.max_hits - int(current) - 1)
        except redis.RedisError as e:
            logger.error(f"Redis error checking rate limit for {key}: {e}")
            # Fail closed for security - deny if Redis is down
            return False, 0

    def reset(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except redis.RedisError as e:
            logger.error(f"Redis error resetting rate limit for {key}: {e}")


_rate_limiter: Optional[RateLimiter] = None


def _build_redis_client() -> "redis.Redis":
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        username=settings.REDIS_USERNAME,
        password=settings.REDIS_PASSWORD,
        db=settings.REDIS_DB,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30,
    )


def get_rate_limiter() -> RateLimiter:
    """Lazily build the process-wide limiter for the configured backend."""
    global _rate_limiter
    if _rate_limiter is None:
        backend = settings.RATE_LIMIT_BACKEND.lower()
        if backend == "redis":
            _rate_limiter = RedisRateLimiter(
                _build_redis_client(),
                settings.VERIFY_OTP_MAX_ATTEMPTS_PER_IP,
                settings.VERIFY_OTP_WINDOW_SECONDS,
                prefix="ip_rate_limit:verify_consent_otp",
            )
            logger.info(f"Rate limiter using Redis at {settings.REDIS_HOST}:{settings.REDIS_PORT}")
        elif backend == "memory":
            _rate_limiter = InMemoryRateLimiter(
                settings.VERIFY_OTP_MAX_ATTEMPTS_PER_IP,
                settings.VERIFY_OTP_WINDOW_SECONDS,
            )
        else:
            raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {settings.RATE_LIMIT_BACKEND}")
    return _rate_limiter


def set_rate_limiter(limiter: Optional[RateLimiter]) -> None:
    global _rate_limiter
    _rate_limiter = limiter


def check_ip_rate_limit(ip: str) -> Tuple[bool, int]:
    """
    Check if IP address has exceeded rate limit for OTP verification.
    Returns (is_allowed, remaining_attempts)
    """
    if not ip or ip == "unknown":
        return True, settings.VERIFY_OTP_MAX_ATTEMPTS_PER_IP
    return get_rate_limiter().hit(ip)


def get_client_ip(request) -> str:
    """Extract client IP address from request"""
    # Check for forwarded IP (behind proxy/load balancer)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    # Fallback to direct client IP
    if request.client:
        return request.client.host

    return "unknown"
