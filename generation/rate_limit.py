"""Sliding-window rate limiting per user and service."""
from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import defaultdict, deque
from typing import Callable, Deque, Dict, Mapping, Optional, Tuple

import redis

from core.constants import SERVICE_MUREKA, SERVICE_SUNO
from core.settings import Settings, get_settings, parse_rate_limit
from generation.errors import RateLimitExceeded
from metrics import env_label, rate_limit_rejections_total

log = logging.getLogger("generation.rate_limit")


class RateLimiter:
    """Allow ``count`` requests per ``window`` seconds for each user/service pair.

    Uses a Redis sorted set per key when a client is given and an in-process
    deque otherwise.
    """

    def __init__(
        self,
        limits: Mapping[str, Tuple[int, float]],
        *,
        redis_client: Optional[redis.Redis] = None,
        prefix: str = "music",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limits = dict(limits)
        self._redis = redis_client
        self._prefix = prefix
        self._clock = clock
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        config: Optional[Settings] = None,
        *,
        redis_client: Optional[redis.Redis] = None,
    ) -> "RateLimiter":
        config = config or get_settings()
        return cls(
            {
                SERVICE_SUNO: parse_rate_limit(config.RATE_LIMIT_SUNO),
                SERVICE_MUREKA: parse_rate_limit(config.RATE_LIMIT_MUREKA),
            },
            redis_client=redis_client,
            prefix=config.REDIS_PREFIX,
        )

    def _key(self, user_id: str, service: str) -> str:
        return f"{self._prefix}:rl:{service}:{user_id}"

    def check(self, user_id: str, service: str) -> None:
        """Record a hit or raise :class:`RateLimitExceeded`."""

        limit = self.limits.get(service)
        if limit is None:
            return
        count, window = limit
        key = self._key(user_id, service)
        now = self._clock()
        if self._redis is not None:
            try:
                retry_after = self._check_redis(key, count, window, now)
            except redis.RedisError as exc:
                log.warning("rate limit redis error", extra={"meta": {"key": key, "err": str(exc)}})
                retry_after = self._check_memory(key, count, window, now)
        else:
            retry_after = self._check_memory(key, count, window, now)
        if retry_after is not None:
            rate_limit_rejections_total.labels(service=service, env=env_label()).inc()
            log.info(
                "rate limit exceeded",
                extra={"meta": {"user_id": user_id, "service": service, "retry_after": retry_after}},
            )
            raise RateLimitExceeded(service, retry_after, limit=count)

    def _check_memory(self, key: str, count: int, window: float, now: float) -> Optional[float]:
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - window:
                hits.popleft()
            if len(hits) >= count:
                return hits[0] + window - now
            hits.append(now)
            return None

    def _check_redis(self, key: str, count: int, window: float, now: float) -> Optional[float]:
        pipe = self._redis.pipeline()
        pipe.zremrangebyscore(key, 0, now - window)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.zcard(key)
        _, oldest, current = pipe.execute()
        if current >= count:
            oldest_score = oldest[0][1] if oldest else now
            return oldest_score + window - now
        self._redis.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        self._redis.expire(key, int(window) + 1)
        return None

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


__all__ = ["RateLimiter"]
