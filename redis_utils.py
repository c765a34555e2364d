"""Redis connection and small key helpers with an in-memory fallback."""
from __future__ import annotations

import logging
import threading
import time
from typing import Optional

import redis

from core.settings import get_settings

_logger = logging.getLogger("redis-utils")

_client: Optional[redis.Redis] = None
_client_url: Optional[str] = None
_client_lock = threading.Lock()

_memory_once: dict[str, float] = {}
_memory_lock = threading.Lock()


def get_redis() -> Optional[redis.Redis]:
    """Return a shared client for ``REDIS_URL`` or ``None`` when unset."""

    global _client, _client_url
    url = get_settings().REDIS_URL
    if not url:
        return None
    with _client_lock:
        if _client is None or _client_url != url:
            _client = redis.from_url(url, decode_responses=True)
            _client_url = url
        return _client


def prefixed(*parts: str) -> str:
    prefix = get_settings().REDIS_PREFIX
    return ":".join([prefix, *[str(part) for part in parts if part not in (None, "")]])


def register_once(key: str, ttl: int = 24 * 60 * 60) -> bool:
    """Return ``True`` the first time ``key`` is seen within ``ttl`` seconds."""

    if not key:
        return True
    client = get_redis()
    if client is not None:
        try:
            return bool(client.set(key, "1", nx=True, ex=ttl))
        except redis.RedisError as exc:
            _logger.warning("idempotency redis error", extra={"meta": {"key": key, "err": str(exc)}})
    now = time.time()
    with _memory_lock:
        _memory_prune(now)
        if key in _memory_once:
            return False
        _memory_once[key] = now + max(ttl, 1)
        return True


def release_once(key: str) -> None:
    """Forget ``key`` so the next delivery is processed again."""

    if not key:
        return
    client = get_redis()
    if client is not None:
        try:
            client.delete(key)
        except redis.RedisError as exc:
            _logger.warning("idempotency release failed", extra={"meta": {"key": key, "err": str(exc)}})
    with _memory_lock:
        _memory_once.pop(key, None)


def _memory_prune(now: float) -> None:
    expired = [key for key, expires_at in _memory_once.items() if expires_at <= now]
    for key in expired:
        _memory_once.pop(key, None)


def memory_size() -> int:
    with _memory_lock:
        return len(_memory_once)


def clear_memory_state() -> None:
    with _memory_lock:
        _memory_once.clear()


__all__ = ["get_redis", "prefixed", "register_once", "release_once", "memory_size", "clear_memory_state"]
