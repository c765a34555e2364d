import redis

import redis_utils


class _Clock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _BrokenRedis:
    def set(self, *args, **kwargs):
        raise redis.ConnectionError("redis down")

    def delete(self, *args, **kwargs):
        raise redis.ConnectionError("redis down")


def test_register_once_in_memory(monkeypatch) -> None:
    monkeypatch.setattr(redis_utils.time, "time", _Clock())
    assert redis_utils.register_once("music:cb:t1:complete", ttl=60) is True
    assert redis_utils.register_once("music:cb:t1:complete", ttl=60) is False
    assert redis_utils.register_once("", ttl=60) is True


def test_expired_keys_are_pruned(monkeypatch) -> None:
    clock = _Clock()
    monkeypatch.setattr(redis_utils.time, "time", clock)
    for index in range(5):
        redis_utils.register_once(f"music:cb:t{index}:complete", ttl=60)
    assert redis_utils.memory_size() == 5

    clock.now += 30
    redis_utils.register_once("music:cb:fresh:complete", ttl=60)
    assert redis_utils.memory_size() == 6

    clock.now += 31
    assert redis_utils.register_once("music:cb:t0:complete", ttl=60) is True
    assert redis_utils.memory_size() == 2


def test_release_once_allows_redelivery(monkeypatch) -> None:
    monkeypatch.setattr(redis_utils.time, "time", _Clock())
    assert redis_utils.register_once("music:cb:t1:complete") is True
    redis_utils.release_once("music:cb:t1:complete")
    assert redis_utils.memory_size() == 0
    assert redis_utils.register_once("music:cb:t1:complete") is True


def test_redis_errors_fall_back_to_memory(monkeypatch, caplog) -> None:
    monkeypatch.setattr(redis_utils, "get_redis", lambda: _BrokenRedis())
    assert redis_utils.register_once("music:cb:t1:complete") is True
    assert redis_utils.register_once("music:cb:t1:complete") is False
    redis_utils.release_once("music:cb:t1:complete")
    assert redis_utils.register_once("music:cb:t1:complete") is True
    messages = {record.getMessage() for record in caplog.records}
    assert "idempotency redis error" in messages
    assert "idempotency release failed" in messages
