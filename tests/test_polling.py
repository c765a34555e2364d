import logging

from generation.polling import Poller, iter_delays, poll_mureka_once, poll_suno_once
from mureka.client import MurekaServerError
from suno.client import SunoClientError, SunoServerError
from tests.fakes import make_settings, suno_complete_info, suno_track


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _poller(clock: Clock, timeout: float = 100.0) -> tuple[Poller, list[float]]:
    sleeps: list[float] = []

    def sleep(delay: float) -> None:
        sleeps.append(delay)
        clock.now += delay

    return Poller(first_delay=5, series=[8, 13], timeout=timeout, sleep=sleep, clock=clock), sleeps


def test_iter_delays_repeats_last_value() -> None:
    delays = iter_delays(5, [8, 13])
    assert [next(delays) for _ in range(5)] == [5, 8, 13, 13, 13]
    assert next(iter_delays(0, [])) == 5.0


def test_poll_suno_once_maps_states() -> None:
    def raise_(exc):
        def fetch(task_id):
            raise exc

        return fetch

    assert poll_suno_once(raise_(SunoClientError("nf", status=404)), "t").state == "pending"
    assert poll_suno_once(raise_(SunoServerError("boom", status=500)), "t").state == "retry"
    assert poll_suno_once(raise_(SunoServerError("net")), "t").state == "retry"
    assert poll_suno_once(raise_(SunoClientError("auth", status=401)), "t").state == "hard_error"
    assert poll_suno_once(lambda t: {"code": 200, "data": None}, "t").state == "pending"
    ready = poll_suno_once(lambda t: suno_complete_info(t, suno_track("a1")), "t")
    assert ready.state == "ready"
    failed = poll_suno_once(lambda t: {"data": {"status": "GENERATE_AUDIO_FAILED", "errorMessage": "bad"}}, "t")
    assert failed.state == "hard_error"
    assert failed.error == "bad"


def test_poll_mureka_once_maps_states() -> None:
    assert poll_mureka_once(lambda t: {"id": t, "status": "running"}, "t").state == "pending"
    assert poll_mureka_once(lambda t: {"id": t, "status": "succeeded"}, "t").state == "ready"
    failed = poll_mureka_once(lambda t: {"id": t, "status": "failed", "failed_reason": "moderation"}, "t")
    assert failed.state == "hard_error"
    assert failed.error == "moderation"

    def boom(task_id):
        raise MurekaServerError("down", status=503)

    assert poll_mureka_once(boom, "t").state == "retry"


def test_wait_follows_backoff_until_ready() -> None:
    clock = Clock()
    poller, sleeps = _poller(clock)
    answers = iter(
        [
            poll_suno_once(lambda t: {"data": {"status": "PENDING"}}, "t"),
            poll_suno_once(lambda t: {"data": {"status": "TEXT_SUCCESS"}}, "t"),
            poll_suno_once(lambda t: suno_complete_info(t, suno_track("a1")), "t"),
        ]
    )
    result = poller.wait("t", lambda task_id: next(answers))
    assert result.state == "ready"
    assert result.attempts == 3
    assert sleeps == [5, 8, 13]


def test_wait_times_out(caplog) -> None:
    clock = Clock()
    poller, sleeps = _poller(clock, timeout=20)
    with caplog.at_level(logging.INFO, logger="generation.polling"):
        result = poller.wait("t", lambda task_id: poll_suno_once(lambda t: {"data": {"status": "PENDING"}}, task_id))
    assert result.state == "timeout"
    assert result.attempts == 3
    assert sum(sleeps) >= 20
    timeout_record = next(r for r in caplog.records if r.message == "poll timeout")
    assert timeout_record.meta["taskId"] == "t"


def test_wait_stops_when_callback_delivered() -> None:
    clock = Clock()
    poller, sleeps = _poller(clock)
    delivered = {"flag": False}

    def fetch(task_id):
        delivered["flag"] = True
        return poll_suno_once(lambda t: {"data": {"status": "PENDING"}}, task_id)

    result = poller.wait("t", fetch, is_delivered=lambda: delivered["flag"])
    assert result.state == "delivered"
    assert sleeps == [5]


def test_for_mureka_uses_fixed_interval() -> None:
    poller = Poller.for_mureka(make_settings(MUREKA_POLL_INTERVAL_SEC=2, MUREKA_POLL_MAX_ATTEMPTS=10))
    assert poller.first_delay == 2
    assert poller.series == [2]
    assert poller.timeout == 20
    suno = Poller.for_suno(make_settings())
    assert suno.series == [8.0, 13.0, 21.0, 34.0]
    assert suno.timeout == 420.0
