"""Status polling for provider tasks."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Literal, Mapping, Optional, Sequence

from core.constants import STATUS_COMPLETED, STATUS_FAILED
from core.settings import Settings, get_settings
from metrics import env_label, generation_poll_total
from mureka.client import MurekaAPIError
from mureka.schemas import MurekaTask
from suno.client import SunoAPIError
from suno.schemas import RecordInfo
from utils.provider_client import ProviderAPIError

log = logging.getLogger("generation.polling")

PollState = Literal["pending", "ready", "hard_error", "retry", "timeout", "delivered"]


@dataclass(slots=True)
class PollResult:
    state: PollState
    status_code: int
    payload: Mapping[str, Any]
    attempts: int = 0
    elapsed: float = 0.0
    message: Optional[str] = None
    error: Optional[str] = None


def _state_from_error(exc: ProviderAPIError) -> PollState:
    status = exc.status
    if status == 404:
        return "pending"
    if status is None or status == 429 or status >= 500:
        return "retry"
    return "hard_error"


def _result_from_error(exc: ProviderAPIError) -> PollResult:
    return PollResult(
        state=_state_from_error(exc),
        status_code=int(exc.status or 0),
        payload=exc.payload if isinstance(exc.payload, Mapping) else {},
        message=str(exc),
        error=str(exc),
    )


def poll_suno_once(fetch: Callable[[str], Mapping[str, Any]], task_id: str) -> PollResult:
    """Run one Suno record-info lookup and map it to a poll state."""

    try:
        payload = fetch(task_id)
    except SunoAPIError as exc:
        return _result_from_error(exc)
    if not isinstance(payload.get("data"), Mapping):
        return PollResult(state="pending", status_code=200, payload=payload)
    info = RecordInfo.from_payload(payload)
    if info.status == STATUS_COMPLETED:
        return PollResult(state="ready", status_code=200, payload=payload, message=info.raw_status)
    if info.status == STATUS_FAILED:
        return PollResult(
            state="hard_error",
            status_code=200,
            payload=payload,
            message=info.raw_status,
            error=info.error_message or info.raw_status,
        )
    return PollResult(state="pending", status_code=200, payload=payload, message=info.raw_status)


def poll_mureka_once(fetch: Callable[[str], Mapping[str, Any]], task_id: str) -> PollResult:
    """Run one Mureka query and map it to a poll state."""

    try:
        payload = fetch(task_id)
    except MurekaAPIError as exc:
        return _result_from_error(exc)
    task = MurekaTask.from_payload(payload)
    if task.mapped_status == STATUS_COMPLETED:
        return PollResult(state="ready", status_code=200, payload=payload, message=task.status)
    if task.mapped_status == STATUS_FAILED:
        return PollResult(
            state="hard_error",
            status_code=200,
            payload=payload,
            message=task.status,
            error=task.failed_reason or task.status,
        )
    return PollResult(state="pending", status_code=200, payload=payload, message=task.status)


def iter_delays(first: float, series: Sequence[float]) -> Iterator[float]:
    """Yield ``first``, then ``series``, then repeat the last value forever."""

    base = [delay for delay in [first, *series] if delay > 0]
    if not base:
        base = [5.0]
    index = 0
    while True:
        yield base[min(index, len(base) - 1)]
        index += 1


class Poller:
    """Poll a task until it is ready, fails, or the timeout elapses."""

    def __init__(
        self,
        *,
        first_delay: float,
        series: Iterable[float],
        timeout: float,
        service: str = "suno",
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.first_delay = float(first_delay)
        self.series = [float(value) for value in series]
        self.timeout = float(timeout)
        self.service = service
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def for_suno(cls, config: Optional[Settings] = None, **kwargs: Any) -> "Poller":
        config = config or get_settings()
        return cls(
            first_delay=config.POLL_FIRST_DELAY_SEC,
            series=config.poll_backoff_series(),
            timeout=config.POLL_TIMEOUT_SEC,
            service="suno",
            **kwargs,
        )

    @classmethod
    def for_mureka(cls, config: Optional[Settings] = None, **kwargs: Any) -> "Poller":
        config = config or get_settings()
        interval = config.MUREKA_POLL_INTERVAL_SEC
        return cls(
            first_delay=interval,
            series=[interval],
            timeout=interval * config.MUREKA_POLL_MAX_ATTEMPTS,
            service="mureka",
            **kwargs,
        )

    def _record(self, task_id: str, result: PollResult) -> None:
        generation_poll_total.labels(service=self.service, state=result.state, env=env_label()).inc()
        meta = {
            "taskId": task_id,
            "service": self.service,
            "attempt": result.attempts,
            "http_status": result.status_code,
            "mapped_state": result.state,
        }
        if result.error:
            meta["error"] = result.error
        if result.state == "retry":
            log.warning("poll retry", extra={"meta": meta})
        elif result.state == "hard_error":
            log.error("poll hard failure", extra={"meta": meta})
        else:
            log.info("poll step", extra={"meta": meta})

    def wait(
        self,
        task_id: str,
        fetch_once: Callable[[str], PollResult],
        *,
        is_delivered: Optional[Callable[[], bool]] = None,
    ) -> PollResult:
        start = self._clock()
        attempts = 0

        def _delivered() -> Optional[PollResult]:
            if is_delivered is not None and is_delivered():
                log.info("poll delivered via callback", extra={"meta": {"taskId": task_id}})
                return PollResult(
                    state="delivered",
                    status_code=200,
                    payload={},
                    attempts=attempts,
                    elapsed=self._clock() - start,
                )
            return None

        last: Optional[PollResult] = None
        for delay in iter_delays(self.first_delay, self.series):
            delivered = _delivered()
            if delivered is not None:
                return delivered
            if attempts > 0 and self._clock() - start >= self.timeout:
                break
            self._sleep(delay)
            attempts += 1
            last = fetch_once(task_id)
            last.attempts = attempts
            last.elapsed = self._clock() - start
            self._record(task_id, last)
            if last.state in ("ready", "hard_error"):
                return last
            if last.elapsed >= self.timeout:
                break

        delivered = _delivered()
        if delivered is not None:
            return delivered
        log.warning(
            "poll timeout",
            extra={"meta": {"taskId": task_id, "attempts": attempts, "elapsed": self._clock() - start}},
        )
        return PollResult(
            state="timeout",
            status_code=last.status_code if last else 0,
            payload=last.payload if last else {},
            attempts=attempts,
            elapsed=self._clock() - start,
            message=last.message if last else None,
        )


__all__ = ["PollResult", "Poller", "iter_delays", "poll_mureka_once", "poll_suno_once"]
