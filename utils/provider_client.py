"""Shared :mod:`requests` plumbing for the music provider clients."""
from __future__ import annotations

import json
import logging
import random
import time
from typing import Any, Mapping, MutableMapping, Optional, Sequence
from urllib.parse import urljoin

import requests
from requests import RequestException, Response, Session
from requests.adapters import HTTPAdapter
from urllib3.util import Timeout

from core.settings import Settings, get_settings
from metrics import provider_http_requests_total


class ProviderAPIError(RuntimeError):
    """Raised when a provider responds with an error."""

    provider = "provider"

    def __init__(self, message: str, *, status: Optional[int] = None, payload: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.payload = payload

    @property
    def is_client_error(self) -> bool:
        return self.status is not None and 400 <= self.status < 500

    @property
    def is_rate_limited(self) -> bool:
        return self.status == 429


class ProviderClient:
    """Thin wrapper around :mod:`requests` with retries/backoff.

    Subclasses set ``provider``, the logger and the error classes raised for
    4xx (``client_error_cls``) and 5xx/network failures (``server_error_cls``).
    """

    provider = "provider"
    default_base_url = ""
    client_error_cls: type[ProviderAPIError] = ProviderAPIError
    server_error_cls: type[ProviderAPIError] = ProviderAPIError
    log = logging.getLogger("provider.client")

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        session: Optional[Session] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[tuple[float, float] | Timeout] = None,
        config: Optional[Settings] = None,
    ) -> None:
        self.config = config or get_settings()
        raw_base = (base_url or self.default_base_url).strip()
        self.base_url = raw_base.rstrip("/") + "/"
        self.token = (token or "").strip()
        if not self.token:
            self.log.warning("%s client initialized without API token; requests will fail", self.provider)
        self.session = session or requests.Session()
        adapter = HTTPAdapter(
            pool_connections=self.config.HTTP_POOL_CONNECTIONS,
            pool_maxsize=self.config.HTTP_POOL_PER_HOST,
        )
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)
        retries = max_retries if max_retries is not None else self.config.HTTP_RETRY_ATTEMPTS_EFFECTIVE
        self.max_attempts = max(1, int(retries))
        self._retry_total_cap = 40.0
        self._retry_max_delay = 12.0
        if timeout is None:
            self.timeout = Timeout(
                total=self.config.HTTP_TIMEOUT_TOTAL_EFFECTIVE,
                connect=self.config.HTTP_TIMEOUT_CONNECT,
                read=self.config.HTTP_TIMEOUT_READ,
            )
        elif isinstance(timeout, tuple):
            connect, read = timeout
            self.timeout = Timeout(
                total=max(float(connect), float(read)),
                connect=float(connect),
                read=float(read),
            )
        else:
            self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.token)

    # ------------------------------------------------------------------ helpers
    def _headers(self) -> MutableMapping[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return urljoin(self.base_url, path.lstrip("/"))

    @staticmethod
    def _normalize_path(path: str) -> str:
        text = (path or "").strip()
        if not text:
            return "/"
        if text.startswith("http://") or text.startswith("https://"):
            return text
        if not text.startswith("/"):
            text = f"/{text}"
        return text

    @staticmethod
    def _drop_none(payload: Mapping[str, Any]) -> dict[str, Any]:
        return {key: value for key, value in payload.items() if value is not None}

    @classmethod
    def _payload_message(cls, payload: Mapping[str, Any]) -> Optional[str]:
        for key in ("msg", "message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
            if isinstance(value, Mapping):
                nested = cls._payload_message(value)
                if nested:
                    return nested
        detail = payload.get("detail")
        if isinstance(detail, str) and detail.strip():
            return detail.strip()
        if isinstance(detail, Sequence) and not isinstance(detail, (str, bytes, bytearray)):
            for item in detail:
                if isinstance(item, Mapping):
                    nested = cls._payload_message(item)
                    if nested:
                        return nested
        return None

    @classmethod
    def _extract_identifier(cls, payload: Mapping[str, Any], keys: Sequence[str]) -> Optional[str]:
        for key in keys:
            value = payload.get(key)
            if value not in (None, "") and not isinstance(value, (Mapping, list)):
                text = str(value).strip()
                if text:
                    return text
        nested = payload.get("data")
        if isinstance(nested, Mapping):
            return cls._extract_identifier(nested, keys)
        return None

    def _parse_json(self, response: Response) -> Mapping[str, Any]:
        if not response.content:
            return {}
        try:
            payload = response.json()
        except (json.JSONDecodeError, ValueError):
            text = (response.text or "").strip()
            if response.status_code >= 400:
                return {"message": text[:500]} if text else {}
            raise self.server_error_cls(
                f"Invalid JSON from {self.provider}", status=response.status_code
            )
        if isinstance(payload, Mapping):
            return payload
        return {"data": payload}

    def _check_payload(self, payload: Mapping[str, Any], *, op: str) -> None:
        """Hook for providers that report errors inside a 200 body."""

    def _compute_backoff(self, code: Optional[int], attempt: int) -> Optional[float]:
        if attempt >= self.max_attempts:
            return None
        retryable = code is None or code == 429 or code >= 500
        if not retryable:
            return None
        base_delay = 1.0 * (2 ** max(attempt - 1, 0))
        capped_base = min(base_delay, self._retry_max_delay)
        jitter = random.uniform(0.3, 1.3)
        return min(max(capped_base * jitter, 0.1), self._retry_max_delay)

    def _log_request(
        self,
        op: str,
        *,
        level: int,
        method: str,
        url: str,
        status: Any,
        duration_ms: float,
        attempt: int,
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        fields: MutableMapping[str, Any] = {
            "method": method.upper(),
            "url": url,
            "status": status,
            "ms": round(duration_ms, 3),
        }
        if attempt > 1:
            fields["attempt"] = attempt
        if context:
            for key, value in context.items():
                if value is not None and key not in fields:
                    fields[key] = value
        message = " ".join(f"{key}={value}" for key, value in fields.items() if value not in (None, ""))
        self.log.log(
            level,
            "[%s][%s] %s",
            self.provider.upper(),
            op,
            message,
            extra={"meta": {"op": op, "provider": self.provider, **fields}},
        )
        provider_http_requests_total.labels(provider=self.provider, op=op, status=str(status)).inc()

    def _log_retry(self, *, code: Optional[int], attempt: int, delay: float, path: str) -> None:
        self.log.warning(
            "%s.http retry",
            self.provider,
            extra={
                "meta": {
                    "code": code or "error",
                    "attempt": attempt,
                    "delay": round(delay, 3),
                    "path": path,
                }
            },
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_payload: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
        op: str = "request",
        log_context: Optional[Mapping[str, Any]] = None,
    ) -> Mapping[str, Any]:
        if not self.token:
            raise self.client_error_cls(f"{self.provider} API token is not configured", status=401)
        url = self._url(path)
        attempt = 0
        last_status: Any = None
        last_duration = 0.0
        context_base = dict(log_context or {})
        context_base.setdefault("path", path)
        total_backoff = 0.0
        while attempt < self.max_attempts:
            attempt += 1
            start_ts = time.monotonic()
            try:
                response = self.session.request(
                    method.upper(),
                    url,
                    headers=self._headers(),
                    json=json_payload,
                    params=params,
                    timeout=self.timeout,
                )
            except RequestException as exc:
                duration_ms = max(0.0, (time.monotonic() - start_ts) * 1000.0)
                last_status = "network_error"
                last_duration = duration_ms
                delay = self._compute_backoff(None, attempt)
                remaining = self._retry_total_cap - total_backoff
                if delay is not None and remaining > 0:
                    actual_delay = min(delay, remaining)
                    self._log_retry(code=None, attempt=attempt, delay=actual_delay, path=path)
                    time.sleep(actual_delay)
                    total_backoff += actual_delay
                    continue
                context = dict(context_base)
                context.setdefault("error", str(exc))
                self._log_request(
                    op,
                    level=logging.ERROR,
                    method=method,
                    url=url,
                    status="network_error",
                    duration_ms=duration_ms,
                    attempt=attempt,
                    context=context,
                )
                raise self.server_error_cls(f"Network error talking to {self.provider}") from exc

            status = response.status_code
            duration_ms = max(0.0, (time.monotonic() - start_ts) * 1000.0)
            delay = self._compute_backoff(status, attempt)
            remaining = self._retry_total_cap - total_backoff
            if delay is not None and remaining > 0:
                actual_delay = min(delay, remaining)
                self._log_retry(code=status, attempt=attempt, delay=actual_delay, path=path)
                time.sleep(actual_delay)
                total_backoff += actual_delay
                last_status = status
                last_duration = duration_ms
                continue

            payload = self._parse_json(response)
            payload_message = self._payload_message(payload)
            context = dict(context_base)
            if payload_message and "msg" not in context:
                context["msg"] = payload_message
            if status >= 400:
                message = payload_message or f"HTTP {status}"
                if status == 401:
                    message = f"{self.provider}: invalid credentials"
                elif status == 404:
                    message = f"{self.provider}: resource not found"
                context.setdefault("error", message)
                self._log_request(
                    op,
                    level=logging.WARNING if status < 500 else logging.ERROR,
                    method=method,
                    url=url,
                    status=status,
                    duration_ms=duration_ms,
                    attempt=attempt,
                    context=context,
                )
                error_cls = self.client_error_cls if status < 500 else self.server_error_cls
                raise error_cls(message, status=status, payload=payload)

            self._log_request(
                op,
                level=logging.INFO,
                method=method,
                url=url,
                status=status,
                duration_ms=duration_ms,
                attempt=attempt,
                context=context,
            )
            self._check_payload(payload, op=op)
            return payload

        context = dict(context_base)
        context.setdefault("error", "exhausted")
        self._log_request(
            op,
            level=logging.ERROR,
            method=method,
            url=url,
            status=last_status or "exhausted",
            duration_ms=last_duration,
            attempt=attempt,
            context=context,
        )
        status_code = last_status if isinstance(last_status, int) else None
        raise self.server_error_cls(f"{self.provider} request exhausted retries", status=status_code)


__all__ = ["ProviderAPIError", "ProviderClient"]
