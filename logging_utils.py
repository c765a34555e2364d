"""JSON log formatting, secret redaction and one-time logging setup."""
from __future__ import annotations

import json
import logging
import os
import re
import threading
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from core.settings import get_settings

_SECRET_SUFFIXES = ("_TOKEN", "_KEY", "_SECRET")
_SECRET_NAMES = frozenset({"DATABASE_URL", "REDIS_URL"})
_MASK = "***"
_TRUNCATED = "...(truncated)"

_PATTERNS = (
    re.compile(r"(?i)((?:token|api_key|key)=)[^&\s]+"),
    re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+"),
)
_QUIET_LOGGERS = ("httpx", "urllib3", "uvicorn", "uvicorn.access")

_secrets_lock = threading.Lock()
_secrets: tuple[str, ...] = ()

_CONFIGURED = False
_CONFIG_LOCK = threading.Lock()


def _is_secret_name(name: str) -> bool:
    name = name.upper()
    return name in _SECRET_NAMES or name.endswith(_SECRET_SUFFIXES)


def refresh_secret_cache() -> None:
    """Re-read secret-looking environment variables used by :func:`redact_text`."""

    global _secrets
    found = {value for name, value in os.environ.items() if len(value or "") >= 4 and _is_secret_name(name)}
    with _secrets_lock:
        # longest first so a secret containing another is masked whole
        _secrets = tuple(sorted(found, key=len, reverse=True))


refresh_secret_cache()


def redact_text(value: str) -> str:
    if not value:
        return value
    with _secrets_lock:
        known = _secrets
    for secret in known:
        value = value.replace(secret, _MASK)
    for pattern in _PATTERNS:
        value = pattern.sub(r"\1" + _MASK, value)
    return value


def _clip(value: str) -> str:
    limit = int(get_settings().MAX_IN_LOG_BODY)
    return value if len(value) <= limit else value[:limit] + _TRUNCATED


def _clean(value: Any) -> Any:
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        return _clip(redact_text(value))
    if isinstance(value, Mapping):
        cleaned = {}
        for key, item in value.items():
            key = str(key)
            cleaned[key] = _MASK if item and _is_secret_name(key) else _clean(item)
        return cleaned
    if isinstance(value, (list, tuple, set)):
        return [_clean(item) for item in value]
    return value


class JsonFormatter(logging.Formatter):
    """One JSON object per record: ``ts``, ``level``, ``msg`` and ``meta``."""

    def _meta(self, record: logging.LogRecord) -> dict[str, Any]:
        raw = getattr(record, "meta", None)
        if raw is None:
            meta: dict[str, Any] = {}
        elif isinstance(raw, Mapping):
            meta = _clean(dict(raw))
        else:
            meta = {"extra": _clean(raw)}
        for key, value in (("logger", record.name), ("module", record.module), ("pid", os.getpid())):
            meta.setdefault(key, value)
        if record.exc_info:
            meta["exc_info"] = _clip(redact_text(self.formatException(record.exc_info)))
        return meta

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "msg": _clip(redact_text(record.getMessage())),
            "meta": self._meta(record),
        }
        return json.dumps(entry, ensure_ascii=False, default=str)


def log_environment(logger: logging.Logger) -> None:
    """Debug-log the process environment with secrets masked."""

    env = {
        name: _MASK if _is_secret_name(name) else redact_text(value)
        for name, value in sorted(os.environ.items())
    }
    logger.debug("environment", extra={"meta": {"env": env}})


def _build_handler(use_json: bool) -> logging.Handler:
    handler = logging.StreamHandler()
    if use_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    return handler


def init_logging(app_name: str, level: Optional[str] = None, *, json_logs: Optional[bool] = None) -> logging.Logger:
    """Install the root handler on first call and return ``app_name``'s logger.

    Later calls only adjust the root level.
    """

    global _CONFIGURED
    config = get_settings()
    resolved = logging.getLevelName((level or config.LOG_LEVEL or "INFO").strip().upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    root = logging.getLogger()
    with _CONFIG_LOCK:
        if not _CONFIGURED:
            root.handlers.clear()
            root.addHandler(_build_handler(config.LOG_JSON if json_logs is None else bool(json_logs)))
            logging.captureWarnings(True)
            for name in _QUIET_LOGGERS:
                logging.getLogger(name).setLevel(logging.WARNING)
            _CONFIGURED = True
        root.setLevel(resolved)

    logger = logging.getLogger(app_name)
    logger.info("configuration summary", extra={"meta": dict(config.configuration_summary())})
    return logger


__all__ = [
    "JsonFormatter",
    "init_logging",
    "log_environment",
    "redact_text",
    "refresh_secret_cache",
]
