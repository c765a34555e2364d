import json
import logging

import logging_utils
from logging_utils import JsonFormatter, redact_text


def _record(msg: str, meta=None) -> logging.LogRecord:
    record = logging.LogRecord("music-test", logging.INFO, __file__, 10, msg, None, None)
    if meta is not None:
        record.meta = meta
    return record


def test_redact_text_masks_env_secrets_and_bearer(monkeypatch) -> None:
    monkeypatch.setenv("SUNO_API_TOKEN", "abcd-secret-value")
    logging_utils.refresh_secret_cache()
    text = redact_text("token abcd-secret-value Authorization: Bearer xyz.123 ?api_key=qwerty&x=1")
    monkeypatch.undo()
    logging_utils.refresh_secret_cache()
    assert "abcd-secret-value" not in text
    assert "Bearer ***" in text
    assert "api_key=***" in text
    assert "x=1" in text


def test_json_formatter_emits_meta() -> None:
    formatter = JsonFormatter()
    payload = json.loads(formatter.format(_record("hello", {"task_id": "t-1", "MUREKA_API_KEY": "k-123"})))
    assert payload["msg"] == "hello"
    assert payload["level"] == "INFO"
    assert payload["meta"]["task_id"] == "t-1"
    assert payload["meta"]["MUREKA_API_KEY"] == "***"
    assert payload["meta"]["logger"] == "music-test"


def test_json_formatter_truncates_long_messages() -> None:
    formatter = JsonFormatter()
    payload = json.loads(formatter.format(_record("x" * 10000)))
    assert payload["msg"].endswith("...(truncated)")
    assert len(payload["msg"]) < 10000


def test_init_logging_logs_configuration_summary(caplog, monkeypatch) -> None:
    monkeypatch.setattr(logging_utils, "_CONFIGURED", True)
    with caplog.at_level(logging.INFO, logger="music-logging-test"):
        logger = logging_utils.init_logging("music-logging-test")
    assert logger.name == "music-logging-test"
    record = next(r for r in caplog.records if r.message == "configuration summary")
    assert "SUNO_READY" in record.meta
    assert record.meta["SUNO_API_TOKEN"] != "suno-test-token"
