import pytest

from core.settings import Settings, parse_rate_limit
from tests.fakes import make_settings


def test_parse_rate_limit() -> None:
    assert parse_rate_limit("5/600") == (5, 600.0)
    assert parse_rate_limit(" 10 / 60 ") == (10, 60.0)
    for raw in ("abc", "0/10", "5/0", "5"):
        with pytest.raises(ValueError):
            parse_rate_limit(raw)


def test_suno_ready_requires_token_url_and_secret() -> None:
    config = make_settings(SUNO_CALLBACK_URL="https://music.example/suno-callback/")
    assert config.SUNO_READY is True
    assert config.SUNO_CALLBACK_URL == "https://music.example/suno-callback"

    missing_secret = make_settings(SUNO_CALLBACK_SECRET=None)
    assert missing_secret.SUNO_READY is False

    disabled = make_settings(SUNO_ENABLED=False)
    assert disabled.SUNO_READY is False


def test_mureka_model_falls_back_to_auto() -> None:
    assert make_settings(MUREKA_MODEL="Mureka-7").MUREKA_MODEL == "mureka-7"
    assert make_settings(MUREKA_MODEL="v99").MUREKA_MODEL == "auto"


def test_poll_backoff_series_skips_garbage() -> None:
    config = make_settings(POLL_BACKOFF_SERIES="8, x, 13,, -1")
    assert config.poll_backoff_series() == [8.0, 13.0]


def test_effective_http_values() -> None:
    config = make_settings(SUNO_TIMEOUT_SEC=5, HTTP_TIMEOUT_READ=30, SUNO_MAX_RETRIES=4)
    assert config.HTTP_TIMEOUT_TOTAL_EFFECTIVE == 30.0
    assert config.HTTP_RETRY_ATTEMPTS_EFFECTIVE == 4


def test_configuration_summary_masks_secrets() -> None:
    config = make_settings(SUNO_API_TOKEN="supersecrettoken1234")
    summary = config.configuration_summary()
    assert summary["SUNO_API_TOKEN"] == "***1234"
    assert "supersecrettoken1234" not in str(summary)


def test_blank_endpoint_is_rejected() -> None:
    with pytest.raises(RuntimeError):
        Settings(SUNO_GEN_PATH="   ")


def test_invalid_rate_limit_is_a_validation_error() -> None:
    with pytest.raises(Exception) as excinfo:
        Settings(RATE_LIMIT_SUNO="lots")
    assert "RATE_LIMIT_SUNO" in str(excinfo.value)


def test_reload_settings_reads_environment(monkeypatch) -> None:
    from core import settings as settings_module

    monkeypatch.setenv("RATE_LIMIT_SUNO", "2/30")
    monkeypatch.setenv("LOG_LEVEL", "chatty")
    try:
        reloaded = settings_module.reload_settings()
        assert settings_module.get_settings() is reloaded
        assert reloaded.RATE_LIMIT_SUNO == "2/30"
        assert reloaded.LOG_LEVEL == "INFO"
    finally:
        monkeypatch.undo()
        settings_module.reload_settings()
