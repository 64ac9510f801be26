import logging

import pytest
from pydantic import ValidationError

from reqpulse.config import Settings, get_settings


def test_defaults() -> None:
    settings = Settings()
    assert settings.service_name == "reqpulse"
    assert settings.sampling_ratio == 1.0
    assert settings.batch_size == 512
    assert settings.flush_interval_ms == 5000
    assert settings.broadcast_interval_s == 5.0
    assert settings.metrics_exclude_paths == ["/metrics"]
    assert "/health" in settings.trace_exclude_paths
    assert settings.log_level_number == logging.INFO


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OTEL_SERVICE_NAME", "checkout")
    monkeypatch.setenv("OTEL_SAMPLING_RATIO", "0.25")
    monkeypatch.setenv("OTEL_COLLECTOR_HEADERS", '{"x-api-key": "secret"}')
    monkeypatch.setenv("TRACE_EXCLUDE_PATHS", '["/internal"]')
    monkeypatch.setenv("LOG_LEVEL", "debug")
    get_settings.cache_clear()

    settings = get_settings()
    assert settings.service_name == "checkout"
    assert settings.sampling_ratio == 0.25
    assert settings.exporter_headers == {"x-api-key": "secret"}
    assert settings.trace_exclude_paths == ["/internal"]
    assert settings.log_level == "DEBUG"
    assert settings.exporter_otlp_enabled is False
    assert get_settings() is settings


@pytest.mark.parametrize(
    "overrides",
    [
        {"sampling_ratio": 1.5},
        {"trace_exclude_paths": ["health"]},
        {"trace_exclude_hosts": ["localhost:http"]},
        {"batch_size": 4096, "max_queue_size": 2048},
        {"log_level": "chatty"},
        {"subscriber_queue_size": 1},
        {"broadcast_interval_s": 0},
    ],
)
def test_invalid_settings_are_rejected(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        Settings(**overrides)
