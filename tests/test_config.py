"""Settings tests — env var loading and validation."""

import pytest
from pydantic import ValidationError

from profilecast.config import Settings
from profilecast.realtime.bus import SlowPolicy


def test_defaults():
    s = Settings(_env_file=None)
    assert s.http_port == 8080
    assert s.ws_queue_capacity == 64
    assert s.slow_policy is SlowPolicy.DROP_OLDEST
    assert s.changes_backoff_initial_ms == 1000
    assert s.changes_backoff_max_ms == 30000
    assert s.notification_format == "json"


def test_reads_environment(monkeypatch):
    monkeypatch.setenv("HTTP_PORT", "9090")
    monkeypatch.setenv("SLOW_POLICY", "EVICT")
    monkeypatch.setenv("WS_QUEUE_CAPACITY", "8")
    monkeypatch.setenv("STORE_URI", "memory://")

    s = Settings(_env_file=None)
    assert s.http_port == 9090
    assert s.slow_policy is SlowPolicy.EVICT
    assert s.ws_queue_capacity == 8
    assert s.store_uri == "memory://"


def test_rejects_unknown_policy(monkeypatch):
    monkeypatch.setenv("SLOW_POLICY", "BLOCK")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_rejects_zero_capacity():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, ws_queue_capacity=0)


def test_rejects_backoff_cap_below_initial():
    with pytest.raises(ValidationError):
        Settings(_env_file=None, changes_backoff_initial_ms=5000, changes_backoff_max_ms=1000)


@pytest.mark.parametrize("log_json, renderer", [(True, "JSONRenderer"), (False, "ConsoleRenderer")])
def test_configure_logging_picks_renderer(log_json, renderer):
    import structlog

    from profilecast.logging_setup import configure_logging

    try:
        configure_logging(Settings(_env_file=None, log_json=log_json, log_level="DEBUG"))
        processors = structlog.get_config()["processors"]
        assert type(processors[-1]).__name__ == renderer
        assert structlog.contextvars.merge_contextvars in processors
    finally:
        structlog.reset_defaults()
