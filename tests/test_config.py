from __future__ import annotations

import pytest

from pydashsync.config import SyncConfig
from pydashsync.connection.machine import BackoffPolicy
from pydashsync.exceptions import DashSyncConfigError

_ENV_KEYS = (
    "DASHSYNC_URL",
    "DASHSYNC_API_KEY",
    "DASHSYNC_SCHEMA",
    "DASHSYNC_RETRY_BASE_DELAY",
    "DASHSYNC_RETRY_MAX_DELAY",
    "DASHSYNC_RETRY_MAX_ATTEMPTS",
    "DASHSYNC_JOIN_TIMEOUT",
    "DASHSYNC_HEARTBEAT_INTERVAL",
    "DASHSYNC_HIGHLIGHT_SECONDS",
    "DASHSYNC_API_TRACE_ENABLED",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults_and_derived_urls() -> None:
    config = SyncConfig(url="https://abc.supabase.co/", api_key="anon")

    assert config.url == "https://abc.supabase.co"
    assert config.rest_url == "https://abc.supabase.co/rest/v1"
    assert config.realtime_url == "wss://abc.supabase.co/realtime/v1/websocket"
    assert config.backoff_policy() == BackoffPolicy(base_delay=2.0, max_delay=30.0, max_attempts=5)


def test_plain_http_maps_to_ws() -> None:
    config = SyncConfig(url="http://localhost:54321", api_key="anon")

    assert config.realtime_url == "ws://localhost:54321/realtime/v1/websocket"


def test_from_env_reads_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DASHSYNC_URL", "https://abc.supabase.co")
    monkeypatch.setenv("DASHSYNC_API_KEY", "anon")
    monkeypatch.setenv("DASHSYNC_RETRY_BASE_DELAY", "0.5")
    monkeypatch.setenv("DASHSYNC_RETRY_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("DASHSYNC_API_TRACE_ENABLED", "yes")

    config = SyncConfig.from_env()

    assert config.retry_base_delay == 0.5
    assert config.retry_max_attempts == 3
    assert config.api_trace_enabled is True
    assert config.schema == "public"


def test_overrides_win_over_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DASHSYNC_URL", "https://abc.supabase.co")
    monkeypatch.setenv("DASHSYNC_API_KEY", "anon")
    monkeypatch.setenv("DASHSYNC_RETRY_MAX_ATTEMPTS", "not-a-number")

    config = SyncConfig.from_env(api_key="service", retry_max_attempts=7)

    assert config.api_key == "service"
    assert config.retry_max_attempts == 7


def test_missing_required_values() -> None:
    with pytest.raises(DashSyncConfigError, match="url, api_key"):
        SyncConfig.from_env()


def test_invalid_numbers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DASHSYNC_URL", "https://abc.supabase.co")
    monkeypatch.setenv("DASHSYNC_API_KEY", "anon")
    monkeypatch.setenv("DASHSYNC_JOIN_TIMEOUT", "soon")

    with pytest.raises(DashSyncConfigError, match="DASHSYNC_JOIN_TIMEOUT"):
        SyncConfig.from_env()


@pytest.mark.parametrize(
    "overrides",
    [
        {"url": " "},
        {"api_key": ""},
        {"retry_base_delay": -1.0},
        {"retry_max_attempts": 0},
        {"join_timeout": 0.0},
    ],
)
def test_invalid_values_rejected(overrides: dict[str, object]) -> None:
    kwargs: dict[str, object] = {"url": "https://abc.supabase.co", "api_key": "anon", **overrides}

    with pytest.raises(DashSyncConfigError):
        SyncConfig(**kwargs)  # type: ignore[arg-type]
