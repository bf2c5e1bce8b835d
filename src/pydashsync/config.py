"""Client configuration for pydashsync."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pydashsync._constants import (
    DEFAULT_HEARTBEAT_INTERVAL,
    DEFAULT_JOIN_TIMEOUT,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_MAX_DELAY,
    REALTIME_PATH,
    REST_PATH,
)
from pydashsync.connection.machine import BackoffPolicy
from pydashsync.exceptions import DashSyncConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class SyncConfig:
    """Client configuration.

    Parameters
    ----------
    url : str
        Project base URL (e.g. ``"https://abc.supabase.co"``).  Used for
        both the REST persistence service and the realtime websocket.
    api_key : str
        Project api key, sent as ``apikey`` header and realtime access token.
    schema : str
        Database schema the tables live in.
    retry_base_delay : float
        Base reconnect delay in seconds; attempt ``n`` waits
        ``retry_base_delay * 2**n`` seconds.
    retry_max_delay : float
        Upper bound for a single reconnect delay in seconds.
    retry_max_attempts : int
        Automatic reconnect attempts before the connection enters the
        terminal ``errored`` state.
    join_timeout : float
        Seconds to wait for a channel join reply before reporting
        ``TIMED_OUT``.
    heartbeat_interval : float
        Seconds between realtime heartbeats.
    highlight_seconds : float
        How long a remotely inserted record is reported as new.
    api_trace_enabled : bool
        Enable transport-level request/response tracing callback.
    """

    url: str
    api_key: str
    schema: str = "public"
    retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY
    retry_max_delay: float = DEFAULT_RETRY_MAX_DELAY
    retry_max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    join_timeout: float = DEFAULT_JOIN_TIMEOUT
    heartbeat_interval: float = DEFAULT_HEARTBEAT_INTERVAL
    highlight_seconds: float = 5.0
    api_trace_enabled: bool = False

    def __post_init__(self) -> None:
        if not self.url or not self.url.strip():
            raise DashSyncConfigError("url must be non-empty")
        if not self.api_key or not self.api_key.strip():
            raise DashSyncConfigError("api_key must be non-empty")
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise DashSyncConfigError("retry delays must not be negative")
        if self.retry_max_attempts < 1:
            raise DashSyncConfigError("retry_max_attempts must be at least 1")
        if self.join_timeout <= 0 or self.heartbeat_interval <= 0:
            raise DashSyncConfigError("join_timeout and heartbeat_interval must be positive")
        # Normalise trailing slashes once so URL joins stay simple.
        object.__setattr__(self, "url", self.url.strip().rstrip("/"))

    @property
    def rest_url(self) -> str:
        return f"{self.url}{REST_PATH}"

    @property
    def realtime_url(self) -> str:
        base = self.url
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}{REALTIME_PATH}"

    def backoff_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            max_attempts=self.retry_max_attempts,
        )

    @classmethod
    def from_env(cls, **overrides: Any) -> SyncConfig:
        """Create configuration from environment variables.

        Reads ``DASHSYNC_URL``, ``DASHSYNC_API_KEY`` and optional
        ``DASHSYNC_*`` variables. Explicit keyword arguments override
        environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        SyncConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "DASHSYNC_URL": "url",
            "DASHSYNC_API_KEY": "api_key",
            "DASHSYNC_SCHEMA": "schema",
        }
        _ENV_FLOAT_MAP = {
            "DASHSYNC_RETRY_BASE_DELAY": "retry_base_delay",
            "DASHSYNC_RETRY_MAX_DELAY": "retry_max_delay",
            "DASHSYNC_JOIN_TIMEOUT": "join_timeout",
            "DASHSYNC_HEARTBEAT_INTERVAL": "heartbeat_interval",
            "DASHSYNC_HIGHLIGHT_SECONDS": "highlight_seconds",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = float(val)
            except ValueError as exc:
                raise DashSyncConfigError(f"{env_key} must be a number, got {val!r}") from exc

        attempts_env = env.get("DASHSYNC_RETRY_MAX_ATTEMPTS")
        if attempts_env is not None and "retry_max_attempts" not in overrides:
            try:
                config_kwargs["retry_max_attempts"] = int(attempts_env)
            except ValueError as exc:
                raise DashSyncConfigError(
                    f"DASHSYNC_RETRY_MAX_ATTEMPTS must be an integer, got {attempts_env!r}"
                ) from exc

        if "api_trace_enabled" not in overrides:
            config_kwargs["api_trace_enabled"] = _env_bool(
                env.get("DASHSYNC_API_TRACE_ENABLED"),
                False,
            )

        config_kwargs.update(overrides)

        missing = [name for name in ("url", "api_key") if not config_kwargs.get(name)]
        if missing:
            raise DashSyncConfigError(f"Missing configuration: {', '.join(missing)}")

        return cls(**config_kwargs)
