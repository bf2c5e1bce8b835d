"""HTTP transport for the REST persistence service."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import aiohttp

from pydashsync._constants import USER_AGENT
from pydashsync._redact import redact_for_log
from pydashsync.config import SyncConfig
from pydashsync.exceptions import DashSyncApiError, DashSyncTransportError

_logger = logging.getLogger(__name__)

TraceCallback = Callable[[dict[str, Any]], None]


class Transport(Protocol):
    """Structural transport interface used by endpoint modules.

    Having a protocol here makes it easy to pass test doubles/mocks while
    keeping the production implementation (`RestTransport`) concrete.
    """

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any: ...


def _error_from_body(endpoint: str, status: int, body: Any) -> DashSyncApiError | None:
    """Build an API error from a PostgREST error object, if the body is one."""
    if not isinstance(body, dict):
        return None
    message = body.get("message")
    if not isinstance(message, str):
        return None
    code = str(body.get("code") or status)
    details = body.get("details")
    hint = body.get("hint")
    return DashSyncApiError(
        f"{endpoint} failed: code={code} message={message}",
        code=code,
        endpoint=endpoint,
        details=str(details) if details is not None else None,
        hint=str(hint) if hint is not None else None,
    )


class RestTransport:
    """HTTP transport that adds auth/profile headers and decodes JSON replies."""

    def __init__(
        self,
        config: SyncConfig,
        http_session: aiohttp.ClientSession,
        *,
        on_trace: TraceCallback | None = None,
    ) -> None:
        self._config = config
        self._http = http_session
        self._on_trace = on_trace

    def _base_headers(self, method: str) -> dict[str, str]:
        headers: dict[str, str] = {
            "apikey": self._config.api_key,
            "authorization": f"Bearer {self._config.api_key}",
            "accept": "application/json",
            "user-agent": USER_AGENT,
        }
        if method == "GET":
            headers["accept-profile"] = self._config.schema
        else:
            headers["content-profile"] = self._config.schema
            headers["content-type"] = "application/json"
        return headers

    def _trace(self, entry: dict[str, Any]) -> None:
        if not self._config.api_trace_enabled:
            return
        redacted = redact_for_log(entry)
        if self._on_trace is None:
            _logger.debug("API trace %s", redacted)
            return
        try:
            self._on_trace(redacted)
        except Exception:
            _logger.debug("Trace callback failed", exc_info=True)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, str] | None = None,
        json_body: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body.

        Returns ``None`` for empty bodies (``204 No Content``).  Non-2xx
        replies raise :class:`DashSyncApiError` when the body carries a
        structured error, :class:`DashSyncTransportError` otherwise.
        """
        method = method.upper()
        merged = self._base_headers(method)
        if headers:
            merged.update({k.lower(): v for k, v in headers.items()})

        url = f"{self._config.rest_url}{path}"
        data = json.dumps(json_body, separators=(",", ":")) if json_body is not None else None

        _logger.debug("%s %s params=%s", method, path, dict(params or {}))
        started = time.monotonic()

        try:
            async with self._http.request(method, url, params=params, data=data, headers=merged) as resp:
                status = resp.status
                text = await resp.text()
        except aiohttp.ClientError as exc:
            raise DashSyncTransportError(
                f"Request to {path} failed: {exc}",
                endpoint=path,
            ) from exc

        body: Any = None
        decode_error: json.JSONDecodeError | None = None
        if text.strip():
            try:
                body = json.loads(text)
            except json.JSONDecodeError as exc:
                decode_error = exc

        self._trace(
            {
                "method": method,
                "path": path,
                "params": dict(params or {}),
                "request": json_body,
                "status": status,
                "response": body if decode_error is None else text[:200],
                "elapsed_ms": round((time.monotonic() - started) * 1000, 1),
            }
        )

        if not 200 <= status < 300:
            api_error = _error_from_body(path, status, body)
            if api_error is not None:
                raise api_error
            raise DashSyncTransportError(
                f"HTTP {status} from {path}: {text[:200]}",
                status_code=status,
                endpoint=path,
            )

        if decode_error is not None:
            raise DashSyncTransportError(
                f"Invalid JSON from {path}: {text[:200]}",
                status_code=status,
                endpoint=path,
            ) from decode_error

        return body
