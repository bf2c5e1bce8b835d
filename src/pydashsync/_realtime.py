"""Internal realtime channel runtime, frame parsing and helpers.

Speaks the Supabase realtime flavour of the Phoenix channel protocol over an
aiohttp websocket.  Each :class:`RealtimeChannel` owns one socket, joins one
``realtime:<topic>`` channel for ``postgres_changes`` and reports everything
it observes through its :class:`~pydashsync.connection.channel.ChannelSink`.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import aiohttp

from pydashsync._constants import (
    HEARTBEAT,
    PHOENIX_TOPIC,
    PHX_CLOSE,
    PHX_ERROR,
    PHX_JOIN,
    PHX_LEAVE,
    PHX_REPLY,
    POSTGRES_CHANGES,
    REALTIME_VSN,
    SYSTEM,
    USER_AGENT,
)
from pydashsync._redact import redact_for_log, redact_url
from pydashsync.config import SyncConfig
from pydashsync.connection.channel import ChannelSink, EventFilter
from pydashsync.exceptions import DashSyncChannelError
from pydashsync.state.events import ChannelStatus


@dataclass(frozen=True)
class PhoenixFrame:
    """One decoded Phoenix message."""

    topic: str
    event: str
    payload: dict[str, Any]
    ref: str | None = None
    join_ref: str | None = None


def parse_frame(text: str) -> PhoenixFrame | None:
    """Decode a websocket text frame; ``None`` when it is not a Phoenix message."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    topic = data.get("topic")
    event = data.get("event")
    if not isinstance(topic, str) or not isinstance(event, str):
        return None
    payload = data.get("payload")
    ref = data.get("ref")
    join_ref = data.get("join_ref")
    return PhoenixFrame(
        topic=topic,
        event=event,
        payload=payload if isinstance(payload, dict) else {},
        ref=str(ref) if ref is not None else None,
        join_ref=str(join_ref) if join_ref is not None else None,
    )


def channel_topic(topic: str) -> str:
    return f"realtime:{topic}"


def build_join_message(
    topic: str,
    event_filter: EventFilter,
    *,
    access_token: str,
    ref: str,
) -> dict[str, Any]:
    return {
        "topic": channel_topic(topic),
        "event": PHX_JOIN,
        "payload": {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": [event_filter.as_config()],
            },
            "access_token": access_token,
        },
        "ref": ref,
        "join_ref": ref,
    }


def translate_postgres_change(data: Mapping[str, Any]) -> dict[str, Any]:
    """Convert a wire ``postgres_changes`` record into the client payload shape.

    ``{"type", "record", "old_record", ...}`` becomes
    ``{"eventType", "new", "old", ...}``; sides the server omitted are empty
    mappings.
    """
    record = data.get("record")
    old_record = data.get("old_record")
    return {
        "eventType": data.get("type") or data.get("eventType"),
        "new": dict(record) if isinstance(record, Mapping) else {},
        "old": dict(old_record) if isinstance(old_record, Mapping) else {},
        "schema": data.get("schema"),
        "table": data.get("table"),
        "commit_timestamp": data.get("commit_timestamp"),
        "errors": data.get("errors"),
    }


def error_reason(payload: Mapping[str, Any]) -> str:
    response = payload.get("response")
    if isinstance(response, Mapping):
        for key in ("reason", "message"):
            value = response.get(key)
            if isinstance(value, str) and value:
                return value
    for key in ("reason", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return "unknown error"


class RealtimeChannel:
    """One joined realtime channel over its own websocket."""

    def __init__(
        self,
        *,
        topic: str,
        event_filter: EventFilter,
        sink: ChannelSink,
        ws: aiohttp.ClientWebSocketResponse,
        access_token: str,
        join_timeout: float,
        heartbeat_interval: float,
        logger: logging.Logger | None = None,
    ) -> None:
        self._topic = topic
        self._event_filter = event_filter
        self._sink = sink
        self._ws = ws
        self._access_token = access_token
        self._join_timeout = join_timeout
        self._heartbeat_interval = heartbeat_interval
        self._logger = logger or logging.getLogger(__name__)

        self._refs = itertools.count(1)
        self._join_ref: str | None = None
        self._joined = False
        self._closing = False
        self._pending_heartbeat: str | None = None
        self._join_timer: asyncio.TimerHandle | None = None
        self._reader: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def joined(self) -> bool:
        return self._joined

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _send(self, message: dict[str, Any]) -> None:
        self._logger.debug("Realtime send %s", redact_for_log(message))
        await self._ws.send_str(json.dumps(message, separators=(",", ":")))

    async def join(self) -> None:
        """Send ``phx_join`` and start the reader and heartbeat tasks."""
        self._join_ref = self._next_ref()
        message = build_join_message(
            self._topic,
            self._event_filter,
            access_token=self._access_token,
            ref=self._join_ref,
        )
        loop = asyncio.get_running_loop()
        self._reader = loop.create_task(self._read_loop())
        self._heartbeat = loop.create_task(self._heartbeat_loop())
        self._join_timer = loop.call_later(self._join_timeout, self._on_join_timeout)
        await self._send(message)

    async def close(self) -> None:
        """Leave the channel and close the socket.  Safe to call twice."""
        if self._closing:
            return
        self._closing = True
        self._cancel_join_timer()

        if not self._ws.closed:
            with contextlib.suppress(Exception):
                await self._send(
                    {
                        "topic": channel_topic(self._topic),
                        "event": PHX_LEAVE,
                        "payload": {},
                        "ref": self._next_ref(),
                        "join_ref": self._join_ref,
                    }
                )

        current = asyncio.current_task()
        for task in (self._heartbeat, self._reader):
            if task is not None and task is not current and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._heartbeat = None
        self._reader = None

        try:
            await self._ws.close()
        except Exception:
            self._logger.debug("Realtime socket close failed", exc_info=True)

    def _cancel_join_timer(self) -> None:
        timer = self._join_timer
        self._join_timer = None
        if timer is not None:
            timer.cancel()

    def _on_join_timeout(self) -> None:
        self._join_timer = None
        if self._joined or self._closing:
            return
        self._logger.debug("Realtime join for %s timed out after %.1fs", self._topic, self._join_timeout)
        self._sink.status(ChannelStatus.TIMED_OUT, f"join timed out after {self._join_timeout:.1f}s")

    async def _read_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    frame = parse_frame(msg.data)
                    if frame is None:
                        self._logger.debug("Ignoring non-Phoenix realtime frame")
                        continue
                    self.handle_frame(frame)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    if not self._closing:
                        self._sink.status(ChannelStatus.CHANNEL_ERROR, f"socket error: {self._ws.exception()}")
                    return
        except aiohttp.ClientError as exc:
            if not self._closing:
                self._sink.status(ChannelStatus.CHANNEL_ERROR, f"socket error: {exc}")
            return
        if not self._closing:
            self._sink.status(ChannelStatus.CLOSED, "socket closed by server")

    async def _heartbeat_loop(self) -> None:
        while not self._closing:
            await asyncio.sleep(self._heartbeat_interval)
            if self._pending_heartbeat is not None:
                self._sink.status(ChannelStatus.TIMED_OUT, "heartbeat not acknowledged")
                return
            ref = self._next_ref()
            self._pending_heartbeat = ref
            try:
                await self._send({"topic": PHOENIX_TOPIC, "event": HEARTBEAT, "payload": {}, "ref": ref})
            except (aiohttp.ClientError, ConnectionError) as exc:
                if not self._closing:
                    self._sink.status(ChannelStatus.CHANNEL_ERROR, f"heartbeat failed: {exc}")
                return

    def handle_frame(self, frame: PhoenixFrame) -> None:
        """Translate one Phoenix frame into sink messages."""
        if frame.topic == PHOENIX_TOPIC:
            if frame.event == PHX_REPLY and frame.ref is not None and frame.ref == self._pending_heartbeat:
                self._pending_heartbeat = None
            return

        if frame.topic != channel_topic(self._topic) or self._closing:
            return

        if frame.event == PHX_REPLY:
            if frame.ref != self._join_ref or self._joined:
                return
            self._cancel_join_timer()
            if frame.payload.get("status") == "ok":
                self._joined = True
                self._sink.status(ChannelStatus.SUBSCRIBED)
            else:
                self._sink.status(ChannelStatus.CHANNEL_ERROR, error_reason(frame.payload))
            return

        if frame.event == POSTGRES_CHANGES:
            data = frame.payload.get("data")
            if isinstance(data, Mapping):
                self._sink.change(translate_postgres_change(data))
            else:
                self._logger.debug("postgres_changes frame without data: %s", redact_for_log(frame.payload))
            return

        if frame.event == PHX_ERROR:
            self._sink.status(ChannelStatus.CHANNEL_ERROR, error_reason(frame.payload))
            return

        if frame.event == PHX_CLOSE:
            self._sink.status(ChannelStatus.CLOSED, "channel closed by server")
            return

        if frame.event == SYSTEM and frame.payload.get("status") == "error":
            self._sink.status(ChannelStatus.CHANNEL_ERROR, error_reason(frame.payload))


class RealtimeClient:
    """Channel factory backed by aiohttp websockets."""

    def __init__(
        self,
        config: SyncConfig,
        http_session: aiohttp.ClientSession,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._http = http_session
        self._logger = logger or logging.getLogger(__name__)

    def socket_url(self) -> str:
        query = urlencode({"apikey": self._config.api_key, "vsn": REALTIME_VSN})
        return f"{self._config.realtime_url}?{query}"

    async def open_channel(self, topic: str, event_filter: EventFilter, sink: ChannelSink) -> RealtimeChannel:
        url = self.socket_url()
        self._logger.debug("Realtime connect %s topic=%s", redact_url(url), topic)
        try:
            ws = await self._http.ws_connect(url, headers={"user-agent": USER_AGENT})
        except (aiohttp.ClientError, OSError) as exc:
            raise DashSyncChannelError(f"Realtime connect failed: {exc}", status=ChannelStatus.CHANNEL_ERROR) from exc

        channel = RealtimeChannel(
            topic=topic,
            event_filter=event_filter,
            sink=sink,
            ws=ws,
            access_token=self._config.api_key,
            join_timeout=self._config.join_timeout,
            heartbeat_interval=self._config.heartbeat_interval,
            logger=self._logger,
        )
        try:
            await channel.join()
        except (aiohttp.ClientError, ConnectionError) as exc:
            await channel.close()
            raise DashSyncChannelError(f"Realtime join failed: {exc}", status=ChannelStatus.CHANNEL_ERROR) from exc
        return channel

    async def remove_channel(self, channel: RealtimeChannel) -> None:
        await channel.close()
