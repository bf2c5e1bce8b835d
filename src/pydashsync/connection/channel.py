"""Channel interfaces consumed by the connection manager.

A channel factory opens one realtime subscription per call.  Channels never
call back into the manager directly; they push typed messages through the
:class:`ChannelSink` they were opened with, which appends them to the
manager's single ordered queue.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydashsync.connection.machine import ChannelReport
from pydashsync.state.events import ChannelStatus


@dataclass(frozen=True)
class EventFilter:
    """Which database changes a channel subscribes to."""

    table: str
    schema: str = "public"
    event: str = "*"
    filter: str | None = None

    def as_config(self) -> dict[str, str]:
        config = {"event": self.event, "schema": self.schema, "table": self.table}
        if self.filter:
            config["filter"] = self.filter
        return config


@dataclass(frozen=True)
class ChangeMessage:
    """A raw change payload delivered by the channel of ``generation``."""

    generation: int
    payload: dict[str, Any] = field(default_factory=dict)


Message = ChannelReport | ChangeMessage


class ChannelSink:
    """Write end handed to a channel; tags every message with its generation."""

    def __init__(self, queue: asyncio.Queue[Any], generation: int) -> None:
        self._queue = queue
        self._generation = generation

    @property
    def generation(self) -> int:
        return self._generation

    def status(self, status: ChannelStatus, detail: str | None = None) -> None:
        self._queue.put_nowait(ChannelReport(generation=self._generation, status=status, detail=detail))

    def change(self, payload: dict[str, Any]) -> None:
        self._queue.put_nowait(ChangeMessage(generation=self._generation, payload=payload))


class Channel(Protocol):
    """An open realtime subscription."""

    @property
    def topic(self) -> str: ...


class ChannelFactory(Protocol):
    """Structural interface of the realtime transport.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (:class:`pydashsync._realtime.RealtimeClient`)
    concrete.
    """

    async def open_channel(self, topic: str, event_filter: EventFilter, sink: ChannelSink) -> Channel:
        """Open a channel and request the subscription.

        The join outcome is reported asynchronously through *sink*.
        """
        ...

    async def remove_channel(self, channel: Channel) -> None: ...
