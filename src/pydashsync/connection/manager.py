"""Connection manager.

Owns:
- the connection state machine of one topic
- the currently open channel and the single reconnect timer
- the ordered message queue fed by channels and the timer
- forwarding live change payloads downstream
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

from pydashsync.connection.channel import (
    Channel,
    ChannelFactory,
    ChannelSink,
    ChangeMessage,
    EventFilter,
    Message,
)
from pydashsync.connection.machine import (
    BackoffPolicy,
    CancelTimer,
    ChannelReport,
    CloseChannel,
    Effect,
    ForceReconnect,
    Input,
    Machine,
    OpenChannel,
    RefreshResult,
    RefreshSnapshot,
    RetryState,
    StartTimer,
    Subscribe,
    Teardown,
    TimerFired,
    transition,
)
from pydashsync.state.events import ChannelStatus, ConnectionState, ConnectionStatusEvent

_logger = logging.getLogger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], TimerHandle]


class ConnectionManager:
    """Keeps exactly one subscription to ``topic`` alive.

    Every input (channel status, change payload, timer expiry) is processed
    in arrival order from one queue.  State changes are computed by the
    pure :func:`~pydashsync.connection.machine.transition` function; this
    class only carries out the effects it returns.
    """

    def __init__(
        self,
        *,
        topic: str,
        factory: ChannelFactory,
        event_filter: EventFilter,
        refresh: Callable[[], Awaitable[None]],
        on_change: Callable[[dict[str, Any]], None],
        on_status: Callable[[ConnectionStatusEvent], None] | None = None,
        policy: BackoffPolicy | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._topic = topic
        self._factory = factory
        self._event_filter = event_filter
        self._refresh = refresh
        self._on_change = on_change
        self._on_status = on_status
        self._policy = policy or BackoffPolicy()
        self._scheduler = scheduler

        self._machine = Machine()
        self._queue: asyncio.Queue[Message | TimerFired] = asyncio.Queue()
        self._lock = asyncio.Lock()
        self._channel: Channel | None = None
        self._timer: TimerHandle | None = None
        self._pump: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def state(self) -> ConnectionState:
        return self._machine.state

    @property
    def retry(self) -> RetryState:
        return self._machine.retry

    @property
    def machine(self) -> Machine:
        return self._machine

    @property
    def has_channel(self) -> bool:
        return self._channel is not None

    @property
    def has_timer(self) -> bool:
        return self._timer is not None

    @property
    def is_running(self) -> bool:
        return self._pump is not None and not self._pump.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the queue pump and subscribe."""
        if not self.is_running:
            self._pump = asyncio.get_running_loop().create_task(self._run(), name=f"pydashsync-{self._topic}")
        await self.subscribe()

    async def subscribe(self) -> None:
        await self._process(Subscribe())

    async def force_reconnect(self) -> None:
        """Reset the retry counter and resubscribe immediately."""
        _logger.info("Manual reconnect requested for %s", self._topic)
        await self._process(ForceReconnect())

    async def teardown(self) -> None:
        """Cancel the timer, remove the channel and stop.  Safe to repeat."""
        await self._process(Teardown())
        pump = self._pump
        self._pump = None
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump

    # ------------------------------------------------------------------
    # Queue processing
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self.handle(message)
            except Exception:
                _logger.exception("Unhandled error while processing %s message", self._topic)

    async def drain(self) -> None:
        """Process every queued message now (used when no pump is running)."""
        while not self._queue.empty():
            await self.handle(self._queue.get_nowait())

    async def handle(self, message: Message | TimerFired) -> None:
        if isinstance(message, ChangeMessage):
            self._deliver(message)
            return
        await self._process(message)

    def _deliver(self, message: ChangeMessage) -> None:
        if message.generation != self._machine.generation or self._machine.state != ConnectionState.CONNECTED:
            _logger.debug(
                "Dropping %s change from channel %s (current=%s state=%s)",
                self._topic,
                message.generation,
                self._machine.generation,
                self._machine.state,
            )
            return
        try:
            self._on_change(message.payload)
        except Exception:
            _logger.exception("Change handler failed for %s", self._topic)

    async def _process(self, event: Input) -> None:
        async with self._lock:
            previous = self._machine
            nxt, effects = transition(previous, event, self._policy)
            self._machine = nxt
            self._report(previous, nxt)
            for effect in effects:
                await self._apply(effect)

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    async def _apply(self, effect: Effect) -> None:
        if isinstance(effect, CancelTimer):
            self._cancel_timer()
        elif isinstance(effect, StartTimer):
            self._start_timer(effect.delay)
        elif isinstance(effect, CloseChannel):
            await self._close_channel()
        elif isinstance(effect, OpenChannel):
            await self._open_channel(effect.generation)
        elif isinstance(effect, RefreshSnapshot):
            await self._refresh_snapshot(effect.generation)

    async def _open_channel(self, generation: int) -> None:
        sink = ChannelSink(self._queue, generation)
        _logger.debug("Opening %s channel generation=%s", self._topic, generation)
        try:
            self._channel = await self._factory.open_channel(self._topic, self._event_filter, sink)
        except Exception as exc:
            _logger.debug("Opening %s channel failed", self._topic, exc_info=True)
            sink.status(ChannelStatus.CHANNEL_ERROR, f"subscribe failed: {exc}")

    async def _close_channel(self) -> None:
        channel = self._channel
        self._channel = None
        if channel is None:
            return
        try:
            await self._factory.remove_channel(channel)
        except Exception:
            _logger.debug("Removing %s channel failed", self._topic, exc_info=True)

    async def _refresh_snapshot(self, generation: int) -> None:
        try:
            await self._refresh()
        except Exception as exc:
            _logger.warning("Snapshot refresh for %s failed: %s", self._topic, exc)
            self._queue.put_nowait(RefreshResult(generation=generation, ok=False, detail=f"snapshot refresh failed: {exc}"))
            return
        self._queue.put_nowait(RefreshResult(generation=generation, ok=True))

    def _start_timer(self, delay: float) -> None:
        self._cancel_timer()
        if self._scheduler is not None:
            self._timer = self._scheduler(delay, self._on_timer)
        else:
            self._timer = asyncio.get_running_loop().call_later(delay, self._on_timer)

    def _cancel_timer(self) -> None:
        timer = self._timer
        self._timer = None
        if timer is not None:
            timer.cancel()

    def _on_timer(self) -> None:
        self._timer = None
        self._queue.put_nowait(TimerFired())

    # ------------------------------------------------------------------
    # Status reporting
    # ------------------------------------------------------------------

    def _report(self, previous: Machine, nxt: Machine) -> None:
        if previous.state == nxt.state and previous.retry == nxt.retry:
            return

        delay: float | None = None
        if nxt.state == ConnectionState.RECONNECTING:
            delay = nxt.retry.last_delay
            _logger.warning(
                "%s channel failed (%s); reconnecting in %.1fs (attempt %s/%s)",
                self._topic,
                nxt.detail,
                delay,
                nxt.retry.attempt,
                self._policy.max_attempts,
            )
        elif nxt.state == ConnectionState.ERRORED:
            _logger.error(
                "%s channel failed (%s); giving up after %s reconnect attempts",
                self._topic,
                nxt.detail,
                self._policy.max_attempts,
            )
        elif previous.state != nxt.state:
            _logger.info("%s connection %s -> %s", self._topic, previous.state, nxt.state)

        if self._on_status is None:
            return
        event = ConnectionStatusEvent(
            topic=self._topic,
            state=nxt.state,
            previous=previous.state,
            attempt=nxt.retry.attempt,
            delay=delay,
            detail=nxt.detail,
        )
        try:
            self._on_status(event)
        except Exception:
            _logger.debug("on_status callback failed", exc_info=True)
