"""Pure connection state machine.

:func:`transition` maps ``(machine, input)`` to the next machine plus the
list of effects the caller must carry out (open/close a channel, start or
cancel the reconnect timer, refresh the snapshot).  Nothing in this module
touches the network, the event loop or a clock, so every reconnect
scenario can be replayed deterministically.

Channel messages carry the ``generation`` of the channel that produced
them.  Every channel opened or torn down bumps the generation, so late
status reports from a channel we already replaced are recognised as stale
and ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from pydashsync._constants import (
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_MAX_DELAY,
)
from pydashsync.state.events import ChannelStatus, ConnectionState


@dataclass(frozen=True)
class BackoffPolicy:
    base_delay: float = DEFAULT_RETRY_BASE_DELAY
    max_delay: float = DEFAULT_RETRY_MAX_DELAY
    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS

    def delay(self, attempt: int) -> float:
        """Reconnect delay in seconds for a zero-based *attempt*."""
        return min(self.base_delay * (2**attempt), self.max_delay)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


@dataclass(frozen=True)
class RetryState:
    attempt: int = 0
    last_delay: float = 0.0


@dataclass(frozen=True)
class Machine:
    state: ConnectionState = ConnectionState.IDLE
    retry: RetryState = RetryState()
    generation: int = 0
    detail: str | None = None
    refresh_failures: int = 0


# ------------------------------------------------------------------
# Inputs
# ------------------------------------------------------------------


@dataclass(frozen=True)
class Subscribe:
    """Initial subscription request."""


@dataclass(frozen=True)
class ChannelReport:
    """A status reported by the channel of ``generation``."""

    generation: int
    status: ChannelStatus
    detail: str | None = None


@dataclass(frozen=True)
class RefreshResult:
    """Outcome of the snapshot refresh requested for ``generation``."""

    generation: int
    ok: bool
    detail: str | None = None


@dataclass(frozen=True)
class TimerFired:
    """The reconnect timer elapsed."""


@dataclass(frozen=True)
class ForceReconnect:
    """Manual reset requested by the user."""


@dataclass(frozen=True)
class Teardown:
    """Permanent shutdown requested by the owner."""


Input = Subscribe | ChannelReport | RefreshResult | TimerFired | ForceReconnect | Teardown


# ------------------------------------------------------------------
# Effects
# ------------------------------------------------------------------


@dataclass(frozen=True)
class OpenChannel:
    generation: int


@dataclass(frozen=True)
class CloseChannel:
    pass


@dataclass(frozen=True)
class StartTimer:
    delay: float


@dataclass(frozen=True)
class CancelTimer:
    pass


@dataclass(frozen=True)
class RefreshSnapshot:
    generation: int


Effect = OpenChannel | CloseChannel | StartTimer | CancelTimer | RefreshSnapshot

_FAILURE_STATUSES = frozenset({ChannelStatus.CHANNEL_ERROR, ChannelStatus.TIMED_OUT, ChannelStatus.CLOSED})
_ACTIVE_STATES = frozenset({ConnectionState.CONNECTING, ConnectionState.CONNECTED})


def _open(machine: Machine, retry: RetryState, *, refresh_failures: int) -> tuple[Machine, list[Effect]]:
    generation = machine.generation + 1
    nxt = Machine(
        state=ConnectionState.CONNECTING,
        retry=retry,
        generation=generation,
        refresh_failures=refresh_failures,
    )
    # Any existing channel is torn down before the new one is opened.
    return nxt, [CancelTimer(), CloseChannel(), OpenChannel(generation)]


def _fail(machine: Machine, detail: str | None, policy: BackoffPolicy) -> tuple[Machine, list[Effect]]:
    attempt = machine.retry.attempt
    if policy.exhausted(attempt):
        nxt = replace(machine, state=ConnectionState.ERRORED, detail=detail)
        return nxt, [CancelTimer(), CloseChannel()]

    delay = policy.delay(attempt)
    nxt = replace(
        machine,
        state=ConnectionState.RECONNECTING,
        retry=RetryState(attempt=attempt + 1, last_delay=delay),
        detail=detail,
    )
    # StartTimer replaces any outstanding timer.
    return nxt, [CancelTimer(), StartTimer(delay)]


def transition(machine: Machine, event: Input, policy: BackoffPolicy) -> tuple[Machine, list[Effect]]:
    """Next machine state and the effects required to reach it."""

    if isinstance(event, Teardown):
        if machine.state == ConnectionState.CLOSED:
            return machine, []
        nxt = Machine(
            state=ConnectionState.CLOSED,
            retry=machine.retry,
            generation=machine.generation + 1,
        )
        return nxt, [CancelTimer(), CloseChannel()]

    if isinstance(event, ForceReconnect):
        return _open(machine, RetryState(), refresh_failures=0)

    if isinstance(event, Subscribe):
        if machine.state in _ACTIVE_STATES:
            return machine, []
        if machine.state == ConnectionState.RECONNECTING:
            return _open(machine, machine.retry, refresh_failures=machine.refresh_failures)
        return _open(machine, RetryState(), refresh_failures=0)

    if isinstance(event, TimerFired):
        if machine.state != ConnectionState.RECONNECTING:
            return machine, []
        return _open(machine, machine.retry, refresh_failures=machine.refresh_failures)

    if event.generation != machine.generation or machine.state not in _ACTIVE_STATES:
        return machine, []

    if isinstance(event, RefreshResult):
        if machine.state != ConnectionState.CONNECTED:
            return machine, []
        if event.ok:
            return replace(machine, refresh_failures=0), []
        # The retry counter was reset when we connected; a refresh that keeps
        # failing is bounded by its own counter instead.
        failures = machine.refresh_failures
        bumped = replace(
            machine,
            retry=RetryState(attempt=failures, last_delay=machine.retry.last_delay),
            refresh_failures=failures + 1,
        )
        return _fail(bumped, event.detail or "snapshot refresh failed", policy)

    if event.status == ChannelStatus.SUBSCRIBED:
        if machine.state == ConnectionState.CONNECTED:
            return machine, []
        nxt = Machine(
            state=ConnectionState.CONNECTED,
            retry=RetryState(),
            generation=machine.generation,
            refresh_failures=machine.refresh_failures,
        )
        return nxt, [CancelTimer(), RefreshSnapshot(machine.generation)]

    if event.status in _FAILURE_STATUSES:
        return _fail(machine, event.detail or str(event.status), policy)

    return machine, []
