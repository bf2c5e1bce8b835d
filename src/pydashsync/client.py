"""High-level async client for live dashboard tables."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any, Protocol

import aiohttp

from pydashsync._api import rows as _rows_api
from pydashsync._realtime import RealtimeClient
from pydashsync._transport import RestTransport, TraceCallback, Transport
from pydashsync.config import SyncConfig
from pydashsync.connection.channel import ChannelFactory, EventFilter
from pydashsync.connection.machine import BackoffPolicy
from pydashsync.connection.manager import ConnectionManager, Scheduler
from pydashsync.exceptions import (
    DashSyncEditError,
    DashSyncError,
    DashSyncMutationError,
    UnknownRecordError,
)
from pydashsync.ingestion.dispatch import ChangeDispatcher, build_change_event
from pydashsync.ingestion.normalize import coerce_record_id, normalize_record
from pydashsync.models._base import Record, RecordId
from pydashsync.models.shapes import SHAPES, RecordShape
from pydashsync.state.edits import EditTracker
from pydashsync.state.events import (
    ChangeEvent,
    ChangeSource,
    ChangeType,
    ConnectionState,
    ConnectionStatusEvent,
)
from pydashsync.state.policy import MergeAction
from pydashsync.state.store import ReconciliationStore

_logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]


class PersistenceService(Protocol):
    """Structural interface of the row persistence backend."""

    async def fetch_all(self, shape: RecordShape) -> list[dict[str, Any]]: ...

    async def insert(self, shape: RecordShape, fields: Mapping[str, Any]) -> dict[str, Any]: ...

    async def update(
        self, shape: RecordShape, record_id: RecordId, diff: Mapping[str, Any]
    ) -> dict[str, Any] | None: ...

    async def delete(self, shape: RecordShape, record_id: RecordId) -> None: ...


class RestPersistence:
    """Persistence backed by the REST row endpoints."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport

    async def fetch_all(self, shape: RecordShape) -> list[dict[str, Any]]:
        return await _rows_api.fetch_all(self._transport, shape)

    async def insert(self, shape: RecordShape, fields: Mapping[str, Any]) -> dict[str, Any]:
        return await _rows_api.insert_row(self._transport, shape, fields)

    async def update(
        self, shape: RecordShape, record_id: RecordId, diff: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        return await _rows_api.update_row(self._transport, shape, record_id, diff)

    async def delete(self, shape: RecordShape, record_id: RecordId) -> None:
        await _rows_api.delete_row(self._transport, shape, record_id)


def _notify(listeners: list[Listener], value: Any, kind: str) -> None:
    for listener in list(listeners):
        try:
            listener(value)
        except Exception:
            _logger.debug("%s listener failed", kind, exc_info=True)


def _remover(listeners: list[Listener], listener: Listener) -> Callable[[], None]:
    def _remove() -> None:
        if listener in listeners:
            listeners.remove(listener)

    return _remove


class TopicSync:
    """Live mirror of one table with local edit sessions.

    Reads never block and always return the displayed value: the last
    known-good server record with any pending local edit values on top.
    Writes go through the persistence service; a failed write raises
    :class:`DashSyncMutationError` and leaves local state untouched.
    """

    def __init__(
        self,
        shape: RecordShape,
        *,
        factory: ChannelFactory,
        persistence: PersistenceService,
        policy: BackoffPolicy | None = None,
        schema: str = "public",
        highlight_seconds: float = 5.0,
        scheduler: Scheduler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._shape = shape
        self._persistence = persistence
        self._highlight_seconds = highlight_seconds
        self._clock = clock

        self._tracker = EditTracker()
        self._store = ReconciliationStore(shape, self._tracker)
        self._dispatcher = ChangeDispatcher(shape, self._handle_event)
        self._manager = ConnectionManager(
            topic=shape.topic,
            factory=factory,
            event_filter=EventFilter(table=shape.topic, schema=schema),
            refresh=self.refresh,
            on_change=self._dispatcher.dispatch,
            on_status=self._handle_status,
            policy=policy,
            scheduler=scheduler,
        )

        self._highlights: dict[RecordId, float] = {}
        self._insert_listeners: list[Listener] = []
        self._change_listeners: list[Listener] = []
        self._status_listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def shape(self) -> RecordShape:
        return self._shape

    @property
    def store(self) -> ReconciliationStore:
        return self._store

    @property
    def tracker(self) -> EditTracker:
        return self._tracker

    @property
    def dispatcher(self) -> ChangeDispatcher:
        return self._dispatcher

    @property
    def manager(self) -> ConnectionManager:
        return self._manager

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._manager.start()

    async def stop(self) -> None:
        await self._manager.teardown()

    async def force_reconnect(self) -> None:
        await self._manager.force_reconnect()

    def get_connection_state(self) -> ConnectionState:
        return self._manager.state

    async def refresh(self) -> None:
        """Reload the full snapshot into the mirror."""
        rows = await self._persistence.fetch_all(self._shape)
        records: list[Record] = []
        for row in rows:
            record = normalize_record(row, self._shape)
            if record is None:
                _logger.warning("Skipping %s snapshot row without %r", self._shape.topic, self._shape.key)
                continue
            records.append(record)
        self._store.replace_all(records)
        self._prune_highlights()
        _logger.debug("%s snapshot loaded: %d records", self._shape.topic, len(records))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_mirror(self) -> list[Record]:
        """All displayed records in display order."""
        return self._store.records()

    def get(self, record_id: RecordId) -> Record | None:
        return self._store.get(record_id)

    def is_highlighted(self, record_id: RecordId) -> bool:
        """Whether *record_id* arrived as a remote insert within the highlight window."""
        expires = self._highlights.get(record_id)
        if expires is None:
            return False
        if self._clock() >= expires:
            del self._highlights[record_id]
            return False
        return True

    # ------------------------------------------------------------------
    # Edit sessions
    # ------------------------------------------------------------------

    def begin_edit(self, record_id: RecordId) -> bool:
        """Open an edit session; ``False`` when one is already open."""
        current = self._store.get_mirrored(record_id)
        if current is None:
            raise UnknownRecordError(record_id)
        return self._tracker.begin(record_id, current)

    def set_edit_field(self, record_id: RecordId, name: str, value: Any) -> None:
        if not self._shape.is_editable(name):
            raise DashSyncEditError(f"Field {name!r} of {self._shape.topic} is not editable")
        self._tracker.set_field(record_id, name, value)

    def is_editing(self, record_id: RecordId) -> bool:
        return self._tracker.is_editing(record_id)

    def has_changes(self, record_id: RecordId) -> bool:
        return self._tracker.has_changes(record_id)

    def pending_ids(self) -> list[RecordId]:
        """Ids whose edit session holds actual changes."""
        return self._tracker.changed_ids()

    async def commit_edit(self, record_id: RecordId) -> Record | None:
        """Persist the changed fields of an edit session.

        Returns the updated record, or ``None`` when nothing changed (no
        request is sent and the session is closed).  On failure the session
        is kept so the save can be retried.  Fields set while the request
        was in flight stay pending in the session.
        """
        diff = self._tracker.commit(record_id)
        if not diff:
            _logger.debug("No changes for %r; save skipped", record_id)
            self._tracker.cancel(record_id)
            return None

        try:
            await self._persistence.update(self._shape, record_id, diff)
        except DashSyncMutationError:
            raise
        except DashSyncError as exc:
            raise DashSyncMutationError(
                f"update on {self._shape.topic} {record_id!r} failed: {exc}",
                operation="update",
                record_id=record_id,
            ) from exc

        if record_id not in self._store:
            # Deleted remotely while the save was in flight.
            self._tracker.cancel(record_id)
            return None
        return self._store.commit_local(record_id, diff)

    def cancel_edit(self, record_id: RecordId) -> Record | None:
        """Drop the edit session; returns the last known-good record."""
        return self._store.cancel_edit(record_id)

    async def save_all_edits(self) -> dict[RecordId, Record | None]:
        """Commit every session with changes.

        Successful saves are applied; failures are collected and raised as a
        single :class:`DashSyncMutationError` whose ``failed`` maps each id
        to its error.  Failed sessions stay open.
        """
        saved: dict[RecordId, Record | None] = {}
        failed: dict[Any, BaseException] = {}
        for record_id in self._tracker.changed_ids():
            if not self._tracker.is_editing(record_id):
                # Deleted remotely while an earlier save was in flight.
                continue
            try:
                saved[record_id] = await self.commit_edit(record_id)
            except DashSyncMutationError as exc:
                failed[record_id] = exc

        if failed:
            ids = ", ".join(repr(record_id) for record_id in failed)
            raise DashSyncMutationError(
                f"{len(failed)} of {len(failed) + len(saved)} saves failed: {ids}",
                operation="update",
                failed=failed,
            )
        return saved

    # ------------------------------------------------------------------
    # Inserts and deletes
    # ------------------------------------------------------------------

    async def insert_record(self, fields: Mapping[str, Any]) -> Record | None:
        """Persist a new record and show it immediately.

        Integer-keyed tables get ``max(id) + 1`` when no id is supplied.  The
        stored row is applied as an optimistic insert, so the broadcast that
        follows is a duplicate and changes nothing.
        """
        row = dict(fields)
        key = self._shape.key
        if coerce_record_id(row.get(key), self._shape) is None:
            if not self._shape.integer_key:
                raise DashSyncEditError(f"Insert into {self._shape.topic} requires {key!r}")
            row[key] = self._store.next_id()

        try:
            stored = await self._persistence.insert(self._shape, row)
        except DashSyncMutationError:
            raise
        except DashSyncError as exc:
            raise DashSyncMutationError(
                f"insert on {self._shape.topic} failed: {exc}",
                operation="insert",
                record_id=row.get(key),
            ) from exc

        event = build_change_event(
            {"eventType": ChangeType.INSERT.value, "new": stored or row},
            self._shape,
            source=ChangeSource.OPTIMISTIC,
        )
        if event is None:
            return None
        self._handle_event(event)
        return self._store.get(event.record_id)

    async def delete_record(self, record_id: RecordId) -> None:
        """Delete a record through persistence.

        The mirror changes only when the delete broadcast arrives, so a
        failed delete leaves the record visible.
        """
        try:
            await self._persistence.delete(self._shape, record_id)
        except DashSyncMutationError:
            raise
        except DashSyncError as exc:
            raise DashSyncMutationError(
                f"delete on {self._shape.topic} {record_id!r} failed: {exc}",
                operation="delete",
                record_id=record_id,
            ) from exc

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_insert(self, listener: Callable[[Record], None]) -> Callable[[], None]:
        """Call *listener* with each remotely inserted, previously unseen record."""
        self._insert_listeners.append(listener)
        return _remover(self._insert_listeners, listener)

    def on_change(self, listener: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        """Call *listener* with every change event after it was applied."""
        self._change_listeners.append(listener)
        return _remover(self._change_listeners, listener)

    def on_status(self, listener: Callable[[ConnectionStatusEvent], None]) -> Callable[[], None]:
        self._status_listeners.append(listener)
        return _remover(self._status_listeners, listener)

    # ------------------------------------------------------------------
    # Pipeline callbacks
    # ------------------------------------------------------------------

    def _prune_highlights(self) -> None:
        now = self._clock()
        for record_id, expires in list(self._highlights.items()):
            if now >= expires or record_id not in self._store:
                del self._highlights[record_id]

    def _handle_event(self, event: ChangeEvent) -> None:
        action = self._store.apply(event)
        self._prune_highlights()
        if event.type == ChangeType.DELETE:
            self._highlights.pop(event.record_id, None)
        elif (
            action == MergeAction.ADD
            and event.type == ChangeType.INSERT
            and event.source == ChangeSource.REMOTE
            and event.new is not None
        ):
            self._highlights[event.record_id] = self._clock() + self._highlight_seconds
            _notify(self._insert_listeners, event.new, "on_insert")
        _notify(self._change_listeners, event, "on_change")

    def _handle_status(self, event: ConnectionStatusEvent) -> None:
        _notify(self._status_listeners, event, "on_status")


class DashSyncClient:
    """Async client for live dashboard tables.

    Usage::

        async with DashSyncClient(config) as client:
            orders = client.topic("orders")
            await orders.start()
            for record in orders.get_mirror():
                ...
    """

    def __init__(
        self,
        config: SyncConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        on_trace: TraceCallback | None = None,
    ) -> None:
        self._config = config
        self._external_session = session is not None
        self._http_session = session
        self._on_trace = on_trace
        self._transport: RestTransport | None = None
        self._realtime: RealtimeClient | None = None
        self._persistence: RestPersistence | None = None
        self._topics: dict[str, TopicSync] = {}

    @property
    def config(self) -> SyncConfig:
        return self._config

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> DashSyncClient:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        self._transport = RestTransport(self._config, self._http_session, on_trace=self._on_trace)
        self._realtime = RealtimeClient(self._config, self._http_session)
        self._persistence = RestPersistence(self._transport)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Tear down every topic, then release the HTTP session."""
        for sync in list(self._topics.values()):
            try:
                await sync.stop()
            except Exception:
                _logger.debug("Stopping %s failed", sync.shape.topic, exc_info=True)
        self._topics.clear()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
        self._http_session = None
        self._transport = None
        self._realtime = None
        self._persistence = None

    # ------------------------------------------------------------------
    # Topics
    # ------------------------------------------------------------------

    def topic(self, shape: RecordShape | str) -> TopicSync:
        """Return the (cached) :class:`TopicSync` for *shape*.

        *shape* is a :class:`RecordShape` or the name of a built-in one
        (``"orders"`` or ``"menu"``).
        """
        if isinstance(shape, str):
            try:
                shape = SHAPES[shape]
            except KeyError as exc:
                raise DashSyncError(f"Unknown topic {shape!r}; expected one of {sorted(SHAPES)}") from exc

        if self._realtime is None or self._persistence is None:
            raise DashSyncError("Client is not open; use 'async with DashSyncClient(...)'")

        sync = self._topics.get(shape.topic)
        if sync is None:
            sync = TopicSync(
                shape,
                factory=self._realtime,
                persistence=self._persistence,
                policy=self._config.backoff_policy(),
                schema=self._config.schema,
                highlight_seconds=self._config.highlight_seconds,
            )
            self._topics[shape.topic] = sync
        return sync
