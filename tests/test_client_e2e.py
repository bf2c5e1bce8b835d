from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import pytest

from pydashsync.client import DashSyncClient, TopicSync
from pydashsync.config import SyncConfig
from pydashsync.connection.channel import ChannelSink, EventFilter
from pydashsync.connection.machine import BackoffPolicy
from pydashsync.exceptions import (
    DashSyncApiError,
    DashSyncEditError,
    DashSyncError,
    DashSyncMutationError,
    UnknownRecordError,
)
from pydashsync.models import ORDERS
from pydashsync.models.shapes import RecordShape
from pydashsync.state.events import ChannelStatus, ConnectionState, ConnectionStatusEvent

TASKS = RecordShape(topic="tasks", key="id", defaults={"status": "Pending"}, integer_key=True)


@dataclass
class FakeChannel:
    topic: str
    sink: ChannelSink


@dataclass
class FakeRealtime:
    opened: list[FakeChannel] = field(default_factory=list)
    removed: list[FakeChannel] = field(default_factory=list)

    async def open_channel(self, topic: str, event_filter: EventFilter, sink: ChannelSink) -> FakeChannel:
        channel = FakeChannel(topic=topic, sink=sink)
        self.opened.append(channel)
        return channel

    async def remove_channel(self, channel: FakeChannel) -> None:
        self.removed.append(channel)

    @property
    def sink(self) -> ChannelSink:
        return self.opened[-1].sink


@dataclass
class FakeBackend:
    rows: dict[int, dict[str, Any]] = field(default_factory=dict)
    calls: list[tuple[str, Any, Any]] = field(default_factory=list)
    fail_update_ids: set[int] = field(default_factory=set)
    fail_delete: bool = False
    on_update: Callable[[int], Awaitable[None]] | None = None

    async def fetch_all(self, shape: RecordShape) -> list[dict[str, Any]]:
        self.calls.append(("fetch_all", None, None))
        return [dict(row) for row in self.rows.values()]

    async def insert(self, shape: RecordShape, fields: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("insert", fields.get(shape.key), dict(fields)))
        stored = {**fields, "status": fields.get("status") or "Pending"}
        self.rows[stored[shape.key]] = stored
        return dict(stored)

    async def update(self, shape: RecordShape, record_id: int, diff: dict[str, Any]) -> dict[str, Any] | None:
        self.calls.append(("update", record_id, dict(diff)))
        if self.on_update is not None:
            await self.on_update(record_id)
        if record_id in self.fail_update_ids:
            raise DashSyncApiError("update rejected", code="42501", endpoint="/tasks")
        self.rows[record_id] = {**self.rows.get(record_id, {"id": record_id}), **diff}
        return dict(self.rows[record_id])

    async def delete(self, shape: RecordShape, record_id: int) -> None:
        self.calls.append(("delete", record_id, None))
        if self.fail_delete:
            raise DashSyncMutationError("delete rejected", operation="delete", record_id=record_id)
        self.rows.pop(record_id, None)

    def calls_of(self, kind: str) -> list[tuple[str, Any, Any]]:
        return [call for call in self.calls if call[0] == kind]


@dataclass
class FakeTimer:
    delay: float
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class FakeScheduler:
    timers: list[FakeTimer] = field(default_factory=list)

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [timer for timer in self.timers if not timer.cancelled]

    def fire(self) -> None:
        timer = self.pending[-1]
        timer.cancelled = True
        timer.callback()


@dataclass
class FakeClock:
    now: float = 1000.0

    def __call__(self) -> float:
        return self.now


@dataclass
class World:
    sync: TopicSync
    realtime: FakeRealtime
    backend: FakeBackend
    scheduler: FakeScheduler
    clock: FakeClock
    statuses: list[ConnectionStatusEvent]

    async def connect(self) -> None:
        await self.sync.manager.subscribe()
        await self.ack()

    async def ack(self) -> None:
        self.realtime.sink.status(ChannelStatus.SUBSCRIBED)
        await self.sync.manager.drain()

    async def push(self, payload: dict[str, Any]) -> None:
        self.realtime.sink.change(payload)
        await self.sync.manager.drain()

    async def fail(self, status: ChannelStatus = ChannelStatus.CHANNEL_ERROR) -> None:
        self.realtime.sink.status(status, "simulated")
        await self.sync.manager.drain()


@pytest.fixture
def world() -> World:
    backend = FakeBackend(
        rows={
            3: {"id": 3, "status": "Pending", "title": "Fry"},
            7: {"id": 7, "status": "Pending", "title": "Bake"},
        }
    )
    realtime = FakeRealtime()
    scheduler = FakeScheduler()
    clock = FakeClock()
    sync = TopicSync(
        TASKS,
        factory=realtime,
        persistence=backend,
        policy=BackoffPolicy(base_delay=2.0, max_delay=30.0, max_attempts=5),
        highlight_seconds=5.0,
        scheduler=scheduler,
        clock=clock,
    )
    statuses: list[ConnectionStatusEvent] = []
    sync.on_status(statuses.append)
    return World(sync, realtime, backend, scheduler, clock, statuses)


def _status_of(world: World, record_id: int) -> Any:
    record = world.sync.get(record_id)
    assert record is not None
    return record.get("status")


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_initial_subscription_loads_snapshot(world: World) -> None:
    await world.connect()

    assert world.sync.get_connection_state() == ConnectionState.CONNECTED
    assert [record.id for record in world.sync.get_mirror()] == [3, 7]
    assert world.backend.calls_of("fetch_all")


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_duplicate_insert_yields_one_record(world: World) -> None:
    inserted: list[Any] = []
    world.sync.on_insert(inserted.append)
    await world.connect()

    await world.push({"eventType": "INSERT", "new": {"id": 5, "title": "Chop"}})
    await world.push({"eventType": "INSERT", "new": {"id": 5, "title": "Chop"}})

    assert [record.id for record in world.sync.get_mirror()].count(5) == 1
    assert len(inserted) == 1
    assert _status_of(world, 5) == "Pending"


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_remote_insert_is_highlighted_for_a_while(world: World) -> None:
    await world.connect()
    await world.push({"eventType": "INSERT", "new": {"id": 5}})

    assert world.sync.is_highlighted(5)
    assert not world.sync.is_highlighted(3)

    world.clock.now += 5.0
    assert not world.sync.is_highlighted(5)


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_local_edit_shields_remote_update(world: World) -> None:
    await world.connect()

    assert world.sync.begin_edit(3) is True
    world.sync.set_edit_field(3, "status", "Ready")
    await world.push({"eventType": "UPDATE", "new": {"id": 3, "status": "Pending", "title": "Fry"}})

    assert _status_of(world, 3) == "Ready"
    assert world.sync.has_changes(3)


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_repeated_channel_errors_back_off_then_error(world: World) -> None:
    await world.sync.manager.subscribe()

    for _ in range(5):
        await world.fail()
        world.scheduler.fire()
        await world.sync.manager.drain()
    await world.fail()

    delays = [event.delay for event in world.statuses if event.state == ConnectionState.RECONNECTING]
    assert delays == [2.0, 4.0, 8.0, 16.0, 30.0]
    assert world.sync.get_connection_state() == ConnectionState.ERRORED
    assert world.scheduler.pending == []
    assert len(world.scheduler.timers) == 5


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_remote_delete_cancels_edit(world: World) -> None:
    await world.connect()
    world.sync.begin_edit(7)
    world.sync.set_edit_field(7, "status", "Ready")

    await world.push({"eventType": "DELETE", "old": {"id": 7}})

    assert not world.sync.is_editing(7)
    assert 7 not in [record.id for record in world.sync.get_mirror()]


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_force_reconnect_from_errored_subscribes_immediately(world: World) -> None:
    await world.sync.manager.subscribe()
    for _ in range(5):
        await world.fail()
        world.scheduler.fire()
        await world.sync.manager.drain()
    await world.fail()
    assert world.sync.get_connection_state() == ConnectionState.ERRORED
    opened_before = len(world.realtime.opened)

    await world.sync.force_reconnect()

    assert world.sync.manager.retry.attempt == 0
    assert len(world.realtime.opened) == opened_before + 1
    assert world.sync.get_connection_state() == ConnectionState.CONNECTING

    await world.ack()
    assert world.sync.get_connection_state() == ConnectionState.CONNECTED


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_reconnect_refresh_keeps_edit_overlay(world: World) -> None:
    await world.connect()
    world.sync.begin_edit(3)
    world.sync.set_edit_field(3, "status", "Ready")

    await world.fail(ChannelStatus.CLOSED)
    world.backend.rows[3]["title"] = "Fry twice"
    world.backend.rows[9] = {"id": 9, "status": "Pending"}
    world.scheduler.fire()
    await world.sync.manager.drain()
    await world.ack()

    record = world.sync.get(3)
    assert record is not None
    assert record.get("status") == "Ready"
    assert record.get("title") == "Fry twice"
    assert world.sync.get(9) is not None


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_commit_sends_only_changed_fields(world: World) -> None:
    await world.connect()
    world.sync.begin_edit(3)
    world.sync.set_edit_field(3, "status", "Ready")
    world.sync.set_edit_field(3, "title", "Fry")

    updated = await world.sync.commit_edit(3)

    assert updated is not None
    assert updated.get("status") == "Ready"
    assert world.backend.calls_of("update") == [("update", 3, {"status": "Ready"})]
    assert not world.sync.is_editing(3)

    await world.push({"eventType": "UPDATE", "new": {"id": 3, "status": "Ready", "title": "Fry"}})
    assert _status_of(world, 3) == "Ready"


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_commit_without_changes_makes_no_request(world: World) -> None:
    await world.connect()
    world.sync.begin_edit(3)
    world.sync.set_edit_field(3, "status", "Pending")

    assert await world.sync.commit_edit(3) is None
    assert world.backend.calls_of("update") == []
    assert not world.sync.is_editing(3)


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_failed_commit_keeps_session_for_retry(world: World) -> None:
    await world.connect()
    world.sync.begin_edit(3)
    world.sync.set_edit_field(3, "status", "Ready")
    world.backend.fail_update_ids.add(3)

    with pytest.raises(DashSyncMutationError) as exc_info:
        await world.sync.commit_edit(3)

    assert exc_info.value.operation == "update"
    assert exc_info.value.record_id == 3
    assert isinstance(exc_info.value.__cause__, DashSyncApiError)
    assert world.sync.is_editing(3)
    assert _status_of(world, 3) == "Ready"
    mirrored = world.sync.store.get_mirrored(3)
    assert mirrored is not None
    assert mirrored.get("status") == "Pending"

    world.backend.fail_update_ids.clear()
    assert await world.sync.commit_edit(3) is not None
    assert not world.sync.is_editing(3)


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_save_all_collects_failures(world: World) -> None:
    await world.connect()
    for record_id in (3, 7):
        world.sync.begin_edit(record_id)
        world.sync.set_edit_field(record_id, "status", "Ready")
    world.backend.fail_update_ids.add(7)

    with pytest.raises(DashSyncMutationError) as exc_info:
        await world.sync.save_all_edits()

    assert list(exc_info.value.failed) == [7]
    assert not world.sync.is_editing(3)
    assert world.sync.pending_ids() == [7]
    assert _status_of(world, 3) == "Ready"


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_save_all_returns_saved_records(world: World) -> None:
    await world.connect()
    world.sync.begin_edit(3)
    world.sync.set_edit_field(3, "status", "Ready")
    world.sync.begin_edit(7)

    saved = await world.sync.save_all_edits()

    assert list(saved) == [3]
    assert world.sync.is_editing(7)


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_save_all_skips_record_deleted_during_earlier_save(world: World) -> None:
    await world.connect()
    for record_id in (3, 7):
        world.sync.begin_edit(record_id)
        world.sync.set_edit_field(record_id, "status", "Ready")

    async def delete_seven(record_id: int) -> None:
        if record_id == 3:
            await world.push({"eventType": "DELETE", "old": {"id": 7}})

    world.backend.on_update = delete_seven

    saved = await world.sync.save_all_edits()

    assert list(saved) == [3]
    assert [call[1] for call in world.backend.calls_of("update")] == [3]
    assert world.sync.get(7) is None
    assert world.sync.pending_ids() == []


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_edit_made_during_save_stays_pending(world: World) -> None:
    await world.connect()
    world.sync.begin_edit(3)
    world.sync.set_edit_field(3, "status", "Ready")

    async def user_keeps_typing(record_id: int) -> None:
        world.sync.set_edit_field(3, "title", "Grill")

    world.backend.on_update = user_keeps_typing

    updated = await world.sync.commit_edit(3)

    assert updated is not None
    assert updated.get("status") == "Ready"
    assert updated.get("title") == "Fry"
    assert world.sync.is_editing(3)
    assert world.sync.pending_ids() == [3]
    shown = world.sync.get(3)
    assert shown is not None
    assert shown.get("title") == "Grill"
    assert shown.get("status") == "Ready"

    world.backend.on_update = None
    await world.sync.commit_edit(3)

    assert world.backend.calls_of("update")[-1] == ("update", 3, {"title": "Grill"})
    assert not world.sync.is_editing(3)
    assert world.backend.rows[3]["title"] == "Grill"


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_highlights_are_pruned(world: World) -> None:
    await world.connect()
    await world.push({"eventType": "INSERT", "new": {"id": 5}})
    await world.push({"eventType": "INSERT", "new": {"id": 6}})

    # 5 and 6 never reached the backend, so the snapshot drops them.
    await world.sync.refresh()
    assert world.sync._highlights == {}

    await world.push({"eventType": "INSERT", "new": {"id": 8}})
    world.clock.now += 5.0
    await world.push({"eventType": "UPDATE", "new": {"id": 3, "status": "Ready"}})

    assert 8 not in world.sync._highlights


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_insert_allocates_next_id_and_tolerates_broadcast(world: World) -> None:
    inserted: list[Any] = []
    world.sync.on_insert(inserted.append)
    await world.connect()

    record = await world.sync.insert_record({"title": "Plate"})

    assert record is not None
    assert record.id == 8
    assert world.backend.calls_of("insert")[0][1] == 8

    await world.push({"eventType": "INSERT", "new": {"id": 8, "title": "Plate", "status": "Pending"}})

    assert [r.id for r in world.sync.get_mirror()].count(8) == 1
    assert inserted == []
    assert not world.sync.is_highlighted(8)


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_insert_requires_key_for_text_keyed_tables() -> None:
    sync = TopicSync(ORDERS, factory=FakeRealtime(), persistence=FakeBackend())

    with pytest.raises(DashSyncEditError):
        await sync.insert_record({"nome_cliente": "Ana"})


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_failed_delete_leaves_record_visible(world: World) -> None:
    await world.connect()
    world.backend.fail_delete = True

    with pytest.raises(DashSyncMutationError):
        await world.sync.delete_record(7)
    assert world.sync.get(7) is not None

    world.backend.fail_delete = False
    await world.sync.delete_record(7)
    assert world.sync.get(7) is not None

    await world.push({"eventType": "DELETE", "old": {"id": 7}})
    assert world.sync.get(7) is None


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_edit_guards(world: World) -> None:
    await world.connect()

    with pytest.raises(UnknownRecordError):
        world.sync.begin_edit(99)
    with pytest.raises(DashSyncEditError):
        world.sync.set_edit_field(3, "status", "Ready")

    world.sync.begin_edit(3)
    with pytest.raises(DashSyncEditError):
        world.sync.set_edit_field(3, "id", 4)

    world.sync.set_edit_field(3, "status", "Ready")
    restored = world.sync.cancel_edit(3)
    assert restored is not None
    assert restored.get("status") == "Pending"


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_failing_listener_does_not_break_pipeline(world: World) -> None:
    def broken(_record: Any) -> None:
        raise RuntimeError("listener bug")

    world.sync.on_insert(broken)
    world.sync.on_change(broken)
    await world.connect()

    await world.push({"eventType": "INSERT", "new": {"id": 11}})
    await world.push({"eventType": "UPDATE", "new": {"id": 11, "status": "Ready"}})

    assert _status_of(world, 11) == "Ready"


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_listener_can_be_removed(world: World) -> None:
    seen: list[Any] = []
    remove = world.sync.on_change(seen.append)
    await world.connect()

    await world.push({"eventType": "INSERT", "new": {"id": 11}})
    remove()
    await world.push({"eventType": "INSERT", "new": {"id": 12}})

    assert len(seen) == 1


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_stop_tears_down(world: World) -> None:
    await world.connect()

    await world.sync.stop()
    await world.sync.stop()

    assert world.sync.get_connection_state() == ConnectionState.CLOSED
    assert len(world.realtime.removed) == 1
    assert world.statuses[-1].state == ConnectionState.CLOSED


@pytest.mark.asyncio
@pytest.mark.e2e
async def test_client_builds_topics_from_config() -> None:
    config = SyncConfig(url="https://example.supabase.co/", api_key="anon-key")
    session: Any = object()

    async with DashSyncClient(config, session=session) as client:
        orders = client.topic("orders")
        assert client.topic(ORDERS) is orders
        assert orders.shape is ORDERS
        assert client.topic("menu") is not orders
        with pytest.raises(DashSyncError):
            client.topic("unknown")

    with pytest.raises(DashSyncError):
        client.topic("orders")
