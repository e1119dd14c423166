"""
End-to-end tests for BoardSession over a real store and the local transport.
"""
import asyncio
import sqlite3

import pytest

from boardsync.errors import NotFound, PermissionDenied, ValidationError
from boardsync.feed import LocalTransport
from boardsync.realtime import RetryPolicy, SubscriptionManager
from boardsync.schema import ConnectionStatus, FieldType
from boardsync.session import BoardSession

FAST = RetryPolicy(max_attempts=5, base_delay=0.001, max_delay=0.002, timeout=0.5)


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def open_session(store, transport, actor, project_id, **kwargs):
    return BoardSession(store, SubscriptionManager(transport, FAST), actor, project_id, **kwargs)


def names(session, column_id):
    return [i["name"] for i in session.state.items_in_column(column_id)]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Sync Between Clients
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_two_clients_see_new_item(store, alice, bob, board):
    """A creates an item; both A and B see it in backlog after one event cycle"""
    project, columns = board
    backlog = columns["backlog"].id

    async def main():
        transport = LocalTransport(store.feed)
        a = open_session(store, transport, alice, project.id)
        b = open_session(store, transport, bob, project.id)
        await a.start()
        await b.start()
        assert a.status == ConnectionStatus.LIVE

        outcome = await a.create_item(backlog, "Task 1")
        assert outcome.ok
        await settle()

        for session in (a, b):
            [created] = session.state.items_in_column(backlog)
            assert created["name"] == "Task 1"
            assert created["item_number"] == 1
            assert created["id"] == outcome.result.id
        assert not a.state.has_pending()

        await a.stop()
        await b.stop()
        assert transport.live_channels() == []

    asyncio.run(main())


def test_optimistic_update_visible_before_write(store, alice, board):
    project, columns = board
    item = store.create_item(alice, columns["backlog"].id, "Draft")

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        pending = asyncio.ensure_future(a.update_item(item.id, name="Final"))
        await asyncio.sleep(0)
        assert a.state.items[item.id]["name"] == "Final"
        assert (await pending).ok
        await settle()
        assert a.state.items[item.id]["version"] == 2
        assert not a.state.has_pending()
        await a.stop()

    asyncio.run(main())


def test_comments_and_mentions_sync(store, alice, bob, board):
    project, columns = board
    item = store.create_item(alice, columns["backlog"].id, "Review copy")

    async def main():
        transport = LocalTransport(store.feed)
        a = open_session(store, transport, alice, project.id)
        b = open_session(store, transport, bob, project.id)
        await a.start()
        await b.start()

        outcome = await a.add_comment(item.id, "@bob please check", mentions=["bob"])
        assert outcome.ok
        await settle()
        assert b.state.has_unresolved_mention(item.id, "bob")
        assert a.state.comment_count(item.id) == 1

        assert (await b.resolve_comment(outcome.result.id)).ok
        await settle()
        assert not a.state.has_unresolved_mention(item.id, "bob")

        await a.stop()
        await b.stop()

    asyncio.run(main())


def test_assignees_and_fields_sync(store, admin, alice, bob, board):
    project, columns = board
    points = store.create_custom_field(admin, project.id, "Points", FieldType.NUMBER)
    item = store.create_item(alice, columns["backlog"].id, "Task")

    async def main():
        transport = LocalTransport(store.feed)
        a = open_session(store, transport, alice, project.id)
        b = open_session(store, transport, bob, project.id)
        await a.start()
        await b.start()

        assert (await a.set_assignees(item.id, ["alice", "bob"])).ok
        assert (await a.set_field_value(item.id, points.id, 5)).ok
        await settle()

        assert sorted(b.state.items[item.id]["assignees"]) == ["alice", "bob"]
        assert b.state.items[item.id]["field_values"] == {points.id: 5.0}
        assert not a.state.has_pending()

        await a.stop()
        await b.stop()

    asyncio.run(main())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Rejected Writes
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_rejected_update_rolls_back(store, admin, alice, board):
    project, columns = board
    item = store.create_item(admin, columns["backlog"].id, "Locked")
    store.update_item(admin, item.id, is_open=False)

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        outcome = await a.update_item(item.id, name="Edited anyway")
        assert not outcome.ok
        assert isinstance(outcome.error, PermissionDenied)
        assert a.state.items[item.id]["name"] == "Locked"
        assert not a.state.has_pending()

        outcome = await a.delete_item(item.id)
        assert not outcome.ok
        assert item.id in a.state.items
        await a.stop()

    asyncio.run(main())


def test_rejected_field_value_rolls_back(store, admin, alice, board):
    project, columns = board
    size = store.create_custom_field(admin, project.id, "Size", FieldType.SELECT, options=["S", "M", "L"])
    item = store.create_item(alice, columns["backlog"].id, "Task", field_values={size.id: "M"})

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        outcome = await a.set_field_value(item.id, size.id, "XXL")
        assert isinstance(outcome.error, ValidationError)
        assert a.state.items[item.id]["field_values"] == {size.id: "M"}
        await a.stop()

    asyncio.run(main())


def test_rejected_create_disappears(store, alice, board):
    project, _ = board

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        outcome = await a.create_item("no-such-column", "Orphan")
        assert not outcome.ok
        assert a.state.items == {}
        await a.stop()

    asyncio.run(main())


def test_create_keeps_client_generated_id(store, alice, board):
    """The stored item carries the id the view inserted, so no ghost row is left"""
    project, columns = board
    backlog = columns["backlog"].id

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        outcome = await a.create_item(backlog, "Task", description="Details")
        assert outcome.ok, outcome.message
        assert outcome.result.id == outcome.item_id
        assert store.get_item(alice, outcome.item_id).description == "Details"
        await settle()
        assert list(a.state.items) == [outcome.item_id]
        assert not a.state.has_pending()
        await a.stop()

    asyncio.run(main())


def test_unknown_item_reports_failure(store, alice, board):
    project, _ = board

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        outcome = await a.update_item("missing", name="x")
        assert not outcome.ok
        assert "missing" in outcome.message
        await a.stop()

    asyncio.run(main())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Bulk & Columns
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_bulk_move_partial_failure(store, admin, alice, board):
    """Failing on item k leaves 1..k-1 moved and k..N unmoved"""
    project, columns = board
    backlog, done = columns["backlog"].id, columns["done"].id
    items = [store.create_item(alice, backlog, f"Task {n}") for n in range(1, 5)]
    store.update_item(admin, items[2].id, is_open=False)

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        outcomes = await a.bulk_move([i.id for i in items], done)
        await settle()

        assert [o.ok for o in outcomes] == [True, True, False, False]
        assert isinstance(outcomes[2].error, PermissionDenied)
        assert outcomes[3].skipped
        assert [o.item_id for o in outcomes] == [i.id for i in items]

        assert names(a, done) == ["Task 1", "Task 2"]
        assert names(a, backlog) == ["Task 3", "Task 4"]
        assert [i.column_id for i in store.list_items(alice, project.id) if i.name == "Task 4"] == [backlog]

        retry = await a.bulk_move([items[3].id], done)
        assert retry[0].ok
        await a.stop()

    asyncio.run(main())


def test_bulk_continue_on_error(store, admin, alice, board):
    project, columns = board
    items = [store.create_item(alice, columns["backlog"].id, f"Task {n}") for n in range(1, 4)]
    store.update_item(admin, items[0].id, is_open=False)

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        outcomes = await a.bulk_delete([i.id for i in items], stop_on_error=False)
        await settle()
        assert [o.ok for o in outcomes] == [False, True, True]
        assert list(a.state.items) == [items[0].id]
        await a.stop()

    asyncio.run(main())


def test_column_delete_reaches_peers(store, admin, alice, board):
    """Deleting a column removes all its items from every view"""
    project, columns = board
    doing = columns["doing"].id
    for n in range(3):
        store.create_item(alice, doing, f"Task {n}")
    keep = store.create_item(alice, columns["backlog"].id, "Keep")

    async def main():
        transport = LocalTransport(store.feed)
        boss = open_session(store, transport, admin, project.id)
        peer = open_session(store, transport, alice, project.id)
        await boss.start()
        await peer.start()

        pending = asyncio.ensure_future(boss.delete_column(doing))
        await asyncio.sleep(0)
        assert doing not in boss.state.columns
        assert (await pending).ok
        await settle()

        for session in (boss, peer):
            assert doing not in session.state.columns
            assert list(session.state.items) == [keep.id]
            assert not session.state.needs_refresh

        outcome = await peer.delete_column(columns["done"].id)
        assert isinstance(outcome.error, PermissionDenied)
        assert columns["done"].id in peer.state.columns

        await boss.stop()
        await peer.stop()

    asyncio.run(main())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Refresh & Reconnect
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_inconsistency_triggers_refresh(store, alice, bob, board):
    project, columns = board
    item = store.create_item(alice, columns["backlog"].id, "Task")

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        del a.state.items[item.id]           # View lost track of the item

        store.update_item(bob, item.id, name="Changed elsewhere")
        await wait_until(lambda: not a.state.needs_refresh and item.id in a.state.items)
        assert a.state.items[item.id]["name"] == "Changed elsewhere"
        assert a.state.items[item.id]["version"] == 2
        await a.stop()

    asyncio.run(main())


def test_resync_after_reconnect(store, alice, bob, board):
    """Events missed while offline are recovered by the snapshot after reconnect"""
    project, columns = board

    async def main():
        transport = LocalTransport(store.feed)
        a = open_session(store, transport, alice, project.id)
        await a.start()

        transport.drop(a.handle.channel_name)
        missed = store.create_item(bob, columns["backlog"].id, "While you were away")

        await wait_until(lambda: missed.id in a.state.items)
        assert a.status == ConnectionStatus.LIVE
        assert a.status_history == [
            ConnectionStatus.CONNECTING,
            ConnectionStatus.LIVE,
            ConnectionStatus.OFFLINE,
            ConnectionStatus.CONNECTING,
            ConnectionStatus.LIVE,
        ]
        await a.stop()

    asyncio.run(main())


def test_manual_reconnect_refreshes(store, alice, board):
    project, columns = board

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        a.state.items.clear()
        assert await a.reconnect()
        await wait_until(lambda: len(a.state.items) == 1)
        assert a.status == ConnectionStatus.LIVE
        await a.stop()

    store.create_item(alice, columns["backlog"].id, "Task")
    asyncio.run(main())


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_sweep_pending_refreshes(store, alice, board):
    """A write that never confirms expires and the board is re-fetched"""
    project, columns = board
    item = store.create_item(alice, columns["backlog"].id, "Task")
    clock = Clock()

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id, clock=clock, pending_timeout=5.0)
        await a.start()
        a.state.apply_local(item.id, {"name": "Lost in transit"})

        assert a.sweep_pending() == 0
        clock.now = 6.0
        assert a.sweep_pending() == 1
        await wait_until(lambda: not a.state.needs_refresh)
        assert a.state.items[item.id]["name"] == "Task"
        await a.stop()

    asyncio.run(main())


def test_hidden_project_cannot_start(store, admin, alice):
    secret = store.create_project(admin, "Payroll", is_admin_only=True)

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, secret.id)
        with pytest.raises(NotFound):
            await a.start()
        assert a.handle is None

    asyncio.run(main())


class RacyWriter:
    """Store wrapper that runs ``during_snapshot`` after the snapshot is read"""

    def __init__(self, store):
        self.store = store
        self.during_snapshot = None

    def __getattr__(self, name):
        return getattr(self.store, name)

    def snapshot(self, actor, project_id):
        snap = self.store.snapshot(actor, project_id)
        if self.during_snapshot is not None:
            self.during_snapshot()
        return snap


def test_write_during_initial_load_is_kept(store, alice, bob, board):
    """Another user's update that lands while the first snapshot is in flight still shows"""
    project, columns = board
    item = store.create_item(alice, columns["backlog"].id, "Task")

    async def main():
        writer = RacyWriter(store)
        writer.during_snapshot = lambda: store.update_item(bob, item.id, name="Renamed mid-load")
        a = BoardSession(writer, SubscriptionManager(LocalTransport(store.feed), FAST), alice, project.id)
        await a.start()
        await settle()
        assert a.state.items[item.id]["name"] == "Renamed mid-load"
        assert a.state.items[item.id]["version"] == 2
        assert not a.state.loading
        await a.stop()

    asyncio.run(main())


def test_write_during_refresh_is_kept(store, alice, bob, board):
    """An older refresh snapshot never overwrites a newer event"""
    project, columns = board
    item = store.create_item(alice, columns["backlog"].id, "Task")

    async def main():
        writer = RacyWriter(store)
        a = BoardSession(writer, SubscriptionManager(LocalTransport(store.feed), FAST), alice, project.id)
        await a.start()
        writer.during_snapshot = lambda: store.update_item(bob, item.id, name="Renamed mid-refresh")
        assert await a.refresh()
        await settle()
        assert a.state.items[item.id]["name"] == "Renamed mid-refresh"
        assert a.state.items[item.id]["version"] == 2
        await a.stop()

    asyncio.run(main())


def test_refresh_failure_keeps_view(store, alice, board):
    project, columns = board
    item = store.create_item(alice, columns["backlog"].id, "Task")

    def locked():
        raise sqlite3.OperationalError("database is locked")

    async def main():
        writer = RacyWriter(store)
        a = BoardSession(writer, SubscriptionManager(LocalTransport(store.feed), FAST), alice, project.id)
        await a.start()
        writer.during_snapshot = locked
        assert await a.refresh() is False
        assert a.state.items[item.id]["name"] == "Task"
        assert not a.state.loading
        await a.stop()

    asyncio.run(main())


def test_lost_write_expires_on_its_own(store, alice, board):
    """Without any manual sweep, an unconfirmed write reverts after the timeout"""
    project, columns = board
    item = store.create_item(alice, columns["backlog"].id, "Task")

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id, pending_timeout=0.05)
        await a.start()
        a.state.apply_local(item.id, {"name": "Lost in transit"})
        assert a.state.has_pending(item.id)
        await wait_until(lambda: not a.state.has_pending() and a.state.items[item.id]["name"] == "Task")
        await a.stop()
        assert a._sweep_task is None

    asyncio.run(main())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Reordering
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def column_names(session):
    return [c["name"] for c in session.state.columns_in_order()]


def test_reorder_columns_reaches_peers(store, admin, alice, board):
    project, columns = board
    order = [columns["done"].id, columns["backlog"].id, columns["doing"].id]

    async def main():
        transport = LocalTransport(store.feed)
        boss = open_session(store, transport, admin, project.id)
        peer = open_session(store, transport, alice, project.id)
        await boss.start()
        await peer.start()

        pending = asyncio.ensure_future(boss.reorder_columns(order))
        await asyncio.sleep(0)
        assert column_names(boss) == ["done", "backlog", "doing"]
        outcome = await pending
        assert outcome.ok
        assert [c.id for c in outcome.result] == order

        await wait_until(lambda: column_names(peer) == ["done", "backlog", "doing"])
        await boss.stop()
        await peer.stop()

    asyncio.run(main())


def test_rejected_reorder_rolls_back(store, alice, board):
    project, columns = board

    async def main():
        a = open_session(store, LocalTransport(store.feed), alice, project.id)
        await a.start()
        outcome = await a.reorder_columns([columns["done"].id, columns["doing"].id, columns["backlog"].id])
        assert not outcome.ok
        assert isinstance(outcome.error, PermissionDenied)
        assert column_names(a) == ["backlog", "doing", "done"]
        await a.stop()

    asyncio.run(main())


def test_reorder_custom_fields(store, admin, board):
    project, _ = board
    first = store.create_custom_field(admin, project.id, "Priority")
    second = store.create_custom_field(admin, project.id, "Owner")

    async def main():
        a = open_session(store, LocalTransport(store.feed), admin, project.id)
        await a.start()
        assert (await a.reorder_custom_fields([second.id, first.id])).ok
        await settle()
        assert [f["name"] for f in a.state.fields_in_order()] == ["Owner", "Priority"]
        await a.stop()

    asyncio.run(main())
