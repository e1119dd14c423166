"""
Board session: one user's live view of one project.

Wires a BoardState to a realtime subscription and a writer (BoardStore or
BoardApiClient). Writes are optimistic: the view changes first, the write
runs in a worker thread, and a rejected write is rolled back and reported as
a failed ItemOutcome instead of an exception.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from .errors import BoardError, NotFound
from .realtime import SubscriptionHandle, SubscriptionManager
from .reconcile import FIELD_PREFIX, BoardState
from .schema import BOARD_TABLES, ConnectionStatus, Operation, Profile, make_id

logger = logging.getLogger(__name__)


@dataclass
class ItemOutcome:
    """Result of one write as seen by the session."""
    item_id: str
    ok: bool
    error: Optional[Exception] = None
    result: Any = None
    skipped: bool = False      # Not attempted; a bulk operation stopped earlier

    @property
    def message(self) -> str:
        if self.skipped:
            return "skipped"
        return str(self.error) if self.error else ""


class BoardSession:
    def __init__(
        self,
        writer,
        manager: SubscriptionManager,
        actor: Profile,
        project_id: str,
        pending_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        on_status: Optional[Callable[[ConnectionStatus], None]] = None,
    ):
        self.writer = writer
        self.manager = manager
        self.actor = actor
        self.project_id = project_id
        self.state = BoardState(project_id, clock=clock, pending_timeout=pending_timeout)
        self.handle: Optional[SubscriptionHandle] = None
        self.status_history: List[ConnectionStatus] = []
        self.on_status = on_status
        self._refresh_task: Optional[asyncio.Task] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._refresh_again = False

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """
        Subscribe, then load the board. Events arriving while the snapshot is
        in flight are replayed on top of it. Raises if the project cannot be read.
        """
        self.state.begin_snapshot()
        self.handle = await self.manager.open(
            self.project_id,
            BOARD_TABLES,
            self._on_change,
            purpose="board",
            on_status=self._on_status,
            on_resync=self.schedule_refresh,
        )
        try:
            snapshot = await asyncio.to_thread(self.writer.snapshot, self.actor, self.project_id)
        except Exception:
            self.state.cancel_snapshot()
            await self.manager.close(self.handle)
            self.handle = None
            raise
        self._loaded(snapshot)
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.info(f"Session started for {self.actor.id} on project {self.project_id}")

    async def stop(self) -> None:
        if self.handle is not None:
            await self.manager.close(self.handle)
        for task in (self._sweep_task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._sweep_task = self._refresh_task = None
        self.state.cancel_snapshot()

    async def reconnect(self) -> bool:
        """Manual sync: rejoin the channel; a successful rejoin triggers a refresh."""
        if self.handle is None:
            return False
        return await self.manager.reconnect(self.handle)

    @property
    def status(self) -> ConnectionStatus:
        return self.handle.status if self.handle else ConnectionStatus.OFFLINE

    def _on_status(self, status: ConnectionStatus) -> None:
        self.status_history.append(status)
        if self.on_status is not None:
            self.on_status(status)

    def _on_change(self, table: str, operation: Operation, row: Dict[str, Any]) -> None:
        self.state.apply_event(table, operation, row)
        # While a snapshot is in flight the event is replayed once it lands
        if self.state.needs_refresh and not self.state.loading:
            self.schedule_refresh()

    # ── Refresh ──────────────────────────────────────────────────────────────

    def schedule_refresh(self) -> None:
        if self.state.loading:
            self._refresh_again = True
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.get_running_loop().create_task(self.refresh())

    def _loaded(self, snapshot) -> None:
        self.state.load_snapshot(snapshot)
        if self._refresh_again or self.state.needs_refresh:
            self._refresh_again = False
            self.schedule_refresh()

    async def refresh(self) -> bool:
        """Re-fetch the full snapshot. Failures are logged and leave the view as is."""
        self.state.begin_snapshot()
        try:
            snapshot = await asyncio.to_thread(self.writer.snapshot, self.actor, self.project_id)
        except BoardError as e:
            self.state.cancel_snapshot()
            logger.warning(f"Refresh of {self.project_id} failed: {e}")
            return False
        except Exception as e:
            self.state.cancel_snapshot()
            logger.error(f"Refresh of {self.project_id} failed: {e}")
            return False
        self._loaded(snapshot)
        return True

    def sweep_pending(self) -> int:
        """Expire stale optimistic writes; schedules a refresh if any expired."""
        expired = self.state.expire_pending()
        if self.state.needs_refresh:
            self.schedule_refresh()
        return expired

    async def _sweep_loop(self) -> None:
        interval = max(self.state.pending_timeout / 2, 0.01)
        while True:
            await asyncio.sleep(interval)
            self.sweep_pending()

    # ── Writes ───────────────────────────────────────────────────────────────

    async def _write(self, key: str, undo: Callable[[], None], fn, *args, **kwargs) -> ItemOutcome:
        """
        Run ``fn(actor, *args, **kwargs)`` in a worker thread. ``key`` names the
        target (item, column or project) in the outcome; ``undo`` reverts the
        optimistic change on any failure.
        """
        try:
            result = await asyncio.to_thread(fn, self.actor, *args, **kwargs)
        except BoardError as e:
            logger.info(f"{fn.__name__} rejected for {key}: {e}")
            undo()
            return ItemOutcome(item_id=key, ok=False, error=e)
        except Exception as e:
            logger.error(f"{fn.__name__} failed for {key}: {e}")
            undo()
            return ItemOutcome(item_id=key, ok=False, error=e)
        except asyncio.CancelledError:
            undo()
            raise
        return ItemOutcome(item_id=key, ok=True, result=result)

    def _unknown(self, item_id: str) -> ItemOutcome:
        return ItemOutcome(item_id=item_id, ok=False, error=NotFound(f"Item {item_id} is not on this board"))

    async def create_item(self, column_id: str, name: str, **fields) -> ItemOutcome:
        """Create an item at the end of a column. The id is generated here so the echo matches."""
        item_id = make_id()
        local = {
            "id": item_id,
            "project_id": self.project_id,
            "column_id": column_id,
            "item_number": 0,
            "name": name,
            "description": fields.get("description") or "",
            "estimated_time": fields.get("estimated_time"),
            "actual_time": fields.get("actual_time") or 0.0,
            "position": len(self.state.items_in_column(column_id)),
            "is_open": True,
            "version": 0,
            "created_by": self.actor.id,
            "assignees": list(fields.get("assignees") or []),
            "field_values": dict(fields.get("field_values") or {}),
        }
        self.state.insert_local(local)
        return await self._write(
            item_id,
            lambda: self.state.rollback(item_id),
            self.writer.create_item,
            column_id,
            name,
            item_id=item_id,
            **fields,
        )

    async def update_item(self, item_id: str, **changes) -> ItemOutcome:
        if not self.state.apply_local(item_id, changes):
            return self._unknown(item_id)
        keys = list(changes)
        return await self._write(
            item_id, lambda: self.state.rollback(item_id, keys), self.writer.update_item, item_id, **changes
        )

    async def move_item(self, item_id: str, column_id: str, position: Optional[int] = None) -> ItemOutcome:
        if position is None:
            position = len([i for i in self.state.items_in_column(column_id) if i["id"] != item_id])
        if not self.state.apply_local(item_id, {"column_id": column_id, "position": position}):
            return self._unknown(item_id)
        return await self._write(
            item_id,
            lambda: self.state.rollback(item_id, ["column_id", "position"]),
            self.writer.move_item,
            item_id,
            column_id,
            position,
        )

    async def delete_item(self, item_id: str) -> ItemOutcome:
        if not self.state.remove_local(item_id):
            return self._unknown(item_id)
        return await self._write(
            item_id, lambda: self.state.rollback(item_id, []), self.writer.delete_item, item_id
        )

    async def set_assignees(self, item_id: str, user_ids: Iterable[str]) -> ItemOutcome:
        user_ids = list(dict.fromkeys(user_ids))
        if not self.state.apply_local(item_id, {"assignees": user_ids}):
            return self._unknown(item_id)
        return await self._write(
            item_id,
            lambda: self.state.rollback(item_id, ["assignees"]),
            self.writer.set_assignees,
            item_id,
            user_ids,
        )

    async def set_field_value(self, item_id: str, field_id: str, value: Any) -> ItemOutcome:
        key = FIELD_PREFIX + field_id
        if not self.state.apply_local(item_id, {key: value}):
            return self._unknown(item_id)
        return await self._write(
            item_id,
            lambda: self.state.rollback(item_id, [key]),
            self.writer.set_field_value,
            item_id,
            field_id,
            value,
        )

    async def add_comment(self, item_id: str, content: str, mentions: Iterable[str] = ()) -> ItemOutcome:
        if item_id not in self.state.items:
            return self._unknown(item_id)
        outcome = await self._write(
            item_id, lambda: None, self.writer.add_comment, item_id, content, list(mentions)
        )
        if outcome.ok:
            comment = outcome.result
            row = comment if isinstance(comment, dict) else comment.to_dict()
            self.state.comments.setdefault(row["id"], row)
        return outcome

    async def resolve_comment(self, comment_id: str, resolved: bool = True) -> ItemOutcome:
        comment = self.state.comments.get(comment_id)
        item_id = comment["item_id"] if comment else ""
        if comment is None:
            return ItemOutcome(item_id=item_id, ok=False, error=NotFound(f"Comment {comment_id} not found"))
        before = comment.get("is_resolved", False)
        comment["is_resolved"] = resolved

        def undo():
            if comment_id in self.state.comments:
                self.state.comments[comment_id]["is_resolved"] = before

        return await self._write(item_id, undo, self.writer.resolve_comment, comment_id, resolved)

    async def delete_column(self, column_id: str) -> ItemOutcome:
        """Delete a column; its items disappear from the view at once."""
        removed = self.state.remove_column_local(column_id)
        if removed is None:
            return ItemOutcome(item_id=column_id, ok=False, error=NotFound(f"Column {column_id} not found"))
        return await self._write(
            column_id, lambda: self.state.restore_column(removed), self.writer.delete_column, column_id
        )

    async def _reorder(self, attr: str, ordered_ids: Iterable[str], fn) -> ItemOutcome:
        ordered_ids = list(ordered_ids)
        rows = getattr(self.state, attr)
        before = {row_id: row.get("position") for row_id, row in rows.items()}
        for position, row_id in enumerate(ordered_ids):
            if row_id in rows:
                rows[row_id]["position"] = position

        def undo():
            current = getattr(self.state, attr)
            for row_id, position in before.items():
                if row_id in current:
                    current[row_id]["position"] = position
            # Positions may have moved under us; reload them from the server
            self.schedule_refresh()

        return await self._write(self.project_id, undo, fn, self.project_id, ordered_ids)

    async def reorder_columns(self, ordered_ids: Iterable[str]) -> ItemOutcome:
        """Drag-and-drop of columns: renumber every column in the given order."""
        return await self._reorder("columns", ordered_ids, self.writer.reorder_columns)

    async def reorder_custom_fields(self, ordered_ids: Iterable[str]) -> ItemOutcome:
        return await self._reorder("custom_fields", ordered_ids, self.writer.reorder_custom_fields)

    # ── Bulk ─────────────────────────────────────────────────────────────────

    async def _bulk(self, label: str, item_ids: Iterable[str], op, stop_on_error: bool) -> List[ItemOutcome]:
        """
        Run ``op`` per item, in order. Earlier successes are never undone. With
        ``stop_on_error`` the items after the first failure are left untouched
        and reported as skipped, so the caller can retry them.
        """
        outcomes: List[ItemOutcome] = []
        failed = False
        for item_id in item_ids:
            if failed and stop_on_error:
                outcomes.append(ItemOutcome(item_id=item_id, ok=False, skipped=True))
                continue
            outcome = await op(item_id)
            outcomes.append(outcome)
            failed = failed or not outcome.ok
        errors = sum(1 for o in outcomes if not o.ok and not o.skipped)
        if errors:
            skipped = sum(1 for o in outcomes if o.skipped)
            logger.warning(f"{label}: {errors}/{len(outcomes)} items failed, {skipped} skipped")
        return outcomes

    async def bulk_move(self, item_ids: Iterable[str], column_id: str, stop_on_error: bool = True) -> List[ItemOutcome]:
        """Move items one by one to ``column_id``."""
        return await self._bulk("Bulk move", item_ids, lambda i: self.move_item(i, column_id), stop_on_error)

    async def bulk_delete(self, item_ids: Iterable[str], stop_on_error: bool = True) -> List[ItemOutcome]:
        return await self._bulk("Bulk delete", item_ids, self.delete_item, stop_on_error)
