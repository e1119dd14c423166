"""
Board view state and reconciliation of remote row events.

BoardState is the client-side copy of one project's board. It is fed by a
snapshot, by optimistic local writes and by change-feed events, and keeps
them consistent:

- item events carry a monotonic ``version``; anything at or below the last
  applied version is stale and dropped
- a field with a pending local write keeps its local value until a remote
  event carries the same value or the marker expires
- deleted items leave a tombstone so late inserts/updates cannot resurrect them
- anything that does not add up sets ``needs_refresh``
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .schema import FieldType, Operation

logger = logging.getLogger(__name__)

ITEM_FIELDS = (
    "project_id", "column_id", "item_number", "name", "description", "estimated_time",
    "actual_time", "position", "is_open", "version", "created_by", "created_at", "updated_at",
)
FIELD_PREFIX = "field:"
MAX_TOMBSTONES = 10_000


@dataclass
class PendingField:
    """An optimistic value waiting for confirmation."""
    value: Any
    previous: Any      # Last value known from the server
    deadline: float


def _get(item: Dict[str, Any], key: str) -> Any:
    if key.startswith(FIELD_PREFIX):
        return item.get("field_values", {}).get(key[len(FIELD_PREFIX):])
    if key == "assignees":
        return list(item.get("assignees", []))
    return item.get(key)


def _put(item: Dict[str, Any], key: str, value: Any) -> None:
    if key.startswith(FIELD_PREFIX):
        values = item.setdefault("field_values", {})
        field_id = key[len(FIELD_PREFIX):]
        if value is None:
            values.pop(field_id, None)
        else:
            values[field_id] = value
    elif key == "assignees":
        item["assignees"] = list(value or [])
    else:
        item[key] = value


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, list) and isinstance(b, list):
        return sorted(map(str, a)) == sorted(map(str, b))
    return a == b


class BoardState:
    """View state for one project."""

    def __init__(self, project_id: str, clock: Callable[[], float] = time.monotonic, pending_timeout: float = 10.0):
        self.project_id = project_id
        self.clock = clock
        self.pending_timeout = pending_timeout

        self.project: Optional[Dict[str, Any]] = None
        self.columns: Dict[str, Dict[str, Any]] = {}
        self.items: Dict[str, Dict[str, Any]] = {}
        self.custom_fields: Dict[str, Dict[str, Any]] = {}
        self.comments: Dict[str, Dict[str, Any]] = {}

        self.versions: Dict[str, int] = {}                 # Last applied remote version per item
        self.tombstones: Dict[str, int] = {}               # Deleted item id -> version at deletion
        self.pending: Dict[str, Dict[str, PendingField]] = {}
        self.pending_inserts: Dict[str, float] = {}
        self.pending_deletes: Dict[str, Tuple[Dict[str, Any], float]] = {}

        self.needs_refresh = False
        self.project_deleted = False
        self.max_tombstones = MAX_TOMBSTONES
        # Events seen while a snapshot is in flight, replayed on top of it
        self._replay: Optional[List[Tuple[str, Operation, Dict[str, Any]]]] = None

    # ── Snapshot ─────────────────────────────────────────────────────────────

    def begin_snapshot(self) -> None:
        """
        Mark the start of a snapshot fetch. Events applied from now on are also
        recorded and replayed by ``load_snapshot``, so anything committed after
        the snapshot was read is not lost.
        """
        self._replay = []

    def cancel_snapshot(self) -> None:
        self._replay = None

    @property
    def loading(self) -> bool:
        return self._replay is not None

    def load_snapshot(self, snapshot: Dict[str, Any]) -> None:
        """
        Replace state with server truth. Live pending markers stay overlaid,
        items already seen at a newer version keep the newer row, and events
        recorded since ``begin_snapshot`` are replayed on top.
        """
        replay, self._replay = self._replay or [], None
        self.project = dict(snapshot.get("project") or {}) or None
        self.columns = {c["id"]: dict(c) for c in snapshot.get("columns", [])}
        self.custom_fields = {f["id"]: dict(f) for f in snapshot.get("custom_fields", [])}
        self.comments = {}
        for comment in snapshot.get("comments", []):
            row = dict(comment)
            row["mentions"] = list(row.get("mentions") or [])
            self.comments[row["id"]] = row

        items: Dict[str, Dict[str, Any]] = {}
        versions: Dict[str, int] = {}
        kept: Set[str] = set()
        for raw in snapshot.get("items", []):
            item_id = raw["id"]
            if item_id in self.tombstones:
                continue
            version = int(raw.get("version") or 0)
            local = self.items.get(item_id)
            if local is not None and self.versions.get(item_id, 0) > version:
                # Snapshot was read before a change we already applied
                items[item_id] = local
                versions[item_id] = self.versions[item_id]
                kept.add(item_id)
                continue
            item = dict(raw)
            item["assignees"] = list(item.get("assignees") or [])
            item["field_values"] = dict(item.get("field_values") or {})
            versions[item_id] = version
            items[item_id] = item
        self.versions = versions

        for item_id, markers in self.pending.items():
            item = items.get(item_id)
            if item is None or item_id in kept:
                continue
            for key, marker in markers.items():
                marker.previous = _get(item, key)
                _put(item, key, marker.value)

        for item_id in self.pending_inserts:
            if item_id not in items and item_id in self.items:
                items[item_id] = self.items[item_id]

        for item_id in list(self.pending_deletes):
            if item_id in items:
                _, deadline = self.pending_deletes[item_id]
                self.pending_deletes[item_id] = (items.pop(item_id), deadline)
            else:
                # Gone on the server already
                del self.pending_deletes[item_id]

        self.items = items
        self.needs_refresh = False
        self.project_deleted = False
        for table, operation, row in replay:
            self.apply_event(table, operation, row)
        logger.debug(
            f"Loaded snapshot for {self.project_id}: {len(self.columns)} columns, "
            f"{len(items)} items, {len(replay)} events replayed"
        )

    # ── Optimistic writes ────────────────────────────────────────────────────

    def _deadline(self) -> float:
        return self.clock() + self.pending_timeout

    def insert_local(self, item: Dict[str, Any]) -> None:
        row = dict(item)
        row.setdefault("project_id", self.project_id)
        row["assignees"] = list(row.get("assignees") or [])
        row["field_values"] = dict(row.get("field_values") or {})
        self.items[row["id"]] = row
        self.pending_inserts[row["id"]] = self._deadline()

    def apply_local(self, item_id: str, changes: Dict[str, Any]) -> bool:
        """
        Apply an optimistic change. Keys are item columns, ``assignees`` or
        ``field:<field_id>``. Returns False for an unknown item.
        """
        item = self.items.get(item_id)
        if item is None:
            return False
        markers = self.pending.setdefault(item_id, {})
        deadline = self._deadline()
        for key, value in changes.items():
            previous = markers[key].previous if key in markers else _get(item, key)
            markers[key] = PendingField(value=value, previous=previous, deadline=deadline)
            _put(item, key, value)
        return True

    def remove_local(self, item_id: str) -> bool:
        item = self.items.pop(item_id, None)
        if item is None:
            return False
        self.pending_deletes[item_id] = (item, self._deadline())
        return True

    def rollback(self, item_id: str, keys: Optional[Iterable[str]] = None) -> None:
        """Undo optimistic writes on an item after the server rejected them."""
        if item_id in self.pending_inserts:
            del self.pending_inserts[item_id]
            self.pending.pop(item_id, None)
            self.items.pop(item_id, None)
            return

        if item_id in self.pending_deletes:
            saved, _ = self.pending_deletes.pop(item_id)
            if item_id not in self.tombstones:
                self.items[item_id] = saved

        markers = self.pending.get(item_id, {})
        item = self.items.get(item_id)
        for key in list(keys if keys is not None else markers):
            marker = markers.pop(key, None)
            if marker is not None and item is not None:
                _put(item, key, marker.previous)
        if not markers:
            self.pending.pop(item_id, None)

    def remove_column_local(self, column_id: str) -> Optional[Tuple[Dict[str, Any], List[Dict[str, Any]]]]:
        """Hide a column and its items. Returns what was removed, for ``restore_column``."""
        column = self.columns.pop(column_id, None)
        if column is None:
            return None
        items = [self.items.pop(i) for i, item in list(self.items.items()) if item.get("column_id") == column_id]
        return column, items

    def restore_column(self, removed: Tuple[Dict[str, Any], List[Dict[str, Any]]]) -> None:
        column, items = removed
        if column["id"] in self.columns or self.project_deleted:
            return
        self.columns[column["id"]] = column
        for item in items:
            if item["id"] not in self.tombstones:
                self.items[item["id"]] = item

    def has_pending(self, item_id: Optional[str] = None) -> bool:
        if item_id is None:
            return bool(self.pending or self.pending_inserts or self.pending_deletes)
        return item_id in self.pending or item_id in self.pending_inserts or item_id in self.pending_deletes

    def expire_pending(self) -> int:
        """Drop markers past their deadline. Any expiry sets ``needs_refresh``."""
        now = self.clock()
        expired = 0
        for item_id in list(self.pending):
            markers = self.pending[item_id]
            for key in [k for k, m in markers.items() if m.deadline <= now]:
                del markers[key]
                expired += 1
            if not markers:
                del self.pending[item_id]
        for item_id in [i for i, d in self.pending_inserts.items() if d <= now]:
            del self.pending_inserts[item_id]
            expired += 1
        for item_id in [i for i, (_, d) in self.pending_deletes.items() if d <= now]:
            del self.pending_deletes[item_id]
            expired += 1
        if expired:
            logger.warning(f"{expired} pending writes on {self.project_id} timed out")
            self.needs_refresh = True
        return expired

    # ── Remote events ────────────────────────────────────────────────────────

    def apply_event(self, table: str, operation: Operation, row: Dict[str, Any]) -> bool:
        """Reconcile one change-feed event. Returns True if the view changed."""
        if isinstance(operation, str):
            operation = Operation.from_str(operation)
        if self._replay is not None:
            self._replay.append((table, operation, dict(row)))
        handler = getattr(self, f"_on_{table}", None)
        if handler is None:
            return False
        return handler(operation, row)

    def _merge_remote(self, item_id: str, item: Dict[str, Any], key: str, value: Any) -> None:
        markers = self.pending.get(item_id)
        marker = markers.get(key) if markers else None
        if marker is None:
            _put(item, key, value)
            return
        marker.previous = value
        if _same(marker.value, value):
            del markers[key]
            if not markers:
                del self.pending[item_id]
            _put(item, key, value)

    def _drop_item(self, item_id: str, version: int) -> None:
        self.items.pop(item_id, None)
        self.pending.pop(item_id, None)
        self.pending_inserts.pop(item_id, None)
        self.pending_deletes.pop(item_id, None)
        self.versions.pop(item_id, None)
        self.tombstones[item_id] = version
        while len(self.tombstones) > self.max_tombstones:
            del self.tombstones[next(iter(self.tombstones))]
        for comment_id in [c for c, row in self.comments.items() if row.get("item_id") == item_id]:
            del self.comments[comment_id]

    def _on_items(self, operation: Operation, row: Dict[str, Any]) -> bool:
        item_id = row.get("id")
        if not item_id or row.get("project_id") != self.project_id:
            return False
        if item_id in self.tombstones:
            return False
        version = row.get("version")

        if operation == Operation.DELETE:
            self._drop_item(item_id, int(version or 0))
            return True

        if version is not None and int(version) <= self.versions.get(item_id, 0):
            logger.debug(f"Stale event for item {item_id} (v{version})")
            return False

        if item_id in self.pending_deletes:
            # Deleted locally; keep the newer row in case the delete is rolled back
            saved, _ = self.pending_deletes[item_id]
            saved.update({k: row[k] for k in ITEM_FIELDS if k in row})
            if version is not None:
                self.versions[item_id] = int(version)
            return False

        existing = self.items.get(item_id)
        if existing is None:
            if operation == Operation.UPDATE:
                logger.warning(f"Update for unknown item {item_id}; refresh needed")
                self.needs_refresh = True
            item = {"id": item_id, "assignees": [], "field_values": {}}
            self.items[item_id] = item
            for key in ITEM_FIELDS:
                if key in row:
                    item[key] = row[key]
        else:
            item = existing
            for key in ITEM_FIELDS:
                if key in row:
                    self._merge_remote(item_id, item, key, row[key])
            self.pending_inserts.pop(item_id, None)

        if version is not None:
            self.versions[item_id] = int(version)
        if row.get("column_id") not in self.columns:
            logger.warning(f"Item {item_id} references unknown column {row.get('column_id')}; refresh needed")
            self.needs_refresh = True
        return True

    def _on_columns(self, operation: Operation, row: Dict[str, Any]) -> bool:
        column_id = row.get("id")
        if not column_id or row.get("project_id") != self.project_id:
            return False
        if operation == Operation.DELETE:
            self.columns.pop(column_id, None)
            doomed = [i for i, item in self.items.items() if item.get("column_id") == column_id]
            doomed += [i for i, (item, _) in self.pending_deletes.items() if item.get("column_id") == column_id]
            for item_id in doomed:
                self._drop_item(item_id, self.versions.get(item_id, 0) + 1)
            return True
        self.columns[column_id] = {**self.columns.get(column_id, {}), **row}
        return True

    def _on_custom_fields(self, operation: Operation, row: Dict[str, Any]) -> bool:
        field_id = row.get("id")
        if not field_id or row.get("project_id") != self.project_id:
            return False
        if operation == Operation.DELETE:
            self.custom_fields.pop(field_id, None)
            for item in self.items.values():
                item.get("field_values", {}).pop(field_id, None)
            return True
        self.custom_fields[field_id] = dict(row)
        return True

    def _on_item_assignments(self, operation: Operation, row: Dict[str, Any]) -> bool:
        item = self.items.get(row.get("item_id"))
        user_id = row.get("user_id")
        if item is None or not user_id:
            return False
        item_id = row["item_id"]
        marker = self.pending.get(item_id, {}).get("assignees")
        current = list(marker.previous if marker else item.get("assignees", []))
        if operation == Operation.DELETE:
            current = [u for u in current if u != user_id]
        elif user_id not in current:
            current.append(user_id)
        self._merge_remote(item_id, item, "assignees", current)
        return True

    def _on_item_field_values(self, operation: Operation, row: Dict[str, Any]) -> bool:
        item = self.items.get(row.get("item_id"))
        field_id = row.get("field_id")
        if item is None or not field_id:
            return False
        value = None if operation == Operation.DELETE else row.get("value")
        self._merge_remote(row["item_id"], item, FIELD_PREFIX + field_id, value)
        return True

    def _on_item_comments(self, operation: Operation, row: Dict[str, Any]) -> bool:
        comment_id = row.get("id")
        if not comment_id:
            return False
        if operation == Operation.DELETE:
            return self.comments.pop(comment_id, None) is not None
        if row.get("item_id") not in self.items:
            return False
        existing = self.comments.get(comment_id, {})
        self.comments[comment_id] = {**existing, **row, "mentions": list(existing.get("mentions", []))}
        return True

    def _on_comment_mentions(self, operation: Operation, row: Dict[str, Any]) -> bool:
        comment = self.comments.get(row.get("comment_id"))
        user_id = row.get("user_id")
        if comment is None or not user_id:
            return False
        mentions = comment.setdefault("mentions", [])
        if operation == Operation.DELETE:
            comment["mentions"] = [u for u in mentions if u != user_id]
        elif user_id not in mentions:
            mentions.append(user_id)
        return True

    def _on_projects(self, operation: Operation, row: Dict[str, Any]) -> bool:
        if row.get("id") != self.project_id:
            return False
        if operation == Operation.DELETE:
            self.project_deleted = True
            self.project = None
            self.columns.clear()
            self.items.clear()
            self.custom_fields.clear()
            self.comments.clear()
            return True
        self.project = {**(self.project or {}), **row}
        return True

    # ── Derived views ────────────────────────────────────────────────────────

    def columns_in_order(self) -> List[Dict[str, Any]]:
        return sorted(self.columns.values(), key=lambda c: (c.get("position", 0), c.get("created_at") or "", c["id"]))

    def items_in_column(self, column_id: str) -> List[Dict[str, Any]]:
        items = [i for i in self.items.values() if i.get("column_id") == column_id]
        return sorted(items, key=lambda i: (i.get("position", 0), i.get("item_number", 0)))

    def fields_in_order(self) -> List[Dict[str, Any]]:
        return sorted(self.custom_fields.values(), key=lambda f: (f.get("position", 0), f.get("name", "")))

    def comment_count(self, item_id: str, unresolved_only: bool = False) -> int:
        return sum(
            1 for c in self.comments.values()
            if c.get("item_id") == item_id and not (unresolved_only and c.get("is_resolved"))
        )

    def has_unresolved_mention(self, item_id: str, user_id: str) -> bool:
        return any(
            c.get("item_id") == item_id and not c.get("is_resolved") and user_id in c.get("mentions", [])
            for c in self.comments.values()
        )

    def items_mentioning(self, user_id: str) -> Set[str]:
        return {
            c["item_id"] for c in self.comments.values()
            if not c.get("is_resolved") and user_id in c.get("mentions", [])
        }

    def filter_items(self, criteria: "FilterCriteria", user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Items matching ``criteria``. ``user_id`` is the viewer, for ``mentions_me``."""
        return filter_items(self, criteria, user_id)


# ── Filtering ────────────────────────────────────────────────────────────────

@dataclass
class FilterCriteria:
    """Board filter. Unset criteria match everything."""
    name: Optional[str] = None
    description: Optional[str] = None
    estimated_time_min: Optional[float] = None
    estimated_time_max: Optional[float] = None
    actual_time_min: Optional[float] = None
    actual_time_max: Optional[float] = None
    user: Optional[str] = None                # Assignee or value of any user field
    item_number: Optional[int] = None
    mentions_me: bool = False
    columns: List[str] = field(default_factory=list)
    # field_id -> text (substring), list (any of), or (low, high) range;
    # range bounds may be None, numbers, or YYYY-MM-DD strings for date fields
    custom_fields: Dict[str, Any] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return self == FilterCriteria()


def _in_range(value: Any, low: Any, high: Any, as_date: bool) -> bool:
    if value is None or value == "":
        return False
    try:
        v = date.fromisoformat(str(value)) if as_date else float(value)
        if low is not None and v < (date.fromisoformat(str(low)) if as_date else float(low)):
            return False
        if high is not None and v > (date.fromisoformat(str(high)) if as_date else float(high)):
            return False
    except (TypeError, ValueError):
        return False
    return True


def _matches_custom(item: Dict[str, Any], field_def: Optional[Dict[str, Any]], field_id: str, wanted: Any) -> bool:
    value = item.get("field_values", {}).get(field_id)
    ftype = FieldType.from_str((field_def or {}).get("field_type") or "text")
    if isinstance(wanted, tuple):
        low, high = wanted
        return _in_range(value, low, high, as_date=ftype == FieldType.DATE)
    if not value:
        return False
    if isinstance(wanted, (list, set, frozenset)):
        if isinstance(value, list):
            return any(v in value for v in wanted)
        return value in wanted
    return str(wanted).lower() in str(value).lower()


def filter_items(state: BoardState, criteria: FilterCriteria, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
    items = list(state.items.values())

    if criteria.name:
        needle = criteria.name.lower()
        items = [i for i in items if needle in (i.get("name") or "").lower()]
    if criteria.description:
        needle = criteria.description.lower()
        items = [i for i in items if needle in (i.get("description") or "").lower()]

    if criteria.estimated_time_min is not None:
        items = [i for i in items
                 if i.get("estimated_time") is not None and i["estimated_time"] >= criteria.estimated_time_min]
    if criteria.estimated_time_max is not None:
        items = [i for i in items
                 if i.get("estimated_time") is not None and i["estimated_time"] <= criteria.estimated_time_max]
    if criteria.actual_time_min is not None:
        items = [i for i in items if (i.get("actual_time") or 0) >= criteria.actual_time_min]
    if criteria.actual_time_max is not None:
        items = [i for i in items if (i.get("actual_time") or 0) <= criteria.actual_time_max]

    if criteria.user:
        user_fields = [
            fid for fid, f in state.custom_fields.items()
            if FieldType.from_str(f.get("field_type") or "text").is_user_field
        ]

        def has_user(item):
            if criteria.user in item.get("assignees", []):
                return True
            for fid in user_fields:
                value = item.get("field_values", {}).get(fid)
                if value == criteria.user or (isinstance(value, list) and criteria.user in value):
                    return True
            return False

        items = [i for i in items if has_user(i)]

    if criteria.item_number is not None:
        items = [i for i in items if i.get("item_number") == criteria.item_number]

    if criteria.mentions_me and user_id:
        mentioned = state.items_mentioning(user_id)
        items = [i for i in items if i["id"] in mentioned]

    if criteria.columns:
        wanted = set(criteria.columns)
        items = [i for i in items if i.get("column_id") in wanted]

    for field_id, wanted in criteria.custom_fields.items():
        if wanted is None or wanted == "" or (isinstance(wanted, (list, set)) and not wanted):
            continue
        field_def = state.custom_fields.get(field_id)
        if field_def and FieldType.from_str(field_def.get("field_type") or "text").is_user_field:
            # Covered by the unified user filter
            continue
        items = [i for i in items if _matches_custom(i, field_def, field_id, wanted)]

    return sorted(items, key=lambda i: (i.get("position", 0), i.get("item_number", 0)))
