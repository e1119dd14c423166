"""
Board storage backend (SQLite).

Provides CRUD operations for projects, columns, items, custom fields and
comments. Every write is checked against the access policy for the acting
profile and, after commit, publishes one ChangeEvent per affected row on the
store's change feed.
"""
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import NotFound, ValidationError
from .feed import ChangeFeed
from .policy import AccessPolicy, Permissions, PolicyRequest
from .schema import (
    DEFAULT_COLUMN_COLOR,
    DEFAULTABLE_ITEM_FIELDS,
    ChangeEvent,
    Column,
    Comment,
    CustomField,
    FieldType,
    Item,
    Operation,
    Profile,
    Project,
    make_id,
    utc_now,
)

logger = logging.getLogger(__name__)

BOOL_COLUMNS = {"is_admin", "is_admin_only", "is_open", "is_resolved", "show_in_preview"}
JSON_COLUMNS = {"options", "default_value", "value"}

ITEM_UPDATABLE = {"name", "description", "estimated_time", "actual_time", "position", "is_open", "column_id"}
COLUMN_UPDATABLE = {"name", "position", "color"}
PROJECT_UPDATABLE = {"name", "description", "is_admin_only"}
FIELD_UPDATABLE = {"name", "options", "position", "default_value", "show_in_preview"}
PROFILE_UPDATABLE = {"full_name", "email", "is_admin"}


def _connect(db_path: str) -> sqlite3.Connection:
    """Open a connection with FK enforcement and WAL mode."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _row_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    """Convert a database row to a plain dict, decoding bool and JSON columns."""
    if row is None:
        return None
    data = dict(row)
    for key in BOOL_COLUMNS & data.keys():
        data[key] = bool(data[key])
    for key in JSON_COLUMNS & data.keys():
        raw = data[key]
        if isinstance(raw, str):
            try:
                data[key] = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                data[key] = None
    return data


def _now() -> str:
    return utc_now().isoformat()


def _coerce_number(value: Any, name: str) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be a number, got {value!r}")


def validate_field_value(field: CustomField, value: Any, profile_ids: Iterable[str] = ()) -> Any:
    """
    Check ``value`` against the custom field's type and return the stored form.

    ``None`` (or an empty list for multi fields) clears the value.
    """
    if value is None:
        return None
    ftype = field.field_type
    if ftype == FieldType.TEXT:
        return str(value)
    if ftype == FieldType.NUMBER:
        return _coerce_number(value, field.name)
    if ftype == FieldType.DATE:
        try:
            return date.fromisoformat(str(value)).isoformat()
        except ValueError:
            raise ValidationError(f"{field.name} must be a YYYY-MM-DD date, got {value!r}")

    known_users = set(profile_ids)
    if ftype.is_multi:
        if not isinstance(value, (list, tuple)):
            raise ValidationError(f"{field.name} expects a list")
        values = list(dict.fromkeys(str(v) for v in value))
        if not values:
            return None
        allowed = known_users if ftype.is_user_field else set(field.options)
        unknown = [v for v in values if v not in allowed]
        if unknown:
            raise ValidationError(f"{field.name}: unknown choices {unknown}")
        return values

    choice = str(value)
    allowed = known_users if ftype.is_user_field else set(field.options)
    if choice not in allowed:
        raise ValidationError(f"{field.name}: {choice!r} is not a valid choice")
    return choice


class BoardStore:
    """SQLite-backed store for boards. Writes are serialized per store instance."""

    def __init__(self, db_path: str = None, feed: ChangeFeed = None, policy: AccessPolicy = None):
        """Initialize store and create tables if needed."""
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "boardsync" / "board.db")
        self.db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.feed = feed or ChangeFeed()
        self.policy = policy or AccessPolicy()
        self._lock = threading.Lock()
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with _connect(self.db_path) as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS profiles (
                    id TEXT PRIMARY KEY,
                    full_name TEXT DEFAULT '',
                    email TEXT DEFAULT '',
                    is_admin INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    is_admin_only INTEGER DEFAULT 0,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS columns (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    color TEXT DEFAULT '#6366f1',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS items (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                    column_id TEXT NOT NULL REFERENCES columns(id) ON DELETE CASCADE,
                    item_number INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT DEFAULT '',
                    estimated_time REAL,
                    actual_time REAL DEFAULT 0,
                    position INTEGER NOT NULL DEFAULT 0,
                    is_open INTEGER DEFAULT 1,
                    version INTEGER NOT NULL DEFAULT 1,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE (project_id, item_number)
                );
                CREATE TABLE IF NOT EXISTS item_assignments (
                    id TEXT PRIMARY KEY,
                    item_id TEXT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL REFERENCES profiles(id) ON DELETE CASCADE,
                    assigned_at TEXT NOT NULL,
                    UNIQUE (item_id, user_id)
                );
                CREATE TABLE IF NOT EXISTS custom_fields (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                    name TEXT NOT NULL,
                    field_type TEXT NOT NULL,
                    options TEXT,              -- JSON list
                    position INTEGER DEFAULT 0,
                    default_value TEXT,        -- JSON
                    show_in_preview INTEGER DEFAULT 1,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS item_field_values (
                    id TEXT PRIMARY KEY,
                    item_id TEXT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
                    field_id TEXT NOT NULL REFERENCES custom_fields(id) ON DELETE CASCADE,
                    value TEXT,                -- JSON
                    UNIQUE (item_id, field_id)
                );
                CREATE TABLE IF NOT EXISTS item_comments (
                    id TEXT PRIMARY KEY,
                    item_id TEXT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    content TEXT NOT NULL,
                    is_resolved INTEGER DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS comment_mentions (
                    id TEXT PRIMARY KEY,
                    comment_id TEXT NOT NULL REFERENCES item_comments(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE (comment_id, user_id)
                );
                CREATE TABLE IF NOT EXISTS project_defaults (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
                    field_name TEXT NOT NULL,
                    default_value TEXT,        -- JSON
                    updated_at TEXT NOT NULL,
                    UNIQUE (project_id, field_name)
                );
                CREATE INDEX IF NOT EXISTS idx_columns_project ON columns(project_id);
                CREATE INDEX IF NOT EXISTS idx_items_column ON items(column_id);
                CREATE INDEX IF NOT EXISTS idx_items_project ON items(project_id, item_number);
                CREATE INDEX IF NOT EXISTS idx_comments_item ON item_comments(item_id);
                CREATE INDEX IF NOT EXISTS idx_mentions_user ON comment_mentions(user_id);
            """)
            conn.commit()
        conn.close()

    # ── Connection helpers ───────────────────────────────────────────────────

    @contextmanager
    def _transaction(self):
        """
        Serialized write transaction. Yields (conn, events); events appended by
        the body are published only after a successful commit.
        """
        events: List[ChangeEvent] = []
        with self._lock:
            conn = _connect(self.db_path)
            try:
                yield conn, events
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()
        self.feed.publish_all(events)

    @contextmanager
    def _read(self):
        conn = _connect(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    @staticmethod
    def _fetch(conn: sqlite3.Connection, table: str, row_id: str) -> Optional[Dict[str, Any]]:
        return _row_dict(conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone())

    def _require(self, conn: sqlite3.Connection, table: str, row_id: str) -> Dict[str, Any]:
        row = self._fetch(conn, table, row_id)
        if row is None:
            raise NotFound(f"{table} {row_id} not found")
        return row

    def _visible_project(self, conn, actor: Profile, project_id: str) -> Dict[str, Any]:
        """Project row, or NotFound when missing or hidden from the actor."""
        project = self._fetch(conn, "projects", project_id)
        if project is None or not self.policy.allows(
            PolicyRequest(actor=actor, table="projects", action="select", row=project)
        ):
            raise NotFound(f"Project {project_id} not found")
        return project

    def _item_context(self, conn, actor: Profile, item_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        item = self._require(conn, "items", item_id)
        project = self._visible_project(conn, actor, item["project_id"])
        return item, project

    def _load_item(self, conn, item_id: str) -> Item:
        row = self._require(conn, "items", item_id)
        row["assignees"] = [
            r["user_id"] for r in conn.execute(
                "SELECT user_id FROM item_assignments WHERE item_id = ? ORDER BY assigned_at, user_id",
                (item_id,),
            )
        ]
        row["field_values"] = {
            r["field_id"]: _row_dict(r)["value"] for r in conn.execute(
                "SELECT field_id, value FROM item_field_values WHERE item_id = ?", (item_id,)
            )
        }
        return Item.from_dict(row)

    def _load_comment(self, conn, comment_id: str) -> Comment:
        row = self._require(conn, "item_comments", comment_id)
        row["mentions"] = [
            r["user_id"] for r in conn.execute(
                "SELECT user_id FROM comment_mentions WHERE comment_id = ? ORDER BY user_id", (comment_id,)
            )
        ]
        return Comment.from_dict(row)

    @staticmethod
    def _event(events: List[ChangeEvent], table: str, operation: Operation, row: Dict[str, Any]) -> None:
        events.append(ChangeEvent(table=table, operation=operation, row=row))

    # ── Profiles ─────────────────────────────────────────────────────────────

    def register_profile(self, profile: Profile) -> Profile:
        """Create the profile row for a newly signed-up identity (idempotent)."""
        now = _now()
        with self._transaction() as (conn, events):
            existing = self._fetch(conn, "profiles", profile.id)
            if existing:
                return Profile.from_dict(existing)
            conn.execute(
                "INSERT INTO profiles (id, full_name, email, is_admin, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (profile.id, profile.full_name, profile.email, int(profile.is_admin), now, now),
            )
            row = self._fetch(conn, "profiles", profile.id)
            self._event(events, "profiles", Operation.INSERT, row)
        logger.info(f"Registered profile {profile.id}")
        return Profile.from_dict(row)

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        with self._read() as conn:
            row = self._fetch(conn, "profiles", profile_id)
        return Profile.from_dict(row) if row else None

    def list_profiles(self) -> List[Profile]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM profiles ORDER BY full_name, id").fetchall()
        return [Profile.from_dict(_row_dict(r)) for r in rows]

    def update_profile(self, actor: Profile, profile_id: str, **changes) -> Profile:
        """Update name/email, or the admin flag (admins only)."""
        unknown = set(changes) - PROFILE_UPDATABLE
        if unknown:
            raise ValidationError(f"Cannot update profile fields: {sorted(unknown)}")
        with self._transaction() as (conn, events):
            old = self._require(conn, "profiles", profile_id)
            new = {**old, **changes}
            self.policy.check(actor, "profiles", "update", new, old=old)
            conn.execute(
                "UPDATE profiles SET full_name = ?, email = ?, is_admin = ?, updated_at = ? WHERE id = ?",
                (new["full_name"], new["email"], int(bool(new["is_admin"])), _now(), profile_id),
            )
            row = self._fetch(conn, "profiles", profile_id)
            self._event(events, "profiles", Operation.UPDATE, row)
        return Profile.from_dict(row)

    def permissions_for(self, actor: Profile) -> Permissions:
        return self.policy.permissions_for(actor)

    # ── Projects ─────────────────────────────────────────────────────────────

    def create_project(
        self,
        actor: Profile,
        name: str,
        description: str = "",
        is_admin_only: bool = False,
        project_id: Optional[str] = None,
    ) -> Project:
        if not name or not name.strip():
            raise ValidationError("Project name is required")
        project = Project(
            id=project_id or make_id(),
            name=name.strip(),
            description=description or "",
            is_admin_only=is_admin_only,
            created_by=actor.id,
        )
        row = project.to_row()
        with self._transaction() as (conn, events):
            self.policy.check(actor, "projects", "insert", row)
            conn.execute(
                "INSERT INTO projects (id, name, description, is_admin_only, created_by, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (row["id"], row["name"], row["description"], int(row["is_admin_only"]),
                 row["created_by"], row["created_at"], row["updated_at"]),
            )
            self._event(events, "projects", Operation.INSERT, self._fetch(conn, "projects", project.id))
        logger.info(f"Project created: {project.id} ({project.name})")
        return project

    def get_project(self, actor: Profile, project_id: str) -> Project:
        with self._read() as conn:
            return Project.from_dict(self._visible_project(conn, actor, project_id))

    def list_projects(self, actor: Profile) -> List[Project]:
        """Projects visible to the actor, oldest first."""
        with self._read() as conn:
            rows = [_row_dict(r) for r in conn.execute("SELECT * FROM projects ORDER BY created_at, name")]
        return [
            Project.from_dict(r) for r in rows
            if self.policy.allows(PolicyRequest(actor=actor, table="projects", action="select", row=r))
        ]

    def update_project(self, actor: Profile, project_id: str, **changes) -> Project:
        unknown = set(changes) - PROJECT_UPDATABLE
        if unknown:
            raise ValidationError(f"Cannot update project fields: {sorted(unknown)}")
        with self._transaction() as (conn, events):
            old = self._visible_project(conn, actor, project_id)
            new = {**old, **changes}
            self.policy.check(actor, "projects", "update", new, old=old)
            conn.execute(
                "UPDATE projects SET name = ?, description = ?, is_admin_only = ?, updated_at = ? WHERE id = ?",
                (new["name"], new["description"] or "", int(bool(new["is_admin_only"])), _now(), project_id),
            )
            row = self._fetch(conn, "projects", project_id)
            self._event(events, "projects", Operation.UPDATE, row)
        return Project.from_dict(row)

    def delete_project(self, actor: Profile, project_id: str) -> Project:
        with self._transaction() as (conn, events):
            project = self._visible_project(conn, actor, project_id)
            self.policy.check(actor, "projects", "delete", project)
            conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
            self._event(events, "projects", Operation.DELETE, project)
        logger.info(f"Project deleted: {project_id}")
        return Project.from_dict(project)

    # ── Columns ──────────────────────────────────────────────────────────────

    def create_column(
        self,
        actor: Profile,
        project_id: str,
        name: str,
        color: str = DEFAULT_COLUMN_COLOR,
        position: Optional[int] = None,
        column_id: Optional[str] = None,
    ) -> Column:
        if not name or not name.strip():
            raise ValidationError("Column name is required")
        with self._transaction() as (conn, events):
            project = self._visible_project(conn, actor, project_id)
            if position is None:
                position = conn.execute(
                    "SELECT COUNT(*) FROM columns WHERE project_id = ?", (project_id,)
                ).fetchone()[0]
            column = Column(
                id=column_id or make_id(),
                project_id=project_id,
                name=name.strip(),
                position=position,
                color=color or DEFAULT_COLUMN_COLOR,
            )
            row = column.to_row()
            self.policy.check(actor, "columns", "insert", row, project=project)
            conn.execute(
                "INSERT INTO columns (id, project_id, name, position, color, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (row["id"], row["project_id"], row["name"], row["position"], row["color"],
                 row["created_at"], row["updated_at"]),
            )
            self._event(events, "columns", Operation.INSERT, self._fetch(conn, "columns", column.id))
        return column

    def list_columns(self, actor: Profile, project_id: str) -> List[Column]:
        with self._read() as conn:
            self._visible_project(conn, actor, project_id)
            rows = conn.execute(
                "SELECT * FROM columns WHERE project_id = ? ORDER BY position, created_at", (project_id,)
            ).fetchall()
        return [Column.from_dict(_row_dict(r)) for r in rows]

    def update_column(self, actor: Profile, column_id: str, **changes) -> Column:
        unknown = set(changes) - COLUMN_UPDATABLE
        if unknown:
            raise ValidationError(f"Cannot update column fields: {sorted(unknown)}")
        with self._transaction() as (conn, events):
            old = self._require(conn, "columns", column_id)
            project = self._visible_project(conn, actor, old["project_id"])
            new = {**old, **changes}
            self.policy.check(actor, "columns", "update", new, old=old, project=project)
            conn.execute(
                "UPDATE columns SET name = ?, position = ?, color = ?, updated_at = ? WHERE id = ?",
                (new["name"], int(new["position"]), new["color"], _now(), column_id),
            )
            row = self._fetch(conn, "columns", column_id)
            self._event(events, "columns", Operation.UPDATE, row)
        return Column.from_dict(row)

    def delete_column(self, actor: Profile, column_id: str) -> Column:
        """
        Delete a column and, by cascade, every item in it.

        Publishes a delete event per cascaded item before the column's own.
        """
        with self._transaction() as (conn, events):
            column = self._require(conn, "columns", column_id)
            project = self._visible_project(conn, actor, column["project_id"])
            self.policy.check(actor, "columns", "delete", column, project=project)
            doomed = [_row_dict(r) for r in conn.execute("SELECT * FROM items WHERE column_id = ?", (column_id,))]
            conn.execute("DELETE FROM columns WHERE id = ?", (column_id,))
            for item in doomed:
                item["version"] = item["version"] + 1
                self._event(events, "items", Operation.DELETE, item)
            self._event(events, "columns", Operation.DELETE, column)
        logger.info(f"Column {column_id} deleted with {len(doomed)} items")
        return Column.from_dict(column)

    def _renumber(self, conn, events, actor, project, table: str, ordered_ids: List[str]) -> List[Dict[str, Any]]:
        """Set ``position`` 0..n-1 on every row of ``table`` in the project, in the given order."""
        current = {
            r["id"]: _row_dict(r)
            for r in conn.execute(f"SELECT * FROM {table} WHERE project_id = ?", (project["id"],))
        }
        if len(set(ordered_ids)) != len(ordered_ids) or set(ordered_ids) != set(current):
            raise ValidationError(f"Reorder must list every {table} row of the project exactly once")
        stamp = ", updated_at = ?" if table == "columns" else ""
        rows = []
        for position, row_id in enumerate(ordered_ids):
            old = current[row_id]
            self.policy.check(actor, table, "update", {**old, "position": position}, old=old, project=project)
            params = (position, _now(), row_id) if stamp else (position, row_id)
            conn.execute(f"UPDATE {table} SET position = ?{stamp} WHERE id = ?", params)
            row = self._fetch(conn, table, row_id)
            self._event(events, table, Operation.UPDATE, row)
            rows.append(row)
        return rows

    def reorder_columns(self, actor: Profile, project_id: str, ordered_ids: Iterable[str]) -> List[Column]:
        """Renumber all columns of a project in one transaction (drag-and-drop of columns)."""
        with self._transaction() as (conn, events):
            project = self._visible_project(conn, actor, project_id)
            rows = self._renumber(conn, events, actor, project, "columns", list(ordered_ids))
        return [Column.from_dict(r) for r in rows]

    # ── Items ────────────────────────────────────────────────────────────────

    def _project_defaults(self, conn, project_id: str) -> Dict[str, Any]:
        return {
            r["field_name"]: r["default_value"]
            for r in (_row_dict(x) for x in conn.execute(
                "SELECT field_name, default_value FROM project_defaults WHERE project_id = ?", (project_id,)
            ))
        }

    def _custom_fields(self, conn, project_id: str) -> Dict[str, CustomField]:
        rows = conn.execute(
            "SELECT * FROM custom_fields WHERE project_id = ? ORDER BY position, created_at", (project_id,)
        ).fetchall()
        fields = [CustomField.from_dict(_row_dict(r)) for r in rows]
        return {f.id: f for f in fields}

    def _profile_ids(self, conn) -> List[str]:
        return [r["id"] for r in conn.execute("SELECT id FROM profiles")]

    def create_item(
        self,
        actor: Profile,
        column_id: str,
        name: str,
        description: Optional[str] = None,
        estimated_time: Optional[float] = None,
        actual_time: Optional[float] = None,
        position: Optional[int] = None,
        assignees: Iterable[str] = (),
        field_values: Optional[Dict[str, Any]] = None,
        item_id: Optional[str] = None,
    ) -> Item:
        """
        Create an item at the end of ``column_id``.

        ``item_id`` may be supplied by the client so an optimistic insert and its
        echo share the same id. Unset built-in fields take the project defaults;
        unset custom fields take the field's default value.
        """
        if not name or not name.strip():
            raise ValidationError("Item name is required")
        with self._transaction() as (conn, events):
            column = self._require(conn, "columns", column_id)
            project = self._visible_project(conn, actor, column["project_id"])
            project_id = project["id"]

            defaults = self._project_defaults(conn, project_id)
            given = {"description": description, "estimated_time": estimated_time, "actual_time": actual_time}
            for key in DEFAULTABLE_ITEM_FIELDS:
                if given[key] is None and defaults.get(key) is not None:
                    given[key] = defaults[key]

            if position is None:
                position = conn.execute(
                    "SELECT COUNT(*) FROM items WHERE column_id = ?", (column_id,)
                ).fetchone()[0]
            item_number = conn.execute(
                "SELECT COALESCE(MAX(item_number), 0) + 1 FROM items WHERE project_id = ?", (project_id,)
            ).fetchone()[0]

            item = Item(
                id=item_id or make_id(),
                project_id=project_id,
                column_id=column_id,
                item_number=item_number,
                name=name.strip(),
                description=given["description"] or "",
                estimated_time=_coerce_number(given["estimated_time"], "estimated_time"),
                actual_time=_coerce_number(given["actual_time"], "actual_time") or 0.0,
                position=position,
                created_by=actor.id,
            )
            row = item.to_row()
            self.policy.check(actor, "items", "insert", row, project=project)
            if self._fetch(conn, "items", item.id) is not None:
                raise ValidationError(f"Item {item.id} already exists")
            conn.execute(
                "INSERT INTO items (id, project_id, column_id, item_number, name, description, "
                "estimated_time, actual_time, position, is_open, version, created_by, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (row["id"], row["project_id"], row["column_id"], row["item_number"], row["name"],
                 row["description"], row["estimated_time"], row["actual_time"], row["position"],
                 int(row["is_open"]), row["version"], row["created_by"], row["created_at"], row["updated_at"]),
            )
            self._event(events, "items", Operation.INSERT, self._fetch(conn, "items", item.id))

            inserted = self._fetch(conn, "items", item.id)
            self._write_assignees(conn, events, actor, inserted, project, list(assignees))

            fields = self._custom_fields(conn, project_id)
            values = dict(field_values or {})
            for field_id, field in fields.items():
                if field_id not in values and field.default_value is not None:
                    values[field_id] = field.default_value
            profile_ids = self._profile_ids(conn)
            for field_id, value in values.items():
                if field_id not in fields:
                    raise ValidationError(f"Unknown custom field {field_id}")
                self._write_field_value(conn, events, actor, inserted, project, fields[field_id], value, profile_ids)

            created = self._load_item(conn, item.id)
        logger.info(f"Item #{created.item_number} created in column {column_id}")
        return created

    def get_item(self, actor: Profile, item_id: str) -> Item:
        with self._read() as conn:
            self._item_context(conn, actor, item_id)
            return self._load_item(conn, item_id)

    def list_items(self, actor: Profile, project_id: str) -> List[Item]:
        with self._read() as conn:
            self._visible_project(conn, actor, project_id)
            ids = [r["id"] for r in conn.execute(
                "SELECT id FROM items WHERE project_id = ? ORDER BY position, item_number", (project_id,)
            )]
            return [self._load_item(conn, i) for i in ids]

    def update_item(self, actor: Profile, item_id: str, **changes) -> Item:
        """Update item columns. Bumps ``version``. Moving across projects is refused."""
        unknown = set(changes) - ITEM_UPDATABLE
        if unknown:
            raise ValidationError(f"Cannot update item fields: {sorted(unknown)}")
        if "name" in changes and not (changes["name"] or "").strip():
            raise ValidationError("Item name is required")
        for key in ("estimated_time", "actual_time"):
            if key in changes:
                changes[key] = _coerce_number(changes[key], key)
        if changes.get("actual_time", 0) is None:
            changes["actual_time"] = 0.0

        with self._transaction() as (conn, events):
            old, project = self._item_context(conn, actor, item_id)
            new = {**old, **changes}
            if new["column_id"] != old["column_id"]:
                target = self._require(conn, "columns", new["column_id"])
                if target["project_id"] != old["project_id"]:
                    raise ValidationError("Items cannot be moved to another project")
            self.policy.check(actor, "items", "update", new, old=old, project=project)
            new["version"] = old["version"] + 1
            new["updated_at"] = _now()
            conn.execute(
                "UPDATE items SET column_id = ?, name = ?, description = ?, estimated_time = ?, "
                "actual_time = ?, position = ?, is_open = ?, version = ?, updated_at = ? WHERE id = ?",
                (new["column_id"], new["name"], new["description"] or "", new["estimated_time"],
                 new["actual_time"], int(new["position"]), int(bool(new["is_open"])), new["version"],
                 new["updated_at"], item_id),
            )
            self._event(events, "items", Operation.UPDATE, self._fetch(conn, "items", item_id))
            updated = self._load_item(conn, item_id)
        return updated

    def move_item(self, actor: Profile, item_id: str, column_id: str, position: Optional[int] = None) -> Item:
        """Drag-and-drop: reassign the column and position (end of column by default)."""
        if position is None:
            with self._read() as conn:
                position = conn.execute(
                    "SELECT COUNT(*) FROM items WHERE column_id = ? AND id != ?", (column_id, item_id)
                ).fetchone()[0]
        return self.update_item(actor, item_id, column_id=column_id, position=position)

    def delete_item(self, actor: Profile, item_id: str) -> Item:
        with self._transaction() as (conn, events):
            old, project = self._item_context(conn, actor, item_id)
            self.policy.check(actor, "items", "delete", old, project=project)
            deleted = self._load_item(conn, item_id)
            conn.execute("DELETE FROM items WHERE id = ?", (item_id,))
            old["version"] = old["version"] + 1
            deleted.version = old["version"]
            self._event(events, "items", Operation.DELETE, old)
        logger.info(f"Item {item_id} deleted by {actor.id}")
        return deleted

    def _write_assignees(self, conn, events, actor, item, project, user_ids: List[str]) -> None:
        current = {
            r["user_id"]: _row_dict(r) for r in conn.execute(
                "SELECT * FROM item_assignments WHERE item_id = ?", (item["id"],)
            )
        }
        wanted = list(dict.fromkeys(user_ids))
        known = set(self._profile_ids(conn))
        missing = [u for u in wanted if u not in known]
        if missing:
            raise ValidationError(f"Unknown users: {missing}")
        for user_id, row in current.items():
            if user_id not in wanted:
                self.policy.check(actor, "item_assignments", "delete", row, item=item, project=project)
                conn.execute("DELETE FROM item_assignments WHERE id = ?", (row["id"],))
                self._event(events, "item_assignments", Operation.DELETE, row)
        for user_id in wanted:
            if user_id in current:
                continue
            row = {"id": make_id(), "item_id": item["id"], "user_id": user_id, "assigned_at": _now()}
            self.policy.check(actor, "item_assignments", "insert", row, item=item, project=project)
            conn.execute(
                "INSERT INTO item_assignments (id, item_id, user_id, assigned_at) VALUES (?, ?, ?, ?)",
                (row["id"], row["item_id"], row["user_id"], row["assigned_at"]),
            )
            self._event(events, "item_assignments", Operation.INSERT, row)

    def set_assignees(self, actor: Profile, item_id: str, user_ids: Iterable[str]) -> Item:
        """Replace the item's assignee set."""
        with self._transaction() as (conn, events):
            item, project = self._item_context(conn, actor, item_id)
            self._write_assignees(conn, events, actor, item, project, list(user_ids))
            updated = self._load_item(conn, item_id)
        return updated

    def _write_field_value(self, conn, events, actor, item, project, field: CustomField, value, profile_ids) -> None:
        stored = validate_field_value(field, value, profile_ids)
        existing = _row_dict(conn.execute(
            "SELECT * FROM item_field_values WHERE item_id = ? AND field_id = ?", (item["id"], field.id)
        ).fetchone())
        if stored is None:
            if existing is None:
                return
            self.policy.check(actor, "item_field_values", "delete", existing, item=item, project=project)
            conn.execute("DELETE FROM item_field_values WHERE id = ?", (existing["id"],))
            self._event(events, "item_field_values", Operation.DELETE, existing)
            return
        if existing is None:
            row = {"id": make_id(), "item_id": item["id"], "field_id": field.id, "value": stored}
            self.policy.check(actor, "item_field_values", "insert", row, item=item, project=project)
            conn.execute(
                "INSERT INTO item_field_values (id, item_id, field_id, value) VALUES (?, ?, ?, ?)",
                (row["id"], row["item_id"], row["field_id"], json.dumps(stored)),
            )
            self._event(events, "item_field_values", Operation.INSERT, row)
        else:
            row = {**existing, "value": stored}
            self.policy.check(actor, "item_field_values", "update", row, old=existing, item=item, project=project)
            conn.execute("UPDATE item_field_values SET value = ? WHERE id = ?", (json.dumps(stored), existing["id"]))
            self._event(events, "item_field_values", Operation.UPDATE, row)

    def set_field_value(self, actor: Profile, item_id: str, field_id: str, value: Any) -> Item:
        """Set (or clear with None) one custom field value on an item."""
        with self._transaction() as (conn, events):
            item, project = self._item_context(conn, actor, item_id)
            field_row = self._require(conn, "custom_fields", field_id)
            if field_row["project_id"] != item["project_id"]:
                raise ValidationError("Custom field belongs to another project")
            field = CustomField.from_dict(field_row)
            self._write_field_value(conn, events, actor, item, project, field, value, self._profile_ids(conn))
            updated = self._load_item(conn, item_id)
        return updated

    # ── Custom fields ────────────────────────────────────────────────────────

    def create_custom_field(
        self,
        actor: Profile,
        project_id: str,
        name: str,
        field_type: FieldType = FieldType.TEXT,
        options: Optional[List[str]] = None,
        default_value: Any = None,
        show_in_preview: bool = True,
        position: Optional[int] = None,
    ) -> CustomField:
        if not name or not name.strip():
            raise ValidationError("Field name is required")
        if isinstance(field_type, str):
            field_type = FieldType.from_str(field_type)
        with self._transaction() as (conn, events):
            project = self._visible_project(conn, actor, project_id)
            if position is None:
                position = conn.execute(
                    "SELECT COUNT(*) FROM custom_fields WHERE project_id = ?", (project_id,)
                ).fetchone()[0]
            field = CustomField(
                id=make_id(),
                project_id=project_id,
                name=name.strip(),
                field_type=field_type,
                options=list(options or []),
                position=position,
                show_in_preview=show_in_preview,
            )
            field.default_value = validate_field_value(field, default_value, self._profile_ids(conn))
            row = field.to_row()
            self.policy.check(actor, "custom_fields", "insert", row, project=project)
            conn.execute(
                "INSERT INTO custom_fields (id, project_id, name, field_type, options, position, "
                "default_value, show_in_preview, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (row["id"], row["project_id"], row["name"], row["field_type"], json.dumps(row["options"]),
                 row["position"], json.dumps(row["default_value"]), int(row["show_in_preview"]),
                 row["created_at"]),
            )
            self._event(events, "custom_fields", Operation.INSERT, self._fetch(conn, "custom_fields", field.id))
        return field

    def list_custom_fields(self, actor: Profile, project_id: str) -> List[CustomField]:
        with self._read() as conn:
            self._visible_project(conn, actor, project_id)
            return list(self._custom_fields(conn, project_id).values())

    def update_custom_field(self, actor: Profile, field_id: str, **changes) -> CustomField:
        unknown = set(changes) - FIELD_UPDATABLE
        if unknown:
            raise ValidationError(f"Cannot update custom field fields: {sorted(unknown)}")
        with self._transaction() as (conn, events):
            old = self._require(conn, "custom_fields", field_id)
            project = self._visible_project(conn, actor, old["project_id"])
            new = {**old, **changes}
            field = CustomField.from_dict(new)
            field.default_value = validate_field_value(field, field.default_value, self._profile_ids(conn))
            row = field.to_row()
            self.policy.check(actor, "custom_fields", "update", row, old=old, project=project)
            conn.execute(
                "UPDATE custom_fields SET name = ?, options = ?, position = ?, default_value = ?, "
                "show_in_preview = ? WHERE id = ?",
                (row["name"], json.dumps(row["options"]), int(row["position"]),
                 json.dumps(row["default_value"]), int(row["show_in_preview"]), field_id),
            )
            row = self._fetch(conn, "custom_fields", field_id)
            self._event(events, "custom_fields", Operation.UPDATE, row)
        return CustomField.from_dict(row)

    def delete_custom_field(self, actor: Profile, field_id: str) -> CustomField:
        with self._transaction() as (conn, events):
            field = self._require(conn, "custom_fields", field_id)
            project = self._visible_project(conn, actor, field["project_id"])
            self.policy.check(actor, "custom_fields", "delete", field, project=project)
            conn.execute("DELETE FROM custom_fields WHERE id = ?", (field_id,))
            self._event(events, "custom_fields", Operation.DELETE, field)
        return CustomField.from_dict(field)

    def reorder_custom_fields(self, actor: Profile, project_id: str, ordered_ids: Iterable[str]) -> List[CustomField]:
        with self._transaction() as (conn, events):
            project = self._visible_project(conn, actor, project_id)
            rows = self._renumber(conn, events, actor, project, "custom_fields", list(ordered_ids))
        return [CustomField.from_dict(r) for r in rows]

    # ── Project defaults ─────────────────────────────────────────────────────

    def set_project_default(self, actor: Profile, project_id: str, field_name: str, value: Any) -> Dict[str, Any]:
        """Default for a built-in item field (description, estimated_time, actual_time)."""
        if field_name not in DEFAULTABLE_ITEM_FIELDS:
            raise ValidationError(f"No default for field {field_name!r}")
        if field_name != "description":
            value = _coerce_number(value, field_name)
        with self._transaction() as (conn, events):
            project = self._visible_project(conn, actor, project_id)
            existing = _row_dict(conn.execute(
                "SELECT * FROM project_defaults WHERE project_id = ? AND field_name = ?", (project_id, field_name)
            ).fetchone())
            row = {
                "id": existing["id"] if existing else make_id(),
                "project_id": project_id,
                "field_name": field_name,
                "default_value": value,
                "updated_at": _now(),
            }
            action = "update" if existing else "insert"
            self.policy.check(actor, "project_defaults", action, row, old=existing, project=project)
            conn.execute(
                "INSERT INTO project_defaults (id, project_id, field_name, default_value, updated_at) "
                "VALUES (?, ?, ?, ?, ?) ON CONFLICT(project_id, field_name) "
                "DO UPDATE SET default_value = excluded.default_value, updated_at = excluded.updated_at",
                (row["id"], project_id, field_name, json.dumps(value), row["updated_at"]),
            )
            self._event(events, "project_defaults", Operation.from_str(action), row)
        return row

    def get_project_defaults(self, actor: Profile, project_id: str) -> Dict[str, Any]:
        with self._read() as conn:
            self._visible_project(conn, actor, project_id)
            return self._project_defaults(conn, project_id)

    # ── Comments ─────────────────────────────────────────────────────────────

    def add_comment(self, actor: Profile, item_id: str, content: str, mentions: Iterable[str] = ()) -> Comment:
        """Comment on an item (open or closed) and record mentioned users."""
        if not content or not content.strip():
            raise ValidationError("Comment cannot be empty")
        with self._transaction() as (conn, events):
            item, project = self._item_context(conn, actor, item_id)
            comment = Comment(id=make_id(), item_id=item_id, user_id=actor.id, content=content.strip())
            row = comment.to_row()
            self.policy.check(actor, "item_comments", "insert", row, item=item, project=project)
            conn.execute(
                "INSERT INTO item_comments (id, item_id, user_id, content, is_resolved, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (row["id"], row["item_id"], row["user_id"], row["content"], 0, row["created_at"], row["updated_at"]),
            )
            self._event(events, "item_comments", Operation.INSERT, self._fetch(conn, "item_comments", comment.id))

            known = set(self._profile_ids(conn))
            for user_id in dict.fromkeys(mentions):
                if user_id not in known:
                    raise ValidationError(f"Unknown user mentioned: {user_id}")
                mention = {"id": make_id(), "comment_id": comment.id, "user_id": user_id, "created_at": _now()}
                self.policy.check(actor, "comment_mentions", "insert", mention, comment=row)
                conn.execute(
                    "INSERT INTO comment_mentions (id, comment_id, user_id, created_at) VALUES (?, ?, ?, ?)",
                    (mention["id"], mention["comment_id"], mention["user_id"], mention["created_at"]),
                )
                self._event(events, "comment_mentions", Operation.INSERT, mention)
            created = self._load_comment(conn, comment.id)
        return created

    def resolve_comment(self, actor: Profile, comment_id: str, resolved: bool = True) -> Comment:
        with self._transaction() as (conn, events):
            old = self._require(conn, "item_comments", comment_id)
            item, project = self._item_context(conn, actor, old["item_id"])
            new = {**old, "is_resolved": bool(resolved), "updated_at": _now()}
            self.policy.check(actor, "item_comments", "update", new, old=old, item=item, project=project)
            conn.execute(
                "UPDATE item_comments SET is_resolved = ?, updated_at = ? WHERE id = ?",
                (int(new["is_resolved"]), new["updated_at"], comment_id),
            )
            self._event(events, "item_comments", Operation.UPDATE, self._fetch(conn, "item_comments", comment_id))
            updated = self._load_comment(conn, comment_id)
        return updated

    def delete_comment(self, actor: Profile, comment_id: str) -> Comment:
        with self._transaction() as (conn, events):
            row = self._require(conn, "item_comments", comment_id)
            item, project = self._item_context(conn, actor, row["item_id"])
            self.policy.check(actor, "item_comments", "delete", row, item=item, project=project)
            comment = self._load_comment(conn, comment_id)
            conn.execute("DELETE FROM item_comments WHERE id = ?", (comment_id,))
            self._event(events, "item_comments", Operation.DELETE, row)
        return comment

    def list_comments(self, actor: Profile, item_id: str) -> List[Comment]:
        with self._read() as conn:
            self._item_context(conn, actor, item_id)
            ids = [r["id"] for r in conn.execute(
                "SELECT id FROM item_comments WHERE item_id = ? ORDER BY created_at", (item_id,)
            )]
            return [self._load_comment(conn, i) for i in ids]

    # ── Snapshot ─────────────────────────────────────────────────────────────

    def snapshot(self, actor: Profile, project_id: str) -> Dict[str, Any]:
        """Full board for a project, as loaded by a board session."""
        with self._read() as conn:
            project = self._visible_project(conn, actor, project_id)
            columns = [
                _row_dict(r) for r in conn.execute(
                    "SELECT * FROM columns WHERE project_id = ? ORDER BY position, created_at", (project_id,)
                )
            ]
            item_ids = [r["id"] for r in conn.execute(
                "SELECT id FROM items WHERE project_id = ? ORDER BY position, item_number", (project_id,)
            )]
            items = [self._load_item(conn, i).to_dict() for i in item_ids]
            fields = [f.to_dict() for f in self._custom_fields(conn, project_id).values()]
            comment_ids = [r["id"] for r in conn.execute(
                "SELECT c.id FROM item_comments c JOIN items i ON i.id = c.item_id "
                "WHERE i.project_id = ? ORDER BY c.created_at", (project_id,)
            )]
            comments = [self._load_comment(conn, c).to_dict() for c in comment_ids]
        return {
            "project": project,
            "columns": columns,
            "items": items,
            "custom_fields": fields,
            "comments": comments,
        }
