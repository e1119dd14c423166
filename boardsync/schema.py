"""
Board schema: projects, columns, items, custom fields, comments, row events.

Every persisted entity serializes to a flat row dict (``to_row``) which is
what the change feed publishes. ``Item.to_dict`` additionally carries the
assignee set and custom field values, which live in their own tables.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# Tables the board subscribes to, in the order they are joined on a channel
BOARD_TABLES = (
    "items",
    "columns",
    "item_assignments",
    "item_field_values",
    "custom_fields",
    "item_comments",
    "comment_mentions",
    "projects",
)

DEFAULT_COLUMN_COLOR = "#6366f1"

# Built-in item fields that can carry a per-project default
DEFAULTABLE_ITEM_FIELDS = ("description", "estimated_time", "actual_time")


def make_id() -> str:
    """New row identifier. Clients may generate these for optimistic inserts."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime]) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        return datetime.fromisoformat(value)
    return utc_now()


class Operation(Enum):
    """Row-level change kinds published by the change feed."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def from_str(cls, value: str) -> "Operation":
        return cls[value.upper()]


class FieldType(Enum):
    """Custom field types."""
    TEXT = "text"
    NUMBER = "number"
    DATE = "date"
    SELECT = "select"
    MULTISELECT = "multiselect"
    USER_SELECT = "user_select"
    USER_MULTISELECT = "user_multiselect"

    @classmethod
    def from_str(cls, value: str) -> "FieldType":
        try:
            return cls(value.lower())
        except ValueError:
            return cls.TEXT

    @property
    def is_user_field(self) -> bool:
        return self in (FieldType.USER_SELECT, FieldType.USER_MULTISELECT)

    @property
    def is_multi(self) -> bool:
        return self in (FieldType.MULTISELECT, FieldType.USER_MULTISELECT)


class ConnectionStatus(Enum):
    """Realtime connection state surfaced to the user."""
    CONNECTING = "connecting"
    LIVE = "live"
    OFFLINE = "offline"


@dataclass
class Profile:
    """A user. ``id`` is the authenticated identity."""
    id: str
    full_name: str = ""
    email: str = ""
    is_admin: bool = False

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "is_admin": self.is_admin,
        }

    to_dict = to_row

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Profile":
        return cls(
            id=data["id"],
            full_name=data.get("full_name") or "",
            email=data.get("email") or "",
            is_admin=bool(data.get("is_admin", False)),
        )


@dataclass
class Project:
    id: str
    name: str
    description: str = ""
    is_admin_only: bool = False
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_admin_only": self.is_admin_only,
            "created_by": self.created_by,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
        }

    to_dict = to_row

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            description=data.get("description") or "",
            is_admin_only=bool(data.get("is_admin_only", False)),
            created_by=data.get("created_by"),
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )


@dataclass
class Column:
    id: str
    project_id: str
    name: str
    position: int = 0
    color: str = DEFAULT_COLUMN_COLOR
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "position": self.position,
            "color": self.color,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
        }

    to_dict = to_row

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Column":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            name=data.get("name", ""),
            position=int(data.get("position") or 0),
            color=data.get("color") or DEFAULT_COLUMN_COLOR,
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )


@dataclass
class Item:
    """A card on the board."""

    # Identifiers
    id: str
    project_id: str
    column_id: str
    item_number: int = 0           # Per-project display number (#1, #2, ...)

    # Content
    name: str = ""
    description: str = ""
    estimated_time: Optional[float] = None
    actual_time: float = 0.0
    position: int = 0

    # Permissions: closed items are admin-only
    is_open: bool = True

    # Relations (stored in item_assignments / item_field_values)
    assignees: List[str] = field(default_factory=list)
    field_values: Dict[str, Any] = field(default_factory=dict)

    # Metadata
    version: int = 1               # Bumped by the store on every write
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        """Columns of the ``items`` table, as published on the change feed."""
        return {
            "id": self.id,
            "project_id": self.project_id,
            "column_id": self.column_id,
            "item_number": self.item_number,
            "name": self.name,
            "description": self.description,
            "estimated_time": self.estimated_time,
            "actual_time": self.actual_time,
            "position": self.position,
            "is_open": self.is_open,
            "version": self.version,
            "created_by": self.created_by,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_row()
        data["assignees"] = list(self.assignees)
        data["field_values"] = dict(self.field_values)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Item":
        estimated = data.get("estimated_time")
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            column_id=data["column_id"],
            item_number=int(data.get("item_number") or 0),
            name=data.get("name", ""),
            description=data.get("description") or "",
            estimated_time=float(estimated) if estimated is not None else None,
            actual_time=float(data.get("actual_time") or 0.0),
            position=int(data.get("position") or 0),
            is_open=bool(data.get("is_open", True)),
            assignees=list(data.get("assignees") or []),
            field_values=dict(data.get("field_values") or {}),
            version=int(data.get("version") or 1),
            created_by=data.get("created_by"),
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )


@dataclass
class CustomField:
    id: str
    project_id: str
    name: str
    field_type: FieldType = FieldType.TEXT
    options: List[str] = field(default_factory=list)
    position: int = 0
    default_value: Any = None
    show_in_preview: bool = True
    created_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "field_type": self.field_type.value,
            "options": list(self.options),
            "position": self.position,
            "default_value": self.default_value,
            "show_in_preview": self.show_in_preview,
            "created_at": _ts(self.created_at),
        }

    to_dict = to_row

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomField":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            name=data.get("name", ""),
            field_type=FieldType.from_str(data.get("field_type") or "text"),
            options=list(data.get("options") or []),
            position=int(data.get("position") or 0),
            default_value=data.get("default_value"),
            show_in_preview=bool(data.get("show_in_preview", True)),
            created_at=_parse_ts(data.get("created_at")),
        )


@dataclass
class Comment:
    id: str
    item_id: str
    user_id: str
    content: str
    is_resolved: bool = False
    mentions: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "item_id": self.item_id,
            "user_id": self.user_id,
            "content": self.content,
            "is_resolved": self.is_resolved,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_row()
        data["mentions"] = list(self.mentions)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Comment":
        return cls(
            id=data["id"],
            item_id=data["item_id"],
            user_id=data["user_id"],
            content=data.get("content", ""),
            is_resolved=bool(data.get("is_resolved", False)),
            mentions=list(data.get("mentions") or []),
            created_at=_parse_ts(data.get("created_at")),
            updated_at=_parse_ts(data.get("updated_at")),
        )


@dataclass
class ChangeEvent:
    """
    One row-level change as published by the change feed.

    ``row`` is the new row for insert/update and the deleted row for delete.
    """
    table: str
    operation: Operation
    row: Dict[str, Any]
    committed_at: str = field(default_factory=lambda: utc_now().isoformat())

    @property
    def entity_id(self) -> Optional[str]:
        return self.row.get("id")

    @property
    def version(self) -> Optional[int]:
        return self.row.get("version")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "operation": self.operation.value,
            "row": dict(self.row),
            "committed_at": self.committed_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            table=data["table"],
            operation=Operation.from_str(data["operation"]),
            row=dict(data.get("row") or {}),
            committed_at=data.get("committed_at") or utc_now().isoformat(),
        )
