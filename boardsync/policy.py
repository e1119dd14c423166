"""
Row-level access policy.

Rules are declared as a table keyed by (table, action) and evaluated against
the acting profile and the affected row. The store calls ``check`` before
every write and ``allows`` to filter reads.

Final rules:
  - Open items: anyone who can see the project may update, move and delete.
  - Closed items: admins only. Only admins may close an item.
  - Columns, custom fields, project defaults, projects: admins only.
  - Admin-only projects (and their columns/items/fields) are hidden from non-admins.
  - Comments: anyone may comment; resolving needs an open item or admin;
    deleting needs (own comment on an open item) or admin.
  - Profiles: readable by all; the admin flag can only be changed by admins.
"""
import logging
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional, Tuple

from .errors import PermissionDenied
from .schema import Profile

logger = logging.getLogger(__name__)


@dataclass
class PolicyRequest:
    """Everything a rule may look at."""
    actor: Profile
    table: str
    action: str
    row: Dict[str, Any]
    old: Optional[Dict[str, Any]] = None       # Row before an update
    project: Optional[Dict[str, Any]] = None   # Owning project
    item: Optional[Dict[str, Any]] = None      # Parent item (assignments, values, comments)
    comment: Optional[Dict[str, Any]] = None   # Parent comment (mentions)


Rule = Callable[[PolicyRequest], bool]


# ── Predicates ───────────────────────────────────────────────────────────────

def _anyone(req: PolicyRequest) -> bool:
    return True


def _admin(req: PolicyRequest) -> bool:
    return bool(req.actor.is_admin)


def _project_visible(req: PolicyRequest) -> bool:
    project = req.project
    if project is None and req.table == "projects":
        project = req.old or req.row
    if project is None:
        return False
    return not project.get("is_admin_only") or bool(req.actor.is_admin)


def _visible_admin(req: PolicyRequest) -> bool:
    return _project_visible(req) and _admin(req)


def _item_update(req: PolicyRequest) -> bool:
    if not _project_visible(req):
        return False
    if req.actor.is_admin:
        return True
    before = req.old or req.row
    # Non-admins may touch open items only, and may not close them
    return bool(before.get("is_open", True)) and bool(req.row.get("is_open", True))


def _item_delete(req: PolicyRequest) -> bool:
    if not _project_visible(req):
        return False
    return bool(req.row.get("is_open", True)) or bool(req.actor.is_admin)


def _parent_item_open(req: PolicyRequest) -> bool:
    if not _project_visible(req):
        return False
    item = req.item or {}
    return bool(item.get("is_open", True)) or bool(req.actor.is_admin)


def _comment_insert(req: PolicyRequest) -> bool:
    return _project_visible(req) and req.row.get("user_id") == req.actor.id


def _comment_delete(req: PolicyRequest) -> bool:
    if not _project_visible(req):
        return False
    if req.actor.is_admin:
        return True
    item = req.item or {}
    return req.row.get("user_id") == req.actor.id and bool(item.get("is_open", True))


def _mention_by_author(req: PolicyRequest) -> bool:
    comment = req.comment or {}
    return comment.get("user_id") == req.actor.id or bool(req.actor.is_admin)


def _profile_insert(req: PolicyRequest) -> bool:
    return req.row.get("id") == req.actor.id


def _profile_update(req: PolicyRequest) -> bool:
    before = req.old or {}
    admin_flag_changed = bool(before.get("is_admin", False)) != bool(req.row.get("is_admin", False))
    if admin_flag_changed:
        return bool(req.actor.is_admin)
    return req.row.get("id") == req.actor.id or bool(req.actor.is_admin)


DEFAULT_RULES: Dict[Tuple[str, str], Rule] = {
    ("profiles", "select"): _anyone,
    ("profiles", "insert"): _profile_insert,
    ("profiles", "update"): _profile_update,

    ("projects", "select"): _project_visible,
    ("projects", "insert"): _admin,
    ("projects", "update"): _admin,
    ("projects", "delete"): _admin,

    ("columns", "select"): _project_visible,
    ("columns", "insert"): _visible_admin,
    ("columns", "update"): _visible_admin,
    ("columns", "delete"): _visible_admin,

    ("custom_fields", "select"): _project_visible,
    ("custom_fields", "insert"): _visible_admin,
    ("custom_fields", "update"): _visible_admin,
    ("custom_fields", "delete"): _visible_admin,

    ("project_defaults", "select"): _project_visible,
    ("project_defaults", "insert"): _visible_admin,
    ("project_defaults", "update"): _visible_admin,
    ("project_defaults", "delete"): _visible_admin,

    ("items", "select"): _project_visible,
    ("items", "insert"): _project_visible,
    ("items", "update"): _item_update,
    ("items", "delete"): _item_delete,

    ("item_assignments", "select"): _project_visible,
    ("item_assignments", "insert"): _parent_item_open,
    ("item_assignments", "delete"): _parent_item_open,

    ("item_field_values", "select"): _project_visible,
    ("item_field_values", "insert"): _parent_item_open,
    ("item_field_values", "update"): _parent_item_open,
    ("item_field_values", "delete"): _parent_item_open,

    ("item_comments", "select"): _project_visible,
    ("item_comments", "insert"): _comment_insert,
    ("item_comments", "update"): _parent_item_open,
    ("item_comments", "delete"): _comment_delete,

    ("comment_mentions", "select"): _anyone,
    ("comment_mentions", "insert"): _mention_by_author,
    ("comment_mentions", "delete"): _mention_by_author,
}


@dataclass(frozen=True)
class Permissions:
    """What the current user may do, for the UI to grey out controls."""
    user_id: str
    is_admin: bool
    can_create_items: bool
    can_update_open_items: bool
    can_update_closed_items: bool
    can_delete_open_items: bool
    can_delete_closed_items: bool
    can_manage_columns: bool
    can_manage_custom_fields: bool
    can_manage_projects: bool
    can_delete_comments_on_open_items: bool
    can_delete_any_comments: bool
    can_resolve_comments_on_open_items: bool
    can_resolve_any_comments: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AccessPolicy:
    """Evaluates the rule table. Missing (table, action) pairs are denied."""

    def __init__(self, rules: Optional[Dict[Tuple[str, str], Rule]] = None):
        self.rules: Dict[Tuple[str, str], Rule] = dict(DEFAULT_RULES)
        if rules:
            self.rules.update(rules)

    def allows(self, request: PolicyRequest) -> bool:
        rule = self.rules.get((request.table, request.action))
        if rule is None:
            return False
        return bool(rule(request))

    def check(self, actor: Profile, table: str, action: str, row: Dict[str, Any], **context) -> None:
        """
        Raise PermissionDenied unless ``actor`` may perform ``action`` on ``row``.

        Context keywords: old, project, item, comment.
        """
        request = PolicyRequest(actor=actor, table=table, action=action, row=row, **context)
        if not self.allows(request):
            logger.info(f"Denied {action} on {table} for {actor.id}")
            raise PermissionDenied(table, action)

    def permissions_for(self, actor: Profile) -> Permissions:
        admin = bool(actor.is_admin)
        return Permissions(
            user_id=actor.id,
            is_admin=admin,
            can_create_items=True,
            can_update_open_items=True,
            can_update_closed_items=admin,
            can_delete_open_items=True,
            can_delete_closed_items=admin,
            can_manage_columns=admin,
            can_manage_custom_fields=admin,
            can_manage_projects=admin,
            can_delete_comments_on_open_items=True,
            can_delete_any_comments=admin,
            can_resolve_comments_on_open_items=True,
            can_resolve_any_comments=admin,
        )
