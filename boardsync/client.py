# boardsync: HTTP API client
#
# Same writer interface as BoardStore (actor first), backed by the board
# server's JSON API. HTTP errors come back as the BoardError hierarchy so a
# BoardSession can use either writer.

import logging
from typing import Any, Dict, Iterable, List, Optional

import requests

from .errors import BoardError, NotFound, PermissionDenied, TransportError, ValidationError
from .policy import Permissions
from .schema import Column, Comment, CustomField, FieldType, Item, Profile, Project

logger = logging.getLogger(__name__)


class BoardApiClient:
    """Talks to board_server.py. ``session`` may be any object with a requests-style ``request``."""

    def __init__(self, base_url: str, api_key: str = "", timeout: float = 5.0, session=None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, actor: Profile, method: str, path: str, payload: Optional[dict] = None) -> Dict[str, Any]:
        headers = {"X-Actor-Id": actor.id, "Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        try:
            r = self.session.request(
                method,
                f"{self.base_url}{path}",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"{method} {path} failed: {e}")
            raise TransportError(str(e))

        try:
            data = r.json() or {}
        except ValueError:
            data = {}
        if 200 <= r.status_code < 300:
            return data

        message = data.get("error") or f"HTTP {r.status_code}"
        if r.status_code == 400:
            raise ValidationError(message)
        if r.status_code == 404:
            raise NotFound(message)
        if r.status_code in (401, 403):
            raise PermissionDenied(data.get("table", "api"), data.get("action", method.lower()), message)
        if r.status_code >= 500:
            raise TransportError(message)
        raise BoardError(message)

    # ── Profiles ─────────────────────────────────────────────────────────────

    def register_profile(self, profile: Profile) -> Profile:
        data = self._request(profile, "POST", "/api/profiles", profile.to_dict())
        return Profile.from_dict(data["profile"])

    def update_profile(self, actor: Profile, profile_id: str, **changes) -> Profile:
        data = self._request(actor, "PATCH", f"/api/profiles/{profile_id}", changes)
        return Profile.from_dict(data["profile"])

    def permissions_for(self, actor: Profile) -> Permissions:
        return Permissions(**self._request(actor, "GET", "/api/me/permissions"))

    # ── Projects ─────────────────────────────────────────────────────────────

    def list_projects(self, actor: Profile) -> List[Project]:
        data = self._request(actor, "GET", "/api/projects")
        return [Project.from_dict(p) for p in data.get("projects", [])]

    def create_project(self, actor: Profile, name: str, description: str = "", is_admin_only: bool = False) -> Project:
        data = self._request(actor, "POST", "/api/projects", {
            "name": name,
            "description": description,
            "is_admin_only": is_admin_only,
        })
        return Project.from_dict(data["project"])

    def snapshot(self, actor: Profile, project_id: str) -> Dict[str, Any]:
        return self._request(actor, "GET", f"/api/projects/{project_id}/snapshot")

    # ── Columns ──────────────────────────────────────────────────────────────

    def create_column(self, actor: Profile, project_id: str, name: str, color: Optional[str] = None,
                      position: Optional[int] = None) -> Column:
        payload = {"name": name, "position": position}
        if color:
            payload["color"] = color
        data = self._request(actor, "POST", f"/api/projects/{project_id}/columns", payload)
        return Column.from_dict(data["column"])

    def update_column(self, actor: Profile, column_id: str, **changes) -> Column:
        data = self._request(actor, "PATCH", f"/api/columns/{column_id}", changes)
        return Column.from_dict(data["column"])

    def delete_column(self, actor: Profile, column_id: str) -> Column:
        data = self._request(actor, "DELETE", f"/api/columns/{column_id}")
        return Column.from_dict(data["column"])

    def reorder_columns(self, actor: Profile, project_id: str, ordered_ids: Iterable[str]) -> List[Column]:
        data = self._request(actor, "PUT", f"/api/projects/{project_id}/columns/order",
                             {"ordered_ids": list(ordered_ids)})
        return [Column.from_dict(c) for c in data["columns"]]

    # ── Items ────────────────────────────────────────────────────────────────

    def create_item(self, actor: Profile, column_id: str, name: str, **fields) -> Item:
        payload = {"name": name, **fields}
        if "assignees" in payload:
            payload["assignees"] = list(payload["assignees"])
        data = self._request(actor, "POST", f"/api/columns/{column_id}/items", payload)
        return Item.from_dict(data["item"])

    def update_item(self, actor: Profile, item_id: str, **changes) -> Item:
        data = self._request(actor, "PATCH", f"/api/items/{item_id}", changes)
        return Item.from_dict(data["item"])

    def move_item(self, actor: Profile, item_id: str, column_id: str, position: Optional[int] = None) -> Item:
        data = self._request(actor, "POST", f"/api/items/{item_id}/move", {
            "column_id": column_id,
            "position": position,
        })
        return Item.from_dict(data["item"])

    def delete_item(self, actor: Profile, item_id: str) -> Item:
        data = self._request(actor, "DELETE", f"/api/items/{item_id}")
        return Item.from_dict(data["item"])

    def set_assignees(self, actor: Profile, item_id: str, user_ids: Iterable[str]) -> Item:
        data = self._request(actor, "PUT", f"/api/items/{item_id}/assignees", {"user_ids": list(user_ids)})
        return Item.from_dict(data["item"])

    def set_field_value(self, actor: Profile, item_id: str, field_id: str, value: Any) -> Item:
        data = self._request(actor, "PUT", f"/api/items/{item_id}/fields/{field_id}", {"value": value})
        return Item.from_dict(data["item"])

    # ── Custom fields & defaults ─────────────────────────────────────────────

    def create_custom_field(self, actor: Profile, project_id: str, name: str, field_type=FieldType.TEXT,
                            options: Optional[List[str]] = None, default_value: Any = None,
                            show_in_preview: bool = True, position: Optional[int] = None) -> CustomField:
        if isinstance(field_type, FieldType):
            field_type = field_type.value
        data = self._request(actor, "POST", f"/api/projects/{project_id}/fields", {
            "name": name,
            "field_type": field_type,
            "options": options or [],
            "default_value": default_value,
            "show_in_preview": show_in_preview,
            "position": position,
        })
        return CustomField.from_dict(data["field"])

    def update_custom_field(self, actor: Profile, field_id: str, **changes) -> CustomField:
        data = self._request(actor, "PATCH", f"/api/fields/{field_id}", changes)
        return CustomField.from_dict(data["field"])

    def delete_custom_field(self, actor: Profile, field_id: str) -> CustomField:
        data = self._request(actor, "DELETE", f"/api/fields/{field_id}")
        return CustomField.from_dict(data["field"])

    def reorder_custom_fields(self, actor: Profile, project_id: str, ordered_ids: Iterable[str]) -> List[CustomField]:
        data = self._request(actor, "PUT", f"/api/projects/{project_id}/fields/order",
                             {"ordered_ids": list(ordered_ids)})
        return [CustomField.from_dict(f) for f in data["fields"]]

    def set_project_default(self, actor: Profile, project_id: str, field_name: str, value: Any) -> Dict[str, Any]:
        data = self._request(actor, "PUT", f"/api/projects/{project_id}/defaults/{field_name}", {"value": value})
        return data["default"]

    # ── Comments ─────────────────────────────────────────────────────────────

    def add_comment(self, actor: Profile, item_id: str, content: str, mentions: Iterable[str] = ()) -> Comment:
        data = self._request(actor, "POST", f"/api/items/{item_id}/comments", {
            "content": content,
            "mentions": list(mentions),
        })
        return Comment.from_dict(data["comment"])

    def resolve_comment(self, actor: Profile, comment_id: str, resolved: bool = True) -> Comment:
        data = self._request(actor, "POST", f"/api/comments/{comment_id}/resolve", {"resolved": resolved})
        return Comment.from_dict(data["comment"])

    def delete_comment(self, actor: Profile, comment_id: str) -> Comment:
        data = self._request(actor, "DELETE", f"/api/comments/{comment_id}")
        return Comment.from_dict(data["comment"])
