"""
Tests for the board HTTP server and the requests-based API client.

The client is pointed at the Flask test client through a small
requests-style session, so both sides run in-process.
"""
import asyncio

import pytest
import requests

from board_server import create_app
from boardsync.client import BoardApiClient
from boardsync.config import Settings
from boardsync.errors import BoardError, NotFound, PermissionDenied, TransportError, ValidationError
from boardsync.feed import LocalTransport
from boardsync.realtime import RetryPolicy, SubscriptionManager
from boardsync.schema import FieldType, Profile
from boardsync.session import BoardSession

SECRET = "test-secret"
FAST = RetryPolicy(max_attempts=5, base_delay=0.001, max_delay=0.002, timeout=0.5)


class FakeResponse:
    def __init__(self, status_code, data):
        self.status_code = status_code
        self._data = data

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._data is None:
            raise ValueError("No JSON body")
        return self._data


class FlaskSession:
    """requests-style session that routes calls into a Flask test client."""

    def __init__(self, app):
        self.client = app.test_client()
        self.calls = []

    def request(self, method, url, json=None, headers=None, timeout=None):
        path = url.split("://", 1)[-1]
        path = path[path.index("/"):]
        self.calls.append((method, path))
        resp = self.client.open(path, method=method, json=json, headers=headers or {})
        return FakeResponse(resp.status_code, resp.get_json(silent=True))


class CannedSession:
    """Returns one fixed response, or raises ``error``."""

    def __init__(self, status_code=200, data=None, error=None):
        self.response = FakeResponse(status_code, data)
        self.error = error

    def request(self, method, url, json=None, headers=None, timeout=None):
        if self.error is not None:
            raise self.error
        return self.response


def headers(actor_id, key=SECRET):
    h = {"X-Actor-Id": actor_id}
    if key is not None:
        h["X-API-Key"] = key
    return h


@pytest.fixture
def app(store):
    return create_app(store, Settings(api_secret=SECRET))


@pytest.fixture
def http(app):
    return app.test_client()


@pytest.fixture
def api(app):
    return BoardApiClient("http://board.test/", api_key=SECRET, session=FlaskSession(app))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Auth
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_health(http, store):
    r = http.get("/health")
    assert r.status_code == 200
    assert r.get_json()["status"] == "ok"


def test_writes_disabled_without_secret(store, admin):
    http = create_app(store, Settings(api_secret="")).test_client()
    r = http.post("/api/projects", json={"name": "X"}, headers=headers(admin.id))
    assert r.status_code == 503


def test_api_key_required(http, admin):
    missing = http.post("/api/projects", json={"name": "X"}, headers=headers(admin.id, key=None))
    wrong = http.post("/api/projects", json={"name": "X"}, headers=headers(admin.id, key="nope"))
    assert missing.status_code == 401
    assert wrong.status_code == 403


def test_unknown_actor_rejected(http, admin):
    assert http.get("/api/projects", headers=headers("ghost")).status_code == 401
    assert http.get("/api/projects", headers={}).status_code == 401


def test_reads_do_not_need_key(http, admin, board):
    r = http.get("/api/projects", headers=headers(admin.id, key=None))
    assert r.status_code == 200
    assert r.get_json()["count"] == 1


def test_register_profile(api, store, http):
    carol = api.register_profile(Profile(id="carol", full_name="Carol", email="carol@example.com"))
    assert carol.id == "carol"
    assert store.get_profile("carol").full_name == "Carol"

    r = http.post("/api/profiles", json={"id": "dave"}, headers=headers("carol"))
    assert r.status_code == 403
    assert store.get_profile("dave") is None


def test_unknown_item_field_rejected(http, alice, board):
    _, columns = board
    r = http.post(
        f"/api/columns/{columns['backlog'].id}/items",
        json={"name": "Task", "color": "red"},
        headers=headers(alice.id),
    )
    assert r.status_code == 400


@pytest.mark.parametrize("payload", [
    {"item_id": "other"},
    {"version": 99},
    {"name": "Ok", "project_id": "elsewhere"},
])
def test_update_rejects_unexpected_keys(http, store, alice, board, payload):
    _, columns = board
    item = store.create_item(alice, columns["backlog"].id, "Task")
    r = http.patch(f"/api/items/{item.id}", json=payload, headers=headers(alice.id))
    assert r.status_code == 400
    assert "Unknown fields" in r.get_json()["error"]
    assert store.get_item(alice, item.id).version == 1


@pytest.mark.parametrize("url", ["/api/items/{item}", "/api/columns/{column}", "/api/profiles/admin-1"])
def test_update_body_must_be_an_object(http, store, admin, board, url):
    _, columns = board
    item = store.create_item(admin, columns["backlog"].id, "Task")
    url = url.format(item=item.id, column=columns["done"].id)
    r = http.patch(url, json=[1, 2], headers=headers(admin.id))
    assert r.status_code == 400
    assert r.get_json()["error"] == "Request body must be a JSON object"


def test_reorder_needs_id_list(http, admin, board):
    project, _ = board
    r = http.put(f"/api/projects/{project.id}/columns/order", json={"ordered_ids": "a,b"}, headers=headers(admin.id))
    assert r.status_code == 400


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Client Error Mapping
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_denied_maps_to_permission_denied(api, alice):
    with pytest.raises(PermissionDenied) as exc:
        api.create_project(alice, "Not mine")
    assert exc.value.table == "projects"
    assert exc.value.action == "insert"


def test_missing_maps_to_not_found(api, alice, board):
    with pytest.raises(NotFound):
        api.snapshot(alice, "no-such-project")
    with pytest.raises(NotFound):
        api.update_item(alice, "no-such-item", name="x")


def test_invalid_maps_to_validation_error(api, alice, board):
    _, columns = board
    with pytest.raises(ValidationError):
        api.create_item(alice, columns["backlog"].id, "   ")


def test_admin_only_project_hidden_over_http(api, admin, alice):
    secret = api.create_project(admin, "Payroll", is_admin_only=True)
    assert [p.id for p in api.list_projects(alice)] == []
    with pytest.raises(NotFound):
        api.snapshot(alice, secret.id)


def test_connection_error_maps_to_transport_error(alice):
    client = BoardApiClient("http://board.test", session=CannedSession(error=requests.ConnectionError("refused")))
    with pytest.raises(TransportError):
        client.list_projects(alice)


@pytest.mark.parametrize("status, expected", [
    (502, TransportError),
    (409, BoardError),
    (401, PermissionDenied),
])
def test_status_mapping(alice, status, expected):
    client = BoardApiClient("http://board.test", session=CannedSession(status, {"error": "nope"}))
    with pytest.raises(expected, match="nope"):
        client.list_projects(alice)


def test_non_json_error_body(alice):
    client = BoardApiClient("http://board.test", session=CannedSession(500, None))
    with pytest.raises(TransportError, match="HTTP 500"):
        client.list_projects(alice)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Full Flow
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_board_flow_over_http(api, store, admin, alice, bob):
    project = api.create_project(admin, "Launch", description="Q3")
    todo = api.create_column(admin, project.id, "To do")
    done = api.create_column(admin, project.id, "Done", color="#10b981")
    assert done.color == "#10b981"
    assert done.position == 1

    size = api.create_custom_field(admin, project.id, "Size", FieldType.SELECT, options=["S", "M", "L"], default_value="M")
    api.set_project_default(admin, project.id, "estimated_time", 2)

    item = api.create_item(alice, todo.id, "Write copy", assignees=["alice"])
    assert item.item_number == 1
    assert item.estimated_time == 2.0
    assert item.field_values == {size.id: "M"}
    assert item.assignees == ["alice"]

    item = api.set_field_value(alice, item.id, size.id, "L")
    item = api.set_assignees(alice, item.id, ["alice", "bob"])
    item = api.move_item(alice, item.id, done.id)
    assert item.column_id == done.id
    assert sorted(item.assignees) == ["alice", "bob"]
    assert item.field_values[size.id] == "L"

    comment = api.add_comment(bob, item.id, "Looks good @alice", mentions=["alice"])
    assert comment.mentions == ["alice"]
    assert api.resolve_comment(alice, comment.id).is_resolved

    snapshot = api.snapshot(alice, project.id)
    assert [c["name"] for c in snapshot["columns"]] == ["To do", "Done"]
    assert [i["id"] for i in snapshot["items"]] == [item.id]
    assert snapshot["comments"][0]["is_resolved"] is True

    reordered = api.reorder_columns(admin, project.id, [done.id, todo.id])
    assert [(c.name, c.position) for c in reordered] == [("Done", 0), ("To do", 1)]
    owner = api.create_custom_field(admin, project.id, "Owner", FieldType.USER_SELECT)
    fields = api.reorder_custom_fields(admin, project.id, [owner.id, size.id])
    assert [f.name for f in fields] == ["Owner", "Size"]
    with pytest.raises(PermissionDenied):
        api.reorder_columns(alice, project.id, [todo.id, done.id])
    with pytest.raises(ValidationError):
        api.reorder_columns(admin, project.id, [todo.id])

    api.update_item(admin, item.id, is_open=False)
    with pytest.raises(PermissionDenied):
        api.update_item(alice, item.id, name="Reopen?")

    api.delete_column(admin, done.id)
    assert store.snapshot(admin, project.id)["items"] == []


def test_profile_and_permissions_over_http(api, admin, alice):
    assert not api.permissions_for(alice).is_admin
    with pytest.raises(PermissionDenied):
        api.update_profile(alice, "alice", is_admin=True)
    promoted = api.update_profile(admin, "alice", is_admin=True)
    assert promoted.is_admin
    assert api.permissions_for(promoted).can_manage_columns


def test_session_with_http_writer(api, store, alice, bob, board):
    """A session writing over HTTP sees its own echo through the feed"""
    project, columns = board

    async def main():
        transport = LocalTransport(store.feed)
        a = BoardSession(api, SubscriptionManager(transport, FAST), alice, project.id)
        b = BoardSession(store, SubscriptionManager(transport, FAST), bob, project.id)
        await a.start()
        await b.start()

        outcome = await a.create_item(columns["backlog"].id, "Over the wire")
        assert outcome.ok
        await asyncio.sleep(0.01)
        for session in (a, b):
            assert [i["name"] for i in session.state.items_in_column(columns["backlog"].id)] == ["Over the wire"]
        assert not a.state.has_pending()

        denied = await a.delete_column(columns["done"].id)
        assert isinstance(denied.error, PermissionDenied)
        assert columns["done"].id in a.state.columns

        await a.stop()
        await b.stop()

    asyncio.run(main())
