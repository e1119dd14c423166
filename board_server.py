#!/usr/bin/env python3
"""
boardsync Board Server
----------------------
JSON API over a BoardStore. The acting user is named by the X-Actor-Id
header; every write also needs X-API-Key matching the configured secret.
Access rules are enforced by the store, not here.

Usage:
    python board_server.py --port 3000 --db ./board.db
    BOARDSYNC_API_SECRET=... python board_server.py --config board.yaml

API:
    GET    /health
    GET    /api/me/permissions
    POST   /api/profiles                   → register the calling actor
    PATCH  /api/profiles/<id>
    GET    /api/projects
    POST   /api/projects                   → { name, description, is_admin_only }
    GET    /api/projects/<id>/snapshot     → { project, columns, items, custom_fields, comments }
    POST   /api/projects/<id>/columns
    PUT    /api/projects/<id>/columns/order → { ordered_ids }
    PATCH  /api/columns/<id>    DELETE /api/columns/<id>
    POST   /api/columns/<id>/items
    PATCH  /api/items/<id>      DELETE /api/items/<id>
    POST   /api/items/<id>/move            → { column_id, position }
    PUT    /api/items/<id>/assignees       → { user_ids }
    PUT    /api/items/<id>/fields/<field_id> → { value }
    POST   /api/projects/<id>/fields
    PUT    /api/projects/<id>/fields/order  → { ordered_ids }
    PATCH  /api/fields/<id>     DELETE /api/fields/<id>
    PUT    /api/projects/<id>/defaults/<field_name> → { value }
    POST   /api/items/<id>/comments        → { content, mentions }
    POST   /api/comments/<id>/resolve      → { resolved }
    DELETE /api/comments/<id>
"""

import hmac
import logging
import sys
from functools import wraps

from flask import Flask, current_app, jsonify, request

from boardsync.config import Settings
from boardsync.errors import BoardError, NotFound, PermissionDenied, ValidationError
from boardsync.schema import Profile
from boardsync.store import (
    COLUMN_UPDATABLE, FIELD_UPDATABLE, ITEM_UPDATABLE, PROFILE_UPDATABLE, BoardStore,
)

logger = logging.getLogger("boardsync.server")

ITEM_CREATE_FIELDS = {
    "description", "estimated_time", "actual_time", "position", "assignees", "field_values", "item_id",
}


# ── Auth ─────────────────────────────────────────────────────────────────────

def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = current_app.config.get("API_SECRET", "")
        if not secret:
            return jsonify({"error": "API_SECRET not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


def with_actor(f):
    """Decorator: resolve X-Actor-Id to a profile and pass it as ``actor``."""
    @wraps(f)
    def decorated(*args, **kwargs):
        actor_id = request.headers.get("X-Actor-Id", "").strip()
        actor = store().get_profile(actor_id) if actor_id else None
        if actor is None:
            return jsonify({"error": "Unknown actor"}), 401
        return f(actor, *args, **kwargs)
    return decorated


def store() -> BoardStore:
    return current_app.config["BOARD_STORE"]


def body() -> dict:
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def changes(allowed: set) -> dict:
    """The request body as update kwargs, limited to ``allowed`` keys."""
    data = body()
    unknown = set(data) - allowed
    if unknown:
        raise ValidationError(f"Unknown fields: {sorted(unknown)}")
    return data


def ordered_ids() -> list:
    ids = body().get("ordered_ids")
    if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
        raise ValidationError("ordered_ids must be a list of ids")
    return ids


# ── App ──────────────────────────────────────────────────────────────────────

def create_app(board_store: BoardStore = None, settings: Settings = None) -> Flask:
    settings = settings or Settings.load()
    app = Flask(__name__)
    app.config["API_SECRET"] = settings.api_secret
    app.config["BOARD_STORE"] = board_store or BoardStore(settings.db_path)

    @app.errorhandler(ValidationError)
    def on_validation(e):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(PermissionDenied)
    def on_denied(e):
        return jsonify({"error": str(e), "table": e.table, "action": e.action}), 403

    @app.errorhandler(NotFound)
    def on_not_found(e):
        return jsonify({"error": str(e)}), 404

    @app.errorhandler(BoardError)
    def on_board_error(e):
        return jsonify({"error": str(e)}), 400

    register_routes(app)
    return app


def register_routes(app: Flask) -> None:

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": store().db_path})

    # ── Profiles ─────────────────────────────────────────────────────────────

    @app.route("/api/profiles", methods=["POST"])
    @require_api_key
    def api_register_profile():
        data = body()
        actor_id = request.headers.get("X-Actor-Id", "").strip()
        if not actor_id or data.get("id", actor_id) != actor_id:
            return jsonify({"error": "Profiles can only be registered for the calling actor"}), 403
        profile = Profile(
            id=actor_id,
            full_name=data.get("full_name", ""),
            email=data.get("email", ""),
        )
        return jsonify({"profile": store().register_profile(profile).to_dict()}), 201

    @app.route("/api/profiles/<profile_id>", methods=["PATCH"])
    @require_api_key
    @with_actor
    def api_update_profile(actor, profile_id):
        profile = store().update_profile(actor, profile_id, **changes(PROFILE_UPDATABLE))
        return jsonify({"profile": profile.to_dict()})

    @app.route("/api/me/permissions")
    @with_actor
    def api_permissions(actor):
        return jsonify(store().permissions_for(actor).to_dict())

    # ── Projects ─────────────────────────────────────────────────────────────

    @app.route("/api/projects", methods=["GET"])
    @with_actor
    def api_projects(actor):
        projects = [p.to_dict() for p in store().list_projects(actor)]
        return jsonify({"projects": projects, "count": len(projects)})

    @app.route("/api/projects", methods=["POST"])
    @require_api_key
    @with_actor
    def api_create_project(actor):
        data = body()
        project = store().create_project(
            actor,
            name=(data.get("name") or "").strip(),
            description=data.get("description", ""),
            is_admin_only=bool(data.get("is_admin_only", False)),
        )
        return jsonify({"project": project.to_dict()}), 201

    @app.route("/api/projects/<project_id>/snapshot")
    @with_actor
    def api_snapshot(actor, project_id):
        return jsonify(store().snapshot(actor, project_id))

    # ── Columns ──────────────────────────────────────────────────────────────

    @app.route("/api/projects/<project_id>/columns", methods=["POST"])
    @require_api_key
    @with_actor
    def api_create_column(actor, project_id):
        data = body()
        kwargs = {"position": data.get("position")}
        if data.get("color"):
            kwargs["color"] = data["color"]
        column = store().create_column(actor, project_id, data.get("name", ""), **kwargs)
        return jsonify({"column": column.to_dict()}), 201

    @app.route("/api/projects/<project_id>/columns/order", methods=["PUT"])
    @require_api_key
    @with_actor
    def api_reorder_columns(actor, project_id):
        columns = store().reorder_columns(actor, project_id, ordered_ids())
        return jsonify({"columns": [c.to_dict() for c in columns]})

    @app.route("/api/columns/<column_id>", methods=["PATCH"])
    @require_api_key
    @with_actor
    def api_update_column(actor, column_id):
        return jsonify({"column": store().update_column(actor, column_id, **changes(COLUMN_UPDATABLE)).to_dict()})

    @app.route("/api/columns/<column_id>", methods=["DELETE"])
    @require_api_key
    @with_actor
    def api_delete_column(actor, column_id):
        return jsonify({"column": store().delete_column(actor, column_id).to_dict()})

    # ── Items ────────────────────────────────────────────────────────────────

    @app.route("/api/columns/<column_id>/items", methods=["POST"])
    @require_api_key
    @with_actor
    def api_create_item(actor, column_id):
        data = body()
        name = data.pop("name", "")
        unknown = set(data) - ITEM_CREATE_FIELDS
        if unknown:
            return jsonify({"error": f"Unknown item fields: {sorted(unknown)}"}), 400
        item = store().create_item(actor, column_id, name, **data)
        return jsonify({"item": item.to_dict()}), 201

    @app.route("/api/items/<item_id>", methods=["PATCH"])
    @require_api_key
    @with_actor
    def api_update_item(actor, item_id):
        return jsonify({"item": store().update_item(actor, item_id, **changes(ITEM_UPDATABLE)).to_dict()})

    @app.route("/api/items/<item_id>", methods=["DELETE"])
    @require_api_key
    @with_actor
    def api_delete_item(actor, item_id):
        return jsonify({"item": store().delete_item(actor, item_id).to_dict()})

    @app.route("/api/items/<item_id>/move", methods=["POST"])
    @require_api_key
    @with_actor
    def api_move_item(actor, item_id):
        data = body()
        column_id = data.get("column_id")
        if not column_id:
            return jsonify({"error": "column_id is required"}), 400
        item = store().move_item(actor, item_id, column_id, data.get("position"))
        return jsonify({"item": item.to_dict()})

    @app.route("/api/items/<item_id>/assignees", methods=["PUT"])
    @require_api_key
    @with_actor
    def api_set_assignees(actor, item_id):
        user_ids = body().get("user_ids", [])
        if not isinstance(user_ids, list):
            return jsonify({"error": "user_ids must be a list"}), 400
        return jsonify({"item": store().set_assignees(actor, item_id, user_ids).to_dict()})

    @app.route("/api/items/<item_id>/fields/<field_id>", methods=["PUT"])
    @require_api_key
    @with_actor
    def api_set_field_value(actor, item_id, field_id):
        item = store().set_field_value(actor, item_id, field_id, body().get("value"))
        return jsonify({"item": item.to_dict()})

    # ── Custom fields & defaults ─────────────────────────────────────────────

    @app.route("/api/projects/<project_id>/fields", methods=["POST"])
    @require_api_key
    @with_actor
    def api_create_field(actor, project_id):
        data = body()
        field = store().create_custom_field(
            actor,
            project_id,
            data.get("name", ""),
            field_type=data.get("field_type") or "text",
            options=data.get("options"),
            default_value=data.get("default_value"),
            show_in_preview=bool(data.get("show_in_preview", True)),
            position=data.get("position"),
        )
        return jsonify({"field": field.to_dict()}), 201

    @app.route("/api/projects/<project_id>/fields/order", methods=["PUT"])
    @require_api_key
    @with_actor
    def api_reorder_fields(actor, project_id):
        fields = store().reorder_custom_fields(actor, project_id, ordered_ids())
        return jsonify({"fields": [f.to_dict() for f in fields]})

    @app.route("/api/fields/<field_id>", methods=["PATCH"])
    @require_api_key
    @with_actor
    def api_update_field(actor, field_id):
        return jsonify({"field": store().update_custom_field(actor, field_id, **changes(FIELD_UPDATABLE)).to_dict()})

    @app.route("/api/fields/<field_id>", methods=["DELETE"])
    @require_api_key
    @with_actor
    def api_delete_field(actor, field_id):
        return jsonify({"field": store().delete_custom_field(actor, field_id).to_dict()})

    @app.route("/api/projects/<project_id>/defaults/<field_name>", methods=["PUT"])
    @require_api_key
    @with_actor
    def api_set_default(actor, project_id, field_name):
        row = store().set_project_default(actor, project_id, field_name, body().get("value"))
        return jsonify({"default": row})

    # ── Comments ─────────────────────────────────────────────────────────────

    @app.route("/api/items/<item_id>/comments", methods=["POST"])
    @require_api_key
    @with_actor
    def api_add_comment(actor, item_id):
        data = body()
        comment = store().add_comment(actor, item_id, data.get("content", ""), data.get("mentions") or [])
        return jsonify({"comment": comment.to_dict()}), 201

    @app.route("/api/comments/<comment_id>/resolve", methods=["POST"])
    @require_api_key
    @with_actor
    def api_resolve_comment(actor, comment_id):
        resolved = bool(body().get("resolved", True))
        return jsonify({"comment": store().resolve_comment(actor, comment_id, resolved).to_dict()})

    @app.route("/api/comments/<comment_id>", methods=["DELETE"])
    @require_api_key
    @with_actor
    def api_delete_comment(actor, comment_id):
        return jsonify({"comment": store().delete_comment(actor, comment_id).to_dict()})


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="boardsync Board Server")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to board.db (overrides BOARDSYNC_DB env var)")
    parser.add_argument("--config", help="Path to board.yaml")
    args = parser.parse_args()

    settings = Settings.load(args.config)
    if args.db:
        settings.db_path = args.db
    host = args.host or settings.host
    port = args.port or settings.port

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [boardsync] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    app = create_app(settings=settings)
    logger.info(f"Serving board API on http://{host}:{port} (db: {settings.db_path})")
    if not settings.api_secret:
        logger.warning("BOARDSYNC_API_SECRET not set; write endpoints will return 503")

    app.run(host=host, port=port, debug=False, threaded=True)
