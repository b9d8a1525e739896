#!/usr/bin/env python3
"""
Huntly CRM Server
-----------------
JSON API over the huntly/ package: session login, API key management,
kanban boards for client and internal projects, internal project finances.

Usage:
    export HUNTLY_JWT_SECRET=$(openssl rand -hex 32)
    python crm_server.py --port 3000

    # Or behind a WSGI server
    gunicorn 'crm_server:create_app()'

Auth:
    Browser clients sign in via POST /api/auth/login and carry the
    auth-token cookie. Integrations send X-API-Key: hntly_… and are limited
    to the key's permissions (and project, when the key is restricted).
    Every authorization failure answers 401 {"error": "Unauthorized"}.

API:
    POST /api/auth/login|logout|register|change-password, GET /api/auth/me
    GET|POST /api/api-keys, GET|PUT|DELETE /api/api-keys/<id>
    GET|POST /api/internal-projects, GET /api/internal-projects/<id>
    GET|POST /api/internal-projects/<id>/tasks
    PUT      /api/internal-projects/<id>/tasks/reorder
             JSON body: { task_id, new_status, new_order }
    GET|PUT|DELETE /api/internal-projects/<id>/tasks/<task_id>
    GET|POST /api/internal-projects/<id>/transactions
    GET|POST /api/projects
    GET|POST /api/members, PUT /api/members/<id>/status
    GET|POST /api/projects/<id>/tasks, PUT /api/projects/<id>/tasks/reorder
    GET|POST /api/projects/<id>/stories, PUT /api/projects/<id>/stories/reorder
             JSON body: { story_id, new_status, new_order }
    PUT|DELETE /api/projects/<id>/stories/<story_id>
"""

import argparse
import logging
import math
from datetime import datetime
from functools import wraps
from typing import Optional

from flask import Blueprint, Flask, current_app, g, jsonify, request
from werkzeug.exceptions import HTTPException

from huntly.auth import AuthGate, has_project_access
from huntly.board import KanbanBoard
from huntly.config import Config
from huntly.errors import HuntlyError, NotFoundError, ValidationError
from huntly.schema import FULL_ACCESS, ApiKeyAuth, BoardKind, MemberStatus, SessionAuth, TransactionType
from huntly.store import CrmStore

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)


def _gate() -> AuthGate:
    return current_app.extensions["huntly"]["gate"]


def _board() -> KanbanBoard:
    return current_app.extensions["huntly"]["board"]


def _store() -> CrmStore:
    return current_app.extensions["huntly"]["store"]


def _body() -> dict:
    data = request.get_json(force=True, silent=True)
    return data if isinstance(data, dict) else {}


def _unauthorized():
    return jsonify({"error": "Unauthorized"}), 401


# ── Auth ─────────────────────────────────────────────────────────────────────


def require_auth(permission: Optional[str] = None, project_arg: Optional[str] = None,
                 session_only: bool = False, unrestricted: bool = False):
    """
    Decorator: resolve the caller into g.auth or answer 401.

    permission   scope an API key must hold (sessions are not scoped)
    project_arg  URL argument naming the project the caller must reach
    session_only reject API keys outright
    unrestricted reject API keys bound to a single internal project
    """
    def wrapper(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            auth = _gate().authorize_request(request, permission)
            if auth is None:
                return _unauthorized()
            if session_only and not isinstance(auth, SessionAuth):
                return _unauthorized()
            if unrestricted and isinstance(auth, ApiKeyAuth) and auth.internal_project_id is not None:
                return _unauthorized()
            if project_arg and not has_project_access(auth, kwargs[project_arg]):
                return _unauthorized()
            g.auth = auth
            return f(*args, **kwargs)
        return decorated
    return wrapper


@api.app_errorhandler(HuntlyError)
def handle_huntly_error(e: HuntlyError):
    return jsonify({"error": str(e)}), e.status_code


@api.app_errorhandler(HTTPException)
def handle_http_error(e: HTTPException):
    return jsonify({"error": e.description}), e.code


@api.app_errorhandler(Exception)
def handle_unexpected_error(e: Exception):
    current_app.logger.exception(f"Unhandled error on {request.method} {request.path}")
    return jsonify({"error": "Internal server error"}), 500


@api.route("/health")
def health():
    return jsonify({"status": "ok"})


@api.route("/api/auth/login", methods=["POST"])
def api_login():
    data = _body()
    user, token = _gate().login(str(data.get("email") or ""), str(data.get("password") or ""))
    config = _gate().config
    response = jsonify({"user": user.to_dict()})
    response.set_cookie(
        config.cookie_name,
        token,
        max_age=config.session_days * 24 * 60 * 60,
        httponly=True,
        secure=config.cookie_secure,
        samesite="Lax",
        path="/",
    )
    return response


@api.route("/api/auth/logout", methods=["POST"])
def api_logout():
    response = jsonify({"success": True})
    response.delete_cookie(_gate().config.cookie_name, path="/")
    return response


@api.route("/api/auth/register", methods=["POST"])
def api_register():
    data = _body()
    user = _gate().register(
        str(data.get("email") or ""),
        str(data.get("password") or ""),
        data.get("member_id"),
    )
    return jsonify({"user": user.to_dict()}), 201


@api.route("/api/auth/me")
@require_auth(session_only=True)
def api_me():
    user = _store().get_user(g.auth.user_id)
    if not user:
        raise NotFoundError("User not found")
    return jsonify({"user": user.to_dict()})


@api.route("/api/auth/change-password", methods=["POST"])
@require_auth(session_only=True)
def api_change_password():
    data = _body()
    _gate().change_password(
        g.auth.user_id,
        str(data.get("current_password") or ""),
        str(data.get("new_password") or ""),
    )
    return jsonify({"success": True})


# ── API keys ─────────────────────────────────────────────────────────────────


@api.route("/api/api-keys", methods=["GET"])
@require_auth(FULL_ACCESS, unrestricted=True)
def api_list_keys():
    return jsonify([k.to_dict() for k in _store().list_api_keys()])


@api.route("/api/api-keys", methods=["POST"])
@require_auth(FULL_ACCESS, unrestricted=True)
def api_create_key():
    data = _body()
    created_by = g.auth.member_id if isinstance(g.auth, SessionAuth) else None
    key, raw_key = _gate().create_api_key(
        name=data.get("name"),
        permissions=data.get("permissions"),
        internal_project_id=data.get("internal_project_id"),
        expires_in=data.get("expires_in") or data.get("expiresIn"),
        created_by_id=created_by,
    )
    payload = key.to_dict()
    payload["key"] = raw_key
    payload["message"] = "Store this key safely. It will not be shown again."
    return jsonify(payload), 201


@api.route("/api/api-keys/<key_id>", methods=["GET"])
@require_auth(FULL_ACCESS, unrestricted=True)
def api_get_key(key_id):
    key = _store().get_api_key(key_id)
    if not key:
        raise NotFoundError("API key not found")
    return jsonify(key.to_dict())


@api.route("/api/api-keys/<key_id>", methods=["PUT"])
@require_auth(FULL_ACCESS, unrestricted=True)
def api_update_key(key_id):
    return jsonify(_gate().update_api_key(key_id, _body()).to_dict())


@api.route("/api/api-keys/<key_id>", methods=["DELETE"])
@require_auth(FULL_ACCESS, unrestricted=True)
def api_delete_key(key_id):
    _gate().delete_api_key(key_id)
    return jsonify({"message": "API key deleted"})


# ── Projects ─────────────────────────────────────────────────────────────────


def _create_project(internal: bool):
    data = _body()
    name = str(data.get("name") or "").strip()
    if not name:
        raise ValidationError("name is required")
    return jsonify(_store().create_project(name, data.get("description") or "", internal=internal)), 201


@api.route("/api/projects", methods=["GET"])
@require_auth(FULL_ACCESS, unrestricted=True)
def api_list_projects():
    return jsonify(_store().list_projects())


@api.route("/api/projects", methods=["POST"])
@require_auth(FULL_ACCESS, unrestricted=True)
def api_create_project():
    return _create_project(internal=False)


@api.route("/api/internal-projects", methods=["GET"])
@require_auth("internal-projects:read")
def api_list_internal_projects():
    projects = [p for p in _store().list_projects(internal=True) if has_project_access(g.auth, p["id"])]
    return jsonify(projects)


@api.route("/api/internal-projects", methods=["POST"])
@require_auth("internal-projects:write")
def api_create_internal_project():
    return _create_project(internal=True)


@api.route("/api/internal-projects/<project_id>", methods=["GET"])
@require_auth("internal-projects:read", project_arg="project_id")
def api_get_internal_project(project_id):
    project = _store().get_project(project_id, internal=True)
    if not project:
        raise NotFoundError("Internal project not found")
    return jsonify(project)


# ── Members ──────────────────────────────────────────────────────────────────


@api.route("/api/members", methods=["GET"])
@require_auth(FULL_ACCESS, unrestricted=True)
def api_list_members():
    return jsonify([m.to_dict() for m in _store().list_members()])


@api.route("/api/members", methods=["POST"])
@require_auth(FULL_ACCESS, unrestricted=True)
def api_create_member():
    data = _body()
    name = str(data.get("name") or "").strip()
    email = str(data.get("email") or "").strip()
    if not name or not email:
        raise ValidationError("name and email are required")
    member = _store().create_member(
        name, email, str(data.get("role") or ""), MemberStatus.parse(data.get("status"))
    )
    return jsonify(member.to_dict()), 201


@api.route("/api/members/<member_id>/status", methods=["PUT"])
@require_auth(FULL_ACCESS, unrestricted=True)
def api_set_member_status(member_id):
    status = _body().get("status")
    if not status:
        raise ValidationError("status is required")
    _store().set_member_status(member_id, MemberStatus.parse(status))
    return jsonify(_store().get_member(member_id).to_dict())


# ── Boards ───────────────────────────────────────────────────────────────────


def _list(kind: BoardKind, project_id: str):
    return jsonify([i.to_dict() for i in _board().list_items(kind, project_id)])


def _create(kind: BoardKind, project_id: str):
    return jsonify(_board().create_item(kind, project_id, _body()).to_dict()), 201


def _reorder(kind: BoardKind, project_id: str, id_field: str):
    data = _body()
    item_id = data.get(id_field)
    if not item_id:
        raise ValidationError(f"{id_field} is required")
    if "new_status" not in data or "new_order" not in data:
        raise ValidationError("new_status and new_order are required")
    items = _board().move_item(kind, project_id, str(item_id), data["new_status"], data["new_order"])
    return jsonify([i.to_dict() for i in items])


@api.route("/api/internal-projects/<project_id>/tasks", methods=["GET"])
@require_auth("tasks:read", project_arg="project_id")
def api_list_internal_tasks(project_id):
    return _list(BoardKind.INTERNAL_TASK, project_id)


@api.route("/api/internal-projects/<project_id>/tasks", methods=["POST"])
@require_auth("tasks:write", project_arg="project_id")
def api_create_internal_task(project_id):
    return _create(BoardKind.INTERNAL_TASK, project_id)


@api.route("/api/internal-projects/<project_id>/tasks/reorder", methods=["PUT"])
@require_auth("tasks:write", project_arg="project_id")
def api_reorder_internal_tasks(project_id):
    return _reorder(BoardKind.INTERNAL_TASK, project_id, "task_id")


@api.route("/api/internal-projects/<project_id>/tasks/<task_id>", methods=["GET"])
@require_auth("tasks:read", project_arg="project_id")
def api_get_internal_task(project_id, task_id):
    return jsonify(_board().get_item(BoardKind.INTERNAL_TASK, project_id, task_id).to_dict())


@api.route("/api/internal-projects/<project_id>/tasks/<task_id>", methods=["PUT"])
@require_auth("tasks:write", project_arg="project_id")
def api_update_internal_task(project_id, task_id):
    item = _board().update_item(BoardKind.INTERNAL_TASK, project_id, task_id, _body())
    return jsonify(item.to_dict())


@api.route("/api/internal-projects/<project_id>/tasks/<task_id>", methods=["DELETE"])
@require_auth("tasks:delete", project_arg="project_id")
def api_delete_internal_task(project_id, task_id):
    _board().delete_item(BoardKind.INTERNAL_TASK, project_id, task_id)
    return jsonify({"success": True})


@api.route("/api/projects/<project_id>/tasks", methods=["GET"])
@require_auth("tasks:read", project_arg="project_id")
def api_list_tasks(project_id):
    return _list(BoardKind.TASK, project_id)


@api.route("/api/projects/<project_id>/tasks", methods=["POST"])
@require_auth("tasks:write", project_arg="project_id")
def api_create_task(project_id):
    return _create(BoardKind.TASK, project_id)


@api.route("/api/projects/<project_id>/tasks/reorder", methods=["PUT"])
@require_auth("tasks:write", project_arg="project_id")
def api_reorder_tasks(project_id):
    return _reorder(BoardKind.TASK, project_id, "task_id")


@api.route("/api/projects/<project_id>/stories", methods=["GET"])
@require_auth("tasks:read", project_arg="project_id")
def api_list_stories(project_id):
    return _list(BoardKind.STORY, project_id)


@api.route("/api/projects/<project_id>/stories", methods=["POST"])
@require_auth("tasks:write", project_arg="project_id")
def api_create_story(project_id):
    return _create(BoardKind.STORY, project_id)


@api.route("/api/projects/<project_id>/stories/reorder", methods=["PUT"])
@require_auth("tasks:write", project_arg="project_id")
def api_reorder_stories(project_id):
    return _reorder(BoardKind.STORY, project_id, "story_id")


@api.route("/api/projects/<project_id>/stories/<story_id>", methods=["PUT"])
@require_auth("tasks:write", project_arg="project_id")
def api_update_story(project_id, story_id):
    return jsonify(_board().update_item(BoardKind.STORY, project_id, story_id, _body()).to_dict())


@api.route("/api/projects/<project_id>/stories/<story_id>", methods=["DELETE"])
@require_auth("tasks:delete", project_arg="project_id")
def api_delete_story(project_id, story_id):
    _board().delete_item(BoardKind.STORY, project_id, story_id)
    return jsonify({"success": True})


# ── Internal project finances ────────────────────────────────────────────────


@api.route("/api/internal-projects/<project_id>/transactions", methods=["GET"])
@require_auth("transactions:read", project_arg="project_id")
def api_list_transactions(project_id):
    if not _store().get_project(project_id, internal=True):
        raise NotFoundError("Internal project not found")
    return jsonify(_store().list_transactions(project_id))


@api.route("/api/internal-projects/<project_id>/transactions", methods=["POST"])
@require_auth("transactions:write", project_arg="project_id")
def api_create_transaction(project_id):
    if not _store().get_project(project_id, internal=True):
        raise NotFoundError("Internal project not found")
    data = _body()
    try:
        amount = float(data.get("amount"))
    except (TypeError, ValueError):
        raise ValidationError("amount must be a number")
    if not math.isfinite(amount):
        raise ValidationError("amount must be a finite number")
    date = data.get("date") or datetime.now().astimezone().isoformat()
    record = _store().create_transaction({
        "internal_project_id": project_id,
        "type": TransactionType.parse(data.get("type")).value,
        "category": data.get("category") or "",
        "amount": amount,
        "description": data.get("description") or "",
        "date": date,
        "invoice_number": data.get("invoice_number"),
        "payment_method": data.get("payment_method"),
        "notes": data.get("notes"),
    })
    return jsonify(record), 201


# ── App factory ──────────────────────────────────────────────────────────────


def create_app(config: Optional[Config] = None, store: Optional[CrmStore] = None) -> Flask:
    """Build the Flask app. Fails fast with ConfigError when the JWT secret is missing."""
    config = (config or Config.load()).validate()
    store = store or CrmStore(config.db_path)

    app = Flask(__name__)
    app.extensions["huntly"] = {
        "config": config,
        "store": store,
        "gate": AuthGate(store, config),
        "board": KanbanBoard(store),
    }
    app.register_blueprint(api)
    return app


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Huntly CRM Server")
    parser.add_argument("--config", help="Path to config.yaml (overrides HUNTLY_CONFIG)")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to huntly.db (overrides HUNTLY_DB)")
    args = parser.parse_args()

    cfg = Config.load(args.config)
    if args.db:
        cfg.db_path = args.db
        cfg.resolve_paths()
    logging.basicConfig(
        level=getattr(logging, str(cfg.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = create_app(cfg)
    host = args.host or cfg.host
    port = args.port or cfg.port
    logger.info(f"Huntly CRM listening on http://{host}:{port} (db: {cfg.db_path})")
    app.run(host=host, port=port, debug=False, threaded=True)
