"""HTTP API over a workspace.

Endpoints:
- GET   /api/data                          all entities
- GET   /api/<kind>s?status=..&sort=..     filtered, sorted list of one kind
- POST  /api/projects|milestones|issues    create, 201 with the new entity
- PATCH /api/projects/<id>                 merge fields into a project
- PATCH /api/milestones/<project>/<title>  merge fields into a milestone
- PATCH /api/issues/<project>/<number>     merge fields into an issue
- GET   /health

Errors are returned as {"error": message} with 404 (not found), 400
(validation), 409 (already exists) or 500 (filesystem).
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, current_app, jsonify, request

from pillar import __version__, lib
from pillar.errors import AlreadyExists, NotFound, PillarError, StoreIOError, ValidationError
from pillar.models import entity_to_dict
from pillar.query import Criteria, group_entities
from pillar.store import Workspace, open_workspace

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000

ERROR_STATUS = (
    (NotFound, 404),
    (ValidationError, 400),
    (AlreadyExists, 409),
    (StoreIOError, 500),
)

CREATE_FIELDS = {
    "project": ("name", "id", "priority", "status", "description"),
    "milestone": ("project", "title", "target_date", "date", "status", "description"),
    "issue": ("project", "title", "priority", "status", "milestone", "tags", "description"),
}


def error_status(error: PillarError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(error, cls):
            return status
    return 500


def _workspace() -> Workspace:
    return current_app.config["PILLAR_WORKSPACE"]


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _check_fields(payload: Dict[str, Any], kind: str) -> None:
    unknown = sorted(set(payload) - set(CREATE_FIELDS[kind]))
    if unknown:
        raise ValidationError(f"Unknown {kind} field(s): {', '.join(unknown)}")


def create_app(start_dir: Optional[Path] = None, workspace: Optional[Workspace] = None) -> Flask:
    """Create the Flask app for one workspace.

    The workspace is resolved once here and shared by all requests.
    """
    app = Flask(__name__)
    app.config["PILLAR_WORKSPACE"] = workspace or open_workspace(start_dir)

    @app.errorhandler(PillarError)
    def handle_pillar_error(error: PillarError):
        status = error_status(error)
        if status >= 500:
            logger.error("Request failed: %s", error)
        return jsonify({"error": str(error)}), status

    @app.route("/api/data", methods=["GET"])
    def get_data():
        return jsonify(lib.get_all(_workspace()))

    @app.route("/api/<kind>s", methods=["GET"])
    def list_kind(kind: str):
        criteria = Criteria.build(
            project=request.args.getlist("project"),
            milestone=request.args.getlist("milestone"),
            status=request.args.getlist("status"),
            priority=request.args.getlist("priority"),
            tag=request.args.getlist("tag"),
            search=request.args.get("search"),
        )
        items = lib.list_entities(_workspace(), kind, criteria, request.args.get("sort"))
        group_by = request.args.get("group")
        if group_by:
            groups = group_entities(items, group_by)
            return jsonify(
                [
                    {"label": g.label, "items": [entity_to_dict(e) for e in g.items]}
                    for g in groups
                ]
            )
        return jsonify([entity_to_dict(e) for e in items])

    @app.route("/api/projects", methods=["POST"])
    def create_project():
        payload = _json_body()
        _check_fields(payload, "project")
        project = lib.create_project(
            _workspace(),
            payload.get("name"),
            project_id=payload.get("id"),
            priority=payload.get("priority"),
            status=payload.get("status"),
            description=payload.get("description"),
        )
        return jsonify(entity_to_dict(project)), 201

    @app.route("/api/milestones", methods=["POST"])
    def create_milestone():
        payload = _json_body()
        _check_fields(payload, "milestone")
        milestone = lib.create_milestone(
            _workspace(),
            payload.get("project") or "",
            payload.get("title"),
            target_date=payload.get("target_date") or payload.get("date"),
            status=payload.get("status"),
            description=payload.get("description"),
        )
        return jsonify(entity_to_dict(milestone)), 201

    @app.route("/api/issues", methods=["POST"])
    def create_issue():
        payload = _json_body()
        _check_fields(payload, "issue")
        issue = lib.create_issue(
            _workspace(),
            payload.get("project") or "",
            payload.get("title"),
            priority=payload.get("priority"),
            status=payload.get("status"),
            milestone=payload.get("milestone"),
            tags=payload.get("tags"),
            description=payload.get("description"),
        )
        return jsonify(entity_to_dict(issue)), 201

    @app.route("/api/projects/<project_id>", methods=["PATCH"])
    def update_project(project_id: str):
        project = lib.edit_project(_workspace(), project_id, _json_body())
        return jsonify(entity_to_dict(project))

    @app.route("/api/milestones/<project>/<path:title>", methods=["PATCH"])
    def update_milestone(project: str, title: str):
        milestone = lib.edit_milestone(_workspace(), project, title, _json_body())
        return jsonify(entity_to_dict(milestone))

    @app.route("/api/issues/<project>/<number>", methods=["PATCH"])
    def update_issue(project: str, number: str):
        issue = lib.edit_issue(
            _workspace(), project, lib.parse_issue_number_arg(number), _json_body()
        )
        return jsonify(entity_to_dict(issue))

    @app.route("/health", methods=["GET"])
    def health():
        ws = _workspace()
        return jsonify(
            {
                "status": "healthy",
                "version": __version__,
                "workspace": str(ws.root),
                "base_directory": str(ws.base_dir),
            }
        )

    return app


def serve(
    workspace: Workspace, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT, debug: bool = False
) -> None:
    app = create_app(workspace=workspace)
    logger.info("Starting Pillar API on http://%s:%s", host, port)
    app.run(host=host, port=port, debug=debug, threaded=True)
