#!/usr/bin/env python3
"""
DevPlanner Server
-----------------
JSON API over a Markdown Kanban workspace, plus a WebSocket event stream.

Usage:
    devplanner-server --workspace ~/planner
    DEVPLANNER_WORKSPACE=~/planner devplanner-server --port 17103 --ws-port 17104

API:
    GET    /api/projects                              → { projects }
    POST   /api/projects                              → { project }
    GET    /api/projects/<p>                          → { project }
    PATCH  /api/projects/<p>                          → { project }
    DELETE /api/projects/<p>[?permanent=true]         → archive (or delete)
    GET    /api/projects/<p>/cards[?lane&since&staleDays]
    POST   /api/projects/<p>/cards                    → { card }
    GET    /api/projects/<p>/cards/<c>                → { card }
    PATCH  /api/projects/<p>/cards/<c>                → { card }
    DELETE /api/projects/<p>/cards/<c>[?hard=true]    → archive (or delete)
    PATCH  /api/projects/<p>/cards/<c>/move           → { card }
    POST   /api/projects/<p>/cards/<c>/tasks          → { task }
    PATCH  /api/projects/<p>/cards/<c>/tasks/<i>      → { task }
    PATCH  /api/projects/<p>/lanes/<l>/order          → { lane, order }
    GET    /api/projects/<p>/history[?limit]          → { events }
    GET    /api/projects/<p>/stats                    → completions, WIP, backlog, blocked
    GET    /api/projects/<p>/files                    → { files }
    POST   /api/projects/<p>/files                    → { file }  (multipart: file, description)
    GET    /api/projects/<p>/files/<f>                → { file }
    PATCH  /api/projects/<p>/files/<f>                → { file }  (description)
    DELETE /api/projects/<p>/files/<f>                → { associatedCards }
    GET    /api/projects/<p>/files/<f>/download       → raw bytes
    GET    /api/projects/<p>/files/<f>/content        → { content }  (text files only)
    POST   /api/projects/<p>/files/<f>/associate      → { file }  (cardSlug)
    DELETE /api/projects/<p>/files/<f>/associate/<c>  → { file }
    GET    /api/projects/<p>/cards/<c>/files          → { files }
    POST   /api/projects/<p>/cards/<c>/files          → { file }  (filename, content)
    GET    /api/preferences, PATCH /api/preferences
    GET    /api/health

WebSocket: ws://<host>:<ws-port>/api/ws
"""
import argparse
import logging
import sys
from typing import Any, Dict

from flask import Flask, jsonify, request, send_file

from .config import Config
from .errors import AttachmentNotFoundError, ConflictError, ConfigError, NotFoundError, ValidationError
from .runtime import Runtime

logger = logging.getLogger(__name__)


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _flag(name: str) -> bool:
    return request.args.get(name, "").lower() in ("1", "true", "yes")


def create_app(runtime: Runtime) -> Flask:
    app = Flask(__name__)
    board = runtime.board
    run = runtime.run

    # ── Errors ───────────────────────────────────────────────

    @app.errorhandler(NotFoundError)
    def handle_not_found(e):
        return jsonify({"error": "not_found", "message": str(e)}), 404

    @app.errorhandler(ValidationError)
    @app.errorhandler(ConflictError)
    def handle_bad_request(e):
        return jsonify({"error": "bad_request", "message": str(e)}), 400

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        code = getattr(e, "code", None)
        if isinstance(code, int) and 400 <= code < 500:
            return jsonify({"error": "bad_request" if code != 404 else "not_found",
                            "message": getattr(e, "description", str(e))}), code
        logger.exception(f"Unhandled error on {request.method} {request.path}")
        return jsonify({"error": "internal_server_error", "message": str(e)}), 500

    # ── Projects ─────────────────────────────────────────────

    @app.route("/api/projects", methods=["GET"])
    def api_list_projects():
        projects = run(board.list_projects(include_archived=_flag("includeArchived")))
        return jsonify({"projects": [p.to_dict() for p in projects]})

    @app.route("/api/projects", methods=["POST"])
    def api_create_project():
        data = _body()
        project = run(board.create_project(data.get("name"), data.get("description"), data.get("prefix")))
        return jsonify({"project": project.to_dict()}), 201

    @app.route("/api/projects/<project>", methods=["GET"])
    def api_get_project(project):
        config = run(board.get_project(project))
        return jsonify({"project": {"slug": project, **config.to_dict()}})

    @app.route("/api/projects/<project>", methods=["PATCH"])
    def api_update_project(project):
        config = run(board.update_project(project, _body()))
        return jsonify({"project": {"slug": project, **config.to_dict()}})

    @app.route("/api/projects/<project>", methods=["DELETE"])
    def api_delete_project(project):
        if _flag("permanent"):
            run(board.delete_project(project))
            return jsonify({"success": True, "deleted": project})
        config = run(board.archive_project(project))
        return jsonify({"project": {"slug": project, **config.to_dict()}})

    # ── Cards ────────────────────────────────────────────────

    @app.route("/api/projects/<project>/cards", methods=["GET"])
    def api_list_cards(project):
        stale_days = request.args.get("staleDays")
        if stale_days is not None:
            try:
                stale_days = float(stale_days)
            except ValueError:
                raise ValidationError(f"Invalid staleDays: {stale_days}")
        cards = run(board.list_cards(
            project,
            lane=request.args.get("lane") or None,
            since=request.args.get("since") or None,
            stale_days=stale_days,
        ))
        return jsonify({"cards": [c.to_dict() for c in cards], "count": len(cards)})

    @app.route("/api/projects/<project>/cards", methods=["POST"])
    def api_create_card(project):
        card = run(board.create_card(project, _body()))
        return jsonify({"card": card.to_dict()}), 201

    @app.route("/api/projects/<project>/cards/<card>", methods=["GET"])
    def api_get_card(project, card):
        return jsonify({"card": run(board.get_card(project, card)).to_dict()})

    @app.route("/api/projects/<project>/cards/<card>", methods=["PATCH"])
    def api_update_card(project, card):
        updated = run(board.update_card(project, card, _body()))
        return jsonify({"card": updated.to_dict()})

    @app.route("/api/projects/<project>/cards/<card>", methods=["DELETE"])
    def api_delete_card(project, card):
        if _flag("hard"):
            run(board.delete_card(project, card))
            return jsonify({"success": True, "deleted": card})
        archived = run(board.archive_card(project, card))
        return jsonify({"card": archived.to_dict()})

    @app.route("/api/projects/<project>/cards/<card>/move", methods=["PATCH"])
    def api_move_card(project, card):
        data = _body()
        lane = data.get("lane")
        if not lane:
            raise ValidationError("lane is required")
        moved = run(board.move_card(project, card, lane, data.get("position")))
        return jsonify({"card": moved.to_dict()})

    # ── Tasks ────────────────────────────────────────────────

    @app.route("/api/projects/<project>/cards/<card>/tasks", methods=["POST"])
    def api_add_task(project, card):
        task = run(board.add_task(project, card, _body().get("text")))
        return jsonify({"task": task.to_dict()}), 201

    @app.route("/api/projects/<project>/cards/<card>/tasks/<int:index>", methods=["PATCH"])
    def api_toggle_task(project, card, index):
        checked = _body().get("checked")
        if not isinstance(checked, bool):
            raise ValidationError("checked must be a boolean")
        task = run(board.set_task_checked(project, card, index, checked))
        return jsonify({"task": task.to_dict()})

    # ── Lanes ────────────────────────────────────────────────

    @app.route("/api/projects/<project>/lanes/<lane>/order", methods=["PATCH"])
    def api_reorder_lane(project, lane):
        order = run(board.reorder_cards(project, lane, _body().get("order")))
        return jsonify({"lane": lane, "order": order})

    # ── Files ────────────────────────────────────────────────

    @app.route("/api/projects/<project>/files", methods=["GET"])
    def api_list_files(project):
        files = run(board.list_files(project))
        return jsonify({"files": [f.to_dict() for f in files]})

    @app.route("/api/projects/<project>/files", methods=["POST"])
    def api_upload_file(project):
        upload = request.files.get("file")
        if upload is None or not upload.filename:
            raise ValidationError("file is required")
        entry = run(board.add_file(project, upload.filename, upload.read(),
                                   request.form.get("description", "")))
        return jsonify({"file": entry.to_dict()}), 201

    @app.route("/api/projects/<project>/files/<filename>", methods=["GET"])
    def api_get_file(project, filename):
        return jsonify({"file": run(board.get_file(project, filename)).to_dict()})

    @app.route("/api/projects/<project>/files/<filename>", methods=["PATCH"])
    def api_update_file(project, filename):
        entry = run(board.update_file_description(project, filename, _body().get("description")))
        return jsonify({"file": entry.to_dict()})

    @app.route("/api/projects/<project>/files/<filename>", methods=["DELETE"])
    def api_delete_file(project, filename):
        associated = run(board.delete_file(project, filename))
        return jsonify({"success": True, "deleted": filename, "associatedCards": associated})

    @app.route("/api/projects/<project>/files/<filename>/download", methods=["GET"])
    def api_download_file(project, filename):
        entry = run(board.get_file(project, filename))
        path = run(board.file_path(project, filename))
        if not path.is_file():
            raise AttachmentNotFoundError(filename)
        return send_file(path, mimetype=entry.mime_type, as_attachment=True,
                         download_name=entry.original_name)

    @app.route("/api/projects/<project>/files/<filename>/content", methods=["GET"])
    def api_file_content(project, filename):
        content = run(board.get_file_content(project, filename))
        return jsonify({"filename": filename, "content": content})

    @app.route("/api/projects/<project>/files/<filename>/associate", methods=["POST"])
    def api_associate_file(project, filename):
        card_slug = _body().get("cardSlug")
        if not card_slug:
            raise ValidationError("cardSlug is required")
        entry = run(board.associate_file(project, filename, card_slug))
        return jsonify({"file": entry.to_dict()})

    @app.route("/api/projects/<project>/files/<filename>/associate/<card>", methods=["DELETE"])
    def api_disassociate_file(project, filename, card):
        entry = run(board.disassociate_file(project, filename, card))
        return jsonify({"file": entry.to_dict()})

    @app.route("/api/projects/<project>/cards/<card>/files", methods=["GET"])
    def api_card_files(project, card):
        files = run(board.list_card_files(project, card))
        return jsonify({"files": [f.to_dict() for f in files]})

    @app.route("/api/projects/<project>/cards/<card>/files", methods=["POST"])
    def api_add_card_file(project, card):
        data = _body()
        entry = run(board.add_file_to_card(project, card, data.get("filename"), data.get("content"),
                                           data.get("description") or ""))
        return jsonify({"file": entry.to_dict()}), 201

    # ── Stats ────────────────────────────────────────────────

    @app.route("/api/projects/<project>/stats", methods=["GET"])
    def api_stats(project):
        return jsonify(run(board.get_stats(project)))

    # ── History / preferences ────────────────────────────────

    @app.route("/api/projects/<project>/history", methods=["GET"])
    def api_history(project):
        limit = request.args.get("limit", 10, type=int)
        events = run(board.get_history(project, limit))
        return jsonify({"events": [e.to_dict() for e in events]})

    @app.route("/api/preferences", methods=["GET"])
    def api_get_preferences():
        return jsonify(run(board.get_preferences()))

    @app.route("/api/preferences", methods=["PATCH"])
    def api_update_preferences():
        return jsonify(run(board.update_preferences(_body())))

    @app.route("/api/health")
    def health():
        return jsonify({
            "status": "ok",
            "workspace": str(runtime.config.workspace_path),
            "clients": runtime.broadcaster.client_count,
        })

    return app


# ── Main ─────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(description="DevPlanner Server")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, help="REST API port (default 17103)")
    parser.add_argument("--ws-port", type=int, help="WebSocket port (default 17104)")
    parser.add_argument("--workspace", help="Workspace directory (overrides DEVPLANNER_WORKSPACE)")
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("--no-watch", action="store_true", help="Don't watch the workspace for disk edits")
    args = parser.parse_args(argv)

    try:
        cfg = Config.load(args.config)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    if args.host:
        cfg.host = args.host
    if args.port:
        cfg.port = args.port
    if args.ws_port:
        cfg.ws_port = args.ws_port
    if args.workspace:
        cfg.workspace = args.workspace
    if args.no_watch:
        cfg.watch = False

    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s [devplanner] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    try:
        cfg.validate()
    except ConfigError as e:
        logger.error(f"Config error: {e}")
        sys.exit(1)

    runtime = Runtime(cfg)
    runtime.start(serve_websockets=True, watch=cfg.watch)

    logger.info(f"DevPlanner API on http://{cfg.host}:{cfg.port} (workspace: {cfg.workspace_path})")
    try:
        create_app(runtime).run(host=cfg.host, port=cfg.port, debug=False, threaded=True)
    finally:
        runtime.stop()


if __name__ == "__main__":
    main()
