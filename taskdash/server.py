#!/usr/bin/env python3
"""
Task Dashboard Server
---------------------
JSON API + realtime event stream backed by the SQLite task store.
Optionally mirrors one project to a tasks.json file on disk.

Usage:
    taskdash serve                              # webhook-only
    taskdash serve --tasks-file ./tasks.json    # also watch a local file
    taskdash push my-project-1a2b3c4d tasks.json
    taskdash init ./tasks.json

API:
    POST /webhook/<slug>            → full sync: { success, synced, deleted }
    PUT  /tasks/<taskId>/move       → body { newStatus, projectId }
    POST /projects/create           → body { name, description? }
    GET  /projects?search=&limit=   → { success, projects, count }
    GET  /projects/<slug>/board     → { success, project, snapshot }
    GET  /projects/<slug>/events    → text/event-stream (init, update, pong)
    POST /projects/<slug>/events/<subscriptionId>
                                    → body { type: ping } | { type: move, taskId, newStatus }
    GET  /health
"""
import argparse
import logging
import sys
from typing import Any, Dict, Optional

from flask import Flask, Response, jsonify, request
from werkzeug.exceptions import HTTPException

from .client import push_document
from .config import Config
from .document import TaskDocument
from .engine import SyncEngine
from .errors import ConfigError, NotFoundError, StorageError, TaskdashError, ValidationError
from .hub import QueueSubscriber, SubscriberHub
from .messages import MoveMessage, PingMessage, encode_event, parse_client_message
from .schema import Project
from .sources import FileWatchSource, WebhookSource
from .store import TaskStore
from .validation import validate_move, validate_project

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def _json_body() -> Any:
    data = request.get_json(force=True, silent=True)
    if data is None:
        raise ValidationError("Invalid request", [{"path": "", "message": "Body must be JSON"}])
    return data


def _parse_limit(raw: Optional[str]) -> int:
    if raw in (None, ""):
        return DEFAULT_LIMIT
    try:
        limit = int(raw)
    except ValueError:
        raise ValidationError(
            "Invalid request", [{"path": "limit", "message": f"Expected integer, got '{raw}'"}]
        )
    return max(1, min(limit, MAX_LIMIT))


def create_app(
    cfg: Optional[Config] = None,
    store: Optional[TaskStore] = None,
    engine: Optional[SyncEngine] = None,
) -> Flask:
    """Build the Flask app around one store, engine and webhook source."""
    cfg = cfg or Config()
    if store is None:
        store = engine.store if engine else TaskStore(cfg.db_path)
    if engine is None:
        hub = SubscriberHub(heartbeat_timeout=cfg.heartbeat_timeout)
        engine = SyncEngine(store, hub)
    webhook = WebhookSource(store)
    engine.attach(webhook)

    app = Flask(__name__)
    app.extensions["taskdash"] = {
        "config": cfg,
        "store": store,
        "engine": engine,
        "webhook": webhook,
    }

    def project_or_404(slug: str) -> Project:
        project = store.get_project_by_slug(slug)
        if project is None:
            raise NotFoundError("project", slug)
        return project

    # ── Errors ───────────────────────────────────────────────────────────────

    @app.errorhandler(ValidationError)
    def handle_validation(e: ValidationError):
        return jsonify(e.to_dict()), 400

    @app.errorhandler(NotFoundError)
    def handle_not_found(e: NotFoundError):
        return jsonify({"error": f"{e.kind.capitalize()} not found"}), 404

    @app.errorhandler(StorageError)
    def handle_storage(e: StorageError):
        logger.error(f"{request.method} {request.path} storage failure: {e}")
        return jsonify({"error": "Internal server error"}), 500

    @app.errorhandler(Exception)
    def handle_unexpected(e: Exception):
        if isinstance(e, HTTPException):
            return jsonify({"error": e.description}), e.code
        logger.error(f"{request.method} {request.path} failed: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500

    # ── Sync ─────────────────────────────────────────────────────────────────

    @app.route("/webhook/<project_slug>", methods=["POST"])
    def webhook_sync(project_slug):
        result = webhook.receive(project_slug, _json_body())
        return jsonify(result.to_dict())

    @app.route("/tasks/<task_id>/move", methods=["PUT"])
    def move_task(task_id):
        new_status, project_id = validate_move(_json_body())
        store.require_project(project_id)
        task = engine.apply_move(project_id, task_id, new_status)
        return jsonify({"success": True, "task": task.to_dict()})

    # ── Projects ─────────────────────────────────────────────────────────────

    @app.route("/projects/create", methods=["POST"])
    def create_project():
        name, description = validate_project(_json_body())
        project = store.create_project(name, description)
        return jsonify({
            "success": True,
            "project": project.to_dict(),
            "url": f"{cfg.app_url.rstrip('/')}/{project.slug}",
        })

    @app.route("/projects", methods=["GET"])
    def list_projects():
        search = request.args.get("search", "").strip()
        limit = _parse_limit(request.args.get("limit"))
        projects = store.list_projects(search=search, limit=limit)
        return jsonify({
            "success": True,
            "projects": [p.to_dict() for p in projects],
            "count": len(projects),
        })

    @app.route("/projects/<project_slug>/board", methods=["GET"])
    def project_board(project_slug):
        project = project_or_404(project_slug)
        return jsonify({
            "success": True,
            "project": project.to_dict(),
            "snapshot": engine.snapshot(project.id).to_dict(),
        })

    # ── Realtime ─────────────────────────────────────────────────────────────

    @app.route("/projects/<project_slug>/events", methods=["GET"])
    def event_stream(project_slug):
        project = project_or_404(project_slug)
        subscriber = QueueSubscriber(cfg.subscriber_queue_size)
        handle = engine.subscribe(project.id, subscriber)

        def stream():
            try:
                while not subscriber.closed:
                    message = subscriber.next(timeout=cfg.heartbeat_interval)
                    if message is None:
                        if subscriber.closed:
                            break
                        yield ": keep-alive\n\n"
                        continue
                    yield encode_event(message)
            finally:
                engine.unsubscribe(handle)

        return Response(
            stream(),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.route("/projects/<project_slug>/events/<subscription_id>", methods=["POST"])
    def client_message(project_slug, subscription_id):
        project = project_or_404(project_slug)
        handle = engine.hub.get(subscription_id)
        if handle is None or handle.project_id != project.id:
            raise NotFoundError("subscription", subscription_id)

        message = parse_client_message(_json_body())
        if isinstance(message, PingMessage):
            engine.hub.pong(handle)
            return jsonify({"success": True}), 202
        if isinstance(message, MoveMessage):
            engine.hub.touch(handle)
            task = engine.apply_move(project.id, message.task_id, message.new_status)
            return jsonify({"success": True, "task": task.to_dict()})
        raise ValidationError(
            "Invalid message", [{"path": "type", "message": f"Unhandled message: {message.type}"}]
        )

    @app.route("/health")
    def health():
        return jsonify({
            "status": "ok",
            "db": store.db_path,
            "projects": store.count_projects(),
            "subscribers": engine.hub.count(),
        })

    return app


# ── File-backed project ──────────────────────────────────────────────────────

def bind_tasks_file(app: Flask) -> FileWatchSource:
    """Bind the configured tasks.json to its project and import its content."""
    services = app.extensions["taskdash"]
    cfg: Config = services["config"]
    store: TaskStore = services["store"]
    engine: SyncEngine = services["engine"]

    project = store.ensure_project(cfg.tasks_file_slug, cfg.tasks_file_name)
    source = FileWatchSource(TaskDocument(cfg.tasks_file), project.id, cfg.debounce_ms)
    engine.bind_document(source)
    source.start(cfg.tasks_file_name)
    try:
        result = engine.load_document(source)
        logger.info(f"Imported {result.synced} tasks from {cfg.tasks_file}")
    except ValidationError as e:
        logger.warning(f"{cfg.tasks_file} is invalid, starting empty: {e.details}")
    return source


# ── Main ─────────────────────────────────────────────────────────────────────

def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [taskdash] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def cmd_serve(args) -> int:
    cfg = Config.load(args.config)
    if args.host:
        cfg.host = args.host
    if args.port:
        cfg.port = args.port
    if args.db:
        cfg.db_path = args.db
    if args.tasks_file:
        cfg.tasks_file = args.tasks_file
    cfg.resolve_paths()
    _setup_logging(cfg.log_level)

    app = create_app(cfg)
    engine: SyncEngine = app.extensions["taskdash"]["engine"]
    source = bind_tasks_file(app) if cfg.tasks_file else None
    engine.hub.start()

    print(f"""
╔═══════════════════════════════════════════╗
║  Task Dashboard Server                    ║
╠═══════════════════════════════════════════╣
║  URL:   http://{cfg.host}:{cfg.port:<22}║
║  DB:    {cfg.db_path[-34:]:<34}║
║  File:  {(cfg.tasks_file or 'off')[-34:]:<34}║
╚═══════════════════════════════════════════╝
""")

    try:
        app.run(host=cfg.host, port=cfg.port, debug=False, threaded=True)
    finally:
        if source:
            source.stop()
        engine.hub.stop()
    return 0


def cmd_push(args) -> int:
    try:
        result: Dict[str, Any] = push_document(args.url, args.slug, args.file)
    except TaskdashError as e:
        print(f"Push failed: {e}", file=sys.stderr)
        return 1
    print(f"Synced {result.get('synced', 0)} tasks, deleted {result.get('deleted', 0)}")
    return 0


def cmd_init(args) -> int:
    document = TaskDocument(args.file)
    if document.ensure(args.name):
        print(f"✓ Created {document.path}")
    else:
        print(f"{document.path} already exists")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Real-time task dashboard")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the dashboard server")
    serve.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    serve.add_argument("--port", type=int)
    serve.add_argument("--db", help="Path to the SQLite database")
    serve.add_argument("--tasks-file", help="Watch and mirror this tasks.json")
    serve.add_argument("--config", help="Path to taskdash.yaml")
    serve.set_defaults(func=cmd_serve)

    push = sub.add_parser("push", help="Send a tasks.json to a project's webhook")
    push.add_argument("slug")
    push.add_argument("file", nargs="?", default="tasks.json")
    push.add_argument("--url", default="http://localhost:3050")
    push.set_defaults(func=cmd_push)

    init = sub.add_parser("init", help="Create an empty tasks.json")
    init.add_argument("file", nargs="?", default="tasks.json")
    init.add_argument("--name", default="My Project")
    init.set_defaults(func=cmd_init)

    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
