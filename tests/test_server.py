"""
Tests for the Flask API, the event stream and the CLI.
"""
import json
import uuid

import pytest

from conftest import sync_payload, task_dict
from taskdash.config import Config
from taskdash.document import TaskDocument
from taskdash.server import bind_tasks_file, create_app, main


@pytest.fixture
def cfg(tmp_path):
    return Config(
        db_path=str(tmp_path / "server.db"),
        app_url="http://dash.test",
        heartbeat_interval=0.05,
        heartbeat_timeout=5.0,
    )


@pytest.fixture
def app(cfg):
    app = create_app(cfg)
    app.testing = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def board(client):
    """A project with tasks A and B."""
    project = client.post("/projects/create", json={"name": "Server board"}).get_json()["project"]
    client.post(f"/webhook/{project['slug']}", json=sync_payload(task_dict("A"), task_dict("B")))
    return project


def read_events(stream, wanted, limit=50):
    """Pull SSE chunks until an event of type `wanted` arrives."""
    for _ in range(limit):
        chunk = next(stream).decode("utf-8")
        if chunk.startswith(f"event: {wanted}\n"):
            return json.loads(chunk.split("\n")[1][len("data: "):])
    raise AssertionError(f"no {wanted} event received")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Projects
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_project(client):
    resp = client.post("/projects/create", json={"name": "My Board", "description": "demo"})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["success"] is True
    assert body["project"]["slug"].startswith("my-board-")
    assert body["url"] == f"http://dash.test/{body['project']['slug']}"


def test_create_project_validation(client):
    resp = client.post("/projects/create", json={"name": "ab"})
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "Validation error"
    assert body["details"][0] == {"path": "name", "message": "Minimum 3 characters"}


def test_list_projects(client):
    for name in ("Alpha board", "Beta board", "Gamma"):
        client.post("/projects/create", json={"name": name})

    body = client.get("/projects?search=board").get_json()
    assert body["count"] == 2
    assert {p["name"] for p in body["projects"]} == {"Alpha board", "Beta board"}

    assert client.get("/projects?limit=1").get_json()["count"] == 1
    assert client.get("/projects?limit=lots").status_code == 400


def test_board(client, board):
    body = client.get(f"/projects/{board['slug']}/board").get_json()
    assert body["project"]["id"] == board["id"]
    assert [t["id"] for t in body["snapshot"]["tasks"]] == ["A", "B"]


def test_board_unknown(client):
    resp = client.get("/projects/nope/board")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Project not found"}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Webhook
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_webhook_sync(client, board):
    resp = client.post(f"/webhook/{board['slug']}", json=sync_payload(task_dict("B"), task_dict("C")))
    assert resp.status_code == 200
    assert resp.get_json() == {"success": True, "synced": 2, "deleted": 1}


def test_webhook_unknown_project(client):
    resp = client.post("/webhook/missing-1234abcd", json=sync_payload(task_dict("A")))
    assert resp.status_code == 404


def test_webhook_invalid_payload(client, board):
    resp = client.post(f"/webhook/{board['slug']}", json=sync_payload({"id": "X"}))
    assert resp.status_code == 400
    body = resp.get_json()
    assert body["error"] == "Invalid payload"
    assert "tasks.0.content" in [d["path"] for d in body["details"]]

    tasks = client.get(f"/projects/{board['slug']}/board").get_json()["snapshot"]["tasks"]
    assert [t["id"] for t in tasks] == ["A", "B"]


def test_webhook_non_json(client, board):
    resp = client.post(f"/webhook/{board['slug']}", data="not json", content_type="text/plain")
    assert resp.status_code == 400


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Moves
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_move(client, board):
    resp = client.put("/tasks/B/move", json={"newStatus": "completed", "projectId": board["id"]})
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["task"]["status"] == "completed"
    assert body["task"]["position"] == 1


def test_move_unknown_task(client, board):
    resp = client.put("/tasks/Z/move", json={"newStatus": "completed", "projectId": board["id"]})
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Task not found"}


def test_move_unknown_project(client, board):
    resp = client.put("/tasks/A/move", json={"newStatus": "completed", "projectId": str(uuid.uuid4())})
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Project not found"}


def test_move_invalid(client, board):
    resp = client.put("/tasks/A/move", json={"newStatus": "done", "projectId": "not-a-uuid"})
    assert resp.status_code == 400
    assert {d["path"] for d in resp.get_json()["details"]} == {"newStatus", "projectId"}


def test_unknown_route_is_json(client):
    resp = client.get("/nowhere")
    assert resp.status_code == 404
    assert "error" in resp.get_json()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Event stream
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_event_stream(app, client, board):
    resp = client.get(f"/projects/{board['slug']}/events")
    assert resp.status_code == 200
    assert resp.mimetype == "text/event-stream"
    stream = iter(resp.response)
    try:
        init = read_events(stream, "init")
        sub_id = init["subscriptionId"]
        assert [t["id"] for t in init["data"]["tasks"]] == ["A", "B"]

        events_url = f"/projects/{board['slug']}/events/{sub_id}"
        assert client.post(events_url, json={"type": "ping"}).status_code == 202
        assert read_events(stream, "pong")["type"] == "pong"

        moved = client.post(events_url, json={"type": "move", "taskId": "A", "newStatus": "in_progress"})
        assert moved.status_code == 200
        update = read_events(stream, "update")
        assert update["data"]["tasks"][0]["status"] == "in_progress"

        client.post(f"/webhook/{board['slug']}", json=sync_payload(task_dict("C")))
        update = read_events(stream, "update")
        assert [t["id"] for t in update["data"]["tasks"]] == ["C"]

        assert client.get("/health").get_json()["subscribers"] == 1
    finally:
        resp.close()
    assert client.get("/health").get_json()["subscribers"] == 0


def test_client_message_errors(client, board):
    resp = client.get(f"/projects/{board['slug']}/events")
    stream = iter(resp.response)
    try:
        sub_id = read_events(stream, "init")["subscriptionId"]
        events_url = f"/projects/{board['slug']}/events/{sub_id}"

        assert client.post(events_url, json={"type": "update"}).status_code == 400
        resp_move = client.post(events_url, json={"type": "move", "taskId": "Z", "newStatus": "completed"})
        assert resp_move.status_code == 404
        assert client.post(f"/projects/{board['slug']}/events/unknown", json={"type": "ping"}).status_code == 404
    finally:
        resp.close()


def test_event_stream_unknown_project(client):
    assert client.get("/projects/nope/events").status_code == 404


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Health, file-backed project, CLI
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_health(client, board, cfg):
    body = client.get("/health").get_json()
    assert body["status"] == "ok"
    assert body["db"] == cfg.db_path
    assert body["projects"] == 1


def test_tasks_file_binding(cfg, tmp_path):
    document = TaskDocument(tmp_path / "tasks.json")
    document.write(sync_payload(task_dict("A"), task_dict("B")))
    cfg.tasks_file = str(document.path)
    app = create_app(cfg)
    client = app.test_client()

    source = bind_tasks_file(app)
    try:
        board = client.get("/projects/local/board").get_json()
        assert [t["id"] for t in board["snapshot"]["tasks"]] == ["A", "B"]

        project_id = board["project"]["id"]
        client.put("/tasks/A/move", json={"newStatus": "completed", "projectId": project_id})
        assert document.read()["tasks"][0]["status"] == "completed"
    finally:
        source.stop()


def test_cli_init(tmp_path, capsys):
    path = tmp_path / "tasks.json"
    assert main(["init", str(path), "--name", "CLI board"]) == 0
    assert json.loads(path.read_text())["project"] == "CLI board"

    assert main(["init", str(path)]) == 0
    assert "already exists" in capsys.readouterr().out


def test_cli_push_missing_file(tmp_path, capsys):
    assert main(["push", "board-1", str(tmp_path / "missing.json")]) == 1
    assert "Push failed" in capsys.readouterr().err
