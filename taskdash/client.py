"""
Realtime board client.

Keeps a local board in step with the server's event stream and applies
drag-and-drop moves optimistically:

    begin_move  → the card shows in its new column right away (pending)
    confirm     → server accepted; the returned task replaces the local one
    rollback    → server refused or was unreachable; the card snaps back

Connection status is exposed as BoardClient.connected. A dropped stream
is retried with backoff: 3s → 4.5s → … → 30s max.
"""
import dataclasses
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

import requests

from .document import TaskDocument
from .errors import TransportError, ValidationError
from .messages import (
    InitMessage,
    PingMessage,
    PongMessage,
    ServerMessage,
    UpdateMessage,
    parse_server_message,
)
from .schema import Snapshot, Task, TaskStatus

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 3.0
MAX_RECONNECT_DELAY = 30.0
PING_INTERVAL = 30.0
REQUEST_TIMEOUT = 5


class OptimisticBoard:
    """Last confirmed snapshot plus locally pending moves."""

    def __init__(self, snapshot: Optional[Snapshot] = None):
        self._lock = threading.Lock()
        self.confirmed = snapshot
        self.pending: Dict[str, TaskStatus] = {}

    def apply_snapshot(self, snapshot: Snapshot) -> None:
        with self._lock:
            self.confirmed = snapshot

    def begin_move(self, task_id: str, new_status: TaskStatus) -> bool:
        """Mark a move as pending. False if the task is not on the board."""
        with self._lock:
            if self.confirmed is None or self.confirmed.find(task_id) is None:
                return False
            self.pending[task_id] = new_status
            return True

    def confirm(self, task: Task) -> None:
        """Server accepted the move; adopt its version of the task."""
        with self._lock:
            self.pending.pop(task.id, None)
            if self.confirmed is None:
                return
            tasks = [
                dataclasses.replace(t, status=task.status, updated_at=task.updated_at)
                if t.id == task.id else t
                for t in self.confirmed.tasks
            ]
            self.confirmed = dataclasses.replace(self.confirmed, tasks=tasks)

    def rollback(self, task_id: str) -> None:
        with self._lock:
            self.pending.pop(task_id, None)

    def is_pending(self, task_id: str) -> bool:
        with self._lock:
            return task_id in self.pending

    def tasks(self) -> List[Task]:
        """Confirmed tasks with pending moves applied, by position."""
        with self._lock:
            if self.confirmed is None:
                return []
            result = []
            for t in self.confirmed.tasks:
                status = self.pending.get(t.id)
                result.append(dataclasses.replace(t, status=status) if status else t)
        return sorted(result, key=lambda t: t.position)

    def columns(self) -> Dict[TaskStatus, List[Task]]:
        """Tasks grouped into board columns."""
        cols: Dict[TaskStatus, List[Task]] = {s: [] for s in TaskStatus}
        for t in self.tasks():
            cols[t.status].append(t)
        return cols


# ── Event stream parsing ─────────────────────────────────────────────────────

def iter_events(lines: Iterable[str]) -> Iterator[ServerMessage]:
    """
    Parse Server-Sent Event lines into messages.

    Comment lines (": keep-alive") are skipped; a blank line ends an event.
    Raises ValidationError for a malformed event.
    """
    data: List[str] = []
    for line in lines:
        if line is None:
            continue
        if isinstance(line, bytes):
            line = line.decode("utf-8")
        if line == "":
            if data:
                raw = "\n".join(data)
                data = []
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError as e:
                    raise ValidationError(
                        "Invalid message", [{"path": "data", "message": str(e)}]
                    ) from e
                yield parse_server_message(payload)
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data.append(value)
        # "event:" duplicates the payload's "type"; "id:"/"retry:" are unused


# ── Client ───────────────────────────────────────────────────────────────────

class BoardClient:
    """Connects to one project's board over HTTP + event stream."""

    def __init__(
        self,
        base_url: str,
        project_slug: str,
        session: Optional[requests.Session] = None,
        reconnect_delay: float = RECONNECT_DELAY,
        max_reconnect_delay: float = MAX_RECONNECT_DELAY,
        ping_interval: float = PING_INTERVAL,
    ):
        self.base_url = base_url.rstrip("/")
        self.project_slug = project_slug
        self.session = session or requests.Session()
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.ping_interval = ping_interval

        self.board = OptimisticBoard()
        self.project_id: Optional[str] = None
        self.subscription_id: Optional[str] = None
        self.connected = False
        self.last_pong = None

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # ── Requests ─────────────────────────────────────────────────────────────

    def fetch_board(self) -> Snapshot:
        """Load the current board over plain HTTP."""
        try:
            r = self.session.get(
                self._url(f"/projects/{self.project_slug}/board"), timeout=REQUEST_TIMEOUT
            )
            r.raise_for_status()
            body = r.json()
        except (requests.RequestException, ValueError) as e:
            raise TransportError(f"Cannot load board {self.project_slug}: {e}") from e
        self.project_id = body["project"]["id"]
        snapshot = Snapshot.from_dict(body["snapshot"])
        self.board.apply_snapshot(snapshot)
        return snapshot

    def move(self, task_id: str, new_status: TaskStatus) -> bool:
        """
        Move a task optimistically.

        Returns True if the server accepted the move; on any failure the
        local board is rolled back and False is returned.
        """
        if self.project_id is None:
            self.fetch_board()
        if not self.board.begin_move(task_id, new_status):
            logger.warning(f"Task {task_id} is not on the board")
            return False

        try:
            r = self.session.put(
                self._url(f"/tasks/{task_id}/move"),
                json={"newStatus": new_status.value, "projectId": self.project_id},
                timeout=REQUEST_TIMEOUT,
            )
            r.raise_for_status()
            task = Task.from_dict(r.json()["task"])
        except (requests.RequestException, KeyError, ValueError) as e:
            logger.warning(f"Move of {task_id} failed, rolling back: {e}")
            self.board.rollback(task_id)
            return False

        self.board.confirm(task)
        return True

    def ping(self) -> bool:
        """Send a heartbeat on the current subscription."""
        if not self.subscription_id:
            return False
        try:
            r = self.session.post(
                self._url(f"/projects/{self.project_slug}/events/{self.subscription_id}"),
                json=PingMessage().to_dict(),
                timeout=REQUEST_TIMEOUT,
            )
            return r.ok
        except requests.RequestException as e:
            logger.debug(f"Ping failed: {e}")
            return False

    # ── Stream ───────────────────────────────────────────────────────────────

    def handle_message(self, message: ServerMessage) -> None:
        if isinstance(message, InitMessage):
            self.subscription_id = message.subscription_id
            self.board.apply_snapshot(message.snapshot)
        elif isinstance(message, UpdateMessage):
            self.board.apply_snapshot(message.snapshot)
        elif isinstance(message, PongMessage):
            self.last_pong = message.timestamp
        else:
            raise ValidationError(
                "Invalid message", [{"path": "type", "message": f"Unhandled: {message!r}"}]
            )

    def listen(self, on_message: Optional[Callable[[ServerMessage], Any]] = None) -> None:
        """Consume the event stream until close(), reconnecting on failure."""
        delay = self.reconnect_delay
        url = self._url(f"/projects/{self.project_slug}/events")

        while not self._stop.is_set():
            try:
                with self.session.get(
                    url, stream=True, timeout=(REQUEST_TIMEOUT, self.ping_interval * 3)
                ) as r:
                    r.raise_for_status()
                    self.connected = True
                    delay = self.reconnect_delay
                    logger.info(f"Connected to {url}")
                    for message in iter_events(r.iter_lines(decode_unicode=True)):
                        self.handle_message(message)
                        if on_message:
                            on_message(message)
                        if self._stop.is_set():
                            break
            except (requests.RequestException, ValidationError) as e:
                logger.warning(f"Event stream error: {e}")
            finally:
                self.connected = False
                self.subscription_id = None

            if self._stop.wait(delay):
                break
            logger.info(f"Reconnecting to {url}...")
            delay = min(delay * 1.5, self.max_reconnect_delay)

    def _ping_loop(self) -> None:
        while not self._stop.wait(self.ping_interval):
            if self.connected:
                self.ping()

    def start(self, on_message: Optional[Callable[[ServerMessage], Any]] = None) -> None:
        """Run the stream listener and heartbeat in background threads."""
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self.listen, args=(on_message,), name="board-stream", daemon=True),
            threading.Thread(target=self._ping_loop, name="board-ping", daemon=True),
        ]
        for t in self._threads:
            t.start()

    def close(self) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=1)
        self._threads = []
        self.session.close()


def push_document(
    base_url: str,
    project_slug: str,
    path,
    session: Optional[requests.Session] = None,
) -> Dict[str, Any]:
    """POST a tasks.json file to a project's webhook. Returns the response body."""
    data = TaskDocument(Path(path)).read()
    http = session or requests
    try:
        r = http.post(
            f"{base_url.rstrip('/')}/webhook/{project_slug}", json=data, timeout=REQUEST_TIMEOUT
        )
    except requests.RequestException as e:
        raise TransportError(f"Cannot reach {base_url}: {e}") from e
    try:
        body = r.json()
    except ValueError:
        body = {}
    if r.status_code == 400:
        raise ValidationError(body.get("error", "Invalid payload"), body.get("details"))
    if not r.ok:
        raise TransportError(f"Webhook returned {r.status_code}: {body.get('error', r.text)}")
    return body
