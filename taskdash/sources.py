"""
Change sources: where externally-originated task lists come from.

Both variants produce a full snapshot on demand (read_snapshot) and
signal listeners when a new one becomes available (on_change):

    WebhookSource    push: the assistant POSTs the whole list
    FileWatchSource  watch: the assistant rewrites tasks.json on disk

Listeners are called as listener(project_id, snapshot); the sync engine
registers itself through SyncEngine.attach().
"""
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .document import DEFAULT_PROJECT_NAME, TaskDocument, encode, fingerprint
from .errors import NotFoundError, StorageError, TaskdashError, ValidationError
from .schema import Snapshot, SyncResult
from .store import TaskStore
from .validation import validate_sync_payload

logger = logging.getLogger(__name__)

Listener = Callable[[str, Snapshot], Any]


class SuppressToken:
    """
    "Ignore our own write" marker, tied to the content that was written.

    arm(fp) before writing the resource; the watcher calls consume(fp)
    with the fingerprint of what it reads. A match is our own echo (any
    number of notifications for it are swallowed). The first different
    content disarms the token and is treated as an external change, so a
    dropped or merged notification can never leave it swallowing one.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._fingerprint: Optional[str] = None

    def arm(self, fingerprint: str) -> None:
        with self._lock:
            self._fingerprint = fingerprint

    def disarm(self) -> None:
        with self._lock:
            self._fingerprint = None

    def consume(self, fingerprint: str) -> bool:
        """True if `fingerprint` is the content we wrote ourselves."""
        with self._lock:
            if self._fingerprint is None:
                return False
            if fingerprint == self._fingerprint:
                return True
            self._fingerprint = None
            return False

    @property
    def armed(self) -> bool:
        with self._lock:
            return self._fingerprint is not None


class ChangeSource:
    """Base class: snapshot on demand + change signalling."""

    def __init__(self):
        self._listeners: List[Listener] = []

    def on_change(self, listener: Listener) -> None:
        """Register a listener(project_id, snapshot)."""
        self._listeners.append(listener)

    def read_snapshot(self, project_id: str) -> Snapshot:
        raise NotImplementedError

    def _signal(self, project_id: str, snapshot: Snapshot) -> List[Any]:
        return [listener(project_id, snapshot) for listener in self._listeners]


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Push variant
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class WebhookSource(ChangeSource):
    """Receives complete {project, lastUpdated, tasks[]} payloads."""

    def __init__(self, store: TaskStore):
        super().__init__()
        self.store = store
        self._last: Dict[str, Snapshot] = {}

    def receive(self, project_slug: str, payload: Any) -> SyncResult:
        """
        Validate a payload and forward it downstream.

        Raises:
            ValidationError: any field is invalid (nothing is written)
            NotFoundError: no project with this slug
        """
        snapshot = validate_sync_payload(payload)

        project = self.store.get_project_by_slug(project_slug)
        if project is None:
            raise NotFoundError("project", project_slug)

        if not self._listeners:
            raise RuntimeError("WebhookSource is not attached to a sync engine")

        self._last[project.id] = snapshot
        logger.info(f"Webhook for {project_slug}: {len(snapshot.tasks)} tasks")
        return self._signal(project.id, snapshot)[0]

    def read_snapshot(self, project_id: str) -> Snapshot:
        """Last payload received for the project."""
        snapshot = self._last.get(project_id)
        if snapshot is None:
            raise NotFoundError("snapshot", project_id)
        return snapshot


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Watch variant
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class _DocumentHandler(FileSystemEventHandler):
    """Routes watchdog events for the watched file to its source."""

    def __init__(self, source: "FileWatchSource"):
        self.source = source
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._generation = 0

    def on_any_event(self, fs_event):
        if fs_event.is_directory:
            return
        if fs_event.event_type not in ("modified", "created", "moved", "closed"):
            return
        paths = [fs_event.src_path, getattr(fs_event, "dest_path", "")]
        if not any(p and Path(p).resolve() == self.source.path for p in paths):
            return
        self._debounce()

    def _debounce(self) -> None:
        """Read once, after the file has been quiet for debounce_ms (trailing edge)."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._timer = threading.Timer(
                self.source.debounce_ms / 1000, self._fire, args=(self._generation,)
            )
            self._timer.daemon = True
            self._timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return  # superseded by a later event
            self._timer = None
        self.source.handle_change()

    @property
    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None


class FileWatchSource(ChangeSource):
    """
    Watches one tasks.json document bound to one project.

    Writes made through write() arm the suppress token with the written
    content's fingerprint, so the change notifications they cause are
    swallowed instead of being re-broadcast as an external change.
    Notifications are debounced on the trailing edge: the document is read
    once, after it has been quiet for debounce_ms.
    """

    def __init__(self, document: TaskDocument, project_id: str, debounce_ms: int = 200):
        super().__init__()
        self.document = document
        self.project_id = project_id
        self.debounce_ms = debounce_ms
        self.suppress = SuppressToken()
        self.handler = _DocumentHandler(self)
        self._observer: Optional[Observer] = None

    @property
    def path(self) -> Path:
        return self.document.path.resolve()

    def read_snapshot(self, project_id: Optional[str] = None) -> Snapshot:
        """Read and validate the whole document."""
        return validate_sync_payload(self.document.read())

    def write(self, snapshot: Snapshot) -> None:
        """Write our own update to the document, suppressing its echo."""
        text = encode(snapshot.document())
        self.suppress.arm(fingerprint(text))
        try:
            self.document.write_text(text)
        except StorageError:
            self.suppress.disarm()
            raise

    def handle_change(self) -> Optional[Snapshot]:
        """
        Called once per quiet period after change notifications.

        Returns the signalled snapshot, or None if the content is our own
        write or the document could not be used.
        """
        name = self.document.path.name
        try:
            text = self.document.read_text()
        except StorageError as e:
            logger.warning(f"{name} changed but is unreadable: {e}")
            return None

        if self.suppress.consume(fingerprint(text)):
            logger.debug(f"Ignoring self-triggered change of {name}")
            return None

        try:
            snapshot = validate_sync_payload(self.document.decode(text))
        except (StorageError, ValidationError) as e:
            logger.warning(f"{name} changed but is unusable: {e}")
            return None

        logger.info(f"{name} changed externally, syncing...")
        try:
            self._signal(self.project_id, snapshot)
        except TaskdashError as e:
            logger.error(f"Sync from {name} failed: {e}")
            return None
        return snapshot

    def start(self, project_name: str = DEFAULT_PROJECT_NAME) -> None:
        """Create the document if absent and start observing it."""
        self.document.ensure(project_name)
        observer = Observer()
        observer.schedule(self.handler, str(self.path.parent), recursive=False)
        observer.start()
        self._observer = observer
        logger.info(f"Watching {self.path}")

    def stop(self) -> None:
        self.handler.cancel()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
