"""
Sync engine: routes every mutation of a project through one lock.

Write paths:
  external sync (webhook push or tasks.json change) → replace_all
  client move (drag and drop)                       → update_status

After a successful mutation the engine re-reads the canonical snapshot,
caches it, mirrors it to the project's tasks.json (if one is bound and
the change did not come from it) and broadcasts it to subscribers.
Mutations of different projects never share a lock.
"""
import logging
import threading
from typing import Dict, Optional

from .errors import StorageError
from .hub import Subscriber, SubscriberHub, Subscription
from .schema import Snapshot, SyncResult, Task, TaskStatus
from .sources import ChangeSource, FileWatchSource
from .store import TaskStore

logger = logging.getLogger(__name__)


class SyncEngine:
    """Single logical owner of each project's task collection."""

    def __init__(self, store: TaskStore, hub: Optional[SubscriberHub] = None):
        self.store = store
        self.hub = hub or SubscriberHub()
        self.hub.snapshot_provider = self.snapshot
        self.clock = self.hub.clock
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._cache: Dict[str, Snapshot] = {}
        self._mirrors: Dict[str, FileWatchSource] = {}

    def _lock_for(self, project_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(project_id)
            if lock is None:
                lock = self._locks[project_id] = threading.RLock()
            return lock

    # ── Snapshots ────────────────────────────────────────────────────────────

    def snapshot(self, project_id: str) -> Snapshot:
        """Current snapshot of a project (cached after the first read)."""
        cached = self._cache.get(project_id)
        if cached is not None:
            return cached
        # A cold read must not race a mutation and cache stale rows
        with self._lock_for(project_id):
            cached = self._cache.get(project_id)
            if cached is not None:
                return cached
            return self._refresh(project_id)

    def _refresh(self, project_id: str) -> Snapshot:
        """Rebuild and cache the snapshot. Caller holds the project lock."""
        try:
            project = self.store.require_project(project_id)
            snapshot = Snapshot(
                project_name=project.name,
                last_updated=self.clock.now(),
                tasks=self.store.list(project_id),
            )
        except StorageError:
            self._cache.pop(project_id, None)
            raise
        self._cache[project_id] = snapshot
        return snapshot

    def invalidate(self, project_id: str) -> None:
        with self._lock_for(project_id):
            self._cache.pop(project_id, None)

    # ── Mutations ────────────────────────────────────────────────────────────

    def apply_external_sync(
        self,
        project_id: str,
        snapshot: Snapshot,
        origin: Optional[ChangeSource] = None,
    ) -> SyncResult:
        """
        Replace the project's collection with the snapshot and broadcast.

        Replaying an identical snapshot stores identical state and sends a
        new, content-equal broadcast.
        """
        with self._lock_for(project_id):
            synced, deleted = self.store.replace_all(project_id, snapshot.tasks)
            canonical = self._refresh(project_id)
            self._mirror(project_id, canonical, origin)
            self.hub.broadcast(project_id, canonical)
        return SyncResult(synced=synced, deleted=deleted, snapshot=canonical)

    def apply_move(self, project_id: str, task_id: str, new_status: TaskStatus) -> Task:
        """
        Move one task to another column and broadcast the full snapshot.

        Raises NotFoundError (and broadcasts nothing) for an unknown task.
        """
        with self._lock_for(project_id):
            task = self.store.update_status(project_id, task_id, new_status)
            canonical = self._refresh(project_id)
            self._mirror(project_id, canonical, None)
            self.hub.broadcast(project_id, canonical)
        logger.info(f"Moved task {task_id} of {project_id} to {new_status.value}")
        return task

    def _mirror(self, project_id: str, snapshot: Snapshot, origin: Optional[ChangeSource]) -> None:
        """Write the canonical state back to a bound tasks.json."""
        source = self._mirrors.get(project_id)
        if source is None or source is origin:
            return
        try:
            source.write(snapshot)
        except StorageError as e:
            # The store stays authoritative; the file catches up on the next write
            logger.error(f"Could not mirror {project_id} to {source.document.path}: {e}")

    # ── Sources ──────────────────────────────────────────────────────────────

    def attach(self, source: ChangeSource) -> None:
        """Apply every snapshot the source signals as an external sync."""
        def listener(project_id: str, snapshot: Snapshot) -> SyncResult:
            return self.apply_external_sync(project_id, snapshot, origin=source)
        source.on_change(listener)

    def bind_document(self, source: FileWatchSource) -> None:
        """Attach a tasks.json watcher and mirror internal mutations to it."""
        self._mirrors[source.project_id] = source
        self.attach(source)

    def load_document(self, source: FileWatchSource) -> SyncResult:
        """Initial import of a bound document's current content."""
        return self.apply_external_sync(source.project_id, source.read_snapshot(), origin=source)

    # ── Subscribers ──────────────────────────────────────────────────────────

    def subscribe(self, project_id: str, subscriber: Subscriber) -> Subscription:
        """Subscribe under the project lock so no update slips past the init."""
        with self._lock_for(project_id):
            return self.hub.subscribe(project_id, subscriber)

    def unsubscribe(self, handle: Subscription) -> None:
        self.hub.unsubscribe(handle)
