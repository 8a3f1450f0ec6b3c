"""
Subscriber hub: connected viewers per project and snapshot fan-out.

A subscriber is anything with deliver(message) and close(). Delivery to
one subscriber never aborts delivery to another: a failing subscriber is
dropped and the broadcast continues.

Liveness: viewers ping periodically; touch() records the heartbeat and a
reaper thread drops subscriptions silent for longer than the timeout.
"""
import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .errors import TransportError
from .messages import InitMessage, PongMessage, ServerMessage, UpdateMessage
from .schema import MonotonicClock, Snapshot

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_TIMEOUT = 90.0
DEFAULT_QUEUE_SIZE = 100


class Subscriber:
    """Receives realtime messages for one connection."""

    def deliver(self, message: ServerMessage) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class QueueSubscriber(Subscriber):
    """
    Buffers messages for a streaming connection.

    deliver() never blocks: a closed or full queue raises TransportError
    so the hub drops this subscriber instead of stalling the broadcast.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE):
        self._queue: "queue.Queue[Optional[ServerMessage]]" = queue.Queue(maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def deliver(self, message: ServerMessage) -> None:
        if self._closed.is_set():
            raise TransportError("Subscriber closed")
        try:
            self._queue.put_nowait(message)
        except queue.Full:
            raise TransportError("Subscriber queue full")

    def next(self, timeout: Optional[float] = None) -> Optional[ServerMessage]:
        """Next queued message, or None on timeout or close."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._closed.set()
        try:
            self._queue.put_nowait(None)  # wake a blocked reader
        except queue.Full:
            pass


@dataclass
class Subscription:
    """Handle returned by subscribe()."""
    project_id: str
    subscriber: Subscriber
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    last_seen: float = field(default_factory=time.monotonic)


class SubscriberHub:
    """Project-scoped registry of subscribers."""

    def __init__(
        self,
        snapshot_provider: Optional[Callable[[str], Snapshot]] = None,
        heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT,
        reap_interval: Optional[float] = None,
        clock: Optional[MonotonicClock] = None,
    ):
        self.snapshot_provider = snapshot_provider
        self.heartbeat_timeout = heartbeat_timeout
        self.reap_interval = reap_interval or max(heartbeat_timeout / 3, 0.1)
        self.clock = clock or MonotonicClock()
        self._lock = threading.Lock()
        self._by_project: Dict[str, Dict[str, Subscription]] = {}
        self._by_id: Dict[str, Subscription] = {}
        self._stop = threading.Event()
        self._reaper: Optional[threading.Thread] = None

    # ── Registration ─────────────────────────────────────────────────────────

    def subscribe(self, project_id: str, subscriber: Subscriber) -> Subscription:
        """
        Register a subscriber and deliver the current snapshot to it first.

        Raises TransportError if the initial delivery fails; the
        subscriber is not registered in that case.
        """
        if self.snapshot_provider is None:
            raise RuntimeError("SubscriberHub has no snapshot provider")
        snapshot = self.snapshot_provider(project_id)
        sub = Subscription(project_id=project_id, subscriber=subscriber)
        subscriber.deliver(
            InitMessage(snapshot=snapshot, timestamp=self.clock.now(), subscription_id=sub.id)
        )
        with self._lock:
            self._by_project.setdefault(project_id, {})[sub.id] = sub
            self._by_id[sub.id] = sub
        logger.info(f"Subscriber {sub.id} joined {project_id}")
        return sub

    def unsubscribe(self, handle: Subscription) -> None:
        """Remove a subscription. Safe to call more than once."""
        if self._remove(handle.id):
            logger.info(f"Subscriber {handle.id} left {handle.project_id}")
        handle.subscriber.close()

    def _remove(self, sub_id: str) -> Optional[Subscription]:
        with self._lock:
            sub = self._by_id.pop(sub_id, None)
            if sub is None:
                return None
            project_subs = self._by_project.get(sub.project_id, {})
            project_subs.pop(sub_id, None)
            if not project_subs:
                self._by_project.pop(sub.project_id, None)
            return sub

    def get(self, sub_id: str) -> Optional[Subscription]:
        with self._lock:
            return self._by_id.get(sub_id)

    def count(self, project_id: Optional[str] = None) -> int:
        with self._lock:
            if project_id is None:
                return len(self._by_id)
            return len(self._by_project.get(project_id, {}))

    # ── Delivery ─────────────────────────────────────────────────────────────

    def broadcast(self, project_id: str, snapshot: Snapshot) -> int:
        """
        Deliver an update to every subscriber of the project.

        Returns the number of successful deliveries.
        """
        message = UpdateMessage(snapshot=snapshot, timestamp=self.clock.now())
        with self._lock:
            targets = list(self._by_project.get(project_id, {}).values())

        delivered = 0
        for sub in targets:
            if self._deliver(sub, message):
                delivered += 1
        logger.debug(f"Broadcast to {delivered}/{len(targets)} subscribers of {project_id}")
        return delivered

    def send(self, handle: Subscription, message: ServerMessage) -> bool:
        """Deliver to a single subscription."""
        return self._deliver(handle, message)

    def pong(self, handle: Subscription) -> bool:
        self.touch(handle)
        return self.send(handle, PongMessage(timestamp=self.clock.now()))

    def _deliver(self, sub: Subscription, message: ServerMessage) -> bool:
        try:
            sub.subscriber.deliver(message)
            return True
        except Exception as e:
            logger.warning(f"Dropping subscriber {sub.id} of {sub.project_id}: {e}")
            self._remove(sub.id)
            sub.subscriber.close()
            return False

    # ── Liveness ─────────────────────────────────────────────────────────────

    def touch(self, handle: Subscription) -> bool:
        """Record a heartbeat. Returns False if the subscription is gone."""
        with self._lock:
            if handle.id not in self._by_id:
                return False
            handle.last_seen = time.monotonic()
            return True

    def reap(self, now: Optional[float] = None) -> List[str]:
        """Drop subscriptions without a heartbeat within the timeout."""
        now = time.monotonic() if now is None else now
        with self._lock:
            stale = [
                sub for sub in self._by_id.values()
                if now - sub.last_seen > self.heartbeat_timeout
            ]
        for sub in stale:
            logger.info(f"Subscriber {sub.id} timed out, removing")
            self._remove(sub.id)
            sub.subscriber.close()
        return [sub.id for sub in stale]

    def _reap_loop(self):
        while not self._stop.wait(self.reap_interval):
            self.reap()

    def start(self) -> None:
        """Start the heartbeat reaper thread."""
        if self._reaper and self._reaper.is_alive():
            return
        self._stop.clear()
        self._reaper = threading.Thread(target=self._reap_loop, name="hub-reaper", daemon=True)
        self._reaper.start()

    def stop(self) -> None:
        """Stop the reaper and close every subscription."""
        self._stop.set()
        if self._reaper:
            self._reaper.join(timeout=5)
            self._reaper = None
        with self._lock:
            subs = list(self._by_id.values())
        for sub in subs:
            self.unsubscribe(sub)
