"""Tests for the subscriber hub and queue-backed subscribers."""
import time

import pytest

from conftest import FailingSubscriber, RecordingSubscriber
from taskdash.errors import TransportError
from taskdash.hub import QueueSubscriber, SubscriberHub
from taskdash.messages import InitMessage, PongMessage, UpdateMessage
from taskdash.schema import Snapshot, utc_now


def empty_snapshot(project_id):
    return Snapshot(project_name=f"Board {project_id}", last_updated=utc_now())


@pytest.fixture
def hub():
    return SubscriberHub(snapshot_provider=empty_snapshot, heartbeat_timeout=30)


class TestSubscribe:

    def test_init_is_delivered_first(self, hub):
        sub = RecordingSubscriber()
        handle = hub.subscribe("p1", sub)
        assert len(sub.messages) == 1
        assert isinstance(sub.messages[0], InitMessage)
        assert sub.messages[0].subscription_id == handle.id
        assert sub.messages[0].snapshot.project_name == "Board p1"
        assert hub.count("p1") == 1

    def test_failed_init_is_not_registered(self, hub):
        with pytest.raises(TransportError):
            hub.subscribe("p1", FailingSubscriber())
        assert hub.count() == 0

    def test_requires_snapshot_provider(self):
        with pytest.raises(RuntimeError):
            SubscriberHub().subscribe("p1", RecordingSubscriber())

    def test_unsubscribe_is_idempotent(self, hub):
        sub = RecordingSubscriber()
        handle = hub.subscribe("p1", sub)
        hub.unsubscribe(handle)
        hub.unsubscribe(handle)
        assert hub.count() == 0
        assert hub.get(handle.id) is None
        assert sub.closed


class TestBroadcast:

    def test_reaches_every_subscriber_of_project(self, hub):
        a, b, other = RecordingSubscriber(), RecordingSubscriber(), RecordingSubscriber()
        hub.subscribe("p1", a)
        hub.subscribe("p1", b)
        hub.subscribe("p2", other)

        assert hub.broadcast("p1", empty_snapshot("p1")) == 2
        assert isinstance(a.messages[-1], UpdateMessage)
        assert isinstance(b.messages[-1], UpdateMessage)
        assert len(other.messages) == 1

    def test_failing_subscriber_is_dropped(self, hub):
        """One broken connection does not stop delivery to the rest"""
        good_before = RecordingSubscriber()
        broken = FailingSubscriber(fail_after=1)
        good_after = RecordingSubscriber()
        hub.subscribe("p1", good_before)
        hub.subscribe("p1", broken)
        hub.subscribe("p1", good_after)

        assert hub.broadcast("p1", empty_snapshot("p1")) == 2
        assert len(good_before.messages) == 2
        assert len(good_after.messages) == 2
        assert broken.closed
        assert hub.count("p1") == 2

    def test_broadcast_without_subscribers(self, hub):
        assert hub.broadcast("nobody", empty_snapshot("nobody")) == 0

    def test_pong_goes_to_one_subscriber(self, hub):
        a, b = RecordingSubscriber(), RecordingSubscriber()
        handle = hub.subscribe("p1", a)
        hub.subscribe("p1", b)

        assert hub.pong(handle)
        assert isinstance(a.messages[-1], PongMessage)
        assert len(b.messages) == 1


class TestLiveness:

    def test_reap_drops_silent_subscribers(self, hub):
        sub = RecordingSubscriber()
        handle = hub.subscribe("p1", sub)

        assert hub.reap(now=handle.last_seen + 10) == []
        assert hub.reap(now=handle.last_seen + 31) == [handle.id]
        assert hub.count() == 0
        assert sub.closed

    def test_touch_extends_lifetime(self, hub):
        handle = hub.subscribe("p1", RecordingSubscriber())
        handle.last_seen -= 25
        assert hub.touch(handle)
        assert hub.reap(now=time.monotonic() + 10) == []

    def test_touch_after_unsubscribe(self, hub):
        handle = hub.subscribe("p1", RecordingSubscriber())
        hub.unsubscribe(handle)
        assert not hub.touch(handle)

    def test_reaper_thread(self):
        hub = SubscriberHub(snapshot_provider=empty_snapshot, heartbeat_timeout=0.05, reap_interval=0.02)
        sub = RecordingSubscriber()
        hub.subscribe("p1", sub)
        hub.start()
        try:
            deadline = time.monotonic() + 5
            while hub.count() and time.monotonic() < deadline:
                time.sleep(0.02)
        finally:
            hub.stop()
        assert hub.count() == 0
        assert sub.closed

    def test_stop_closes_everyone(self, hub):
        subs = [RecordingSubscriber() for _ in range(3)]
        for s in subs:
            hub.subscribe("p1", s)
        hub.start()
        hub.stop()
        assert hub.count() == 0
        assert all(s.closed for s in subs)


class TestQueueSubscriber:

    def test_delivers_in_order(self):
        sub = QueueSubscriber(maxsize=5)
        first = PongMessage()
        second = PongMessage()
        sub.deliver(first)
        sub.deliver(second)
        assert sub.next(timeout=0.1) is first
        assert sub.next(timeout=0.1) is second
        assert sub.next(timeout=0.01) is None

    def test_full_queue_raises(self):
        sub = QueueSubscriber(maxsize=1)
        sub.deliver(PongMessage())
        with pytest.raises(TransportError):
            sub.deliver(PongMessage())

    def test_closed_queue_raises(self):
        sub = QueueSubscriber()
        sub.close()
        assert sub.closed
        assert sub.next(timeout=0.1) is None
        with pytest.raises(TransportError):
            sub.deliver(PongMessage())

    def test_slow_consumer_is_dropped_by_hub(self, hub):
        slow = QueueSubscriber(maxsize=1)  # init fills it
        hub.subscribe("p1", slow)
        assert hub.broadcast("p1", empty_snapshot("p1")) == 0
        assert slow.closed
        assert hub.count() == 0
