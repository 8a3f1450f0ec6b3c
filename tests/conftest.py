"""Shared fixtures for task dashboard tests."""

import pytest

from taskdash.engine import SyncEngine
from taskdash.errors import TransportError
from taskdash.hub import Subscriber, SubscriberHub
from taskdash.store import TaskStore

TS = "2025-01-01T10:00:00Z"


def task_dict(task_id, status="pending", content=None, tags=None):
    """A wire-format task as the assistant would send it."""
    data = {
        "id": task_id,
        "content": content or f"Task {task_id}",
        "status": status,
        "activeForm": f"Working on {task_id}",
        "createdAt": TS,
        "updatedAt": TS,
    }
    if tags is not None:
        data["tags"] = tags
    return data


def sync_payload(*tasks, project="Test Project"):
    return {"project": project, "lastUpdated": TS, "tasks": list(tasks)}


class RecordingSubscriber(Subscriber):
    """Keeps every delivered message."""

    def __init__(self):
        self.messages = []
        self.closed = False

    def deliver(self, message):
        self.messages.append(message)

    def close(self):
        self.closed = True


class FailingSubscriber(Subscriber):
    """Accepts `fail_after` messages, then raises on every delivery."""

    def __init__(self, fail_after=0):
        self.fail_after = fail_after
        self.delivered = 0
        self.closed = False

    def deliver(self, message):
        if self.delivered >= self.fail_after:
            raise TransportError("connection reset")
        self.delivered += 1

    def close(self):
        self.closed = True


@pytest.fixture
def store(tmp_path):
    return TaskStore(str(tmp_path / "test.db"))


@pytest.fixture
def project(store):
    return store.create_project("Test Project", "Board used by tests")


@pytest.fixture
def hub():
    return SubscriberHub(heartbeat_timeout=90)


@pytest.fixture
def engine(store, hub):
    return SyncEngine(store, hub)
