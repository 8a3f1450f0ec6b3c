"""Tests for realtime channel messages (closed set)."""
import json

import pytest

from conftest import sync_payload, task_dict
from taskdash.errors import ValidationError
from taskdash.messages import (
    InitMessage,
    MessageType,
    MoveMessage,
    PingMessage,
    PongMessage,
    UpdateMessage,
    _CLIENT_PARSERS,
    _SERVER_PARSERS,
    encode_event,
    parse_client_message,
    parse_server_message,
)
from taskdash.schema import TaskStatus
from taskdash.validation import validate_sync_payload


@pytest.fixture
def snapshot():
    return validate_sync_payload(sync_payload(task_dict("A"), task_dict("B", status="in_progress")))


class TestMessageTypes:

    def test_directions_are_disjoint(self):
        assert MessageType.SERVER.isdisjoint(MessageType.CLIENT)
        assert MessageType.SERVER == {"init", "update", "pong"}
        assert MessageType.CLIENT == {"ping", "move"}

    def test_every_kind_has_a_parser(self):
        assert set(_CLIENT_PARSERS) == MessageType.CLIENT
        assert set(_SERVER_PARSERS) == MessageType.SERVER

    def test_server_messages_carry_timestamps(self, snapshot):
        for message in (InitMessage(snapshot), UpdateMessage(snapshot), PongMessage()):
            assert message.to_dict()["timestamp"].endswith("Z")


class TestClientMessages:

    def test_parse_ping(self):
        assert isinstance(parse_client_message({"type": "ping"}), PingMessage)

    def test_parse_move(self):
        message = parse_client_message({"type": "move", "taskId": "A", "newStatus": "completed"})
        assert message == MoveMessage(task_id="A", new_status=TaskStatus.COMPLETED)

    def test_move_needs_task_and_status(self):
        with pytest.raises(ValidationError):
            parse_client_message({"type": "move", "newStatus": "completed"})
        with pytest.raises(ValidationError):
            parse_client_message({"type": "move", "taskId": "A", "newStatus": "archived"})

    @pytest.mark.parametrize("data", [
        {"type": "update"},
        {"type": "subscribe"},
        {},
        "ping",
    ])
    def test_rejects_unknown(self, data):
        with pytest.raises(ValidationError):
            parse_client_message(data)


class TestServerMessages:

    def test_init_wire_format(self, snapshot):
        data = InitMessage(snapshot, subscription_id="abc").to_dict()
        assert data["type"] == "init"
        assert data["subscriptionId"] == "abc"
        assert data["data"]["project"] == "Test Project"
        assert [t["id"] for t in data["data"]["tasks"]] == ["A", "B"]
        assert data["data"]["tasks"][1]["activeForm"] == "Working on B"

    def test_parse_update(self, snapshot):
        parsed = parse_server_message(UpdateMessage(snapshot).to_dict())
        assert isinstance(parsed, UpdateMessage)
        assert parsed.snapshot.tasks[1].status == TaskStatus.IN_PROGRESS

    def test_parse_rejects_client_kinds(self):
        with pytest.raises(ValidationError):
            parse_server_message({"type": "ping"})

    def test_parse_rejects_missing_data(self):
        with pytest.raises(ValidationError):
            parse_server_message({"type": "update", "timestamp": "2025-01-01T10:00:00Z"})

    def test_parse_rejects_bad_timestamp(self):
        with pytest.raises(ValidationError):
            parse_server_message({"type": "pong", "timestamp": "soon"})


def test_encode_event(snapshot):
    frame = encode_event(UpdateMessage(snapshot))
    assert frame.startswith("event: update\ndata: ")
    assert frame.endswith("\n\n")

    data_line = frame.split("\n")[1]
    payload = json.loads(data_line[len("data: "):])
    assert payload["type"] == "update"
    assert len(payload["data"]["tasks"]) == 2
