# Realtime channel messages: closed set
#
#   server → client:  init, update, pong
#   client → server:  ping, move
#
# Every snapshot-bearing message carries a timestamp. Parsing dispatches
# through a table that must cover every kind of its direction; anything
# else is rejected with ValidationError.

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ClassVar, Dict, Union

from .errors import ValidationError
from .schema import Snapshot, TaskStatus, format_timestamp, parse_timestamp, utc_now
from .validation import validate_status


class MessageType:
    """All valid message kinds. Nothing else is permitted."""

    INIT = "init"
    UPDATE = "update"
    PONG = "pong"
    PING = "ping"
    MOVE = "move"

    SERVER = frozenset({INIT, UPDATE, PONG})
    CLIENT = frozenset({PING, MOVE})


# ── Server → client ──────────────────────────────────────────────────────────

@dataclass
class InitMessage:
    """Current snapshot, sent once right after subscribing."""
    type: ClassVar[str] = MessageType.INIT
    snapshot: Snapshot
    timestamp: datetime = field(default_factory=utc_now)
    subscription_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": self.snapshot.to_dict(),
            "timestamp": format_timestamp(self.timestamp),
            "subscriptionId": self.subscription_id,
        }


@dataclass
class UpdateMessage:
    """Full snapshot after any mutation."""
    type: ClassVar[str] = MessageType.UPDATE
    snapshot: Snapshot
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "data": self.snapshot.to_dict(),
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass
class PongMessage:
    """Heartbeat reply."""
    type: ClassVar[str] = MessageType.PONG
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "timestamp": format_timestamp(self.timestamp)}


# ── Client → server ──────────────────────────────────────────────────────────

@dataclass
class PingMessage:
    """Heartbeat."""
    type: ClassVar[str] = MessageType.PING

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type}


@dataclass
class MoveMessage:
    """Drag-and-drop: move a task to another column."""
    type: ClassVar[str] = MessageType.MOVE
    task_id: str
    new_status: TaskStatus

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "taskId": self.task_id, "newStatus": self.new_status.value}


ServerMessage = Union[InitMessage, UpdateMessage, PongMessage]
ClientMessage = Union[PingMessage, MoveMessage]


# ── Parsing ──────────────────────────────────────────────────────────────────

def _parse_ping(data: Dict[str, Any]) -> PingMessage:
    return PingMessage()


def _parse_move(data: Dict[str, Any]) -> MoveMessage:
    task_id = data.get("taskId")
    if not isinstance(task_id, str) or not task_id:
        raise ValidationError(
            "Invalid message", [{"path": "taskId", "message": "Required string"}]
        )
    return MoveMessage(task_id=task_id, new_status=validate_status(data.get("newStatus")))


def _parse_timestamp_field(data: Dict[str, Any]) -> datetime:
    try:
        return parse_timestamp(data.get("timestamp"))
    except ValueError as e:
        raise ValidationError(
            "Invalid message", [{"path": "timestamp", "message": str(e)}]
        ) from e


def _parse_init(data: Dict[str, Any]) -> InitMessage:
    return InitMessage(
        snapshot=Snapshot.from_dict(data["data"]),
        timestamp=_parse_timestamp_field(data),
        subscription_id=data.get("subscriptionId", ""),
    )


def _parse_update(data: Dict[str, Any]) -> UpdateMessage:
    return UpdateMessage(
        snapshot=Snapshot.from_dict(data["data"]),
        timestamp=_parse_timestamp_field(data),
    )


def _parse_pong(data: Dict[str, Any]) -> PongMessage:
    return PongMessage(timestamp=_parse_timestamp_field(data))


_CLIENT_PARSERS: Dict[str, Callable[[Dict[str, Any]], ClientMessage]] = {
    MessageType.PING: _parse_ping,
    MessageType.MOVE: _parse_move,
}

_SERVER_PARSERS: Dict[str, Callable[[Dict[str, Any]], ServerMessage]] = {
    MessageType.INIT: _parse_init,
    MessageType.UPDATE: _parse_update,
    MessageType.PONG: _parse_pong,
}


def _dispatch(data: Any, parsers: Dict[str, Callable]) -> Any:
    if not isinstance(data, dict):
        raise ValidationError("Invalid message", [{"path": "", "message": "Expected object"}])
    kind = data.get("type")
    parser = parsers.get(kind)
    if parser is None:
        raise ValidationError(
            "Invalid message",
            [{"path": "type", "message": f"Unknown message type: {kind!r}"}],
        )
    return parser(data)


def parse_client_message(data: Any) -> ClientMessage:
    """Parse a message sent by a viewer (ping or move)."""
    return _dispatch(data, _CLIENT_PARSERS)


def parse_server_message(data: Any) -> ServerMessage:
    """Parse a message received from the server (init, update or pong)."""
    try:
        return _dispatch(data, _SERVER_PARSERS)
    except (KeyError, ValueError, TypeError) as e:
        raise ValidationError(
            "Invalid message", [{"path": "data", "message": str(e)}]
        ) from e


def encode_event(message: ServerMessage) -> str:
    """Frame a server message as one Server-Sent Event."""
    payload = json.dumps(message.to_dict(), ensure_ascii=False)
    return f"event: {message.type}\ndata: {payload}\n\n"
