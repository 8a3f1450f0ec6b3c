"""
Task dashboard schema.

Task lifecycle:
  created/overwritten by a full-replace sync
  mutated in place by a status move (pending ↔ in_progress ↔ completed)
  destroyed when a later full-replace sync omits its id

Wire format is camelCase (activeForm, createdAt, ...) to match the
tasks.json documents written by the coding assistant.
"""
import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

_RFC3339 = re.compile(
    r"^(\d{4}-\d{2}-\d{2})T(\d{2}:\d{2}:\d{2})(\.\d+)?(Z|z|[+-]\d{2}:\d{2})$"
)


class TaskStatus(Enum):
    """Board columns, in display order."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @classmethod
    def values(cls) -> List[str]:
        return [s.value for s in cls]

    @classmethod
    def parse(cls, value: Any) -> "TaskStatus":
        """Strict lookup by wire value. Raises ValueError for anything else."""
        if isinstance(value, cls):
            return value
        return cls(value)


# ── Timestamps ───────────────────────────────────────────────────────────────

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """
    Parse an RFC3339 timestamp into an aware UTC datetime.

    Requires the 'T' separator and an explicit offset ('Z' or ±HH:MM).
    Raises ValueError on anything else.
    """
    if not isinstance(value, str):
        raise ValueError(f"expected RFC3339 string, got {type(value).__name__}")
    m = _RFC3339.match(value.strip())
    if not m:
        raise ValueError(f"not an RFC3339 timestamp: '{value}'")
    date_part, time_part, frac, offset = m.groups()
    # fromisoformat on 3.10 only takes 3 or 6 fractional digits
    frac = (frac or ".0")[1:]
    frac = (frac + "000000")[:6]
    if offset in ("Z", "z"):
        offset = "+00:00"
    dt = datetime.fromisoformat(f"{date_part}T{time_part}.{frac}{offset}")
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Serialize as RFC3339 UTC with microseconds, e.g. 2025-01-01T10:00:00.000000Z."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


class MonotonicClock:
    """
    Wall-clock UTC timestamps that never repeat or go backwards.

    A reading equal to or older than the previous one is bumped by one
    microsecond, so every snapshot a viewer receives carries a strictly
    larger timestamp than the one before it.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        with self._lock:
            current = utc_now()
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current


# ── Slugs ────────────────────────────────────────────────────────────────────

def slugify(name: str) -> str:
    """Lowercase, collapse non [a-z0-9] runs to '-', trim dashes."""
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


def make_slug(name: str) -> str:
    """Url-safe project slug with a random suffix: my-project-1a2b3c4d."""
    base = slugify(name) or "project"
    return f"{base}-{uuid.uuid4().hex[:8]}"


# ── Data model ───────────────────────────────────────────────────────────────

def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Tags are a set; store them de-duplicated and sorted."""
    return sorted(set(tags or []))


@dataclass
class Task:
    """One card on the board."""

    id: str                         # Caller-assigned, unique within project
    content: str
    active_form: str                # Present-progressive label while in_progress
    status: TaskStatus = TaskStatus.PENDING
    tags: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    position: int = 0
    project_id: str = ""

    def __post_init__(self):
        self.tags = normalize_tags(self.tags)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase wire format."""
        return {
            "id": self.id,
            "content": self.content,
            "status": self.status.value,
            "activeForm": self.active_form,
            "tags": list(self.tags),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "position": self.position,
            "projectId": self.project_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], position: int = 0, project_id: str = "") -> "Task":
        """Deserialize from an already validated wire dict."""
        return cls(
            id=data["id"],
            content=data["content"],
            active_form=data["activeForm"],
            status=TaskStatus.parse(data["status"]),
            tags=data.get("tags") or [],
            created_at=parse_timestamp(data["createdAt"]),
            updated_at=parse_timestamp(data["updatedAt"]),
            position=data.get("position", position),
            project_id=data.get("projectId", project_id),
        )


@dataclass
class Project:
    """A board. Created by explicit user action, never deleted by the core."""

    id: str
    slug: str
    name: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    last_sync_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "slug": self.slug,
            "name": self.name,
            "description": self.description,
            "createdAt": format_timestamp(self.created_at),
            "lastSyncAt": format_timestamp(self.last_sync_at),
        }


@dataclass
class Snapshot:
    """The full task collection of a project. Never a delta."""

    project_name: str
    last_updated: datetime
    tasks: List[Task] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project": self.project_name,
            "lastUpdated": format_timestamp(self.last_updated),
            "tasks": [t.to_dict() for t in self.tasks],
        }

    def document(self) -> Dict[str, Any]:
        """The tasks.json shape: no positions or project ids."""
        tasks = []
        for t in self.tasks:
            tasks.append({
                "id": t.id,
                "content": t.content,
                "status": t.status.value,
                "activeForm": t.active_form,
                "createdAt": format_timestamp(t.created_at),
                "updatedAt": format_timestamp(t.updated_at),
                "tags": list(t.tags),
            })
        return {
            "project": self.project_name,
            "lastUpdated": format_timestamp(self.last_updated),
            "tasks": tasks,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        """Build from a validated {project, lastUpdated, tasks} payload."""
        return cls(
            project_name=data.get("project", ""),
            last_updated=parse_timestamp(data["lastUpdated"]),
            tasks=[Task.from_dict(t, position=i) for i, t in enumerate(data.get("tasks", []))],
        )

    def find(self, task_id: str) -> Optional[Task]:
        for t in self.tasks:
            if t.id == task_id:
                return t
        return None


@dataclass
class SyncResult:
    """Outcome of a full-replace sync."""
    synced: int
    deleted: int
    snapshot: Optional[Snapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"success": True, "synced": self.synced, "deleted": self.deleted}
