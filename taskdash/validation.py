"""
Inbound payload validation.

Every validator collects all field errors before failing, so a caller
gets the full list of problems in one response. Nothing is mutated
until a payload passes.
"""
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .errors import ValidationError
from .schema import Snapshot, TaskStatus, parse_timestamp

NAME_MIN = 3
NAME_MAX = 100

# field -> (required, kind)
TASK_FIELDS = {
    "id": (True, "string"),
    "content": (True, "string"),
    "status": (True, "status"),
    "activeForm": (True, "string"),
    "createdAt": (True, "timestamp"),
    "updatedAt": (True, "timestamp"),
    "tags": (False, "string_list"),
}


class _Errors:
    """Accumulates per-field errors as {path, message} dicts."""

    def __init__(self):
        self.items: List[Dict[str, str]] = []

    def add(self, path: str, message: str) -> None:
        self.items.append({"path": path, "message": message})

    def raise_if_any(self, message: str) -> None:
        if self.items:
            raise ValidationError(message, self.items)


def _check_field(errors: _Errors, path: str, value: Any, kind: str) -> None:
    if kind == "string":
        if not isinstance(value, str):
            errors.add(path, f"Expected string, got {type(value).__name__}")

    elif kind == "status":
        if value not in TaskStatus.values():
            errors.add(
                path,
                f"Invalid status '{value}'. Allowed: {', '.join(TaskStatus.values())}",
            )

    elif kind == "timestamp":
        try:
            parse_timestamp(value)
        except ValueError as e:
            errors.add(path, f"Invalid datetime: {e}")

    elif kind == "string_list":
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            errors.add(path, "Expected a list of strings")

    else:
        raise ValueError(f"Unknown field kind in schema: {kind}")


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
        return True
    except ValueError:
        return False


def validate_task(errors: _Errors, index: int, task: Any) -> None:
    prefix = f"tasks.{index}"
    if not isinstance(task, dict):
        errors.add(prefix, "Expected object")
        return
    for name, (required, kind) in TASK_FIELDS.items():
        if name not in task:
            if required:
                errors.add(f"{prefix}.{name}", "Required")
            continue
        if task[name] is None and required:
            errors.add(f"{prefix}.{name}", "Required")
            continue
        _check_field(errors, f"{prefix}.{name}", task[name], kind)


def validate_sync_payload(payload: Any) -> Snapshot:
    """
    Validate a full {project, lastUpdated, tasks[]} document.

    Returns:
        Snapshot built from the payload, positions = list index.

    Raises:
        ValidationError with every field error; all-or-nothing.
    """
    errors = _Errors()
    if not isinstance(payload, dict):
        errors.add("", "Expected a JSON object")
        errors.raise_if_any("Invalid payload")

    if not isinstance(payload.get("project"), str):
        errors.add("project", "Required string")
    if "lastUpdated" not in payload:
        errors.add("lastUpdated", "Required")
    else:
        _check_field(errors, "lastUpdated", payload["lastUpdated"], "timestamp")

    tasks = payload.get("tasks")
    if not isinstance(tasks, list):
        errors.add("tasks", "Expected a list")
    else:
        seen = set()
        for i, task in enumerate(tasks):
            validate_task(errors, i, task)
            task_id = task.get("id") if isinstance(task, dict) else None
            if isinstance(task_id, str):
                if task_id in seen:
                    errors.add(f"tasks.{i}.id", f"Duplicate task id '{task_id}'")
                seen.add(task_id)

    errors.raise_if_any("Invalid payload")
    return Snapshot.from_dict(payload)


def validate_status(value: Any, path: str = "newStatus") -> TaskStatus:
    errors = _Errors()
    _check_field(errors, path, value, "status")
    errors.raise_if_any("Invalid request")
    return TaskStatus(value)


def validate_move(body: Any) -> Tuple[TaskStatus, str]:
    """Validate {newStatus, projectId}. projectId must be a UUID."""
    errors = _Errors()
    if not isinstance(body, dict):
        errors.add("", "Expected a JSON object")
        errors.raise_if_any("Invalid request")

    _check_field(errors, "newStatus", body.get("newStatus"), "status")
    project_id = body.get("projectId")
    if not isinstance(project_id, str) or not _is_uuid(project_id):
        errors.add("projectId", "Invalid uuid")

    errors.raise_if_any("Invalid request")
    return TaskStatus(body["newStatus"]), project_id


def validate_project(body: Any) -> Tuple[str, Optional[str]]:
    """Validate {name (3-100 chars), description?}."""
    errors = _Errors()
    if not isinstance(body, dict):
        errors.add("", "Expected a JSON object")
        errors.raise_if_any("Validation error")

    name = body.get("name")
    if not isinstance(name, str):
        errors.add("name", "Required string")
    elif len(name) < NAME_MIN:
        errors.add("name", f"Minimum {NAME_MIN} characters")
    elif len(name) > NAME_MAX:
        errors.add("name", f"Maximum {NAME_MAX} characters")

    description = body.get("description")
    if description is not None and not isinstance(description, str):
        errors.add("description", "Expected string")

    errors.raise_if_any("Validation error")
    return name, description
