"""
File-backed task document (tasks.json).

One structured document per project root:
    {"project": "...", "lastUpdated": "...", "tasks": [...]}

Writes are atomic (temp file + rename) so an observer never reads a
half-written document.
"""
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict

from .errors import StorageError
from .schema import format_timestamp, utc_now

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "tasks.json"
DEFAULT_PROJECT_NAME = "Claude Code Tasks"


def empty_document(project_name: str = DEFAULT_PROJECT_NAME) -> Dict[str, Any]:
    return {
        "project": project_name,
        "lastUpdated": format_timestamp(utc_now()),
        "tasks": [],
    }


def encode(data: Dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


def fingerprint(text: str) -> str:
    """Content hash used to recognise our own writes."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TaskDocument:
    """Reads and writes a single tasks.json file."""

    def __init__(self, path: os.PathLike):
        self.path = Path(path).expanduser()

    def exists(self) -> bool:
        return self.path.exists()

    def ensure(self, project_name: str = DEFAULT_PROJECT_NAME) -> bool:
        """Create an empty default document if absent. Returns True if created."""
        if self.path.exists():
            return False
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.write(empty_document(project_name))
        logger.info(f"Created {self.path}")
        return True

    def read_text(self) -> str:
        """Raw document text. Raises StorageError if unreadable."""
        try:
            with open(self.path, encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            logger.error(f"Error reading {self.path}: {e}")
            raise StorageError(f"Cannot read {self.path.name}") from e

    def decode(self, text: str) -> Dict[str, Any]:
        """Parse document text. Raises StorageError if it is not JSON."""
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise StorageError(f"{self.path.name} is not valid JSON: {e}") from e

    def read(self) -> Dict[str, Any]:
        """Load the raw document. Raises StorageError if unreadable or not JSON."""
        return self.decode(self.read_text())

    def write(self, data: Dict[str, Any]) -> None:
        """Write the document atomically. Raises StorageError on failure."""
        self.write_text(encode(data))

    def write_text(self, text: str) -> None:
        """Replace the file with `text` in one rename."""
        tmp_file = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_file, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp_file, self.path)
        except OSError as e:
            logger.error(f"Error writing {self.path}: {e}")
            tmp_file.unlink(missing_ok=True)
            raise StorageError(f"Cannot write {self.path.name}") from e
        logger.debug(f"Updated {self.path}")
