"""
Error taxonomy for the sync core.

Validation and not-found errors surface to callers as structured
responses. Storage errors surface as a generic failure while the previous
state stays authoritative. Transport errors never leave the hub.
"""
from typing import Any, Dict, List, Optional


class TaskdashError(Exception):
    """Base class for all task dashboard errors."""
    pass


class ConfigError(TaskdashError):
    """Raised when configuration is invalid or incomplete."""
    pass


class ValidationError(TaskdashError):
    """Raised when an inbound payload fails validation. No mutation happens."""

    def __init__(self, message: str, details: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "details": self.details}


class NotFoundError(TaskdashError):
    """Raised for an unknown project or task."""

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind.capitalize()} not found: {key}")
        self.kind = kind
        self.key = key


class StorageError(TaskdashError):
    """Raised when the backing store cannot be read or written."""
    pass


class TransportError(TaskdashError):
    """Raised when a message cannot be delivered to one subscriber."""
    pass
