"""Task data model for the local-first task store."""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from datetime import datetime
from enum import Enum

from .utils.datetime import now_utc, ensure_aware, parse_datetime, to_iso_string


class SyncStatus(Enum):
    """Sync state of a task relative to the remote authority."""
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


# Fields that make up a task snapshot in the outbox
SNAPSHOT_FIELDS = ("title", "description", "completed", "updated_at", "is_deleted")


@dataclass
class Task:
    """A user-visible task.

    ``id`` is the stable local identifier; ``server_id`` is only known after
    the remote authority has accepted the task at least once.
    """

    title: str
    description: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    server_id: Optional[str] = None
    completed: bool = False
    is_deleted: bool = False
    created_at: datetime = field(default_factory=now_utc)
    updated_at: datetime = field(default_factory=now_utc)
    sync_status: SyncStatus = SyncStatus.PENDING
    last_synced_at: Optional[datetime] = None

    def __post_init__(self):
        """Ensure all datetime fields are timezone-aware."""
        self.created_at = ensure_aware(self.created_at)
        self.updated_at = ensure_aware(self.updated_at)
        self.last_synced_at = ensure_aware(self.last_synced_at)
        if isinstance(self.sync_status, str):
            self.sync_status = SyncStatus(self.sync_status)

    def snapshot(self) -> Dict[str, Any]:
        """Return the fields carried by an outbox entry for this task."""
        return {
            "id": self.id,
            "server_id": self.server_id,
            "title": self.title,
            "description": self.description,
            "completed": self.completed,
            "is_deleted": self.is_deleted,
            "created_at": to_iso_string(self.created_at),
            "updated_at": to_iso_string(self.updated_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-serialisable dictionary."""
        data = self.snapshot()
        data["sync_status"] = self.sync_status.value
        data["last_synced_at"] = to_iso_string(self.last_synced_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Create a task from a dictionary, e.g. a server's ``resolved_data``.

        Raises:
            ValueError: If ``title`` is missing or a timestamp cannot be parsed
        """
        if data.get("title") is None:
            raise ValueError("Task data has no title")

        updated_at = parse_datetime(data.get("updated_at"))
        if updated_at is None:
            raise ValueError(f"Task data has no valid updated_at: {data.get('updated_at')!r}")

        created_at = parse_datetime(data.get("created_at")) or updated_at
        server_id = data.get("server_id")

        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            server_id=str(server_id) if server_id is not None else None,
            title=data["title"],
            description=data.get("description") or "",
            completed=bool(data.get("completed", False)),
            is_deleted=bool(data.get("is_deleted", False)),
            created_at=created_at,
            updated_at=updated_at,
            sync_status=SyncStatus(data.get("sync_status", SyncStatus.PENDING.value)),
            last_synced_at=parse_datetime(data.get("last_synced_at")),
        )
