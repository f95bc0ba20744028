"""Data models for the outbox and for sync cycle results."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..utils.datetime import now_utc, to_iso_string
from .errors import ErrorKind, SyncError


logger = logging.getLogger(__name__)

LAST_SYNC_KEY = "last_sync_timestamp"


class Operation(Enum):
    """Kind of local mutation carried by a queue item."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Verdict(Enum):
    """Per-item status returned by the remote authority."""
    SUCCESS = "success"
    CONFLICT = "conflict"
    ERROR = "error"


@dataclass
class QueueItem:
    """One pending local mutation awaiting remote confirmation."""

    id: str
    task_id: str
    operation: Operation
    data: Optional[str]  # JSON snapshot taken at enqueue time
    created_at: datetime = field(default_factory=now_utc)
    updated_at: Optional[datetime] = None
    retry_count: int = 0
    last_error: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.operation, str):
            self.operation = Operation(self.operation)

    def parsed_data(self) -> Dict[str, Any]:
        """Best-effort decode of the stored snapshot; ``{}`` when unusable."""
        raw = self.data
        if not raw:
            return {}
        if isinstance(raw, dict):
            return raw
        try:
            parsed = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug(f"Queue item {self.id} has undecodable data")
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def is_poisoned(self, max_retries: int) -> bool:
        return self.retry_count >= max_retries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "operation": self.operation.value,
            "data": self.parsed_data(),
            "created_at": to_iso_string(self.created_at),
            "updated_at": to_iso_string(self.updated_at),
            "retry_count": self.retry_count,
            "last_error": self.last_error,
        }


@dataclass
class SyncErrorRecord:
    """One entry of a cycle's error list."""

    task_id: str
    operation: str
    error: str
    kind: ErrorKind
    timestamp: datetime = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "operation": self.operation,
            "error": self.error,
            "kind": self.kind.value,
            "timestamp": to_iso_string(self.timestamp),
        }


@dataclass
class CycleResult:
    """Aggregated outcome of one sync cycle."""

    success: bool = True
    synced_items: int = 0
    failed_items: int = 0
    conflicts_resolved: int = 0
    batches: int = 0
    errors: List[SyncErrorRecord] = field(default_factory=list)
    abort_reason: Optional[ErrorKind] = None
    started_at: datetime = field(default_factory=now_utc)
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @classmethod
    def aborted(cls, reason: ErrorKind) -> "CycleResult":
        """A cycle that never touched the outbox."""
        result = cls(success=False, abort_reason=reason)
        result.complete()
        return result

    def add_failure(self, item: QueueItem, error: SyncError, operation: Optional[str] = None):
        """Count an item as failed and record why."""
        self.failed_items += 1
        self.add_note(item, error, operation)

    def add_note(self, item: QueueItem, error: SyncError, operation: Optional[str] = None):
        """Record an error entry without touching the counters."""
        self.errors.append(SyncErrorRecord(
            task_id=item.task_id,
            operation=operation or item.operation.value,
            error=error.message,
            kind=error.kind,
        ))

    def complete(self):
        """Mark the cycle as completed and calculate duration."""
        self.completed_at = now_utc()
        self.duration_seconds = (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON shape returned by the API."""
        return {
            "success": self.success,
            "synced_items": self.synced_items,
            "failed_items": self.failed_items,
            "conflicts_resolved": self.conflicts_resolved,
            "batches": self.batches,
            "errors": [record.to_dict() for record in self.errors],
            "abort_reason": self.abort_reason.value if self.abort_reason else None,
            "started_at": to_iso_string(self.started_at),
            "completed_at": to_iso_string(self.completed_at),
            "duration_seconds": self.duration_seconds,
        }
