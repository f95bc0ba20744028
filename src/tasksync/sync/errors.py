"""Error taxonomy for the sync subsystem.

Per-item failures inside a cycle are plain values (:class:`SyncError`) that
get recorded on the queue item and in the cycle result. Exceptions are only
raised at the edges: the HTTP transport and the task repository.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorKind(Enum):
    """Why a sync step did not succeed."""
    OFFLINE = "offline"                              # connectivity probe failed
    TRANSPORT = "transport"                          # whole batch failed in transit
    REJECTED = "rejected"                            # explicit per-item error verdict
    UNACKNOWLEDGED = "unacknowledged"                # server omitted the item
    CONFLICT_MISSING_DATA = "conflict_missing_data"  # conflict without both sides
    POISONED = "poisoned"                            # retry ceiling reached
    CONFLICT_RETRY = "conflict_retry"                # local won, update requeued
    CONFLICT_RESOLVED = "conflict_resolved"          # remote won, local overwritten
    STORAGE = "storage"                              # persisting an outcome failed
    BUSY = "busy"                                    # another cycle is running


@dataclass(frozen=True)
class SyncError:
    """A typed failure value carrying a taxonomy kind and a readable message."""

    kind: ErrorKind
    message: str

    def __str__(self) -> str:
        return self.message


class TaskSyncError(Exception):
    """Base exception for tasksync."""
    pass


class TransportError(TaskSyncError):
    """The remote authority could not be reached or answered unusably."""

    def to_sync_error(self) -> SyncError:
        return SyncError(ErrorKind.TRANSPORT, str(self) or "Batch failed")


class TransportTimeoutError(TransportError):
    """A request to the remote authority timed out."""
    pass


class MalformedResponseError(TransportError):
    """The remote authority returned a body that could not be parsed."""
    pass


class TaskNotFoundError(TaskSyncError):
    """The requested task does not exist or is deleted."""

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id
