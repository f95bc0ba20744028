"""Synchronization subsystem package for tasksync."""

from .errors import (
    ErrorKind,
    SyncError,
    TaskSyncError,
    TransportError,
    TransportTimeoutError,
    MalformedResponseError,
    TaskNotFoundError,
)
from .sync_models import (
    Operation,
    Verdict,
    QueueItem,
    SyncErrorRecord,
    CycleResult,
)
from .interfaces import Outbox, LocalOverwrite
from .outbox import SqliteOutbox
from .conflict import ConflictDecision, Winner, resolve_conflict
from .transport import RemoteTransport
from .sync_engine import SyncEngine, partition_batches
from .status import StatusReporter
from .scheduler import AutoSyncScheduler

__all__ = [
    "ErrorKind",
    "SyncError",
    "TaskSyncError",
    "TransportError",
    "TransportTimeoutError",
    "MalformedResponseError",
    "TaskNotFoundError",
    "Operation",
    "Verdict",
    "QueueItem",
    "SyncErrorRecord",
    "CycleResult",
    "Outbox",
    "LocalOverwrite",
    "SqliteOutbox",
    "ConflictDecision",
    "Winner",
    "resolve_conflict",
    "RemoteTransport",
    "SyncEngine",
    "partition_batches",
    "StatusReporter",
    "AutoSyncScheduler",
]
