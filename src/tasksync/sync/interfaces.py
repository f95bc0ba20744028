"""Narrow capabilities exchanged between the task repository and the sync engine.

The repository only appends to the outbox, and the engine only reads a task
and overwrites it without re-enqueueing.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Union

from ..task import Task
from .sync_models import Operation, QueueItem


class Outbox(ABC):
    """Append-only access to the sync queue."""

    @abstractmethod
    async def enqueue(self, task_id: str, operation: Union[Operation, str],
                      data: Dict[str, Any]) -> QueueItem:
        """Append a queue item describing one local mutation.

        Args:
            task_id: Owning task
            operation: create, update or delete
            data: Snapshot of the task fields at the time of the call

        Returns:
            The stored queue item
        """
        pass


class LocalOverwrite(ABC):
    """Local-only task access used when the server's copy wins a conflict."""

    @abstractmethod
    async def get_task_for_sync(self, task_id: str) -> Optional[Task]:
        """Get a task including soft-deleted rows."""
        pass

    @abstractmethod
    async def update_local_only(self, task_id: str, updates: Dict[str, Any]) -> bool:
        """Overwrite task fields without enqueueing a new outbox item.

        Returns:
            True if the task row was updated
        """
        pass
