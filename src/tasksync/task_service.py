"""
Task Repository

CRUD access to tasks for the CLI and the HTTP API:
- Every mutation writes the task row first, then appends an outbox entry
- Deletes are soft; the row stays so the delete can be synced
- Server-side overwrites go through update_local_only and are never re-queued
"""

import logging
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from .task import Task, SyncStatus
from .sync.errors import TaskNotFoundError
from .sync.interfaces import LocalOverwrite, Outbox
from .sync.sync_models import Operation
from .utils.datetime import now_utc, next_after

if TYPE_CHECKING:
    from .storage import LocalStore


logger = logging.getLogger(__name__)

# User-editable fields
CONTENT_FIELDS = ("title", "description", "completed")

# Fields the sync engine may overwrite without producing an outbox entry
LOCAL_ONLY_FIELDS = frozenset({
    "title",
    "description",
    "completed",
    "updated_at",
    "is_deleted",
    "server_id",
})


class TaskRepository(LocalOverwrite):
    """Task CRUD with outbox recording."""

    def __init__(self, store: "LocalStore", outbox: Outbox, max_retries: int = 3):
        self.store = store
        self.outbox = outbox
        self.max_retries = max_retries
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_all_tasks(self) -> List[Task]:
        """All live tasks, oldest first."""
        return await self.store.list_tasks()

    async def get_task(self, task_id: str) -> Optional[Task]:
        """A live task, or None if unknown or deleted."""
        return await self.store.get_task(task_id)

    async def get_tasks_needing_sync(self) -> List[Task]:
        """Live tasks whose sync status is pending or error."""
        return await self.store.get_tasks_needing_sync()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_task(self, title: str, description: str = "") -> Task:
        """Create a task and enqueue its ``create``.

        Raises:
            ValueError: If the title is empty
        """
        title = (title or "").strip()
        if not title:
            raise ValueError("Title is required")

        now = now_utc()
        task = Task(
            title=title,
            description=description or "",
            created_at=now,
            updated_at=now,
            sync_status=SyncStatus.PENDING,
        )
        await self.store.insert_task(task)
        await self.outbox.enqueue(task.id, Operation.CREATE, task.snapshot())

        self.logger.info(f"Created task {task.id}")
        return task

    async def update_task(self, task_id: str, updates: Dict[str, Any]) -> Task:
        """Apply user edits and enqueue an ``update``.

        Args:
            task_id: Local task id
            updates: Any of title, description, completed

        Raises:
            TaskNotFoundError: If the task is unknown or deleted
            ValueError: If no editable field is given or the title is empty
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        changes = {k: v for k, v in updates.items() if k in CONTENT_FIELDS and v is not None}
        if not changes:
            raise ValueError("No updatable fields provided")

        if "title" in changes:
            changes["title"] = str(changes["title"]).strip()
            if not changes["title"]:
                raise ValueError("Title is required")
        if "completed" in changes:
            changes["completed"] = bool(changes["completed"])

        for name, value in changes.items():
            setattr(task, name, value)
        task.updated_at = next_after(task.updated_at)
        task.sync_status = await self._status_after_edit(task_id)

        await self.store.update_task(task_id, {
            **changes,
            "updated_at": task.updated_at,
            "sync_status": task.sync_status,
        })
        await self.outbox.enqueue(task.id, Operation.UPDATE, task.snapshot())

        self.logger.info(f"Updated task {task_id}: {', '.join(sorted(changes))}")
        return task

    async def complete_task(self, task_id: str, completed: bool = True) -> Task:
        """Mark a task (in)complete."""
        return await self.update_task(task_id, {"completed": completed})

    async def delete_task(self, task_id: str) -> Task:
        """Soft-delete a task and enqueue a ``delete``.

        Raises:
            TaskNotFoundError: If the task is unknown or already deleted
        """
        task = await self.store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        task.is_deleted = True
        task.updated_at = next_after(task.updated_at)
        task.sync_status = await self._status_after_edit(task_id)

        await self.store.update_task(task_id, {
            "is_deleted": True,
            "updated_at": task.updated_at,
            "sync_status": task.sync_status,
        })
        await self.outbox.enqueue(task.id, Operation.DELETE, task.snapshot())

        self.logger.info(f"Deleted task {task_id}")
        return task

    async def _status_after_edit(self, task_id: str) -> SyncStatus:
        # a poisoned item keeps the task in error
        if await self.store.count_failed_queue_items_for_task(task_id, self.max_retries):
            return SyncStatus.ERROR
        return SyncStatus.PENDING

    # ------------------------------------------------------------------
    # LocalOverwrite
    # ------------------------------------------------------------------

    async def get_task_for_sync(self, task_id: str) -> Optional[Task]:
        return await self.store.get_task(task_id, include_deleted=True)

    async def update_local_only(self, task_id: str, updates: Dict[str, Any]) -> bool:
        fields = {k: v for k, v in updates.items() if k in LOCAL_ONLY_FIELDS}
        ignored = set(updates) - LOCAL_ONLY_FIELDS
        if ignored:
            self.logger.debug(f"Ignoring non-local fields for task {task_id}: {', '.join(sorted(ignored))}")
        if not fields:
            return False
        return await self.store.update_task(task_id, fields)
