"""Sync engine: drains the outbox and reconciles server verdicts.

A cycle probes connectivity, reads every queue item still under the retry
ceiling (oldest first, across all tasks), submits them in fixed-size batches
one batch at a time, and applies each per-item verdict:

- ``success``: server fields are applied locally, the task is marked synced
  and the item is removed.
- ``conflict``: last-write-wins. A newer local copy is re-enqueued as an
  update; a newer server copy overwrites the local task.
- anything else, or no verdict at all: the item's retry count is bumped.

Items that reach the retry ceiling stay in the queue as a record of the
failure, are skipped by later cycles, and put their task in ``error``.
"""

import asyncio
import logging
import sqlite3
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, TypeVar, Union

from ..config import ConfigModel
from ..task import Task, SyncStatus, SNAPSHOT_FIELDS
from ..utils.datetime import now_utc, parse_datetime, to_iso_string
from .conflict import resolve_conflict
from .errors import ErrorKind, SyncError, TransportError
from .interfaces import LocalOverwrite, Outbox
from .outbox import SqliteOutbox
from .protocol import BatchSyncRequest, ProcessedItem
from .sync_models import LAST_SYNC_KEY, CycleResult, Operation, QueueItem, Verdict

if TYPE_CHECKING:
    from ..storage import LocalStore
    from .transport import RemoteTransport


logger = logging.getLogger(__name__)

T = TypeVar("T")

NO_RESPONSE_MESSAGE = "No server response for item"
MISSING_DATA_MESSAGE = "Conflict: missing data to resolve"
LOCAL_WINS_MESSAGE = "Conflict resolved (local newer). Requeued update."
REMOTE_WINS_MESSAGE = "Conflict resolved using last-write-wins (server newer)"


def partition_batches(items: Sequence[T], size: int) -> List[List[T]]:
    """Split items into consecutive batches of at most ``size`` elements.

    Raises:
        ValueError: If size is smaller than 1
    """
    if size < 1:
        raise ValueError(f"Batch size must be at least 1, got {size}")
    return [list(items[start:start + size]) for start in range(0, len(items), size)]


class SyncEngine:
    """Drains the outbox against a single remote authority.

    Only one cycle runs at a time per engine; a cycle requested while another
    is in flight is rejected with ``abort_reason=busy``.
    """

    def __init__(self, config: ConfigModel, store: "LocalStore", transport: "RemoteTransport",
                 local_overwrite: LocalOverwrite, outbox: Optional[Outbox] = None):
        """Initialize the engine.

        Args:
            config: Retry ceiling and batch size are read from here
            store: Local store holding tasks, queue items and metadata
            transport: Remote transport used for probing and batch submission
            local_overwrite: Capability used to overwrite tasks on server-wins
            outbox: Outbox to use for enqueueing; defaults to the store's queue
        """
        self.config = config
        self.store = store
        self.transport = transport
        self.local_overwrite = local_overwrite
        self.outbox = outbox or SqliteOutbox(store)
        self.last_result: Optional[CycleResult] = None
        self._cycle_lock = asyncio.Lock()
        self.logger = logging.getLogger(__name__)

    @property
    def max_retries(self) -> int:
        return self.config.max_retries

    @property
    def batch_size(self) -> int:
        return self.config.batch_size

    @property
    def is_syncing(self) -> bool:
        """True while a cycle is in flight."""
        return self._cycle_lock.locked()

    # Outbox

    async def enqueue(self, task_id: str, operation: Union[Operation, str],
                      data: Dict[str, Any]) -> QueueItem:
        """Append a queue item; no side effects on task data."""
        return await self.outbox.enqueue(task_id, operation, data)

    # Connectivity

    async def check_connectivity(self) -> bool:
        """Probe the remote authority; never raises."""
        try:
            return bool(await self.transport.check_connectivity())
        except Exception as e:
            self.logger.debug(f"Connectivity check error: {e}")
            return False

    # Cycle

    async def run_cycle(self) -> CycleResult:
        """Run one full sync cycle.

        Returns:
            Aggregated cycle result
        """
        if self._cycle_lock.locked():
            self.logger.warning("Sync cycle already in progress, rejecting new request")
            return CycleResult.aborted(ErrorKind.BUSY)

        async with self._cycle_lock:
            result = await self._run_cycle_locked()

        self.last_result = result
        return result

    async def _run_cycle_locked(self) -> CycleResult:
        if not await self.check_connectivity():
            self.logger.info("Offline - sync skipped, changes stay queued")
            return CycleResult.aborted(ErrorKind.OFFLINE)

        result = CycleResult()
        items = await self.store.get_queue_items(self.max_retries)
        if not items:
            self.logger.debug("Sync queue is empty")
            result.complete()
            return result

        batches = partition_batches(items, self.batch_size)
        self.logger.info(f"Starting sync cycle: {len(items)} queued items in {len(batches)} batches")

        for batch in batches:
            result.batches += 1
            await self._process_batch(batch, result)

        result.complete()
        self.logger.info(
            f"Sync cycle finished in {result.duration_seconds:.2f}s: "
            f"{result.synced_items} synced, {result.failed_items} failed"
        )
        return result

    async def _process_batch(self, batch: List[QueueItem], result: CycleResult):
        """Submit one batch and reconcile every item in it."""
        request = BatchSyncRequest.from_queue_items(batch)

        try:
            response = await self.transport.submit_batch(request)
        except Exception as e:
            if isinstance(e, TransportError):
                error = e.to_sync_error()
            else:
                error = SyncError(ErrorKind.TRANSPORT, str(e) or "Batch failed")
            self.logger.warning(f"Batch of {len(batch)} items failed: {error.message}")
            result.success = False
            for item in batch:
                await self._fail_item(item, error, result)
            return

        verdicts = response.by_client_id()
        for item in batch:
            processed = verdicts.get(item.id)
            if processed is None:
                await self._fail_item(item, SyncError(ErrorKind.UNACKNOWLEDGED, NO_RESPONSE_MESSAGE), result)
                continue

            try:
                await self._apply_verdict(item, processed, result)
            except sqlite3.Error as e:
                self.logger.error(f"Failed to persist sync outcome for queue item {item.id}: {e}")
                result.success = False
                result.add_failure(item, SyncError(ErrorKind.STORAGE, f"Failed to persist sync outcome: {e}"))

            await self._record_sync_attempt()

    async def _apply_verdict(self, item: QueueItem, processed: ProcessedItem, result: CycleResult):
        if processed.status == Verdict.SUCCESS.value:
            await self._apply_success(item, processed, result)
        elif processed.status == Verdict.CONFLICT.value:
            await self._apply_conflict(item, processed, result)
        else:
            message = processed.error or "Server error"
            await self._fail_item(item, SyncError(ErrorKind.REJECTED, message), result)

    async def _apply_success(self, item: QueueItem, processed: ProcessedItem, result: CycleResult):
        updates = self._server_fields(processed.resolved_data or {})
        if processed.server_id is not None:
            updates["server_id"] = processed.server_id
        if updates:
            await self.local_overwrite.update_local_only(item.task_id, updates)

        await self.store.delete_queue_item(item.id)
        await self._settle_after_success(item.task_id)
        result.synced_items += 1

    async def _apply_conflict(self, item: QueueItem, processed: ProcessedItem, result: CycleResult):
        local = await self.local_overwrite.get_task_for_sync(item.task_id)
        remote = self._remote_task(item.task_id, processed)

        if local is None or remote is None:
            await self._fail_item(item, SyncError(ErrorKind.CONFLICT_MISSING_DATA, MISSING_DATA_MESSAGE), result)
            return

        decision = resolve_conflict(local, remote)

        if decision.local_wins:
            snapshot = local.snapshot()
            await self.outbox.enqueue(local.id, Operation.UPDATE, {k: snapshot[k] for k in SNAPSHOT_FIELDS})
            await self._fail_item(
                item,
                SyncError(ErrorKind.CONFLICT_RETRY, LOCAL_WINS_MESSAGE),
                result,
                operation=Operation.UPDATE.value,
            )
            return

        updates = {
            "title": remote.title,
            "description": remote.description,
            "completed": remote.completed,
            "updated_at": remote.updated_at,
            "is_deleted": remote.is_deleted,
        }
        if remote.server_id is not None:
            updates["server_id"] = remote.server_id
        await self.local_overwrite.update_local_only(item.task_id, updates)
        await self.store.delete_queue_item(item.id)
        await self._settle_after_success(item.task_id)

        result.synced_items += 1
        result.conflicts_resolved += 1
        result.add_note(item, SyncError(ErrorKind.CONFLICT_RESOLVED, REMOTE_WINS_MESSAGE))

    # Retry and failure accounting

    async def record_failure(self, item: QueueItem, error: SyncError) -> int:
        """Bump an item's retry count and update its task's sync status.

        At the ceiling the task goes to ``error`` and the item stays in the
        queue; below it a ``synced`` task drops back to ``pending``.

        Returns:
            The item's retry count after the increment
        """
        retry_count = await self.store.increment_retry(item.id, error.message, now_utc())
        item.retry_count = retry_count
        item.last_error = error.message

        if retry_count >= self.max_retries:
            self.logger.warning(
                f"Queue item {item.id} ({item.operation.value} of task {item.task_id}) "
                f"reached {retry_count}/{self.max_retries} attempts: {error.message}"
            )
            await self.store.update_task(item.task_id, {"sync_status": SyncStatus.ERROR})
        else:
            await self.store.set_task_sync_status_if(item.task_id, SyncStatus.PENDING, SyncStatus.SYNCED)

        return retry_count

    async def _fail_item(self, item: QueueItem, error: SyncError, result: CycleResult,
                         operation: Optional[str] = None):
        result.add_failure(item, error, operation)
        try:
            retry_count = await self.record_failure(item, error)
        except sqlite3.Error as e:
            self.logger.error(f"Failed to record failure for queue item {item.id}: {e}")
            result.success = False
            result.add_note(item, SyncError(ErrorKind.STORAGE, f"Failed to record failure: {e}"))
            return

        if retry_count >= self.max_retries:
            result.add_note(item, SyncError(
                ErrorKind.POISONED,
                f"Retry limit reached ({retry_count}/{self.max_retries}); task marked as error",
            ))

    # Poisoned item administration

    async def get_failed_items(self) -> List[QueueItem]:
        """Queue items that reached the retry ceiling."""
        return await self.store.get_failed_queue_items(self.max_retries)

    async def retry_failed_items(self, item_ids: Optional[Sequence[str]] = None) -> int:
        """Reset poisoned items so the next cycle picks them up again.

        Args:
            item_ids: Restrict to these items; None resets every poisoned item

        Returns:
            Number of items reset
        """
        async with self._cycle_lock:
            items = await self.store.get_failed_queue_items(self.max_retries, item_ids)
            count = await self.store.reset_queue_items([item.id for item in items])
            for task_id in {item.task_id for item in items}:
                if await self.store.count_failed_queue_items_for_task(task_id, self.max_retries):
                    continue
                await self.store.set_task_sync_status_if(task_id, SyncStatus.PENDING, SyncStatus.ERROR)

        self.logger.info(f"Reset {count} poisoned queue items")
        return count

    async def clear_failed_items(self, item_ids: Optional[Sequence[str]] = None) -> int:
        """Delete poisoned items. Their tasks stay in ``error``.

        Returns:
            Number of items deleted
        """
        async with self._cycle_lock:
            items = await self.store.get_failed_queue_items(self.max_retries, item_ids)
            count = await self.store.delete_queue_items([item.id for item in items])

        self.logger.info(f"Cleared {count} poisoned queue items")
        return count

    # Helpers

    async def _settle_after_success(self, task_id: str):
        """Set a task's status once one of its items has been accepted.

        A poisoned item keeps the task in ``error``; other queued items keep
        it ``pending``. Only an empty queue makes it ``synced``.
        """
        if await self.store.count_failed_queue_items_for_task(task_id, self.max_retries):
            status = SyncStatus.ERROR
        elif await self.store.count_queue_items_for_task(task_id, self.max_retries):
            status = SyncStatus.PENDING
        else:
            status = SyncStatus.SYNCED

        await self.store.update_task(task_id, {
            "sync_status": status,
            "last_synced_at": now_utc(),
        })

    async def _record_sync_attempt(self):
        """Best-effort write of the last sync attempt time."""
        try:
            await self.store.set_meta(LAST_SYNC_KEY, to_iso_string(now_utc()))
        except Exception as e:
            self.logger.debug(f"Could not record {LAST_SYNC_KEY}: {e}")

    def _remote_task(self, task_id: str, processed: ProcessedItem) -> Optional[Task]:
        """Build the server's copy of a task from a conflict verdict."""
        if not processed.resolved_data:
            return None

        data = dict(processed.resolved_data)
        data.setdefault("id", task_id)
        data["sync_status"] = SyncStatus.SYNCED.value
        if data.get("server_id") is None:
            data["server_id"] = processed.server_id

        try:
            return Task.from_dict(data)
        except (TypeError, ValueError) as e:
            self.logger.debug(f"Unusable server data for task {task_id}: {e}")
            return None

    @staticmethod
    def _server_fields(data: Dict[str, Any]) -> Dict[str, Any]:
        """Pick the server-confirmed task fields that are present and well-typed."""
        fields: Dict[str, Any] = {}
        for name in ("title", "description"):
            if isinstance(data.get(name), str):
                fields[name] = data[name]
        for name in ("completed", "is_deleted"):
            if isinstance(data.get(name), bool):
                fields[name] = data[name]
        updated_at = parse_datetime(data.get("updated_at"))
        if updated_at is not None:
            fields["updated_at"] = updated_at
        if data.get("server_id") is not None:
            fields["server_id"] = str(data["server_id"])
        return fields
