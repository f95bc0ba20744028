"""Tests for the sync engine cycle, retry accounting and conflict handling."""

import asyncio
import dataclasses
import sqlite3
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from tasksync.task import SyncStatus
from tasksync.sync.errors import ErrorKind, SyncError, TransportError, TransportTimeoutError
from tasksync.sync.protocol import BatchSyncResponse
from tasksync.sync.sync_engine import SyncEngine, partition_batches
from tasksync.sync.sync_models import LAST_SYNC_KEY, Operation
from tasksync.utils.datetime import to_iso_string


def conflict_with(task, delta, server_id="srv-1", **fields):
    """A conflict verdict whose server copy is ``delta`` newer than ``task``."""
    data = task.snapshot()
    data.update(fields)
    data["updated_at"] = to_iso_string(task.updated_at + delta)
    return {"status": "conflict", "resolved_data": data, "server_id": server_id}


def rejected(message="Validation failed"):
    return lambda item: {"status": "error", "error": message}


async def poison(engine, server, cycles=3):
    server.rule = rejected()
    for _ in range(cycles):
        await engine.run_cycle()


class TestPartitionBatches:
    """Test batch partitioning."""

    def test_partition_preserves_order(self):
        assert partition_batches([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]

    def test_partition_count_is_ceiling(self):
        for n in range(0, 12):
            for size in range(1, 5):
                batches = partition_batches(list(range(n)), size)
                assert len(batches) == -(-n // size)
                assert [x for batch in batches for x in batch] == list(range(n))
                assert all(len(batch) <= size for batch in batches)

    def test_partition_empty(self):
        assert partition_batches([], 50) == []

    def test_partition_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            partition_batches([1], 0)


class TestCycleBasics:
    """Test connectivity handling and empty queues."""

    async def test_offline_short_circuits(self, engine, repo, store, transport):
        task = await repo.create_task("Offline task")
        transport.check_connectivity.return_value = False

        result = await engine.run_cycle()

        assert result.success is False
        assert result.abort_reason is ErrorKind.OFFLINE
        assert result.synced_items == 0
        assert result.failed_items == 0
        transport.submit_batch.assert_not_called()

        items = await store.get_queue_items_for_task(task.id)
        assert len(items) == 1
        assert items[0].retry_count == 0

    async def test_connectivity_exception_counts_as_offline(self, engine, transport):
        transport.check_connectivity.side_effect = RuntimeError("dns failure")

        assert await engine.check_connectivity() is False
        result = await engine.run_cycle()
        assert result.abort_reason is ErrorKind.OFFLINE

    async def test_empty_queue_succeeds(self, engine, transport):
        result = await engine.run_cycle()

        assert result.success is True
        assert result.abort_reason is None
        assert result.synced_items == 0
        assert result.failed_items == 0
        transport.submit_batch.assert_not_called()

    async def test_enqueue_does_not_touch_task(self, engine, repo, store):
        task = await repo.create_task("Task")

        item = await engine.enqueue(task.id, "update", {"title": "Queued"})

        assert item.operation is Operation.UPDATE
        assert (await store.get_queue_item(item.id)).parsed_data() == {"title": "Queued"}
        assert (await store.get_task(task.id)).title == "Task"


class TestSuccessVerdicts:
    """Test the success path."""

    async def test_create_then_sync_marks_task_synced(self, engine, repo, store, server):
        task = await repo.create_task("Buy milk")
        server.rule = lambda item: {"status": "success", "server_id": "srv-1", "resolved_data": item.data}

        result = await engine.run_cycle()

        assert result.success is True
        assert result.synced_items == 1
        assert result.failed_items == 0
        assert result.errors == []

        stored = await store.get_task(task.id)
        assert stored.sync_status == SyncStatus.SYNCED
        assert stored.server_id == "srv-1"
        assert stored.last_synced_at is not None
        assert await store.get_queue_items_for_task(task.id) == []
        assert await store.get_meta(LAST_SYNC_KEY) is not None

    async def test_request_carries_snapshot(self, engine, repo, server):
        task = await repo.create_task("Snapshot me", "details")

        await engine.run_cycle()

        sent = server.requests[0].items[0]
        assert sent.task_id == task.id
        assert sent.operation == "create"
        assert sent.retry_count == 0
        assert sent.data["title"] == "Snapshot me"
        assert sent.data["description"] == "details"

    async def test_success_applies_server_fields_without_requeue(self, engine, repo, store, server):
        task = await repo.create_task("  raw title  ")
        server.rule = lambda item: {
            "status": "success",
            "server_id": 42,
            "resolved_data": {**item.data, "title": "Normalized"},
        }

        await engine.run_cycle()

        stored = await store.get_task(task.id)
        assert stored.title == "Normalized"
        assert stored.server_id == "42"
        assert await store.get_queue_items_for_task(task.id) == []

    async def test_items_are_batched_in_queue_order(self, config, store, transport, repo, outbox, server):
        engine = SyncEngine(dataclasses.replace(config, batch_size=2), store, transport, repo, outbox)
        for i in range(5):
            await repo.create_task(f"Task {i}")
        queued = [item.id for item in await store.get_queue_items(config.max_retries)]

        result = await engine.run_cycle()

        assert result.batches == 3
        assert [len(ids) for ids in server.submitted_ids] == [2, 2, 1]
        assert [i for ids in server.submitted_ids for i in ids] == queued
        assert result.synced_items == 5

    async def test_duplicate_results_keep_last_entry(self, engine, repo, store, transport):
        task = await repo.create_task("Duplicate")

        async def respond(request):
            item = request.items[0]
            return BatchSyncResponse.model_validate({"processed_items": [
                {"client_id": item.id, "status": "error", "error": "stale"},
                {"client_id": item.id, "status": "success", "server_id": "srv-2"},
                {"client_id": "not-in-batch", "status": "success"},
            ]})

        transport.submit_batch = AsyncMock(side_effect=respond)

        result = await engine.run_cycle()

        assert result.synced_items == 1
        assert result.failed_items == 0
        assert (await store.get_task(task.id)).server_id == "srv-2"
        assert await store.get_queue_items_for_task(task.id) == []

    async def test_create_update_delete_for_three_tasks(self, engine, repo, store, server):
        edited = await repo.create_task("Edit me")
        removed = await repo.create_task("Remove me")
        await engine.run_cycle()

        created = await repo.create_task("New")
        await repo.update_task(edited.id, {"completed": True})
        await repo.delete_task(removed.id)
        queued = await store.get_queue_items(3)
        assert [(item.task_id, item.operation) for item in queued] == [
            (created.id, Operation.CREATE),
            (edited.id, Operation.UPDATE),
            (removed.id, Operation.DELETE),
        ]

        result = await engine.run_cycle()

        assert result.success is True
        assert result.synced_items == 3
        assert result.failed_items == 0
        assert await store.count_queue_items(3) == 0
        assert await store.count_failed_queue_items(3) == 0
        assert [item.operation for item in server.requests[-1].items] == ["create", "update", "delete"]

        for task_id in (created.id, edited.id):
            assert (await store.get_task(task_id)).sync_status == SyncStatus.SYNCED
        tombstone = await store.get_task(removed.id, include_deleted=True)
        assert tombstone is not None
        assert tombstone.is_deleted is True
        assert tombstone.sync_status == SyncStatus.SYNCED

    async def test_success_with_earlier_item_still_queued_stays_pending(self, engine, repo, store, server):
        task = await repo.create_task("Task")
        await repo.update_task(task.id, {"title": "Edited"})
        server.rule = lambda item: {"status": "success"} if item.operation == "update" else None

        result = await engine.run_cycle()

        assert result.synced_items == 1
        assert result.failed_items == 1
        assert [item.operation for item in await store.get_queue_items_for_task(task.id)] == [Operation.CREATE]
        assert (await store.get_task(task.id)).sync_status == SyncStatus.PENDING


class TestFailureVerdicts:
    """Test rejections, missing acknowledgements and transport failures."""

    async def test_rejection_increments_retry(self, engine, repo, store, server):
        task = await repo.create_task("Rejected")
        server.rule = rejected("Title too long")

        result = await engine.run_cycle()

        assert result.failed_items == 1
        assert result.errors[0].kind is ErrorKind.REJECTED
        assert result.errors[0].error == "Title too long"

        item = (await store.get_queue_items_for_task(task.id))[0]
        assert item.retry_count == 1
        assert item.last_error == "Title too long"
        assert (await store.get_task(task.id)).sync_status == SyncStatus.PENDING

    async def test_rejection_without_message(self, engine, repo, server):
        await repo.create_task("Rejected")
        server.rule = lambda item: {"status": "error"}

        result = await engine.run_cycle()

        assert result.errors[0].error == "Server error"

    async def test_unacknowledged_item_fails(self, engine, repo, store, server):
        answered = await repo.create_task("Answered")
        ignored = await repo.create_task("Ignored")
        server.rule = lambda item: {"status": "success"} if item.task_id == answered.id else None

        result = await engine.run_cycle()

        assert result.synced_items == 1
        assert result.failed_items == 1
        assert result.errors[0].kind is ErrorKind.UNACKNOWLEDGED
        assert result.errors[0].error == "No server response for item"
        assert result.errors[0].task_id == ignored.id
        assert (await store.get_queue_items_for_task(ignored.id))[0].retry_count == 1

    async def test_transport_failure_fails_whole_batch(self, engine, repo, store, transport):
        tasks = [await repo.create_task(f"Task {i}") for i in range(2)]
        transport.submit_batch = AsyncMock(side_effect=TransportError("Batch request failed: reset"))

        result = await engine.run_cycle()

        assert result.success is False
        assert result.failed_items == 2
        assert result.synced_items == 0
        assert {record.kind for record in result.errors} == {ErrorKind.TRANSPORT}
        for task in tasks:
            item = (await store.get_queue_items_for_task(task.id))[0]
            assert item.retry_count == 1
            assert item.last_error == "Batch request failed: reset"

    async def test_transport_failure_does_not_stop_next_batch(self, config, store, transport, repo, outbox, server):
        engine = SyncEngine(dataclasses.replace(config, batch_size=2), store, transport, repo, outbox)
        for i in range(5):
            await repo.create_task(f"Task {i}")

        calls = []

        async def flaky(request):
            calls.append(request)
            if len(calls) == 1:
                raise TransportTimeoutError("Batch request timed out")
            return server.handle(request)

        transport.submit_batch = AsyncMock(side_effect=flaky)

        result = await engine.run_cycle()

        assert result.success is False
        assert result.batches == 3
        assert result.failed_items == 2
        assert result.synced_items == 3

    async def test_unexpected_submit_error_is_a_transport_failure(self, engine, repo, transport):
        await repo.create_task("Task")
        transport.submit_batch = AsyncMock(side_effect=RuntimeError("boom"))

        result = await engine.run_cycle()

        assert result.failed_items == 1
        assert result.errors[0].kind is ErrorKind.TRANSPORT


class TestRetryAccounting:
    """Test record_failure and poisoning."""

    async def test_record_failure_adds_exactly_one(self, engine, repo, store):
        await repo.create_task("Task")
        item = (await store.get_queue_items(3))[0]

        count = await engine.record_failure(item, SyncError(ErrorKind.REJECTED, "nope"))

        assert count == 1
        stored = await store.get_queue_item(item.id)
        assert stored.retry_count == 1
        assert stored.last_error == "nope"
        assert stored.updated_at is not None

    async def test_record_failure_moves_synced_task_back_to_pending(self, engine, repo, store):
        task = await repo.create_task("Task")
        await store.update_task(task.id, {"sync_status": SyncStatus.SYNCED})
        item = (await store.get_queue_items(3))[0]

        await engine.record_failure(item, SyncError(ErrorKind.TRANSPORT, "timeout"))

        assert (await store.get_task(task.id)).sync_status == SyncStatus.PENDING

    async def test_record_failure_at_ceiling_marks_error(self, engine, repo, store):
        task = await repo.create_task("Task")
        item = (await store.get_queue_items(3))[0]

        for _ in range(3):
            await engine.record_failure(item, SyncError(ErrorKind.REJECTED, "nope"))

        assert (await store.get_task(task.id)).sync_status == SyncStatus.ERROR
        assert await store.get_queue_item(item.id) is not None

    async def test_poisoned_item_is_excluded(self, engine, repo, store, server):
        task = await repo.create_task("Doomed")
        server.rule = rejected()

        results = [await engine.run_cycle() for _ in range(3)]

        assert ErrorKind.POISONED in {record.kind for record in results[-1].errors}
        assert (await store.get_task(task.id)).sync_status == SyncStatus.ERROR

        fourth = await engine.run_cycle()

        assert len(server.requests) == 3
        assert fourth.success is True
        assert fourth.failed_items == 0
        item = (await store.get_queue_items_for_task(task.id))[0]
        assert item.retry_count == 3

    async def test_poisoned_item_does_not_block_others(self, engine, repo, server):
        doomed = await repo.create_task("Doomed")
        await poison(engine, server)
        fresh = await repo.create_task("Fresh")
        server.rule = lambda item: {"status": "success"}

        result = await engine.run_cycle()

        assert result.synced_items == 1
        assert [item.task_id for item in server.requests[-1].items] == [fresh.id]
        assert doomed.id not in {item.task_id for item in server.requests[-1].items}

    async def test_later_success_keeps_poisoned_task_in_error(self, config, store, transport, repo, outbox, server):
        engine = SyncEngine(dataclasses.replace(config, max_retries=1), store, transport, repo, outbox)
        task = await repo.create_task("Half rejected")
        await repo.update_task(task.id, {"completed": True})
        server.rule = lambda item: (
            {"status": "error", "error": "Bad create"} if item.operation == "create" else {"status": "success"}
        )

        result = await engine.run_cycle()

        assert result.synced_items == 1
        assert result.failed_items == 1
        assert [item.operation for item in await store.get_failed_queue_items(1)] == [Operation.CREATE]
        assert (await store.get_task(task.id)).sync_status == SyncStatus.ERROR

    async def test_malformed_verdict_counts_as_unacknowledged(self, engine, repo, store, transport):
        good = await repo.create_task("Good")
        bad = await repo.create_task("Bad")

        async def respond(request):
            first, second = request.items
            return BatchSyncResponse.model_validate({"processed_items": [
                {"client_id": first.id, "status": "success"},
                {"client_id": second.id, "resolved_data": ["not", "an", "object"]},
            ]})

        transport.submit_batch = AsyncMock(side_effect=respond)

        result = await engine.run_cycle()

        assert result.synced_items == 1
        assert result.failed_items == 1
        assert result.errors[0].kind is ErrorKind.UNACKNOWLEDGED
        assert result.errors[0].task_id == bad.id
        assert (await store.get_task(good.id)).sync_status == SyncStatus.SYNCED
        assert (await store.get_queue_items_for_task(bad.id))[0].retry_count == 1


class TestConflicts:
    """Test last-write-wins handling of conflict verdicts."""

    async def test_server_newer_overwrites_local(self, engine, repo, store, server):
        task = await repo.create_task("Local title")
        server.rule = lambda item: conflict_with(task, timedelta(hours=1), title="Server title", completed=True)

        result = await engine.run_cycle()

        assert result.synced_items == 1
        assert result.failed_items == 0
        assert result.conflicts_resolved == 1
        assert result.errors[0].kind is ErrorKind.CONFLICT_RESOLVED
        assert result.errors[0].error == "Conflict resolved using last-write-wins (server newer)"

        stored = await store.get_task(task.id)
        assert stored.title == "Server title"
        assert stored.completed is True
        assert stored.sync_status == SyncStatus.SYNCED
        assert stored.server_id == "srv-1"
        assert stored.updated_at == task.updated_at + timedelta(hours=1)
        assert await store.get_queue_items_for_task(task.id) == []

    async def test_server_newer_keeps_poisoned_task_in_error(self, config, store, transport, repo, outbox, server):
        engine = SyncEngine(dataclasses.replace(config, max_retries=1), store, transport, repo, outbox)
        task = await repo.create_task("Local title")
        task = await repo.update_task(task.id, {"completed": True})
        server.rule = lambda item: (
            {"status": "error"} if item.operation == "create"
            else conflict_with(task, timedelta(hours=1), title="Server title")
        )

        result = await engine.run_cycle()

        assert result.conflicts_resolved == 1
        stored = await store.get_task(task.id)
        assert stored.title == "Server title"
        assert stored.sync_status == SyncStatus.ERROR

    async def test_local_newer_requeues_update(self, engine, repo, store, server):
        task = await repo.create_task("Local title")
        server.rule = lambda item: conflict_with(task, -timedelta(hours=1), title="Server title")

        result = await engine.run_cycle()

        assert result.synced_items == 0
        assert result.failed_items == 1
        assert result.errors[0].kind is ErrorKind.CONFLICT_RETRY
        assert result.errors[0].operation == "update"

        items = await store.get_queue_items_for_task(task.id)
        assert [item.operation for item in items] == [Operation.CREATE, Operation.UPDATE]
        assert items[0].retry_count == 1
        assert items[1].retry_count == 0
        assert items[1].parsed_data() == {
            "title": "Local title",
            "description": "",
            "completed": False,
            "updated_at": to_iso_string(task.updated_at),
            "is_deleted": False,
        }
        assert (await store.get_task(task.id)).title == "Local title"

    async def test_tie_keeps_local(self, engine, repo, store, server):
        task = await repo.create_task("Local title")
        server.rule = lambda item: conflict_with(task, timedelta(0), title="Server title")

        result = await engine.run_cycle()

        assert result.errors[0].kind is ErrorKind.CONFLICT_RETRY
        assert (await store.get_task(task.id)).title == "Local title"

    async def test_conflict_without_server_data(self, engine, repo, store, server):
        task = await repo.create_task("Task")
        server.rule = lambda item: {"status": "conflict"}

        result = await engine.run_cycle()

        assert result.failed_items == 1
        assert result.errors[0].kind is ErrorKind.CONFLICT_MISSING_DATA
        assert result.errors[0].error == "Conflict: missing data to resolve"
        assert (await store.get_queue_items_for_task(task.id))[0].retry_count == 1

    async def test_conflict_with_unusable_server_data(self, engine, repo, server):
        await repo.create_task("Task")
        server.rule = lambda item: {"status": "conflict", "resolved_data": {"title": "No timestamp"}}

        result = await engine.run_cycle()

        assert result.errors[0].kind is ErrorKind.CONFLICT_MISSING_DATA

    async def test_conflict_for_unknown_local_task(self, engine, store, server):
        await engine.enqueue("ghost-task", Operation.UPDATE, {"title": "Ghost"})
        server.rule = lambda item: {
            "status": "conflict",
            "resolved_data": {"title": "Ghost", "updated_at": "2030-01-01T00:00:00Z"},
        }

        result = await engine.run_cycle()

        assert result.errors[0].kind is ErrorKind.CONFLICT_MISSING_DATA


class TestStorageFailures:
    """Test that storage problems stay contained to one item."""

    async def test_storage_error_is_recorded_and_cycle_continues(self, engine, repo, store):
        first = await repo.create_task("First")
        await repo.create_task("Second")

        failing_delete = AsyncMock(side_effect=[sqlite3.OperationalError("database is locked"), True])
        with patch.object(store, "delete_queue_item", failing_delete):
            result = await engine.run_cycle()

        assert result.success is False
        assert result.synced_items == 1
        assert result.failed_items == 1
        assert result.errors[0].kind is ErrorKind.STORAGE
        assert result.errors[0].task_id == first.id

    async def test_last_sync_write_failure_is_ignored(self, engine, repo, store):
        await repo.create_task("Task")

        with patch.object(store, "set_meta", AsyncMock(side_effect=sqlite3.OperationalError("readonly"))):
            result = await engine.run_cycle()

        assert result.success is True
        assert result.synced_items == 1


class TestConcurrency:
    """Test single-flight cycles."""

    async def test_second_cycle_is_rejected_while_running(self, engine, repo, transport, server):
        await repo.create_task("Slow")
        gate = asyncio.Event()

        async def slow_submit(request):
            await gate.wait()
            return server.handle(request)

        transport.submit_batch = AsyncMock(side_effect=slow_submit)

        first = asyncio.ensure_future(engine.run_cycle())
        for _ in range(10):
            if engine.is_syncing:
                break
            await asyncio.sleep(0)
        assert engine.is_syncing

        second = await engine.run_cycle()
        assert second.success is False
        assert second.abort_reason is ErrorKind.BUSY

        gate.set()
        result = await first
        assert result.success is True
        assert result.synced_items == 1
        assert transport.submit_batch.await_count == 1
        assert engine.last_result is result


class TestFailedItemAdministration:
    """Test listing, retrying and clearing poisoned items."""

    async def test_get_failed_items(self, engine, repo, server):
        task = await repo.create_task("Doomed")
        await poison(engine, server)

        failed = await engine.get_failed_items()

        assert [item.task_id for item in failed] == [task.id]
        assert failed[0].retry_count == 3

    async def test_retry_failed_items_resets_and_syncs(self, engine, repo, store, server):
        task = await repo.create_task("Doomed")
        await poison(engine, server)

        assert await engine.retry_failed_items() == 1

        item = (await store.get_queue_items_for_task(task.id))[0]
        assert item.retry_count == 0
        assert item.last_error is None
        assert (await store.get_task(task.id)).sync_status == SyncStatus.PENDING

        server.rule = lambda item: {"status": "success"}
        result = await engine.run_cycle()
        assert result.synced_items == 1
        assert (await store.get_task(task.id)).sync_status == SyncStatus.SYNCED

    async def test_retry_failed_items_by_id(self, engine, repo, server):
        await repo.create_task("One")
        await repo.create_task("Two")
        await poison(engine, server)
        failed = await engine.get_failed_items()

        assert await engine.retry_failed_items([failed[0].id]) == 1

        remaining = await engine.get_failed_items()
        assert [item.id for item in remaining] == [failed[1].id]

    async def test_partial_retry_keeps_task_in_error(self, engine, repo, store, server):
        task = await repo.create_task("Doomed")
        await repo.update_task(task.id, {"title": "Still doomed"})
        await poison(engine, server)
        failed = await engine.get_failed_items()
        assert len(failed) == 2

        assert await engine.retry_failed_items([failed[0].id]) == 1

        assert (await store.get_task(task.id)).sync_status == SyncStatus.ERROR

    async def test_clear_failed_items(self, engine, repo, store, server):
        task = await repo.create_task("Doomed")
        await poison(engine, server)
        item_id = (await engine.get_failed_items())[0].id

        assert await engine.clear_failed_items() == 1

        assert await store.get_queue_item(item_id) is None
        assert (await store.get_task(task.id)).sync_status == SyncStatus.ERROR
