"""Sqlite-backed outbox."""

import json
import logging
import uuid
from typing import TYPE_CHECKING, Any, Dict, Union

from ..utils.datetime import now_utc
from .interfaces import Outbox
from .sync_models import Operation, QueueItem

if TYPE_CHECKING:
    from ..storage import LocalStore


logger = logging.getLogger(__name__)


class SqliteOutbox(Outbox):
    """Writes queue items into the local store's ``sync_queue`` table."""

    def __init__(self, store: "LocalStore"):
        self.store = store

    async def enqueue(self, task_id: str, operation: Union[Operation, str],
                      data: Dict[str, Any]) -> QueueItem:
        item = QueueItem(
            id=str(uuid.uuid4()),
            task_id=task_id,
            operation=Operation(operation),
            data=json.dumps(data, default=str),
            created_at=now_utc(),
        )
        await self.store.insert_queue_item(item)
        logger.debug(f"Enqueued {item.operation.value} for task {task_id} as {item.id}")
        return item
