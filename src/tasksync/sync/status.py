"""Read-only sync status reporting."""

import logging
from typing import TYPE_CHECKING, Any, Dict

from .sync_models import LAST_SYNC_KEY

if TYPE_CHECKING:
    from ..storage import LocalStore
    from .transport import RemoteTransport


logger = logging.getLogger(__name__)


class StatusReporter:
    """Answers "how far behind is this replica?"."""

    def __init__(self, store: "LocalStore", transport: "RemoteTransport", max_retries: int):
        self.store = store
        self.transport = transport
        self.max_retries = max_retries

    async def get_status(self) -> Dict[str, Any]:
        """Collect the sync status snapshot.

        Returns:
            Dictionary with ``pending_sync_count``, ``last_sync_timestamp``,
            ``is_online``, ``sync_queue_size`` and ``poisoned_count``
        """
        queue_size = await self.store.count_queue_items(self.max_retries)
        poisoned = await self.store.count_failed_queue_items(self.max_retries)
        last_sync = await self.store.get_meta(LAST_SYNC_KEY)

        try:
            is_online = bool(await self.transport.check_connectivity())
        except Exception as e:
            logger.debug(f"Connectivity check error: {e}")
            is_online = False

        return {
            "pending_sync_count": queue_size,
            "last_sync_timestamp": last_sync,
            "is_online": is_online,
            "sync_queue_size": queue_size,
            "poisoned_count": poisoned,
        }
