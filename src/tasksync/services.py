"""Wiring of the store, repository, transport and sync engine."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .config import ConfigModel
from .storage import LocalStore
from .task_service import TaskRepository
from .sync.outbox import SqliteOutbox
from .sync.scheduler import AutoSyncScheduler
from .sync.status import StatusReporter
from .sync.sync_engine import SyncEngine
from .sync.transport import RemoteTransport


logger = logging.getLogger(__name__)


@dataclass
class SyncServices:
    """Everything the CLI and the API need, built around one local store."""

    config: ConfigModel
    store: LocalStore
    outbox: SqliteOutbox
    tasks: TaskRepository
    transport: RemoteTransport
    engine: SyncEngine
    status: StatusReporter

    def create_scheduler(self) -> AutoSyncScheduler:
        return AutoSyncScheduler(self.engine, self.config.sync_interval)


def build_services(config: ConfigModel,
                   http_transport: Optional[httpx.AsyncBaseTransport] = None) -> SyncServices:
    """Build the service graph for a configuration.

    The outbox is created first and handed to both the repository and the
    engine; the repository is handed to the engine as its local overwrite.

    Args:
        config: Loaded configuration
        http_transport: Optional httpx transport for the remote client
    """
    store = LocalStore(config.get_database_path())
    outbox = SqliteOutbox(store)
    tasks = TaskRepository(store, outbox, config.max_retries)
    transport = RemoteTransport(
        config.api_base_url,
        connectivity_timeout=config.connectivity_timeout,
        batch_timeout=config.batch_timeout,
        transport=http_transport,
    )
    engine = SyncEngine(config, store, transport, local_overwrite=tasks, outbox=outbox)
    status = StatusReporter(store, transport, config.max_retries)

    logger.debug(f"Services built for {config.get_database_path()} against {config.api_base_url}")
    return SyncServices(
        config=config,
        store=store,
        outbox=outbox,
        tasks=tasks,
        transport=transport,
        engine=engine,
        status=status,
    )
