"""Pytest configuration and shared fixtures."""

import sys
import asyncio
import inspect
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import AsyncMock, Mock

import pytest

# Ensure src directory is in Python path for all tests
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from tasksync.config import ENV_OVERRIDES, Config, ConfigModel
from tasksync.storage import LocalStore
from tasksync.task_service import TaskRepository
from tasksync.sync.outbox import SqliteOutbox
from tasksync.sync.protocol import BatchItem, BatchSyncRequest, BatchSyncResponse
from tasksync.sync.sync_engine import SyncEngine


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):
    """Execute async tests without external plugins."""
    testfunction = pyfuncitem.obj
    if inspect.iscoroutinefunction(testfunction):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            sig = inspect.signature(testfunction)
            call_kwargs = {name: pyfuncitem.funcargs[name] for name in sig.parameters}
            loop.run_until_complete(testfunction(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None


class FakeServer:
    """Answers batch requests with per-item verdicts chosen by ``rule``.

    ``rule`` receives a BatchItem and returns the verdict fields
    (``status``, ``resolved_data``, ``server_id``, ``error``), or None to
    leave the item out of the response.
    """

    def __init__(self):
        self.rule: Callable[[BatchItem], Optional[Dict[str, Any]]] = lambda item: {"status": "success"}
        self.requests: List[BatchSyncRequest] = []

    def handle(self, request: BatchSyncRequest) -> BatchSyncResponse:
        self.requests.append(request)
        processed = []
        for item in request.items:
            verdict = self.rule(item)
            if verdict is not None:
                processed.append({"client_id": item.id, **verdict})
        return BatchSyncResponse.model_validate({"processed_items": processed})

    @property
    def submitted_ids(self) -> List[List[str]]:
        return [[item.id for item in request.items] for request in self.requests]


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """Point ~ at a temporary home, drop env overrides and reset cached config."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for var in ENV_OVERRIDES:
        monkeypatch.delenv(var, raising=False)
    Config._instance = None
    yield
    Config._instance = None


@pytest.fixture
def config(tmp_path):
    """Configuration rooted in a temporary directory."""
    return ConfigModel(data_dir=str(tmp_path / "data"), max_retries=3, batch_size=50)


@pytest.fixture
def store(config):
    return LocalStore(config.get_database_path())


@pytest.fixture
def outbox(store):
    return SqliteOutbox(store)


@pytest.fixture
def repo(config, store, outbox):
    return TaskRepository(store, outbox, config.max_retries)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def transport(server):
    """Remote transport double backed by the fake server."""
    transport = Mock()
    transport.check_connectivity = AsyncMock(return_value=True)
    transport.submit_batch = AsyncMock(side_effect=server.handle)
    return transport


@pytest.fixture
def engine(config, store, transport, repo, outbox):
    return SyncEngine(config, store, transport, local_overwrite=repo, outbox=outbox)
