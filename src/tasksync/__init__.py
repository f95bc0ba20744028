"""tasksync - A local-first task manager with outbox-based server sync."""

__version__ = "0.1.0"

from .task import Task, SyncStatus

__all__ = ["Task", "SyncStatus", "__version__"]
