"""API route modules."""

from .sync import router as sync_router
from .tasks import router as tasks_router

__all__ = ["sync_router", "tasks_router"]
