"""Task API routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from ...services import SyncServices
from ...sync.errors import TaskNotFoundError
from ..dependencies import get_services


logger = logging.getLogger(__name__)


# Request models
class TaskCreate(BaseModel):
    """Task creation request."""
    title: str
    description: str = ""


class TaskUpdate(BaseModel):
    """Task update request; at least one field must be set."""
    title: Optional[str] = None
    description: Optional[str] = None
    completed: Optional[bool] = None


router = APIRouter(prefix="/api/tasks", tags=["tasks"])


@router.get("")
async def list_tasks(services: SyncServices = Depends(get_services)):
    tasks = await services.tasks.get_all_tasks()
    return [task.to_dict() for task in tasks]


@router.get("/{task_id}")
async def get_task(task_id: str, services: SyncServices = Depends(get_services)):
    task = await services.tasks.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return task.to_dict()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_task(body: TaskCreate, services: SyncServices = Depends(get_services)):
    """Create a task.

    Raises:
        HTTPException: 400 if the title is blank
    """
    try:
        task = await services.tasks.create_task(body.title, body.description)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return task.to_dict()


@router.put("/{task_id}")
async def update_task(task_id: str, body: TaskUpdate,
                      services: SyncServices = Depends(get_services)):
    """Update a task.

    Raises:
        HTTPException: 404 for unknown or deleted tasks, 400 for an empty update
    """
    updates = body.model_dump(exclude_none=True)
    if not updates:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="At least one field (title, description, completed) must be provided for update",
        )

    try:
        task = await services.tasks.update_task(task_id, updates)
    except TaskNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return task.to_dict()


@router.delete("/{task_id}")
async def delete_task(task_id: str, services: SyncServices = Depends(get_services)):
    try:
        await services.tasks.delete_task(task_id)
    except TaskNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return {"success": True}
