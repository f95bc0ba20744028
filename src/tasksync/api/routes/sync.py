"""Sync API routes."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from ...services import SyncServices
from ...sync.errors import ErrorKind
from ...utils.datetime import now_utc, to_iso_string
from ..dependencies import error_body, get_services


logger = logging.getLogger(__name__)


router = APIRouter(prefix="/api", tags=["sync"])


@router.post("/sync")
async def trigger_sync(request: Request, services: SyncServices = Depends(get_services)):
    """Run one sync cycle now.

    Returns:
        The cycle result; 503 when the server is unreachable, 409 when a
        cycle is already running
    """
    result = await services.engine.run_cycle()

    if result.abort_reason is ErrorKind.OFFLINE:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=error_body(request, "Server not reachable"),
        )
    if result.abort_reason is ErrorKind.BUSY:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content=error_body(request, "Sync already in progress"),
        )

    return result.to_dict()


@router.get("/status")
async def sync_status(services: SyncServices = Depends(get_services)):
    """Pending counts, last sync time and connectivity."""
    return await services.status.get_status()


@router.post("/batch")
async def batch(request: Request):
    """Batch processing belongs to the remote server."""
    return JSONResponse(
        status_code=status.HTTP_501_NOT_IMPLEMENTED,
        content=error_body(request, "Batch sync is server-side only"),
    )


@router.get("/health")
async def health_check():
    return {"status": "ok", "timestamp": to_iso_string(now_utc())}


@router.get("/sync/failed")
async def list_failed(services: SyncServices = Depends(get_services)):
    """Queue items that reached the retry ceiling."""
    items = await services.engine.get_failed_items()
    return {"items": [item.to_dict() for item in items], "count": len(items)}


@router.post("/sync/failed/retry")
async def retry_failed(
    item_id: Optional[List[str]] = Query(None),
    services: SyncServices = Depends(get_services),
):
    """Make poisoned items eligible for the next cycle again."""
    count = await services.engine.retry_failed_items(item_id)
    logger.info(f"Reset {count} failed items via API")
    return {"reset": count}


@router.delete("/sync/failed")
async def clear_failed(
    item_id: Optional[List[str]] = Query(None),
    services: SyncServices = Depends(get_services),
):
    """Delete poisoned items."""
    count = await services.engine.clear_failed_items(item_id)
    logger.info(f"Cleared {count} failed items via API")
    return {"deleted": count}
