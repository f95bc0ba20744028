"""Shared route helpers."""

from typing import Any, Dict

from fastapi import Request

from ..services import SyncServices
from ..utils.datetime import now_utc, to_iso_string


def get_services(request: Request) -> SyncServices:
    """Service graph attached to the application at startup."""
    return request.app.state.services


def error_body(request: Request, message: str) -> Dict[str, Any]:
    """Error payload shared by the sync routes and the global exception handler."""
    return {
        "error": message,
        "timestamp": to_iso_string(now_utc()),
        "path": request.url.path,
    }
