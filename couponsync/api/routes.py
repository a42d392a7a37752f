"""Route handlers for the control API."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse

from ..errors import SyncError

if TYPE_CHECKING:
    from ..service import SyncService

logger = logging.getLogger("couponsync.api.routes")


def _service(request: Request) -> "SyncService":
    return request.app.state.couponsync_server.service


async def _json_body(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body.strip():
        return {}
    data = await request.json()
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


async def health_handler(request: Request) -> JSONResponse:
    return JSONResponse({
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "couponsync-api",
    })


async def status_handler(request: Request) -> JSONResponse:
    """Configuration health plus an overview of the sync service."""
    server = request.app.state.couponsync_server
    config = server.config_bundle
    return JSONResponse({
        "status": config.status,
        "data_dir": str(config.data_dir),
        "sync": server.service.overview(),
        "diagnostics": [
            {"level": d.level, "message": d.message}
            for d in config.diagnostics
        ],
    })


async def user_status_handler(request: Request) -> JSONResponse:
    user_id = request.path_params["user_id"]
    try:
        status = await asyncio.to_thread(_service(request).user_status, user_id)
    except SyncError as e:
        return JSONResponse({"error": str(e), "kind": e.kind}, status_code=500)
    return JSONResponse(status)


async def trigger_sync_handler(request: Request) -> JSONResponse:
    """Start a cycle; with ``{"wait": true}`` respond with its result."""
    user_id = request.path_params["user_id"]
    try:
        body = await _json_body(request)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    scheduler = _service(request).scheduler
    future = scheduler.trigger_sync(user_id, str(body.get("reason") or "api"))
    if future is None:
        return JSONResponse(
            {"user_id": user_id, "accepted": False, "detail": "Sync already running; follow-up queued"},
            status_code=202,
        )
    if not body.get("wait"):
        return JSONResponse({"user_id": user_id, "accepted": True}, status_code=202)

    result = await asyncio.wrap_future(future)
    return JSONResponse({"user_id": user_id, "accepted": True, "result": result.to_dict()})


async def schedule_handler(request: Request) -> JSONResponse:
    user_id = request.path_params["user_id"]
    scheduler = _service(request).scheduler

    if request.method == "DELETE":
        cancelled = scheduler.cancel(user_id)
        return JSONResponse({"user_id": user_id, "cancelled": cancelled})

    try:
        body = await _json_body(request)
        minutes: Optional[float] = body.get("interval_minutes")
        if minutes is not None:
            minutes = float(minutes)
        scheduler.schedule_periodic(user_id, minutes)
    except (TypeError, ValueError) as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    status = scheduler.status(user_id)
    return JSONResponse({
        "user_id": user_id,
        "scheduled": True,
        "interval_minutes": status.periodic_minutes,
    })


__all__ = [
    "health_handler",
    "status_handler",
    "user_status_handler",
    "trigger_sync_handler",
    "schedule_handler",
]
