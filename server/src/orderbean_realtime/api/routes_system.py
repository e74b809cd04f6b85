"""System routes: health."""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from orderbean_realtime import __version__
from orderbean_realtime.api.deps import get_config, get_connection_registry, get_event_log
from orderbean_realtime.config import Settings
from orderbean_realtime.events.log import EventLog
from orderbean_realtime.streaming.registry import ConnectionRegistry

router = APIRouter(tags=["system"])


# ---------- Response models ----------

class HealthResponse(BaseModel):
    version: str
    name: str
    uptime_seconds: float
    log_backend: str
    log_reachable: bool
    open_streams: int


# ---------- Routes ----------

@router.get("/health", response_model=HealthResponse)
async def health(
    request: Request,
    config: Settings = Depends(get_config),
    event_log: EventLog = Depends(get_event_log),
    registry: ConnectionRegistry = Depends(get_connection_registry),
):
    """Health check endpoint. No authentication required."""
    start_time = getattr(request.app.state, "start_time", time.time())
    uptime = time.time() - start_time
    return HealthResponse(
        version=__version__,
        name=config.server.name,
        uptime_seconds=round(uptime, 2),
        log_backend=config.log.backend,
        log_reachable=await event_log.ping(),
        open_streams=len(registry),
    )
