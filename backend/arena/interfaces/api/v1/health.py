"""
Sandbox Arena - Health Check Endpoints
Container engine reachability and in-process registry counts
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel

from arena.infrastructure.orchestrator.services.container_manager import (
    ContainerLifecycleManager,
)
from arena.interfaces.api.v1.terminal import get_container_manager

logger = structlog.get_logger(__name__)

router = APIRouter()


class HealthStatus(BaseModel):
    """Health check response model."""
    status: str
    timestamp: str
    version: str
    checks: Dict[str, Any]


@router.get(
    "",
    response_model=HealthStatus,
    summary="Health Check",
    description="Container engine and sandbox registry health",
)
async def health_check(
    request: Request,
    manager: ContainerLifecycleManager = Depends(get_container_manager),
) -> HealthStatus:
    """
    Report engine reachability and registry counts.

    An unreachable engine is "degraded", not down: launches still succeed
    in simulated mode.
    """
    checks: Dict[str, Any] = {}
    overall_status = "healthy"

    start = time.monotonic()
    reachable = await manager.ping()
    latency = (time.monotonic() - start) * 1000

    checks["container_runtime"] = {
        "status": "healthy" if reachable else "unreachable",
        "latency_ms": round(latency, 2),
    }
    if not reachable:
        overall_status = "degraded"

    checks["sandbox"] = {
        "tracked_containers": len(manager.tracked_containers()),
        "active_sessions": manager.sessions.active_count,
    }

    return HealthStatus(
        status=overall_status,
        timestamp=datetime.now(timezone.utc).isoformat(),
        version=request.app.state.settings.app_version,
        checks=checks,
    )


@router.get(
    "/live",
    status_code=status.HTTP_200_OK,
    summary="Liveness Probe",
)
async def liveness() -> Dict[str, str]:
    return {"status": "alive"}
