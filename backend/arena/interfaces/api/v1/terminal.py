"""
Sandbox Arena - Terminal API Endpoints

Lab containers and terminal sessions:
- POST /terminal/launch - Provision a container and a session
- POST /terminal/connect/{container_id} - New session on an existing container
- POST /terminal/sessions/{session_id}/close - Close a session
- GET /terminal/sessions - Caller's live lab sessions
- GET /terminal/my-containers - Caller's containers
- WebSocket /terminal/stream - Terminal byte stream
"""

from typing import Annotated, Any, Dict, List, Optional

import structlog
from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    status,
)
from pydantic import BaseModel, Field

from arena.infrastructure.orchestrator.exceptions import (
    ContainerForbidden,
    ContainerNotFound,
    SessionInvalid,
)
from arena.infrastructure.orchestrator.models import LAB_MATCH_ID
from arena.infrastructure.orchestrator.services.container_manager import (
    ContainerLifecycleManager,
)
from arena.infrastructure.orchestrator.services.terminal_bridge import TerminalBridge
from arena.interfaces.api.v1.auth import get_current_user, is_admin, require_admin

logger = structlog.get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class LaunchRequest(BaseModel):
    """Request body for launching a lab container."""
    image: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Image selector or reference; omitted means the default lab image",
    )


class LaunchResponse(BaseModel):
    """Session credentials; container_id is absent in simulated mode."""
    session_id: int
    token: str
    container_id: Optional[str] = None
    match_id: Optional[int] = None
    simulated_mode: Optional[bool] = None


class CloseSessionResponse(BaseModel):
    success: bool
    container_stopped: bool


class ContainerStatusResponse(BaseModel):
    container_id: str
    status: str


class CleanupRequest(BaseModel):
    max_age_seconds: Optional[int] = Field(
        default=None,
        ge=0,
        description="Stop tracked containers older than this; omitted uses the configured max age",
    )


class CleanupResponse(BaseModel):
    removed: int
    removed_ids: List[str]
    failed_ids: List[str]


class ExecRequest(BaseModel):
    command: List[str] = Field(..., min_length=1, max_length=64)


# ============================================================================
# Dependencies
# ============================================================================

async def get_container_manager(request: Request) -> ContainerLifecycleManager:
    """Get the lifecycle manager from app state."""
    return request.app.state.container_manager


def _require_container_access(
    manager: ContainerLifecycleManager,
    container_id: str,
    user: dict,
) -> None:
    """Tracked containers may only be touched by their owner or an admin."""
    if is_admin(user):
        return
    container = manager.get_container(container_id)
    if container is None:
        raise ContainerNotFound()
    if container.owner.user_id != user["id"]:
        raise ContainerForbidden()


# ============================================================================
# Sessions
# ============================================================================

@router.post(
    "/launch",
    response_model=LaunchResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    summary="Launch Lab Container",
)
async def launch(
    body: LaunchRequest,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
) -> Dict[str, Any]:
    """
    Provision a container and mint a session for it.

    If the container engine cannot serve the request the session is still
    issued, flagged `simulated_mode`, and streams a simulated shell.
    """
    result = await manager.launch(body.image, current_user["id"])
    return result.to_dict()


@router.post(
    "/connect/{container_id}",
    response_model=LaunchResponse,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    summary="Connect To Existing Container",
)
async def connect(
    container_id: str,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
) -> Dict[str, Any]:
    result = await manager.connect(
        container_id,
        current_user["id"],
        is_admin=is_admin(current_user),
    )
    return result.to_dict()


@router.post(
    "/sessions/{session_id}/close",
    response_model=CloseSessionResponse,
    summary="Close Terminal Session",
)
async def close_session(
    session_id: int,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
) -> CloseSessionResponse:
    """
    Invalidate a session. Lab sessions also stop their container (best
    effort); duel containers belong to the match and stay up.
    """
    session = manager.sessions.get(session_id)
    if session is None:
        raise SessionInvalid()
    if session.user_id != current_user["id"] and not is_admin(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not your session",
        )

    stopped = await manager.close_session(
        session,
        stop_container=session.match_id == LAB_MATCH_ID,
    )
    return CloseSessionResponse(success=True, container_stopped=stopped)


@router.get(
    "/sessions",
    summary="List My Lab Sessions",
)
async def list_sessions(
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
) -> Dict[str, Any]:
    sessions = manager.sessions.sessions_for_user(current_user["id"], match_id=LAB_MATCH_ID)
    return {
        "sessions": [s.to_dict() for s in sessions],
        "total": len(sessions),
    }


# ============================================================================
# Containers
# ============================================================================

@router.get(
    "/my-containers",
    summary="List My Containers",
)
async def my_containers(
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
) -> Dict[str, Any]:
    containers = await manager.list_owned(user_id=current_user["id"])
    return {
        "containers": [c.to_dict() for c in containers],
        "total": len(containers),
    }


@router.get(
    "/containers",
    summary="List All Sandbox Containers (Admin)",
)
async def list_containers(
    admin: Annotated[dict, Depends(require_admin)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
    all: bool = Query(default=False, description="Include stopped containers"),
) -> Dict[str, Any]:
    containers = await manager.list_owned(include_stopped=all)
    return {
        "containers": [c.to_dict() for c in containers],
        "total": len(containers),
    }


@router.get(
    "/containers/{container_id}/status",
    response_model=ContainerStatusResponse,
    summary="Container Status",
)
async def container_status(
    container_id: str,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
) -> ContainerStatusResponse:
    container = manager.get_container(container_id)
    if (
        container is not None
        and container.owner.user_id != current_user["id"]
        and not is_admin(current_user)
    ):
        raise ContainerForbidden()

    container_status = await manager.check_status(container_id)
    return ContainerStatusResponse(container_id=container_id, status=container_status.value)


@router.delete(
    "/containers/{container_id}",
    summary="Stop Container",
)
async def stop_container(
    container_id: str,
    current_user: Annotated[dict, Depends(get_current_user)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
) -> Dict[str, Any]:
    _require_container_access(manager, container_id, current_user)
    stopped = await manager.stop_container(container_id)
    if not stopped:
        raise ContainerNotFound()
    return {"success": True, "container_id": container_id}


@router.post(
    "/containers/{container_id}/exec",
    summary="Run Command In Container (Admin)",
)
async def exec_in_container(
    container_id: str,
    body: ExecRequest,
    admin: Annotated[dict, Depends(require_admin)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
) -> Dict[str, Any]:
    logger.info(
        "Admin exec",
        container_id=container_id[:12],
        admin_id=admin["id"],
        command=body.command[0],
    )
    result = await manager.exec_command(container_id, body.command)
    return result.to_dict()


@router.get(
    "/images",
    summary="List Engine Images (Admin)",
)
async def list_images(
    admin: Annotated[dict, Depends(require_admin)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
) -> Dict[str, Any]:
    images = await manager.list_images()
    return {"images": images, "total": len(images)}


@router.post(
    "/containers/cleanup",
    response_model=CleanupResponse,
    summary="Sweep Old Containers (Admin)",
)
async def cleanup_containers(
    body: CleanupRequest,
    admin: Annotated[dict, Depends(require_admin)],
    manager: Annotated[ContainerLifecycleManager, Depends(get_container_manager)],
) -> CleanupResponse:
    max_age = (
        body.max_age_seconds
        if body.max_age_seconds is not None
        else manager.settings.sandbox_max_age_seconds
    )
    report = await manager.sweep(max_age)
    logger.info("Manual cleanup", admin_id=admin["id"], removed=report.removed_count)
    return CleanupResponse(
        removed=report.removed_count,
        removed_ids=report.removed,
        failed_ids=report.failed,
    )


# ============================================================================
# Stream
# ============================================================================

@router.websocket("/stream")
async def terminal_stream(
    websocket: WebSocket,
    token: Optional[str] = None,
    session_id: Optional[int] = None,
) -> None:
    """
    Terminal byte stream.

    Query parameters `session_id` and `token` come from launch/connect.
    Client frames (text or binary) are keystrokes; server frames are raw
    terminal output. Close codes: 1008 bad credentials, 4001 session ended.
    """
    bridge: TerminalBridge = websocket.app.state.terminal_bridge
    await bridge.handle(websocket, session_id, token)
