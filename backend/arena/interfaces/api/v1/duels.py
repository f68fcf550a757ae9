"""
Sandbox Arena - Duel API Endpoints

Matchmaking queue, direct challenges, matches and ratings:
- POST /duels/queue/join, POST /duels/queue/leave, GET /duels/queue/status
- POST /duels/challenge, PUT /duels/challenge/{id}/respond, GET /duels/challenges
- GET /duels/matches, GET /duels/matches/{id}, POST /duels/match/cancel
- PUT /duels/matches/{id}/status (admin), POST /duels/matches/{id}/provision
- GET /duels/terminal/active, GET /duels/stats, GET /duels/leaderboard
"""

from typing import Annotated, Any, Dict, Literal, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from arena.application.duels.service import DuelService
from arena.domain.duels.entities import ANY, MatchPreferences, MatchStatus
from arena.infrastructure.orchestrator.exceptions import (
    MatchNotFound,
    MatchNotProvisioned,
)
from arena.interfaces.api.v1.auth import get_current_user, is_admin, require_admin

logger = structlog.get_logger(__name__)
router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class JoinQueueRequest(BaseModel):
    preferred_difficulty: str = Field(default=ANY, max_length=32)
    preferred_challenge_type: str = Field(default=ANY, max_length=32)


class ChallengeRequest(BaseModel):
    challenged_id: int = Field(..., gt=0)
    difficulty: Literal["easy", "medium", "hard"] = "medium"


class ChallengeResponseRequest(BaseModel):
    accept: bool


class MatchStatusUpdateRequest(BaseModel):
    """Administrative override of a match."""
    status: MatchStatus
    winner_id: Optional[int] = None
    score_change: Optional[int] = Field(default=None, ge=0)


class ProvisionRequest(BaseModel):
    image: Optional[str] = Field(default=None, max_length=255)


# ============================================================================
# Dependencies
# ============================================================================

async def get_duel_service(request: Request) -> DuelService:
    """Get the duel service from app state."""
    return request.app.state.duel_service


# ============================================================================
# Queue
# ============================================================================

@router.post("/queue/join", summary="Join Matchmaking Queue")
async def join_queue(
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
    body: Optional[JoinQueueRequest] = None,
) -> Dict[str, Any]:
    """Idempotent: joining twice keeps the original place in the queue."""
    body = body or JoinQueueRequest()
    preferences = MatchPreferences(
        difficulty=body.preferred_difficulty,
        challenge_type=body.preferred_challenge_type,
    )
    return await service.join_queue(current_user["id"], preferences)


@router.post("/queue/leave", summary="Leave Matchmaking Queue")
async def leave_queue(
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
) -> Dict[str, Any]:
    removed = await service.dequeue(current_user["id"])
    return {"success": True, "was_queued": removed}


@router.get("/queue/status", summary="Queue Status")
async def queue_status(
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
) -> Dict[str, Any]:
    return await service.queue_status(current_user["id"])


# ============================================================================
# Direct challenges
# ============================================================================

@router.post(
    "/challenge",
    status_code=status.HTTP_201_CREATED,
    summary="Challenge A User",
)
async def challenge_user(
    body: ChallengeRequest,
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
) -> Dict[str, Any]:
    challenge = await service.challenge_user(
        current_user["id"],
        body.challenged_id,
        difficulty=body.difficulty,
    )
    return challenge.to_dict()


@router.put("/challenge/{challenge_id}/respond", summary="Respond To Challenge")
async def respond_to_challenge(
    challenge_id: int,
    body: ChallengeResponseRequest,
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
) -> Dict[str, Any]:
    challenge, match = await service.respond_to_challenge(
        challenge_id,
        current_user["id"],
        accept=body.accept,
    )
    return {
        "challenge": challenge.to_dict(),
        "match": match.to_dict() if match else None,
    }


@router.get("/challenges", summary="My Challenges")
async def list_challenges(
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
) -> Dict[str, Any]:
    challenges = await service.list_challenges(current_user["id"])
    return {
        "sent": [c.to_dict() for c in challenges if c.challenger_id == current_user["id"]],
        "received": [c.to_dict() for c in challenges if c.challenged_id == current_user["id"]],
    }


# ============================================================================
# Matches
# ============================================================================

@router.get("/matches", summary="List Matches")
async def list_matches(
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
    match_status: Optional[MatchStatus] = Query(default=None, alias="status"),
    all: bool = Query(default=False, description="Every user's matches (admin only)"),
) -> Dict[str, Any]:
    user_id = None if (all and is_admin(current_user)) else current_user["id"]
    matches = await service.list_matches(user_id=user_id, status=match_status)
    return {
        "matches": [m.to_dict() for m in matches],
        "total": len(matches),
    }


@router.get("/matches/{match_id}", summary="Match Details")
async def get_match(
    match_id: int,
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
) -> Dict[str, Any]:
    match = await service.get_match(
        match_id,
        user_id=current_user["id"],
        is_admin=is_admin(current_user),
    )
    return match.to_dict()


@router.post("/match/cancel", summary="Cancel My Active Match")
async def cancel_active_match(
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
) -> Dict[str, Any]:
    match = await service.cancel_active_match(current_user["id"])
    return {"success": True, "match": match.to_dict()}


@router.put("/matches/{match_id}/status", summary="Override Match Status (Admin)")
async def update_match_status(
    match_id: int,
    body: MatchStatusUpdateRequest,
    admin: Annotated[dict, Depends(require_admin)],
    service: Annotated[DuelService, Depends(get_duel_service)],
) -> Dict[str, Any]:
    logger.info(
        "Admin match status override",
        match_id=match_id,
        admin_id=admin["id"],
        status=body.status.value,
    )
    match = await service.admin_update_status(
        match_id,
        body.status,
        winner_id=body.winner_id,
        score_change=body.score_change,
    )
    return match.to_dict()


@router.post("/matches/{match_id}/provision", summary="Provision Match Containers")
async def provision_match(
    match_id: int,
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
    body: Optional[ProvisionRequest] = None,
) -> Dict[str, Any]:
    # Participants may retry a stalled provisioning; only admins pick the image
    await service.get_match(match_id, user_id=current_user["id"], is_admin=is_admin(current_user))
    image = body.image if (body and is_admin(current_user)) else None
    match = await service.provision_match(match_id, image=image)
    return match.to_dict()


@router.get("/terminal/active", summary="My Duel Terminal Session")
async def active_terminal(
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
) -> Dict[str, Any]:
    """
    Credentials for the caller's duel terminal, for reconnecting.

    Reuses the live session when there is one; otherwise binds a new
    session to the caller's match container.
    """
    user_id = current_user["id"]
    match = await service.active_match(user_id)
    if match is None:
        raise MatchNotFound("You have no active duel match")

    sessions = service.manager.sessions
    session = sessions.active_session_for(user_id, match.id)
    if session is not None:
        return {
            "match_id": match.id,
            "session_id": session.session_id,
            "token": session.token,
            "container_id": session.container_id,
        }

    assignment = match.container_data.get(user_id)
    if assignment is None or assignment.container_id is None:
        raise MatchNotProvisioned()
    result = await service.manager.connect(assignment.container_id, user_id)
    return {
        "match_id": match.id,
        "session_id": result.session_id,
        "token": result.token,
        "container_id": result.container_id,
    }


# ============================================================================
# Ratings
# ============================================================================

@router.get("/stats", summary="My Duel Stats")
async def my_stats(
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
    user_id: Optional[int] = Query(default=None, description="Another user's stats"),
) -> Dict[str, Any]:
    stats = await service.get_stats(user_id or current_user["id"])
    return stats.to_dict()


@router.get("/leaderboard", summary="Duel Leaderboard")
async def leaderboard(
    current_user: Annotated[dict, Depends(get_current_user)],
    service: Annotated[DuelService, Depends(get_duel_service)],
    limit: int = Query(default=10, ge=1, le=100),
) -> Dict[str, Any]:
    stats = await service.leaderboard(limit)
    return {"leaderboard": [s.to_dict() for s in stats]}
