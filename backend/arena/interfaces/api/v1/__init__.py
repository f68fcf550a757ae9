"""
Sandbox Arena - API v1 Router
Aggregates all API endpoints
"""

from fastapi import APIRouter

from arena.interfaces.api.v1.duels import router as duels_router
from arena.interfaces.api.v1.health import router as health_router
from arena.interfaces.api.v1.terminal import router as terminal_router

api_router = APIRouter()

# Health check endpoints
api_router.include_router(
    health_router,
    prefix="/health",
    tags=["Health"],
)

# Lab containers, sessions and the terminal stream
api_router.include_router(
    terminal_router,
    prefix="/terminal",
    tags=["Terminal"],
)

# Matchmaking and duels
api_router.include_router(
    duels_router,
    prefix="/duels",
    tags=["Duels"],
)
