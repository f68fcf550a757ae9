"""
Sandbox Arena - FastAPI Application Factory

Run with: uvicorn --factory arena.main:create_app
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from prometheus_client import make_asgi_app
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from arena.application.duels.service import DuelService
from arena.core.config import Settings, get_settings
from arena.core.logging import setup_logging
from arena.infrastructure.duel_store import DuelStore, InMemoryDuelStore
from arena.infrastructure.orchestrator.exceptions import SandboxError
from arena.infrastructure.orchestrator.models import ResourceLimits
from arena.infrastructure.orchestrator.services.container_manager import (
    ContainerLifecycleManager,
)
from arena.infrastructure.orchestrator.services.runtime import ContainerRuntime
from arena.infrastructure.orchestrator.services.sandbox_docker import DockerSandbox
from arena.infrastructure.orchestrator.services.terminal_bridge import TerminalBridge
from arena.interfaces.api.v1 import api_router
from arena.interfaces.middleware.error_handler import (
    ErrorHandlerMiddleware,
    sandbox_error_handler,
)
from arena.interfaces.middleware.security import SecurityHeadersMiddleware

logger = structlog.get_logger(__name__)


def create_limiter(settings: Settings) -> Limiter:
    """Create rate limiter applying the default limit to every HTTP route."""
    return Limiter(
        key_func=get_remote_address,
        default_limits=[settings.rate_limit_default],
        storage_uri=settings.rate_limit_storage_uri,
        strategy="fixed-window",
        enabled=settings.rate_limit_enabled,
    )


def create_runtime(settings: Settings) -> DockerSandbox:
    return DockerSandbox(
        docker_url=settings.docker_url,
        network_name=settings.docker_network,
        command=settings.sandbox_command,
        resources=ResourceLimits(
            cpu_quota=settings.sandbox_cpu_quota,
            memory_limit_mb=settings.sandbox_memory_limit_mb,
            pids_limit=settings.sandbox_pids_limit,
        ),
        stop_timeout=settings.sandbox_stop_timeout_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup/shutdown."""
    settings: Settings = app.state.settings

    # Setup structured logging
    setup_logging(settings.log_level, settings.log_format)

    logger.info("Starting Sandbox Arena", version=settings.app_version)

    runtime: ContainerRuntime = app.state.runtime or create_runtime(settings)
    if not await runtime.ping():
        logger.warning("Container runtime unreachable, launches will use the simulated terminal")

    # Lifecycle manager owns the runtime client and the session registry
    manager = ContainerLifecycleManager(runtime, settings)
    await manager.start()
    app.state.container_manager = manager

    app.state.terminal_bridge = TerminalBridge(manager)

    store: DuelStore = app.state.duel_store or InMemoryDuelStore()
    duel_service = DuelService(store, manager, settings)
    await duel_service.start()
    app.state.duel_service = duel_service

    logger.info("All services initialized successfully")

    yield

    logger.info("Shutting down Sandbox Arena")

    await duel_service.stop()
    await manager.stop()
    await runtime.close()
    logger.info("Shutdown complete")


def create_app(
    settings: Settings | None = None,
    runtime: ContainerRuntime | None = None,
    store: DuelStore | None = None,
) -> FastAPI:
    """
    Application factory pattern for FastAPI.

    Args:
        settings: Optional settings override for testing
        runtime: Optional container runtime (defaults to Docker)
        store: Optional duel store (defaults to in-memory)

    Returns:
        Configured FastAPI application instance
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Interactive sandbox containers, terminal streaming and duels",
        version=settings.app_version,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )

    # Store settings and collaborator overrides in app state
    app.state.settings = settings
    app.state.runtime = runtime
    app.state.duel_store = store

    # Setup rate limiter
    limiter = create_limiter(settings)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_exception_handler(SandboxError, sandbox_error_handler)

    # Add middleware (order matters - last added is first executed)

    app.add_middleware(SlowAPIMiddleware)

    # Error handler
    app.add_middleware(ErrorHandlerMiddleware)

    # Security headers and request id (outside the error handler so errors get an id)
    app.add_middleware(SecurityHeadersMiddleware, settings=settings)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # Mount Prometheus metrics
    metrics_app = make_asgi_app()
    app.mount("/metrics", metrics_app)

    # Include API routes
    app.include_router(api_router, prefix="/api/v1")

    return app
