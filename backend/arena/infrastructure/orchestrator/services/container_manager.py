"""
Container Lifecycle Manager - Sandbox containers and the sessions bound to them

Handles:
- Container provisioning with retry on transient engine failures
- Ownership labelling and in-memory tracking of what this process created
- Session-aware launch/connect with simulated-mode fallback
- Stop cascading to session invalidation
- Age-based cleanup and session expiry loops
"""

import asyncio
import secrets
import time
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from arena.core.config import Settings
from arena.core.metrics import (
    ACTIVE_SESSIONS,
    CONTAINERS_LAUNCHED,
    CONTAINERS_STOPPED,
    SIMULATED_FALLBACKS,
)

from ..exceptions import (
    ContainerForbidden,
    ContainerNotFound,
    ContainerNotRunning,
    ImageInvalid,
    RuntimeUnavailable,
    SandboxError,
)
from ..models import (
    LAB_MATCH_ID,
    CleanupReport,
    ContainerInfo,
    ContainerStatus,
    ExecResult,
    LaunchResult,
    OwnerLabels,
    SandboxContainer,
    TerminalSession,
    utcnow,
)
from .runtime import ContainerRuntime
from .session_registry import TerminalSessionRegistry
from .terminal_backends import LiveContainerStream

logger = structlog.get_logger(__name__)


class ContainerLifecycleManager:
    """
    Central manager for sandbox containers.

    The only holder of the runtime client. Everything else reaches a
    container through a session or an ownership check made here.
    """

    def __init__(self, runtime: ContainerRuntime, settings: Settings):
        self.runtime = runtime
        self.settings = settings
        self.sessions = TerminalSessionRegistry(
            status_probe=self.check_status,
            ttl_seconds=settings.session_ttl_seconds,
        )

        # In-memory tracking for containers this process created or adopted
        self._containers: Dict[str, SandboxContainer] = {}
        self._lock = asyncio.Lock()
        self._container_locks: Dict[str, asyncio.Lock] = {}

        # Background tasks
        self._cleanup_task: Optional[asyncio.Task] = None
        self._session_sweep_task: Optional[asyncio.Task] = None
        self._running = False

    async def start(self) -> None:
        """Start background cleanup and session expiry loops."""
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        self._session_sweep_task = asyncio.create_task(self._session_sweep_loop())
        logger.info("Container lifecycle manager started")

    async def stop(self) -> None:
        """Stop background tasks and every tracked container."""
        self._running = False

        for task in (self._cleanup_task, self._session_sweep_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self._stop_all_containers()
        logger.info("Container lifecycle manager stopped")

    def _get_container_lock(self, container_id: str) -> asyncio.Lock:
        if container_id not in self._container_locks:
            self._container_locks[container_id] = asyncio.Lock()
        return self._container_locks[container_id]

    def resolve_image(self, selector: Optional[str]) -> str:
        """Map a catalog selector to an image tag; unknown selectors are literal references."""
        if not selector:
            return self.settings.sandbox_default_image
        return self.settings.sandbox_images.get(selector, selector)

    # ==========================================================================
    # Containers
    # ==========================================================================

    async def create_container(
        self,
        image: Optional[str],
        owner: OwnerLabels,
    ) -> Tuple[str, str]:
        """
        Provision, start and register a container.

        Args:
            image: Image selector or reference (None for the default image)
            owner: Ownership labels to stamp on the container

        Returns:
            (container_id, access_token)

        Raises:
            RuntimeUnavailable: engine unreachable after retries
            ImageInvalid: the image reference cannot be resolved
        """
        image_ref = self.resolve_image(image)
        name = f"{self.settings.sandbox_label_app}_{owner.user_id}_{owner.match_id}_{int(time.time() * 1000)}"
        labels = owner.to_labels(self.settings.sandbox_label_app)

        logger.info(
            "Provisioning sandbox container",
            image=image_ref,
            user_id=owner.user_id,
            match_id=owner.match_id,
            session_id=owner.session_id,
        )

        container_id = None
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(RuntimeUnavailable),
            stop=stop_after_attempt(max(1, self.settings.sandbox_create_retries)),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
            reraise=True,
        ):
            with attempt:
                container_id = await self.runtime.create(image_ref, name, labels)

        container = SandboxContainer(
            id=container_id,
            name=name,
            image=image_ref,
            owner=owner,
            status=ContainerStatus.RUNNING,
        )
        try:
            info = await self.runtime.inspect(container_id)
            container.status = info.status
            container.ip_address = info.ip_address
        except SandboxError as e:
            # AutoRemove may already have reaped a container whose shell exited
            logger.warning(
                "Inspect after start failed",
                container_id=container_id[:12],
                error=e.kind.value,
            )
            container.status = ContainerStatus.NOT_FOUND

        async with self._lock:
            self._containers[container_id] = container

        CONTAINERS_LAUNCHED.inc()
        logger.info(
            "Sandbox container provisioned",
            container_id=container_id[:12],
            status=container.status.value,
            ip_address=container.ip_address,
        )
        return container_id, secrets.token_hex(16)

    async def stop_container(self, container_id: str, reason: str = "explicit") -> bool:
        """
        Stop a tracked container and invalidate its sessions.

        Returns False when the container is not one of ours. An already-stopped
        container counts as success.

        Raises:
            RuntimeUnavailable: the engine could not be asked; nothing changed
        """
        if container_id not in self._containers:
            return False

        lock = self._get_container_lock(container_id)
        try:
            async with lock:
                if container_id not in self._containers:
                    return False

                await self.runtime.stop(container_id)

                # No await between deregistration and invalidation
                container = self._containers.pop(container_id, None)
                closed = self.sessions.invalidate_container(container_id)
        finally:
            if not lock.locked() and self._container_locks.get(container_id) is lock:
                del self._container_locks[container_id]

        if container is None:
            return False

        CONTAINERS_STOPPED.labels(reason=reason).inc()
        logger.info(
            "Sandbox container stopped",
            container_id=container_id[:12],
            reason=reason,
            sessions_closed=closed,
        )
        return True

    async def check_status(self, container_id: str) -> ContainerStatus:
        """Read-through status. Never raises; anything unreachable is not_found."""
        try:
            info = await self.runtime.inspect(container_id)
        except SandboxError:
            return ContainerStatus.NOT_FOUND
        except Exception as e:
            logger.error(
                "Unexpected error checking container status",
                container_id=container_id[:12],
                error=str(e),
            )
            return ContainerStatus.NOT_FOUND

        tracked = self._containers.get(container_id)
        if tracked is not None:
            tracked.status = info.status
        return info.status

    async def list_owned(
        self,
        include_stopped: bool = False,
        user_id: Optional[int] = None,
    ) -> List[ContainerInfo]:
        """Containers carrying our app label, optionally only one user's."""
        app_label = self.settings.sandbox_label_app
        containers = await self.runtime.list_containers(
            all=include_stopped,
            labels={"app": app_label},
        )

        owned = []
        for info in containers:
            # Trust the rest of the labels only after the app label checks out
            if info.labels.get("app") != app_label:
                continue
            owner = info.owner
            if owner is None:
                continue
            if user_id is not None and owner.user_id != user_id:
                continue
            owned.append(info)
        return owned

    def get_container(self, container_id: str) -> Optional[SandboxContainer]:
        return self._containers.get(container_id)

    def tracked_containers(self) -> List[SandboxContainer]:
        return list(self._containers.values())

    async def cleanup(self, max_age_seconds: int) -> int:
        """Stop tracked containers older than max_age. Returns how many were removed."""
        report = await self.sweep(max_age_seconds)
        return report.removed_count

    async def sweep(self, max_age_seconds: int) -> CleanupReport:
        cutoff = utcnow() - timedelta(seconds=max_age_seconds)

        # Snapshot first: anything created after this point is out of scope
        async with self._lock:
            candidates = [
                c.id for c in self._containers.values() if c.created_at <= cutoff
            ]

        report = CleanupReport()
        for container_id in candidates:
            try:
                if await self.stop_container(container_id, reason="expired"):
                    report.removed.append(container_id)
            except SandboxError as e:
                logger.error(
                    "Failed to stop container during cleanup",
                    container_id=container_id[:12],
                    error=e.kind.value,
                )
                report.failed.append(container_id)

        if candidates:
            logger.info(
                "Container cleanup finished",
                removed=report.removed_count,
                failed=len(report.failed),
            )
        return report

    async def exec_command(self, container_id: str, command: List[str]) -> ExecResult:
        """Run a one-shot command in a container this process tracks."""
        if container_id not in self._containers:
            raise ContainerNotFound()
        return await self.runtime.exec(container_id, command)

    async def list_images(self) -> List[str]:
        return await self.runtime.list_images()

    async def ping(self) -> bool:
        return await self.runtime.ping()

    async def open_stream(self, container_id: str) -> LiveContainerStream:
        stream = await self.runtime.attach(container_id)
        return LiveContainerStream(stream, container_id)

    # ==========================================================================
    # Session-aware entry points
    # ==========================================================================

    async def launch(
        self,
        image: Optional[str],
        user_id: int,
        match_id: int = LAB_MATCH_ID,
        allow_simulated: bool = True,
    ) -> LaunchResult:
        """
        Provision a container and bind a fresh session to it.

        When the engine cannot serve the request and `allow_simulated` is set,
        a container-less session is minted instead and the result says so.
        """
        session_id = self.sessions.reserve_session_id()
        owner = OwnerLabels(user_id=user_id, match_id=match_id, session_id=session_id)
        container_id = None

        try:
            container_id, _ = await self.create_container(image, owner)
            session = await self.sessions.create_session(
                container_id,
                user_id,
                match_id,
                session_id=session_id,
            )
        except (RuntimeUnavailable, ImageInvalid, ContainerNotRunning) as e:
            if container_id is not None:
                await self._discard(container_id)
            if not allow_simulated:
                raise

            logger.warning(
                "Launch falling back to simulated terminal",
                user_id=user_id,
                match_id=match_id,
                error=e.kind.value,
            )
            SIMULATED_FALLBACKS.labels(stage="launch").inc()
            session = self.sessions.create_detached_session(
                user_id,
                match_id,
                session_id=session_id,
            )
            ACTIVE_SESSIONS.set(self.sessions.active_count)
            return LaunchResult(
                session_id=session.session_id,
                token=session.token,
                match_id=match_id,
                simulated_mode=True,
                error_kind=e.kind,
            )

        ACTIVE_SESSIONS.set(self.sessions.active_count)
        return LaunchResult(
            session_id=session.session_id,
            token=session.token,
            container_id=container_id,
            match_id=match_id,
        )

    async def connect(
        self,
        container_id: str,
        user_id: int,
        is_admin: bool = False,
    ) -> LaunchResult:
        """
        Bind a new session to an existing container.

        Raises:
            ContainerNotFound: unknown to the engine or not one of ours
            ContainerForbidden: caller is neither the owner nor an admin
            ContainerNotRunning: the container exists but is not running
        """
        info = await self.runtime.inspect(container_id)
        owner = info.owner
        if info.labels.get("app") != self.settings.sandbox_label_app or owner is None:
            raise ContainerNotFound()
        if owner.user_id != user_id and not is_admin:
            logger.warning(
                "Connect refused, caller does not own container",
                container_id=container_id[:12],
                user_id=user_id,
            )
            raise ContainerForbidden()
        if info.status != ContainerStatus.RUNNING:
            raise ContainerNotRunning()

        async with self._lock:
            if info.id not in self._containers:
                # Labelled as ours but started by an earlier process
                self._containers[info.id] = SandboxContainer(
                    id=info.id,
                    name=info.name,
                    image=info.image,
                    owner=owner,
                    status=info.status,
                    created_at=info.created_at or utcnow(),
                    ip_address=info.ip_address,
                )

        session = await self.sessions.create_session(info.id, user_id, owner.match_id)
        ACTIVE_SESSIONS.set(self.sessions.active_count)
        return LaunchResult(
            session_id=session.session_id,
            token=session.token,
            container_id=info.id,
            match_id=owner.match_id,
        )

    async def close_session(
        self,
        session: TerminalSession,
        stop_container: bool = True,
    ) -> bool:
        """
        Close a session, optionally stopping its container first.

        The session is invalidated even if the stop fails. Returns whether
        a container was stopped.
        """
        stopped = False
        if stop_container and session.container_id:
            try:
                stopped = await self.stop_container(session.container_id, reason="session_closed")
            except SandboxError as e:
                logger.warning(
                    "Container stop failed on session close",
                    session_id=session.session_id,
                    container_id=session.container_id[:12],
                    error=e.kind.value,
                )
        self.sessions.close(session.session_id)
        ACTIVE_SESSIONS.set(self.sessions.active_count)
        return stopped

    async def expire_sessions(self) -> int:
        """Close sessions past their TTL and optionally stop their orphaned containers."""
        expired = self.sessions.expire_sessions()

        if self.settings.session_stop_container_on_expiry:
            orphaned = {
                s.container_id for s in expired
                if s.container_id and not self.sessions.has_live_session(s.container_id)
            }
            for container_id in orphaned:
                try:
                    await self.stop_container(container_id, reason="session_expired")
                except SandboxError as e:
                    logger.error(
                        "Failed to stop container of expired session",
                        container_id=container_id[:12],
                        error=e.kind.value,
                    )

        ACTIVE_SESSIONS.set(self.sessions.active_count)
        return len(expired)

    # ==========================================================================
    # Internals
    # ==========================================================================

    async def _discard(self, container_id: str) -> None:
        """Best-effort removal of a container we could not bind a session to."""
        try:
            await self.stop_container(container_id, reason="launch_failed")
        except SandboxError as e:
            logger.error(
                "Failed to discard container",
                container_id=container_id[:12],
                error=e.kind.value,
            )

    async def _cleanup_loop(self) -> None:
        """Background loop to stop containers past the max age."""
        while self._running:
            try:
                await asyncio.sleep(self.settings.sandbox_cleanup_interval_seconds)
                await self.sweep(self.settings.sandbox_max_age_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in container cleanup loop", error=str(e))

    async def _session_sweep_loop(self) -> None:
        """Background loop to expire sessions past their TTL."""
        while self._running:
            try:
                await asyncio.sleep(self.settings.session_sweep_interval_seconds)
                await self.expire_sessions()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in session sweep loop", error=str(e))

    async def _stop_all_containers(self) -> None:
        """Stop every tracked container on shutdown."""
        tasks = [
            asyncio.create_task(self.stop_container(container_id, reason="shutdown"))
            for container_id in list(self._containers.keys())
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
