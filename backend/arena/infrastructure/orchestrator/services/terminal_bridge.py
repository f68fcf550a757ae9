"""
Terminal Stream Bridge - WebSocket <-> container TTY

Per connection:
- Authenticate (session_id, token); failure closes with 1008 and nothing else
- Pick a backend once: live container stream or simulated shell
- Pump bytes both ways, touching the session on every client write
- Degrade to the simulated shell if the live stream errors or ends
- Close with 4001 when the session is closed or expires mid-stream
"""

import asyncio
from typing import Optional

import structlog
from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect, WebSocketState

from arena.core.metrics import ACTIVE_STREAMS, SIMULATED_FALLBACKS

from ..exceptions import SandboxError, SessionInvalid
from ..models import ContainerStatus, TerminalSession
from .container_manager import ContainerLifecycleManager
from .terminal_backends import SimulatedStream, TerminalBackend

logger = structlog.get_logger(__name__)

CLOSE_AUTH_FAILED = 1008
CLOSE_SESSION_ENDED = 4001

GREEN = "\x1b[1;32m"
YELLOW = "\x1b[1;33m"
RED = "\x1b[1;31m"
RESET = "\x1b[0m"


def banner(color: str, text: str) -> bytes:
    return f"\r\n{color}{text}{RESET}\r\n\r\n".encode("utf-8")


class _Connection:
    """State for one bridged WebSocket."""

    def __init__(self, websocket: WebSocket, session: TerminalSession, backend: TerminalBackend):
        self.websocket = websocket
        self.session = session
        self.backend = backend
        self.swap_lock = asyncio.Lock()
        self.closed = False


class TerminalBridge:
    """Connects authenticated WebSockets to terminal backends."""

    def __init__(self, manager: ContainerLifecycleManager):
        self.manager = manager
        self.sessions = manager.sessions

    async def handle(
        self,
        websocket: WebSocket,
        session_id: Optional[int],
        token: Optional[str],
    ) -> None:
        """Serve one connection until either side goes away."""
        await websocket.accept()

        try:
            session = self.sessions.authenticate(session_id, token)
        except SessionInvalid:
            logger.warning("Terminal stream rejected", session_id=session_id)
            await websocket.close(code=CLOSE_AUTH_FAILED)
            return

        self.sessions.touch(session.session_id)
        log = logger.bind(session_id=session.session_id, user_id=session.user_id)

        backend = await self._select_backend(websocket, session)
        await backend.open()
        connection = _Connection(websocket, session, backend)

        ACTIVE_STREAMS.inc()
        log.info("Terminal stream opened", simulated=backend.simulated)

        reader = asyncio.create_task(self._pump_output(connection))
        writer = asyncio.create_task(self._pump_input(connection))
        try:
            done, pending = await asyncio.wait(
                {reader, writer},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, WebSocketDisconnect):
                    log.error("Terminal pump failed", error=str(error), error_type=type(error).__name__)
        finally:
            # Local handle only: the container and the session outlive the socket
            await connection.backend.close()
            ACTIVE_STREAMS.dec()
            log.info("Terminal stream closed")

    async def _select_backend(
        self,
        websocket: WebSocket,
        session: TerminalSession,
    ) -> TerminalBackend:
        if session.container_id is None:
            SIMULATED_FALLBACKS.labels(stage="no_container").inc()
            await self._send(websocket, banner(YELLOW, "Using simulated terminal (no container assigned)"))
            return SimulatedStream()

        status = await self.manager.check_status(session.container_id)
        if status != ContainerStatus.RUNNING:
            SIMULATED_FALLBACKS.labels(stage="not_running").inc()
            await self._send(websocket, banner(YELLOW, "Container is not running, using simulated terminal"))
            return SimulatedStream()

        try:
            backend = await self.manager.open_stream(session.container_id)
        except SandboxError as e:
            logger.warning(
                "Attach failed, degrading to simulated terminal",
                session_id=session.session_id,
                container_id=session.container_id[:12],
                error=e.kind.value,
            )
            SIMULATED_FALLBACKS.labels(stage="attach").inc()
            await self._send(websocket, banner(RED, "Could not connect to the container"))
            await self._send(websocket, banner(YELLOW, "Using simulated terminal instead"))
            return SimulatedStream()

        container = self.manager.get_container(session.container_id)
        label = container.image if container else session.container_id[:12]
        await self._send(websocket, banner(GREEN, f"Connected to container: {label}"))
        return backend

    async def _pump_output(self, connection: _Connection) -> None:
        """Backend -> client."""
        while not connection.closed:
            backend = connection.backend
            try:
                chunk = await backend.read()
            except Exception as e:
                if backend is not connection.backend:
                    continue
                if backend.simulated:
                    raise
                logger.warning(
                    "Container stream error",
                    session_id=connection.session.session_id,
                    error=str(e),
                )
                await self._degrade(connection, backend, banner(RED, "Connection to the container failed"))
                continue

            if chunk is None:
                if backend is not connection.backend:
                    continue  # already swapped by the input side
                if backend.simulated:
                    return
                await self._degrade(connection, backend, banner(YELLOW, "The container connection has ended"))
                continue

            if not await self._ensure_live(connection):
                return
            if not await self._send(connection.websocket, chunk):
                return

    async def _pump_input(self, connection: _Connection) -> None:
        """Client -> backend."""
        session_id = connection.session.session_id
        while not connection.closed:
            message = await connection.websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

            data = message.get("bytes")
            if data is None:
                data = (message.get("text") or "").encode("utf-8")
            if not data:
                continue

            if not await self._ensure_live(connection):
                return

            backend = connection.backend
            try:
                await backend.write(data)
            except Exception as e:
                if backend.simulated:
                    raise
                logger.warning(
                    "Error writing to container",
                    session_id=session_id,
                    error=str(e),
                )
                await self._degrade(
                    connection,
                    backend,
                    banner(RED, "Error sending data to the container, switching to simulated mode"),
                )
                continue

            self.sessions.touch(session_id)

    async def _ensure_live(self, connection: _Connection) -> bool:
        """Close with 4001 if the session was closed or expired under us."""
        if self.sessions.is_active(connection.session.session_id):
            return True
        if not connection.closed:
            connection.closed = True
            logger.info("Session ended mid-stream", session_id=connection.session.session_id)
            await self._send(connection.websocket, banner(YELLOW, "Session ended"))
            try:
                await connection.websocket.close(code=CLOSE_SESSION_ENDED)
            except RuntimeError:
                pass  # already closed by the peer
        return False

    async def _degrade(
        self,
        connection: _Connection,
        failed: TerminalBackend,
        notice: bytes,
    ) -> None:
        """Swap a failed live backend for the simulated shell, once."""
        async with connection.swap_lock:
            if connection.backend is not failed:
                return
            replacement = SimulatedStream()
            connection.backend = replacement

        SIMULATED_FALLBACKS.labels(stage="mid_stream").inc()
        try:
            await failed.close()
        except Exception as e:
            logger.debug("Error closing failed backend", error=str(e))

        await self._send(connection.websocket, notice)
        await self._send(connection.websocket, banner(YELLOW, "Using simulated terminal"))
        await replacement.open()

    async def _send(self, websocket: WebSocket, data: bytes) -> bool:
        """Send bytes; False once the client is gone."""
        if websocket.application_state != WebSocketState.CONNECTED:
            return False
        try:
            await websocket.send_bytes(data)
            return True
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.debug("Failed to send to terminal client", error=str(e))
            return False
