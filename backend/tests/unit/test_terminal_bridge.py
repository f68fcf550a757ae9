"""
Unit tests for the WebSocket terminal bridge.
"""

import asyncio

import pytest

from arena.infrastructure.orchestrator.exceptions import RuntimeUnavailable
from arena.infrastructure.orchestrator.models import ContainerStatus
from arena.infrastructure.orchestrator.services.container_manager import (
    ContainerLifecycleManager,
)
from arena.infrastructure.orchestrator.services.terminal_backends import PROMPT
from arena.infrastructure.orchestrator.services.terminal_bridge import (
    CLOSE_AUTH_FAILED,
    CLOSE_SESSION_ENDED,
    TerminalBridge,
)
from tests.fixtures.sandbox_fixtures import (
    FakeRuntime,
    FakeWebSocket,
    eventually,
    make_settings,
)

LISTING = b"bin  etc  home  lib  root  usr  var"


class TestBridgeAuthentication:
    """Tests for the handshake."""

    def setup_method(self):
        """Set up test fixtures."""
        self.runtime = FakeRuntime()
        self.manager = ContainerLifecycleManager(self.runtime, make_settings())
        self.bridge = TerminalBridge(self.manager)

    async def test_bad_token_closes_with_policy_violation(self):
        session = self.manager.sessions.create_detached_session(user_id=1)
        websocket = FakeWebSocket()

        await self.bridge.handle(websocket, session.session_id, "wrong-token")

        assert websocket.close_code == CLOSE_AUTH_FAILED
        assert websocket.sent == []

    async def test_missing_credentials_rejected(self):
        websocket = FakeWebSocket()
        await self.bridge.handle(websocket, None, None)
        assert websocket.close_code == CLOSE_AUTH_FAILED

    async def test_closed_session_rejected(self):
        session = self.manager.sessions.create_detached_session(user_id=1)
        self.manager.sessions.close(session.session_id)
        websocket = FakeWebSocket()

        await self.bridge.handle(websocket, session.session_id, session.token)

        assert websocket.close_code == CLOSE_AUTH_FAILED


class TestBridgeStreaming:
    """Tests for pumping bytes and degrading to the simulated shell."""

    def setup_method(self):
        """Set up test fixtures."""
        self.runtime = FakeRuntime()
        self.manager = ContainerLifecycleManager(self.runtime, make_settings())
        self.bridge = TerminalBridge(self.manager)
        self.websocket = FakeWebSocket()

    def _serve(self, session):
        return asyncio.create_task(
            self.bridge.handle(self.websocket, session.session_id, session.token)
        )

    async def test_detached_session_gets_simulated_shell(self):
        session = self.manager.sessions.create_detached_session(user_id=1)
        task = self._serve(session)

        await eventually(lambda: PROMPT.encode() in self.websocket.output)
        assert b"simulated terminal" in self.websocket.output

        self.websocket.type("ls\r")
        await eventually(lambda: LISTING in self.websocket.output)

        self.websocket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    async def test_live_container_bytes_forwarded(self):
        launched = await self.manager.launch(None, user_id=1)
        session = self.manager.sessions.get(launched.session_id)
        task = self._serve(session)

        await eventually(lambda: b"Connected to container" in self.websocket.output)
        self.websocket.type("whoami\r")
        await eventually(lambda: b"whoami\r" in self.websocket.output)

        stream = self.runtime.streams[launched.container_id][0]
        assert stream.written == [b"whoami\r"]

        self.websocket.disconnect()
        await asyncio.wait_for(task, timeout=2)

        # Only the local handle goes away
        assert stream.closed
        assert launched.container_id in self.runtime.containers
        assert self.manager.sessions.is_active(session.session_id)

    async def test_input_touches_session(self):
        launched = await self.manager.launch(None, user_id=1)
        session = self.manager.sessions.get(launched.session_id)
        before = session.last_activity_at
        task = self._serve(session)

        await eventually(lambda: b"Connected to container" in self.websocket.output)
        self.websocket.type("x")
        await eventually(lambda: b"x" in self.runtime.streams[launched.container_id][0].written)

        assert session.last_activity_at >= before
        self.websocket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    async def test_stopped_container_uses_simulated_shell(self):
        launched = await self.manager.launch(None, user_id=1)
        session = self.manager.sessions.get(launched.session_id)
        self.runtime.set_status(launched.container_id, ContainerStatus.EXITED)
        task = self._serve(session)

        await eventually(lambda: PROMPT.encode() in self.websocket.output)
        assert b"not running" in self.websocket.output
        assert launched.container_id not in self.runtime.streams

        self.websocket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    async def test_attach_failure_degrades(self):
        launched = await self.manager.launch(None, user_id=1)
        session = self.manager.sessions.get(launched.session_id)
        self.runtime.attach_error = RuntimeUnavailable()
        task = self._serve(session)

        await eventually(lambda: PROMPT.encode() in self.websocket.output)
        assert b"Could not connect to the container" in self.websocket.output

        self.websocket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    async def test_stream_error_mid_session_degrades(self):
        launched = await self.manager.launch(None, user_id=1)
        session = self.manager.sessions.get(launched.session_id)
        task = self._serve(session)

        await eventually(lambda: launched.container_id in self.runtime.streams)
        stream = self.runtime.streams[launched.container_id][0]
        stream.fail()

        await eventually(lambda: PROMPT.encode() in self.websocket.output)
        assert b"Connection to the container failed" in self.websocket.output
        assert stream.closed

        self.websocket.type("pwd\r")
        await eventually(lambda: b"/root" in self.websocket.output)
        assert stream.written == []

        self.websocket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    async def test_stream_end_degrades(self):
        launched = await self.manager.launch(None, user_id=1)
        session = self.manager.sessions.get(launched.session_id)
        task = self._serve(session)

        await eventually(lambda: launched.container_id in self.runtime.streams)
        self.runtime.streams[launched.container_id][0].end()

        await eventually(lambda: b"connection has ended" in self.websocket.output)
        await eventually(lambda: PROMPT.encode() in self.websocket.output)

        self.websocket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    async def test_write_error_degrades(self):
        launched = await self.manager.launch(None, user_id=1)
        session = self.manager.sessions.get(launched.session_id)
        task = self._serve(session)

        await eventually(lambda: launched.container_id in self.runtime.streams)
        self.runtime.streams[launched.container_id][0].broken = True
        self.websocket.type("id\r")

        await eventually(lambda: b"switching to simulated mode" in self.websocket.output)
        await eventually(lambda: PROMPT.encode() in self.websocket.output)

        self.websocket.disconnect()
        await asyncio.wait_for(task, timeout=2)

    async def test_session_closed_mid_stream_ends_connection(self):
        session = self.manager.sessions.create_detached_session(user_id=1)
        task = self._serve(session)
        await eventually(lambda: PROMPT.encode() in self.websocket.output)

        self.manager.sessions.close(session.session_id)
        self.websocket.type("ls\r")

        await asyncio.wait_for(task, timeout=2)
        assert self.websocket.close_code == CLOSE_SESSION_ENDED
        assert LISTING not in self.websocket.output

    async def test_container_stop_ends_connection(self):
        launched = await self.manager.launch(None, user_id=1)
        session = self.manager.sessions.get(launched.session_id)
        task = self._serve(session)
        await eventually(lambda: b"Connected to container" in self.websocket.output)

        await self.manager.stop_container(launched.container_id)
        self.websocket.type("ls\r")

        await asyncio.wait_for(task, timeout=2)
        assert self.websocket.close_code == CLOSE_SESSION_ENDED
