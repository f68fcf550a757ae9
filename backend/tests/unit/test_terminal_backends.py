"""
Unit tests for terminal backends and the simulated shell.
"""

import pytest

from arena.infrastructure.orchestrator.services.terminal_backends import (
    PROMPT,
    LiveContainerStream,
    SimulatedShell,
    SimulatedStream,
)
from tests.fixtures.sandbox_fixtures import FakeStream


class TestSimulatedShell:
    """Tests for the canned command interpreter."""

    def setup_method(self):
        """Set up test fixtures."""
        self.shell = SimulatedShell()

    def test_ls(self):
        assert self.shell.run("ls") == "bin  etc  home  lib  root  usr  var"

    def test_pwd(self):
        assert self.shell.run("pwd") == "/root"

    def test_cd_is_silent(self):
        assert self.shell.run("cd /tmp") == ""
        assert self.shell.run("pwd") == "/root"

    def test_echo_joins_arguments(self):
        assert self.shell.run("echo  hello   world") == "hello world"

    def test_cat_known_file(self):
        assert self.shell.run("cat /etc/hostname") == "ctf-container"

    def test_cat_missing_file(self):
        assert self.shell.run("cat /flag.txt") == "cat: /flag.txt: No such file or directory"

    def test_unknown_command(self):
        assert self.shell.run("nmap -sV") == "nmap: command not found"

    def test_blank_line(self):
        assert self.shell.run("   ") == ""

    def test_help_lists_commands(self):
        output = self.shell.run("help")
        for command in ("cat", "cd", "echo", "ls", "pwd"):
            assert command in output


class TestSimulatedStream:
    """Tests for line editing and output framing."""

    def setup_method(self):
        """Set up test fixtures."""
        self.stream = SimulatedStream()

    async def _drain(self) -> str:
        chunks = []
        while not self.stream._output.empty():
            chunks.append(await self.stream.read())
        return b"".join(chunks).decode("utf-8")

    async def test_open_emits_prompt(self):
        await self.stream.open()
        assert await self._drain() == PROMPT

    async def test_enter_runs_line(self):
        await self.stream.write(b"pwd\r")
        assert await self._drain() == "pwd\r\n/root\r\n" + PROMPT

    async def test_crlf_counts_as_one_enter(self):
        await self.stream.write(b"pwd\r\n")
        output = await self._drain()
        assert output.count(PROMPT) == 1

    async def test_keystrokes_across_frames(self):
        await self.stream.write(b"l")
        await self.stream.write(b"s")
        await self.stream.write(b"\r")
        output = await self._drain()
        assert "bin  etc  home" in output

    async def test_backspace_edits_line(self):
        await self.stream.write(b"lx\x7fs\r")
        output = await self._drain()
        assert "\b \b" in output
        assert "bin  etc  home" in output

    async def test_backspace_on_empty_line_is_ignored(self):
        await self.stream.write(b"\x7f")
        assert await self._drain() == ""

    async def test_interrupt_discards_line(self):
        await self.stream.write(b"rm -rf\x03")
        await self.stream.write(b"\r")
        output = await self._drain()
        assert "^C" in output
        assert "command not found" not in output

    async def test_empty_enter_reprints_prompt(self):
        await self.stream.write(b"\r")
        assert await self._drain() == "\r\n" + PROMPT

    async def test_close_ends_stream(self):
        await self.stream.close()
        assert await self.stream.read() is None
        assert await self.stream.read() is None

    async def test_writes_after_close_are_dropped(self):
        await self.stream.close()
        await self.stream.write(b"ls\r")
        assert await self.stream.read() is None


class TestLiveContainerStream:
    """Tests for the pass-through backend."""

    async def test_bytes_pass_through_verbatim(self):
        raw = FakeStream()
        backend = LiveContainerStream(raw, "a" * 64)

        await backend.write(b"\x1b[A")

        assert raw.written == [b"\x1b[A"]
        assert await backend.read() == b"\x1b[A"
        assert not backend.simulated

    async def test_close_only_closes_handle(self):
        raw = FakeStream()
        backend = LiveContainerStream(raw, "a" * 64)
        await backend.close()
        assert raw.closed
        assert await backend.read() is None
