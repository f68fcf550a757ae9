"""
Terminal backends - what sits on the far side of a terminal bridge

Two variants behind one read/write contract:
- LiveContainerStream: bytes to and from a container's TTY
- SimulatedStream: a canned shell used when no container can be reached
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import structlog

from .runtime import RuntimeStream

logger = structlog.get_logger(__name__)

PROMPT = "root@ctf-container:~# "
CRLF = "\r\n"

BACKSPACE_KEYS = ("\x7f", "\x08")
INTERRUPT_KEY = "\x03"


class TerminalBackend(ABC):
    """Read/write contract the bridge pumps bytes through."""

    simulated: bool = False

    async def open(self) -> None:
        """Hook run once before the first read."""

    @abstractmethod
    async def read(self) -> Optional[bytes]:
        """Next output chunk for the client. None means end of stream."""

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Deliver client keystrokes."""

    @abstractmethod
    async def close(self) -> None:
        ...


class LiveContainerStream(TerminalBackend):
    """Pass-through to an attached container. Bytes are forwarded verbatim."""

    simulated = False

    def __init__(self, stream: RuntimeStream, container_id: str):
        self._stream = stream
        self.container_id = container_id

    async def read(self) -> Optional[bytes]:
        return await self._stream.read()

    async def write(self, data: bytes) -> None:
        await self._stream.write(data)

    async def close(self) -> None:
        await self._stream.close()


class SimulatedShell:
    """
    Stateless line interpreter for the fallback terminal.

    `run` maps one command line to the text printed before the next prompt.
    Nothing persists between lines: `cd` is accepted but goes nowhere.
    """

    LISTING = "bin  etc  home  lib  root  usr  var"

    FILES: Dict[str, str] = {
        "/etc/passwd": "root:x:0:0:root:/root:/bin/bash",
        "/etc/hostname": "ctf-container",
    }

    def __init__(self):
        self._commands: Dict[str, Callable[[List[str]], str]] = {
            "ls": lambda args: self.LISTING,
            "pwd": lambda args: "/root",
            "cd": lambda args: "",
            "echo": lambda args: " ".join(args),
            "cat": self._cat,
            "help": self._help,
        }

    def run(self, line: str) -> str:
        parts = line.strip().split()
        if not parts:
            return ""
        command, args = parts[0], parts[1:]
        handler = self._commands.get(command)
        if handler is None:
            return f"{command}: command not found"
        return handler(args)

    def _cat(self, args: List[str]) -> str:
        if not args:
            return ""
        output = []
        for path in args:
            if path in self.FILES:
                output.append(self.FILES[path])
            else:
                output.append(f"cat: {path}: No such file or directory")
        return CRLF.join(output)

    def _help(self, args: List[str]) -> str:
        return (
            "\x1b[1;33mCommands available in simulated mode:\x1b[0m"
            + CRLF
            + ", ".join(sorted(self._commands))
        )


class SimulatedStream(TerminalBackend):
    """
    Fallback backend driving a SimulatedShell.

    Keystrokes are buffered into lines with local echo; Enter runs the line.
    Output is queued for the bridge's reader and `close` ends the stream.
    """

    simulated = True

    def __init__(self, shell: Optional[SimulatedShell] = None):
        self.shell = shell or SimulatedShell()
        self._output: asyncio.Queue = asyncio.Queue()
        self._line: List[str] = []
        self._last_was_cr = False
        self._closed = False

    async def open(self) -> None:
        self._emit(PROMPT)

    async def read(self) -> Optional[bytes]:
        if self._closed and self._output.empty():
            return None
        chunk = await self._output.get()
        return chunk

    async def write(self, data: bytes) -> None:
        if self._closed:
            return
        text = data.decode("utf-8", errors="replace")
        echo: List[str] = []

        for char in text:
            if char == "\n" and self._last_was_cr:
                # CRLF from the client counts as a single Enter
                self._last_was_cr = False
                continue
            self._last_was_cr = char == "\r"

            if char in ("\r", "\n"):
                echo.append(CRLF)
                output = self.shell.run("".join(self._line))
                self._line.clear()
                if output:
                    echo.append(output + CRLF)
                echo.append(PROMPT)
            elif char in BACKSPACE_KEYS:
                if self._line:
                    self._line.pop()
                    echo.append("\b \b")
            elif char == INTERRUPT_KEY:
                self._line.clear()
                echo.append("^C" + CRLF + PROMPT)
            elif char.isprintable():
                self._line.append(char)
                echo.append(char)

        if echo:
            self._emit("".join(echo))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._output.put_nowait(None)

    def _emit(self, text: str) -> None:
        self._output.put_nowait(text.encode("utf-8"))
