"""Sandbox orchestrator services."""

from .container_manager import ContainerLifecycleManager
from .runtime import ContainerRuntime, RuntimeStream
from .sandbox_docker import DockerSandbox
from .session_registry import TerminalSessionRegistry
from .terminal_backends import (
    LiveContainerStream,
    SimulatedShell,
    SimulatedStream,
    TerminalBackend,
)
from .terminal_bridge import TerminalBridge

__all__ = [
    "ContainerLifecycleManager",
    "ContainerRuntime",
    "DockerSandbox",
    "LiveContainerStream",
    "RuntimeStream",
    "SimulatedShell",
    "SimulatedStream",
    "TerminalBackend",
    "TerminalBridge",
    "TerminalSessionRegistry",
]
