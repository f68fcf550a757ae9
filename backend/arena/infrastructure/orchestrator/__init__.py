"""
Sandbox Arena - Sandbox Orchestrator

Interactive sandbox subsystem:
- Docker containers with ownership labels
- Token-gated terminal sessions bound to those containers
- WebSocket bridge to the container TTY with a simulated-shell fallback
"""

from .services.container_manager import ContainerLifecycleManager
from .services.sandbox_docker import DockerSandbox
from .services.session_registry import TerminalSessionRegistry
from .services.terminal_bridge import TerminalBridge

__all__ = [
    "ContainerLifecycleManager",
    "DockerSandbox",
    "TerminalSessionRegistry",
    "TerminalBridge",
]
