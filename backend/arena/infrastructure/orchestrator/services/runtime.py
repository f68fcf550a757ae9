"""
Container runtime contract.

The lifecycle manager is the only caller. Implementations translate their
engine's failures into the sandbox error taxonomy before returning.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..models import ContainerInfo, ExecResult


class RuntimeStream(ABC):
    """Bidirectional byte stream attached to a container's TTY."""

    @abstractmethod
    async def read(self) -> Optional[bytes]:
        """Next chunk of container output, or None at end of stream."""

    @abstractmethod
    async def write(self, data: bytes) -> None:
        """Write raw bytes to the container's stdin."""

    @abstractmethod
    async def close(self) -> None:
        """Release the local handle. Never stops the container."""


class ContainerRuntime(ABC):
    """Primitive operations against a container engine."""

    @abstractmethod
    async def create(
        self,
        image: str,
        name: str,
        labels: Dict[str, str],
    ) -> str:
        """Create and start a container, returning its engine id."""

    @abstractmethod
    async def inspect(self, container_id: str) -> ContainerInfo:
        """Raises ContainerNotFound when the engine has no such container."""

    @abstractmethod
    async def stop(self, container_id: str) -> None:
        """Stop and remove. An already-gone container is not an error."""

    @abstractmethod
    async def attach(self, container_id: str) -> RuntimeStream:
        ...

    @abstractmethod
    async def list_containers(
        self,
        all: bool = False,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[ContainerInfo]:
        ...

    @abstractmethod
    async def exec(self, container_id: str, command: List[str]) -> ExecResult:
        ...

    @abstractmethod
    async def list_images(self) -> List[str]:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        """Release client resources."""
