"""
Docker Sandbox - Interactive containers for the terminal lab and duels

Features:
- One TTY container per terminal session, started with an interactive shell
- Ownership labels (app/user_id/match_id/session_id) for attribution
- Resource limits: CPU quota, memory limit, PIDs limit
- AutoRemove so a stopped container leaves nothing behind
- Engine errors translated to the sandbox error taxonomy at this boundary
"""

import asyncio
import json
import os
from contextlib import AsyncExitStack
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import aiodocker
import aiohttp
import structlog
from aiodocker.exceptions import DockerError

from ..exceptions import ContainerNotFound, ImageInvalid, RuntimeUnavailable
from ..models import ContainerInfo, ContainerStatus, ExecResult, ResourceLimits
from .runtime import ContainerRuntime, RuntimeStream

logger = structlog.get_logger(__name__)

# Failures that mean "the engine is not there" rather than "the request was bad"
CONNECTION_ERRORS = (aiohttp.ClientError, OSError, asyncio.TimeoutError)


class DockerAttachStream(RuntimeStream):
    """
    Adapter from an aiodocker attach stream to the runtime stream contract.

    aiodocker defers the HTTP upgrade to the first read or write. `open`
    performs it up front so a missing container or an unreachable engine
    fails the attach itself, and the upgrade happens exactly once.
    """

    def __init__(self, stream: Any, container_id: str):
        self._stream = stream
        self._container_id = container_id
        self._exit_stack = AsyncExitStack()
        self._closed = False

    async def open(self) -> None:
        try:
            await self._exit_stack.enter_async_context(self._stream)
        except DockerError as e:
            if e.status == 404:
                raise ContainerNotFound() from e
            raise DockerSandbox._translate(e, "attach") from e
        except CONNECTION_ERRORS as e:
            raise DockerSandbox._translate(e, "attach") from e

    async def read(self) -> Optional[bytes]:
        if self._closed:
            return None
        try:
            message = await self._stream.read_out()
        except (DockerError, *CONNECTION_ERRORS) as e:
            raise DockerSandbox._translate(e, "attach_read") from e
        if message is None:
            return None
        return message.data

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionResetError("stream closed")
        try:
            await self._stream.write_in(data)
        except (DockerError, *CONNECTION_ERRORS) as e:
            raise DockerSandbox._translate(e, "attach_write") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._exit_stack.aclose()
        except Exception as e:
            logger.debug(
                "Error closing attach stream",
                container_id=self._container_id[:12],
                error=str(e),
            )


class DockerSandbox(ContainerRuntime):
    """
    Docker-backed container runtime.

    Holds the only aiodocker client in the process; the lifecycle manager is
    its only caller.
    """

    def __init__(
        self,
        docker_url: Optional[str] = None,
        network_name: str = "bridge",
        command: Optional[List[str]] = None,
        resources: Optional[ResourceLimits] = None,
        stop_timeout: int = 10,
    ):
        self.docker_url = docker_url or os.getenv("DOCKER_HOST", "unix:///var/run/docker.sock")
        self.network_name = network_name
        self.command = command or ["/bin/bash"]
        self.resources = resources or ResourceLimits()
        self.stop_timeout = stop_timeout
        self._docker: Optional[aiodocker.Docker] = None

    async def _get_docker(self) -> aiodocker.Docker:
        """Get or create Docker client."""
        if self._docker is None:
            try:
                self._docker = aiodocker.Docker(url=self.docker_url)
            except Exception as e:
                raise RuntimeUnavailable() from e
        return self._docker

    async def close(self) -> None:
        if self._docker is not None:
            await self._docker.close()
            self._docker = None

    async def create(
        self,
        image: str,
        name: str,
        labels: Dict[str, str],
    ) -> str:
        """
        Create and start an interactive container.

        Args:
            image: Image reference to run
            name: Container name (carries user/match/timestamp)
            labels: Ownership labels

        Returns:
            Engine container id
        """
        docker = await self._get_docker()
        config = self._prepare_container_config(image, labels)

        logger.info("Creating Docker container", image=image, name=name)

        try:
            container = await docker.containers.create(config=config, name=name)
        except DockerError as e:
            if e.status in (400, 404):
                logger.warning("Image could not be resolved", image=image, error=e.message)
                raise ImageInvalid() from e
            raise self._translate(e, "create") from e
        except CONNECTION_ERRORS as e:
            raise self._translate(e, "create") from e

        try:
            await container.start()
        except (DockerError, *CONNECTION_ERRORS) as e:
            # Do not leave a created-but-dead container behind
            await self._silent_delete(container.id)
            raise self._translate(e, "start") from e

        logger.info("Docker container started", container_id=container.id[:12], name=name)
        return container.id

    async def inspect(self, container_id: str) -> ContainerInfo:
        docker = await self._get_docker()
        try:
            data = await docker.containers.container(container_id).show()
        except DockerError as e:
            if e.status == 404:
                raise ContainerNotFound() from e
            raise self._translate(e, "inspect") from e
        except CONNECTION_ERRORS as e:
            raise self._translate(e, "inspect") from e
        return self._info_from_inspect(data)

    async def stop(self, container_id: str) -> None:
        docker = await self._get_docker()
        container = docker.containers.container(container_id)

        try:
            try:
                await container.stop(t=self.stop_timeout)
            except DockerError as e:
                if e.status == 404:
                    return
                if e.status != 304:  # 304: already stopped
                    await container.kill()
            await container.delete(force=True)
        except DockerError as e:
            # AutoRemove may have raced us to it
            if e.status in (404, 409):
                return
            raise self._translate(e, "stop") from e
        except CONNECTION_ERRORS as e:
            raise self._translate(e, "stop") from e

        logger.info("Docker container stopped", container_id=container_id[:12])

    async def attach(self, container_id: str) -> RuntimeStream:
        docker = await self._get_docker()
        container = docker.containers.container(container_id)
        stream = DockerAttachStream(
            container.attach(stdin=True, stdout=True, stderr=True),
            container_id,
        )
        await stream.open()
        return stream

    async def list_containers(
        self,
        all: bool = False,
        labels: Optional[Dict[str, str]] = None,
    ) -> List[ContainerInfo]:
        docker = await self._get_docker()
        params: Dict[str, Any] = {"all": all}
        if labels:
            params["filters"] = json.dumps(
                {"label": [f"{key}={value}" for key, value in labels.items()]}
            )
        try:
            containers = await docker.containers.list(**params)
        except (DockerError, *CONNECTION_ERRORS) as e:
            raise self._translate(e, "list") from e

        return [self._info_from_list(self._summary(c)) for c in containers]

    async def exec(self, container_id: str, command: List[str]) -> ExecResult:
        """Run a one-shot command and collect its output."""
        docker = await self._get_docker()
        container = docker.containers.container(container_id)
        stdout: List[bytes] = []
        stderr: List[bytes] = []

        try:
            execution = await container.exec(cmd=command, stdout=True, stderr=True, tty=False)
            async with execution.start(detach=False) as stream:
                while True:
                    message = await stream.read_out()
                    if message is None:
                        break
                    (stderr if message.stream == 2 else stdout).append(message.data)
            details = await execution.inspect()
        except DockerError as e:
            if e.status == 404:
                raise ContainerNotFound() from e
            raise self._translate(e, "exec") from e
        except CONNECTION_ERRORS as e:
            raise self._translate(e, "exec") from e

        return ExecResult(
            exit_code=details.get("ExitCode") if details.get("ExitCode") is not None else -1,
            stdout=b"".join(stdout).decode(errors="replace"),
            stderr=b"".join(stderr).decode(errors="replace"),
        )

    async def list_images(self) -> List[str]:
        docker = await self._get_docker()
        try:
            images = await docker.images.list()
        except (DockerError, *CONNECTION_ERRORS) as e:
            raise self._translate(e, "list_images") from e

        names = []
        for image in images:
            tags = image.get("RepoTags") or []
            if tags and tags[0] != "<none>:<none>":
                names.append(tags[0])
            else:
                names.append(image.get("Id", "")[7:19])  # short id
        return names

    async def ping(self) -> bool:
        try:
            docker = await self._get_docker()
            await docker.version()
            return True
        except Exception as e:
            logger.debug("Docker ping failed", error=str(e))
            return False

    def _prepare_container_config(self, image: str, labels: Dict[str, str]) -> Dict[str, Any]:
        """Prepare Docker container configuration."""
        cpu_period = 100000
        return {
            "Image": image,
            "Cmd": self.command,
            "Tty": True,
            "OpenStdin": True,
            "StdinOnce": False,
            "AttachStdin": True,
            "AttachStdout": True,
            "AttachStderr": True,
            "Labels": labels,
            "HostConfig": {
                "AutoRemove": True,
                "NetworkMode": self.network_name,
                "Memory": self.resources.memory_limit_mb * 1024 * 1024,
                "MemorySwap": self.resources.memory_limit_mb * 1024 * 1024,
                "CpuPeriod": cpu_period,
                "CpuQuota": int(cpu_period * self.resources.cpu_quota),
                "PidsLimit": self.resources.pids_limit,
                "SecurityOpt": ["no-new-privileges:true"],
            },
        }

    def _info_from_inspect(self, data: Dict[str, Any]) -> ContainerInfo:
        config = data.get("Config") or {}
        state = data.get("State") or {}
        network_settings = data.get("NetworkSettings") or {}

        ip_address = network_settings.get("IPAddress") or None
        if not ip_address:
            networks = network_settings.get("Networks") or {}
            primary = networks.get(self.network_name) or next(iter(networks.values()), {})
            ip_address = primary.get("IPAddress") or None

        return ContainerInfo(
            id=data.get("Id", ""),
            name=(data.get("Name") or "").lstrip("/"),
            image=config.get("Image", ""),
            status=ContainerStatus.from_engine(state.get("Status")),
            created_at=self._parse_created(data.get("Created")),
            ip_address=ip_address,
            labels=config.get("Labels") or {},
        )

    @staticmethod
    def _summary(container: Any) -> Dict[str, Any]:
        """Pull the list-endpoint fields out of a DockerContainer."""
        summary = {}
        for key in ("Id", "Names", "Image", "State", "Created", "Labels", "NetworkSettings"):
            try:
                summary[key] = container[key]
            except KeyError:
                continue
        return summary

    def _info_from_list(self, data: Dict[str, Any]) -> ContainerInfo:
        names = data.get("Names") or [""]
        networks = (data.get("NetworkSettings") or {}).get("Networks") or {}
        primary = networks.get(self.network_name) or next(iter(networks.values()), {})

        return ContainerInfo(
            id=data.get("Id", ""),
            name=names[0].lstrip("/"),
            image=data.get("Image", ""),
            status=ContainerStatus.from_engine(data.get("State")),
            created_at=self._parse_created(data.get("Created")),
            ip_address=primary.get("IPAddress") or None,
            labels=data.get("Labels") or {},
        )

    @staticmethod
    def _parse_created(value: Any) -> Optional[datetime]:
        """The list endpoint gives epoch seconds, inspect gives RFC 3339."""
        if value is None:
            return None
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        try:
            # Docker emits nanoseconds; fromisoformat handles at most micro
            head, _, rest = str(value).partition(".")
            fraction = rest.rstrip("Z")[:6]
            text = f"{head}.{fraction}" if fraction else head
            return datetime.fromisoformat(text).replace(tzinfo=timezone.utc)
        except ValueError:
            return None

    async def _silent_delete(self, container_id: str) -> None:
        try:
            docker = await self._get_docker()
            await docker.containers.container(container_id).delete(force=True)
        except Exception as e:
            logger.warning(
                "Failed to remove container after start failure",
                container_id=container_id[:12],
                error=str(e),
            )

    @staticmethod
    def _translate(error: Exception, operation: str) -> RuntimeUnavailable:
        """Everything not handled explicitly means the engine cannot serve us."""
        if isinstance(error, DockerError):
            logger.error(
                "Docker error",
                operation=operation,
                status=error.status,
                error=error.message,
            )
        else:
            logger.error(
                "Docker engine unreachable",
                operation=operation,
                error=str(error),
                error_type=type(error).__name__,
            )
        return RuntimeUnavailable()
