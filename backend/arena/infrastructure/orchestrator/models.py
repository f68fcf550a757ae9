"""
Orchestrator Models - Data classes for sandbox containers and terminal sessions
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import ErrorKind


LAB_MATCH_ID = 0  # match id used for sessions outside a duel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContainerStatus(str, Enum):
    """Container states as reported by the engine."""
    CREATED = "created"
    RUNNING = "running"
    EXITED = "exited"
    NOT_FOUND = "not_found"

    @classmethod
    def from_engine(cls, state: Optional[str]) -> "ContainerStatus":
        """Map a raw engine state string onto the four states we track."""
        if not state:
            return cls.NOT_FOUND
        state = state.lower()
        if state == "running":
            return cls.RUNNING
        if state in ("created", "restarting"):
            return cls.CREATED
        # A paused container accepts an attach but never answers it
        if state in ("exited", "dead", "removing", "paused"):
            return cls.EXITED
        return cls.NOT_FOUND


@dataclass(frozen=True)
class OwnerLabels:
    """Ownership metadata stamped on every container as engine labels."""
    user_id: int
    match_id: int = LAB_MATCH_ID
    session_id: Optional[int] = None

    def to_labels(self, app_label: str) -> Dict[str, str]:
        labels = {
            "app": app_label,
            "user_id": str(self.user_id),
            "match_id": str(self.match_id),
        }
        if self.session_id is not None:
            labels["session_id"] = str(self.session_id)
        return labels

    @classmethod
    def from_labels(cls, labels: Dict[str, str]) -> Optional["OwnerLabels"]:
        """Parse labels back; returns None when user_id is missing or garbled."""
        try:
            user_id = int(labels["user_id"])
        except (KeyError, TypeError, ValueError):
            return None

        def _int(key: str, default: Optional[int]) -> Optional[int]:
            try:
                return int(labels[key])
            except (KeyError, TypeError, ValueError):
                return default

        return cls(
            user_id=user_id,
            match_id=_int("match_id", LAB_MATCH_ID),
            session_id=_int("session_id", None),
        )


@dataclass
class ResourceLimits:
    """Resource limits for sandbox containers."""
    cpu_quota: float = 1.0  # CPU cores
    memory_limit_mb: int = 512
    pids_limit: int = 256

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cpu_quota": self.cpu_quota,
            "memory_limit_mb": self.memory_limit_mb,
            "pids_limit": self.pids_limit,
        }


@dataclass
class ContainerInfo:
    """Engine-side view of one container (inspect / list result)."""
    id: str
    name: str
    image: str
    status: ContainerStatus
    created_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def owner(self) -> Optional[OwnerLabels]:
        return OwnerLabels.from_labels(self.labels)

    def to_dict(self) -> Dict[str, Any]:
        owner = self.owner
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "ip_address": self.ip_address,
            "user_id": owner.user_id if owner else None,
            "match_id": owner.match_id if owner else None,
            "session_id": owner.session_id if owner else None,
            "labels": self.labels,
        }


@dataclass
class SandboxContainer:
    """
    A container this process provisioned and still tracks.

    Lives in the lifecycle manager's registry until it is stopped or swept.
    """
    id: str
    name: str
    image: str
    owner: OwnerLabels
    status: ContainerStatus = ContainerStatus.CREATED
    created_at: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.created_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "ip_address": self.ip_address,
            "user_id": self.owner.user_id,
            "match_id": self.owner.match_id,
            "session_id": self.owner.session_id,
        }


@dataclass
class TerminalSession:
    """
    Authorization to stream with one container for a bounded time.

    `container_id` is None for simulated-mode sessions that never got a
    container. Once `is_active` goes False it is never set back.
    """
    session_id: int
    token: str
    user_id: int
    match_id: int
    expires_at: datetime
    container_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    is_active: bool = True

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)

    def to_dict(self, include_token: bool = False) -> Dict[str, Any]:
        result = {
            "session_id": self.session_id,
            "container_id": self.container_id,
            "user_id": self.user_id,
            "match_id": self.match_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "is_active": self.is_active,
        }
        if include_token:
            result["token"] = self.token
        return result


@dataclass
class LaunchResult:
    """Result of a launch or connect operation."""
    session_id: int
    token: str
    container_id: Optional[str] = None
    match_id: int = LAB_MATCH_ID
    simulated_mode: bool = False
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "session_id": self.session_id,
            "token": self.token,
        }
        if self.match_id != LAB_MATCH_ID:
            result["match_id"] = self.match_id
        if self.simulated_mode:
            result["simulated_mode"] = True
        else:
            result["container_id"] = self.container_id
        return result


@dataclass
class ExecResult:
    """Result of a one-shot command run inside a container."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


@dataclass
class CleanupReport:
    """Outcome of one age-based sweep."""
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def removed_count(self) -> int:
        return len(self.removed)
