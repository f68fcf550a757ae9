"""
Sandbox error taxonomy.

Every failure that crosses from the container runtime into session, stream
or duel logic is one of these. Each carries a stable machine code, the HTTP
status the API renders it with, and a short message that is safe to show a
player. Internal causes stay in the logs.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Machine-readable error codes."""
    RUNTIME_UNAVAILABLE = "runtime_unavailable"
    IMAGE_INVALID = "image_invalid"
    CONTAINER_NOT_RUNNING = "container_not_running"
    CONTAINER_NOT_FOUND = "container_not_found"
    CONTAINER_FORBIDDEN = "container_forbidden"
    SESSION_INVALID = "session_invalid"
    ALREADY_QUEUED = "already_queued"
    ALREADY_IN_MATCH = "already_in_match"
    MATCH_NOT_FOUND = "match_not_found"
    MATCH_NOT_CANCELLABLE = "match_not_cancellable"
    MATCH_NOT_PROVISIONED = "match_not_provisioned"
    INVALID_MATCH_TRANSITION = "invalid_match_transition"
    NOT_MATCH_PARTICIPANT = "not_match_participant"
    CHALLENGE_NOT_FOUND = "challenge_not_found"
    CHALLENGE_CONFLICT = "challenge_conflict"
    CHALLENGE_NOT_PENDING = "challenge_not_pending"
    CHALLENGE_FORBIDDEN = "challenge_forbidden"


class SandboxError(Exception):
    """Base class for all sandbox subsystem errors."""

    kind: ErrorKind = ErrorKind.RUNTIME_UNAVAILABLE
    status_code: int = 500
    default_message: str = "Sandbox operation failed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.kind.value, "detail": self.message}


# ============================================================================
# Runtime / container errors
# ============================================================================

class RuntimeUnavailable(SandboxError):
    """The container engine cannot be reached or refused the request."""
    kind = ErrorKind.RUNTIME_UNAVAILABLE
    status_code = 503
    default_message = "Container runtime is unavailable"


class ImageInvalid(SandboxError):
    """The image reference cannot be resolved by the engine."""
    kind = ErrorKind.IMAGE_INVALID
    status_code = 400
    default_message = "Container image could not be resolved"


class ContainerNotRunning(SandboxError):
    kind = ErrorKind.CONTAINER_NOT_RUNNING
    status_code = 409
    default_message = "Container is not running"


class ContainerNotFound(SandboxError):
    kind = ErrorKind.CONTAINER_NOT_FOUND
    status_code = 404
    default_message = "Container not found"


class ContainerForbidden(SandboxError):
    kind = ErrorKind.CONTAINER_FORBIDDEN
    status_code = 403
    default_message = "You do not have access to this container"


# ============================================================================
# Session errors
# ============================================================================

class SessionInvalid(SandboxError):
    """Unknown, expired, closed or mismatched-token session. Deliberately uniform."""
    kind = ErrorKind.SESSION_INVALID
    status_code = 401
    default_message = "Invalid session"


# ============================================================================
# Queue / match errors
# ============================================================================

class AlreadyQueued(SandboxError):
    kind = ErrorKind.ALREADY_QUEUED
    status_code = 409
    default_message = "You are already in the queue"


class AlreadyInMatch(SandboxError):
    kind = ErrorKind.ALREADY_IN_MATCH
    status_code = 409
    default_message = "You are already in an active duel match"


class MatchNotFound(SandboxError):
    kind = ErrorKind.MATCH_NOT_FOUND
    status_code = 404
    default_message = "Match not found"


class MatchNotCancellable(SandboxError):
    kind = ErrorKind.MATCH_NOT_CANCELLABLE
    status_code = 409
    default_message = "Match cannot be cancelled in its current state"


class MatchNotProvisioned(SandboxError):
    kind = ErrorKind.MATCH_NOT_PROVISIONED
    status_code = 409
    default_message = "No terminal is available for this match yet"


class InvalidMatchTransition(SandboxError):
    kind = ErrorKind.INVALID_MATCH_TRANSITION
    status_code = 409
    default_message = "Match cannot move to the requested state"


class NotMatchParticipant(SandboxError):
    kind = ErrorKind.NOT_MATCH_PARTICIPANT
    status_code = 403
    default_message = "You are not a participant in this match"


# ============================================================================
# Direct challenge errors
# ============================================================================

class ChallengeNotFound(SandboxError):
    kind = ErrorKind.CHALLENGE_NOT_FOUND
    status_code = 404
    default_message = "Challenge not found"


class ChallengeConflict(SandboxError):
    kind = ErrorKind.CHALLENGE_CONFLICT
    status_code = 409
    default_message = "There is already a pending challenge between you two"


class ChallengeNotPending(SandboxError):
    kind = ErrorKind.CHALLENGE_NOT_PENDING
    status_code = 409
    default_message = "This challenge has already been responded to"


class ChallengeForbidden(SandboxError):
    kind = ErrorKind.CHALLENGE_FORBIDDEN
    status_code = 403
    default_message = "This challenge is not for you"
