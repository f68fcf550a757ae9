"""
Sandbox Arena - Duel Domain Entities
Queue entries, matches, direct challenges and rating records
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

ANY = "any"  # preference wildcard


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueStatus(str, Enum):
    """Queue entry states."""
    WAITING = "waiting"
    MATCHING = "matching"  # picked by the matchmaker, match not yet created


class MatchStatus(str, Enum):
    """Duel match states."""
    PREPARING = "preparing"
    IN_PROGRESS = "in_progress"
    PLAYER1_VICTORY = "player1_victory"
    PLAYER2_VICTORY = "player2_victory"
    DRAW = "draw"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[MatchStatus] = frozenset({
    MatchStatus.PLAYER1_VICTORY,
    MatchStatus.PLAYER2_VICTORY,
    MatchStatus.DRAW,
    MatchStatus.CANCELLED,
})

ALLOWED_TRANSITIONS: Dict[MatchStatus, FrozenSet[MatchStatus]] = {
    MatchStatus.PREPARING: frozenset({
        MatchStatus.IN_PROGRESS,
        MatchStatus.CANCELLED,
    }),
    MatchStatus.IN_PROGRESS: frozenset({
        MatchStatus.PLAYER1_VICTORY,
        MatchStatus.PLAYER2_VICTORY,
        MatchStatus.DRAW,
        MatchStatus.CANCELLED,
    }),
}


class ChallengeStatus(str, Enum):
    """Direct challenge states."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass(frozen=True)
class MatchPreferences:
    """What a queued player is willing to be matched into."""
    difficulty: str = ANY
    challenge_type: str = ANY

    @staticmethod
    def _fits(a: str, b: str) -> bool:
        return a == ANY or b == ANY or a == b

    def compatible_with(self, other: "MatchPreferences") -> bool:
        return (
            self._fits(self.difficulty, other.difficulty)
            and self._fits(self.challenge_type, other.challenge_type)
        )

    def merged_with(self, other: "MatchPreferences") -> "MatchPreferences":
        """The concrete preferences a pairing of two compatible players settles on."""
        return MatchPreferences(
            difficulty=self.difficulty if self.difficulty != ANY else other.difficulty,
            challenge_type=self.challenge_type if self.challenge_type != ANY else other.challenge_type,
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "preferred_difficulty": self.difficulty,
            "preferred_challenge_type": self.challenge_type,
        }


@dataclass
class QueueEntry:
    """A user's standing request to be paired into a duel."""
    user_id: int
    expires_at: datetime
    preferences: MatchPreferences = field(default_factory=MatchPreferences)
    joined_at: datetime = field(default_factory=utcnow)
    status: QueueStatus = QueueStatus.WAITING

    @classmethod
    def create(
        cls,
        user_id: int,
        preferences: MatchPreferences,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> "QueueEntry":
        now = now or utcnow()
        return cls(
            user_id=user_id,
            preferences=preferences,
            joined_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "joined_at": self.joined_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "status": self.status.value,
            **self.preferences.to_dict(),
        }


@dataclass
class ContainerAssignment:
    """One player's container inside a match."""
    container_id: Optional[str]
    session_id: int
    ip_address: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "container_id": self.container_id,
            "session_id": self.session_id,
            "ip_address": self.ip_address,
        }


@dataclass
class DuelMatch:
    """
    A head-to-head match.

    Terminal states are immutable apart from log appends.
    """
    id: int
    player1_id: int
    player2_id: int
    status: MatchStatus = MatchStatus.PREPARING
    source: str = "queue"  # queue | challenge
    preferences: MatchPreferences = field(default_factory=MatchPreferences)
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    winner_id: Optional[int] = None
    score_change: Optional[int] = None
    container_data: Dict[int, ContainerAssignment] = field(default_factory=dict)
    logs: List[str] = field(default_factory=list)

    @property
    def player_ids(self) -> List[int]:
        return [self.player1_id, self.player2_id]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_participant(self, user_id: int) -> bool:
        return user_id in (self.player1_id, self.player2_id)

    def opponent_of(self, user_id: int) -> int:
        if user_id == self.player1_id:
            return self.player2_id
        if user_id == self.player2_id:
            return self.player1_id
        raise ValueError(f"User {user_id} is not in match {self.id}")

    def victory_status_for(self, user_id: int) -> MatchStatus:
        if user_id == self.player1_id:
            return MatchStatus.PLAYER1_VICTORY
        if user_id == self.player2_id:
            return MatchStatus.PLAYER2_VICTORY
        raise ValueError(f"User {user_id} is not in match {self.id}")

    def can_transition_to(self, status: MatchStatus) -> bool:
        return status in ALLOWED_TRANSITIONS.get(self.status, frozenset())

    def transition_to(self, status: MatchStatus, now: Optional[datetime] = None) -> None:
        if not self.can_transition_to(status):
            raise ValueError(f"Cannot move match {self.id} from {self.status.value} to {status.value}")
        self.status = status
        if status.is_terminal:
            self.ended_at = now or utcnow()

    def append_log(self, message: str, now: Optional[datetime] = None) -> None:
        self.logs.append(f"[{(now or utcnow()).isoformat()}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "player1_id": self.player1_id,
            "player2_id": self.player2_id,
            "status": self.status.value,
            "source": self.source,
            "difficulty": self.preferences.difficulty,
            "challenge_type": self.preferences.challenge_type,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "winner_id": self.winner_id,
            "score_change": self.score_change,
            "container_data": {
                str(user_id): assignment.to_dict()
                for user_id, assignment in self.container_data.items()
            } or None,
            "logs": "\n".join(self.logs),
        }


@dataclass
class DuelChallenge:
    """A direct invitation from one player to another."""
    id: int
    challenger_id: int
    challenged_id: int
    expires_at: datetime
    difficulty: str = "medium"
    status: ChallengeStatus = ChallengeStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
    match_id: Optional[int] = None

    def involves_pair(self, a: int, b: int) -> bool:
        return {self.challenger_id, self.challenged_id} == {a, b}

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def expire_if_due(self, now: Optional[datetime] = None) -> bool:
        """Flip a lapsed pending challenge to expired. Returns True if it flipped."""
        if self.status == ChallengeStatus.PENDING and self.is_expired(now):
            self.status = ChallengeStatus.EXPIRED
            return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "challenger_id": self.challenger_id,
            "challenged_id": self.challenged_id,
            "status": self.status.value,
            "difficulty": self.difficulty,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "responded_at": self.responded_at.isoformat() if self.responded_at else None,
            "match_id": self.match_id,
        }


@dataclass
class DuelStats:
    """Per-user duel record."""
    user_id: int
    rating: int = 1000
    wins: int = 0
    losses: int = 0
    draws: int = 0
    last_played_at: Optional[datetime] = None

    @property
    def matches_played(self) -> int:
        return self.wins + self.losses + self.draws

    def record_win(self, delta: int, now: Optional[datetime] = None) -> None:
        self.wins += 1
        self.rating += delta
        self.last_played_at = now or utcnow()

    def record_loss(self, delta: int, now: Optional[datetime] = None) -> None:
        self.losses += 1
        self.rating = max(0, self.rating - delta)
        self.last_played_at = now or utcnow()

    def record_draw(self, now: Optional[datetime] = None) -> None:
        self.draws += 1
        self.last_played_at = now or utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "rating": self.rating,
            "wins": self.wins,
            "losses": self.losses,
            "draws": self.draws,
            "matches_played": self.matches_played,
            "last_played_at": self.last_played_at.isoformat() if self.last_played_at else None,
        }
