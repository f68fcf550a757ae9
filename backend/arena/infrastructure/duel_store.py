"""
Sandbox Arena - Duel Persistence
Store interface the duel service reads and writes through, plus an in-memory backend
"""

import copy
import itertools
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

import structlog

from arena.domain.duels.entities import (
    DuelChallenge,
    DuelMatch,
    DuelStats,
    MatchPreferences,
    MatchStatus,
    QueueEntry,
    utcnow,
)

logger = structlog.get_logger(__name__)


class DuelStore(ABC):
    """
    Durable rows for the duel subsystem.

    Implementations return detached copies: a change is only persisted by
    the matching save call.
    """

    # Queue

    @abstractmethod
    async def get_queue_entry(self, user_id: int) -> Optional[QueueEntry]:
        ...

    @abstractmethod
    async def list_queue_entries(self) -> List[QueueEntry]:
        """All entries, oldest first."""

    @abstractmethod
    async def add_queue_entry(self, entry: QueueEntry) -> None:
        ...

    @abstractmethod
    async def update_queue_entry(self, entry: QueueEntry) -> None:
        """Replace an existing entry; unknown users are an error."""

    @abstractmethod
    async def remove_queue_entry(self, user_id: int) -> bool:
        ...

    # Matches

    @abstractmethod
    async def create_match(
        self,
        player1_id: int,
        player2_id: int,
        source: str,
        preferences: MatchPreferences,
    ) -> DuelMatch:
        ...

    @abstractmethod
    async def get_match(self, match_id: int) -> Optional[DuelMatch]:
        ...

    @abstractmethod
    async def save_match(self, match: DuelMatch) -> None:
        ...

    @abstractmethod
    async def list_matches(
        self,
        user_id: Optional[int] = None,
        status: Optional[MatchStatus] = None,
    ) -> List[DuelMatch]:
        """Newest first."""

    @abstractmethod
    async def active_match_for(self, user_id: int) -> Optional[DuelMatch]:
        """The user's non-terminal match, if any."""

    # Challenges

    @abstractmethod
    async def create_challenge(
        self,
        challenger_id: int,
        challenged_id: int,
        difficulty: str,
        expires_at: datetime,
    ) -> DuelChallenge:
        ...

    @abstractmethod
    async def get_challenge(self, challenge_id: int) -> Optional[DuelChallenge]:
        ...

    @abstractmethod
    async def save_challenge(self, challenge: DuelChallenge) -> None:
        ...

    @abstractmethod
    async def list_challenges(self, user_id: int) -> List[DuelChallenge]:
        """Challenges sent or received by the user, newest first."""

    # Ratings

    @abstractmethod
    async def get_stats(self, user_id: int) -> Optional[DuelStats]:
        ...

    @abstractmethod
    async def save_stats(self, stats: DuelStats) -> None:
        ...

    @abstractmethod
    async def list_stats(self) -> List[DuelStats]:
        ...


class InMemoryDuelStore(DuelStore):
    """Process-local store for development and tests."""

    def __init__(self):
        self._queue: Dict[int, QueueEntry] = {}
        self._matches: Dict[int, DuelMatch] = {}
        self._challenges: Dict[int, DuelChallenge] = {}
        self._stats: Dict[int, DuelStats] = {}
        self._match_ids = itertools.count(1)
        self._challenge_ids = itertools.count(1)

    async def get_queue_entry(self, user_id: int) -> Optional[QueueEntry]:
        return copy.deepcopy(self._queue.get(user_id))

    async def list_queue_entries(self) -> List[QueueEntry]:
        entries = sorted(self._queue.values(), key=lambda e: e.joined_at)
        return copy.deepcopy(entries)

    async def add_queue_entry(self, entry: QueueEntry) -> None:
        if entry.user_id in self._queue:
            # Mirrors the unique constraint on user_id
            raise ValueError(f"User {entry.user_id} already queued")
        self._queue[entry.user_id] = copy.deepcopy(entry)

    async def update_queue_entry(self, entry: QueueEntry) -> None:
        if entry.user_id not in self._queue:
            raise KeyError(f"User {entry.user_id} is not queued")
        self._queue[entry.user_id] = copy.deepcopy(entry)

    async def remove_queue_entry(self, user_id: int) -> bool:
        return self._queue.pop(user_id, None) is not None

    async def create_match(
        self,
        player1_id: int,
        player2_id: int,
        source: str,
        preferences: MatchPreferences,
    ) -> DuelMatch:
        match = DuelMatch(
            id=next(self._match_ids),
            player1_id=player1_id,
            player2_id=player2_id,
            source=source,
            preferences=preferences,
            started_at=utcnow(),
        )
        self._matches[match.id] = match
        logger.debug("Match row created", match_id=match.id)
        return copy.deepcopy(match)

    async def get_match(self, match_id: int) -> Optional[DuelMatch]:
        return copy.deepcopy(self._matches.get(match_id))

    async def save_match(self, match: DuelMatch) -> None:
        if match.id not in self._matches:
            raise KeyError(f"Match {match.id} does not exist")
        self._matches[match.id] = copy.deepcopy(match)

    async def list_matches(
        self,
        user_id: Optional[int] = None,
        status: Optional[MatchStatus] = None,
    ) -> List[DuelMatch]:
        matches = [
            m for m in self._matches.values()
            if (user_id is None or m.is_participant(user_id))
            and (status is None or m.status == status)
        ]
        matches.sort(key=lambda m: (m.started_at, m.id), reverse=True)
        return copy.deepcopy(matches)

    async def active_match_for(self, user_id: int) -> Optional[DuelMatch]:
        for match in self._matches.values():
            if match.is_participant(user_id) and not match.is_terminal:
                return copy.deepcopy(match)
        return None

    async def create_challenge(
        self,
        challenger_id: int,
        challenged_id: int,
        difficulty: str,
        expires_at: datetime,
    ) -> DuelChallenge:
        challenge = DuelChallenge(
            id=next(self._challenge_ids),
            challenger_id=challenger_id,
            challenged_id=challenged_id,
            difficulty=difficulty,
            expires_at=expires_at,
        )
        self._challenges[challenge.id] = challenge
        return copy.deepcopy(challenge)

    async def get_challenge(self, challenge_id: int) -> Optional[DuelChallenge]:
        return copy.deepcopy(self._challenges.get(challenge_id))

    async def save_challenge(self, challenge: DuelChallenge) -> None:
        if challenge.id not in self._challenges:
            raise KeyError(f"Challenge {challenge.id} does not exist")
        self._challenges[challenge.id] = copy.deepcopy(challenge)

    async def list_challenges(self, user_id: int) -> List[DuelChallenge]:
        challenges = [
            c for c in self._challenges.values()
            if user_id in (c.challenger_id, c.challenged_id)
        ]
        challenges.sort(key=lambda c: (c.created_at, c.id), reverse=True)
        return copy.deepcopy(challenges)

    async def get_stats(self, user_id: int) -> Optional[DuelStats]:
        return copy.deepcopy(self._stats.get(user_id))

    async def save_stats(self, stats: DuelStats) -> None:
        self._stats[stats.user_id] = copy.deepcopy(stats)

    async def list_stats(self) -> List[DuelStats]:
        return copy.deepcopy(list(self._stats.values()))
