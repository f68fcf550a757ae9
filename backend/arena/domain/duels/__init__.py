"""Duel domain: queue entries, matches, challenges, ratings."""

from .entities import (
    ANY,
    ChallengeStatus,
    ContainerAssignment,
    DuelChallenge,
    DuelMatch,
    DuelStats,
    MatchPreferences,
    MatchStatus,
    QueueEntry,
    QueueStatus,
)

__all__ = [
    "ANY",
    "ChallengeStatus",
    "ContainerAssignment",
    "DuelChallenge",
    "DuelMatch",
    "DuelStats",
    "MatchPreferences",
    "MatchStatus",
    "QueueEntry",
    "QueueStatus",
]
