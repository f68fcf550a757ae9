"""Duel application layer."""

from .service import DuelService

__all__ = ["DuelService"]
