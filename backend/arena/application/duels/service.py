"""
Sandbox Arena - Duel Application Service
Matchmaking queue, match state machine, direct challenges and ratings
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

import structlog

from arena.core.config import Settings
from arena.core.metrics import MATCHES_CREATED
from arena.domain.duels.entities import (
    ChallengeStatus,
    ContainerAssignment,
    DuelChallenge,
    DuelMatch,
    DuelStats,
    MatchPreferences,
    MatchStatus,
    QueueEntry,
    QueueStatus,
    utcnow,
)
from arena.infrastructure.duel_store import DuelStore
from arena.infrastructure.orchestrator.exceptions import (
    AlreadyInMatch,
    AlreadyQueued,
    ChallengeConflict,
    ChallengeForbidden,
    ChallengeNotFound,
    ChallengeNotPending,
    InvalidMatchTransition,
    MatchNotCancellable,
    MatchNotFound,
    NotMatchParticipant,
    SandboxError,
)
from arena.infrastructure.orchestrator.models import LaunchResult
from arena.infrastructure.orchestrator.services.container_manager import (
    ContainerLifecycleManager,
)

logger = structlog.get_logger(__name__)

VICTORY_STATUSES = (MatchStatus.PLAYER1_VICTORY, MatchStatus.PLAYER2_VICTORY)


class DuelService:
    """
    Service for head-to-head duels.

    All queue reads and writes that feed pairing go through one lock, so a
    user can be selected into at most one match. Each match has its own lock
    for state changes; ratings share a lock so both sides of a result land
    together.
    """

    def __init__(
        self,
        store: DuelStore,
        manager: ContainerLifecycleManager,
        settings: Settings,
    ):
        self.store = store
        self.manager = manager
        self.settings = settings

        self._queue_lock = asyncio.Lock()
        self._challenge_lock = asyncio.Lock()
        self._ratings_lock = asyncio.Lock()
        self._match_locks: Dict[int, asyncio.Lock] = {}

        self._matchmaker_task: Optional[asyncio.Task] = None
        self._provision_tasks: Set[asyncio.Task] = set()
        self._running = False

    async def start(self) -> None:
        """Start the background matchmaker."""
        self._running = True
        self._matchmaker_task = asyncio.create_task(self._matchmaker_loop())
        logger.info("Duel matchmaker started")

    async def stop(self) -> None:
        self._running = False

        if self._matchmaker_task:
            self._matchmaker_task.cancel()
            try:
                await self._matchmaker_task
            except asyncio.CancelledError:
                pass

        for task in list(self._provision_tasks):
            task.cancel()
        if self._provision_tasks:
            await asyncio.gather(*self._provision_tasks, return_exceptions=True)
        logger.info("Duel matchmaker stopped")

    @asynccontextmanager
    async def _locked_match(self, match_id: int) -> AsyncIterator[DuelMatch]:
        """
        Hold the match lock around a fresh read of the match.

        Unknown ids never get a lock. A terminal match accepts no further
        transitions, so its lock is dropped on the way out.
        """
        await self._require_match(match_id)
        lock = self._match_locks.setdefault(match_id, asyncio.Lock())
        match: Optional[DuelMatch] = None
        try:
            async with lock:
                match = await self._require_match(match_id)
                yield match
        finally:
            if match is not None and match.is_terminal and self._match_locks.get(match_id) is lock:
                del self._match_locks[match_id]

    # ==========================================================================
    # Queue
    # ==========================================================================

    async def enqueue(
        self,
        user_id: int,
        preferences: Optional[MatchPreferences] = None,
    ) -> QueueEntry:
        """
        Add a user to the matchmaking queue.

        Raises:
            AlreadyQueued: the user has a live entry
            AlreadyInMatch: the user has a match that is not finished
        """
        async with self._queue_lock:
            existing = await self.store.get_queue_entry(user_id)
            if existing is not None:
                if not existing.is_expired():
                    raise AlreadyQueued()
                await self.store.remove_queue_entry(user_id)

            if await self.store.active_match_for(user_id) is not None:
                raise AlreadyInMatch()

            entry = QueueEntry.create(
                user_id,
                preferences or MatchPreferences(),
                self.settings.queue_entry_ttl_seconds,
            )
            await self.store.add_queue_entry(entry)

        logger.info(
            "User joined duel queue",
            user_id=user_id,
            difficulty=entry.preferences.difficulty,
            challenge_type=entry.preferences.challenge_type,
        )
        return entry

    async def dequeue(self, user_id: int) -> bool:
        async with self._queue_lock:
            removed = await self.store.remove_queue_entry(user_id)
        if removed:
            logger.info("User left duel queue", user_id=user_id)
        return removed

    async def attempt_match(self) -> Optional[DuelMatch]:
        """
        Pair the two oldest compatible waiting users.

        Expired entries are pruned on the way. The match is created before the
        lock is released, so the pair never shows up in another scan.
        """
        async with self._queue_lock:
            now = utcnow()
            waiting: List[QueueEntry] = []
            for entry in await self.store.list_queue_entries():
                if entry.is_expired(now):
                    await self.store.remove_queue_entry(entry.user_id)
                    logger.debug("Pruned expired queue entry", user_id=entry.user_id)
                    continue
                if await self.store.active_match_for(entry.user_id) is not None:
                    # Matched through a direct challenge while waiting
                    await self.store.remove_queue_entry(entry.user_id)
                    continue
                if entry.status != QueueStatus.WAITING:
                    continue
                waiting.append(entry)

            pair = self._find_pair(waiting)
            if pair is None:
                return None

            first, second = pair
            for entry in pair:
                entry.status = QueueStatus.MATCHING
                await self.store.update_queue_entry(entry)

            try:
                match = await self._create_match(
                    first.user_id,
                    second.user_id,
                    source="queue",
                    preferences=first.preferences.merged_with(second.preferences),
                )
            except Exception:
                # Both keep their place in line
                for entry in pair:
                    entry.status = QueueStatus.WAITING
                    await self.store.update_queue_entry(entry)
                raise

            for entry in pair:
                await self.store.remove_queue_entry(entry.user_id)
            return match

    @staticmethod
    def _find_pair(waiting: List[QueueEntry]) -> Optional[Tuple[QueueEntry, QueueEntry]]:
        """FIFO: the oldest entry with any compatible partner, paired with its oldest partner."""
        for index, first in enumerate(waiting):
            for second in waiting[index + 1:]:
                if first.preferences.compatible_with(second.preferences):
                    return first, second
        return None

    async def join_queue(
        self,
        user_id: int,
        preferences: Optional[MatchPreferences] = None,
    ) -> Dict[str, Any]:
        """Idempotent join followed by a pairing attempt. Returns the queue status."""
        try:
            await self.enqueue(user_id, preferences)
        except AlreadyQueued:
            pass

        match = await self.attempt_match()
        if match is not None:
            self._schedule_provision(match)
        return await self.queue_status(user_id)

    async def queue_status(self, user_id: int) -> Dict[str, Any]:
        entry = await self.store.get_queue_entry(user_id)
        if entry is not None and entry.is_expired():
            entry = None
        match = await self.store.active_match_for(user_id)
        return {
            "in_queue": entry is not None,
            "queue_entry": entry.to_dict() if entry else None,
            "active_match": match.to_dict() if match else None,
        }

    # ==========================================================================
    # Matches
    # ==========================================================================

    async def create_match(
        self,
        player1_id: int,
        player2_id: int,
        source: str = "queue",
        preferences: Optional[MatchPreferences] = None,
    ) -> DuelMatch:
        """Create a preparing match for two users, pulling both out of the queue."""
        if player1_id == player2_id:
            raise ValueError("A match needs two different players")

        async with self._queue_lock:
            for user_id in (player1_id, player2_id):
                if await self.store.active_match_for(user_id) is not None:
                    raise AlreadyInMatch(f"User {user_id} is already in an active duel match")
            await self.store.remove_queue_entry(player1_id)
            await self.store.remove_queue_entry(player2_id)
            return await self._create_match(
                player1_id,
                player2_id,
                source=source,
                preferences=preferences or MatchPreferences(),
            )

    async def _create_match(
        self,
        player1_id: int,
        player2_id: int,
        source: str,
        preferences: MatchPreferences,
    ) -> DuelMatch:
        """Caller holds the queue lock."""
        match = await self.store.create_match(player1_id, player2_id, source, preferences)
        match.append_log(f"Match created from {source}: {player1_id} vs {player2_id}")
        await self.store.save_match(match)

        MATCHES_CREATED.labels(source=source).inc()
        logger.info(
            "Duel match created",
            match_id=match.id,
            player1_id=player1_id,
            player2_id=player2_id,
            source=source,
        )
        return match

    async def provision_match(self, match_id: int, image: Optional[str] = None) -> DuelMatch:
        """
        Give each player a container and session, then start the match.

        On failure the containers already created are torn down, the match
        stays in preparing with a log line, and the error propagates.
        """
        image = image or self.settings.duel_image
        async with self._locked_match(match_id) as match:
            if match.status != MatchStatus.PREPARING:
                raise InvalidMatchTransition("Only preparing matches can be provisioned")

            launched: List[Tuple[int, LaunchResult]] = []
            try:
                for user_id in match.player_ids:
                    result = await self.manager.launch(
                        image,
                        user_id,
                        match_id=match.id,
                        allow_simulated=False,
                    )
                    launched.append((user_id, result))
            except SandboxError as e:
                await self._rollback(launched)
                match.append_log(f"Provisioning failed: {e.kind.value}")
                await self.store.save_match(match)
                logger.error(
                    "Match provisioning failed",
                    match_id=match.id,
                    error=e.kind.value,
                    rolled_back=len(launched),
                )
                raise

            for user_id, result in launched:
                container = self.manager.get_container(result.container_id)
                match.container_data[user_id] = ContainerAssignment(
                    container_id=result.container_id,
                    session_id=result.session_id,
                    ip_address=container.ip_address if container else None,
                )
            match.transition_to(MatchStatus.IN_PROGRESS)
            match.append_log("Containers provisioned, match started")
            await self.store.save_match(match)

        logger.info("Duel match started", match_id=match.id)
        return match

    async def _rollback(self, launched: List[Tuple[int, LaunchResult]]) -> None:
        for user_id, result in launched:
            session = self.manager.sessions.get(result.session_id)
            if session is not None:
                await self.manager.close_session(session, stop_container=True)

    async def cancel_active_match(self, user_id: int) -> DuelMatch:
        """Cancel the caller's unfinished match."""
        match = await self.store.active_match_for(user_id)
        if match is None:
            await self.dequeue(user_id)
            raise MatchNotFound("You have no active duel match")
        return await self._cancel(match.id, f"Cancelled by player {user_id}", requester=user_id)

    async def cancel_match(self, match_id: int) -> DuelMatch:
        """Administrative cancel."""
        return await self._cancel(match_id, "Cancelled by administrator")

    async def _cancel(
        self,
        match_id: int,
        reason: str,
        requester: Optional[int] = None,
    ) -> DuelMatch:
        async with self._locked_match(match_id) as match:
            if requester is not None and not match.is_participant(requester):
                raise NotMatchParticipant()
            if not match.can_transition_to(MatchStatus.CANCELLED):
                raise MatchNotCancellable()

            match.transition_to(MatchStatus.CANCELLED)
            match.append_log(reason)
            await self.store.save_match(match)

        for user_id in match.player_ids:
            await self.dequeue(user_id)
        await self._release_containers(match)

        logger.info("Duel match cancelled", match_id=match.id, reason=reason)
        return match

    async def set_winner(
        self,
        match_id: int,
        winner_id: int,
        score_change: Optional[int] = None,
    ) -> DuelMatch:
        """
        Resolve a running match in the winner's favour.

        Both rating records move by the same magnitude; the loser's rating
        never drops below zero.
        """
        async with self._locked_match(match_id) as match:
            if not match.is_participant(winner_id):
                raise NotMatchParticipant("Winner is not a participant in this match")
            if match.status != MatchStatus.IN_PROGRESS:
                raise InvalidMatchTransition("Only matches in progress can be won")

            delta = score_change if score_change is not None else self.settings.duel_default_score_change
            loser_id = match.opponent_of(winner_id)
            now = utcnow()

            async with self._ratings_lock:
                winner = await self._stats_for(winner_id)
                loser = await self._stats_for(loser_id)
                winner.record_win(delta, now)
                loser.record_loss(delta, now)

                match.transition_to(match.victory_status_for(winner_id), now)
                match.winner_id = winner_id
                match.score_change = delta
                match.append_log(f"Player {winner_id} won (+{delta}), player {loser_id} lost", now)

                await self.store.save_stats(winner)
                await self.store.save_stats(loser)
                await self.store.save_match(match)

        await self._release_containers(match)
        logger.info(
            "Duel match won",
            match_id=match.id,
            winner_id=winner_id,
            loser_id=loser_id,
            score_change=delta,
        )
        return match

    async def declare_draw(self, match_id: int) -> DuelMatch:
        async with self._locked_match(match_id) as match:
            if match.status != MatchStatus.IN_PROGRESS:
                raise InvalidMatchTransition("Only matches in progress can end in a draw")

            now = utcnow()
            async with self._ratings_lock:
                for user_id in match.player_ids:
                    stats = await self._stats_for(user_id)
                    stats.record_draw(now)
                    await self.store.save_stats(stats)

                match.transition_to(MatchStatus.DRAW, now)
                match.score_change = 0
                match.append_log("Match ended in a draw", now)
                await self.store.save_match(match)

        await self._release_containers(match)
        logger.info("Duel match drawn", match_id=match.id)
        return match

    async def admin_update_status(
        self,
        match_id: int,
        status: MatchStatus,
        winner_id: Optional[int] = None,
        score_change: Optional[int] = None,
    ) -> DuelMatch:
        """Administrative override. Still bound by the transition table."""
        if status in VICTORY_STATUSES:
            match = await self._require_match(match_id)
            implied = match.player1_id if status == MatchStatus.PLAYER1_VICTORY else match.player2_id
            if winner_id is not None and winner_id != implied:
                raise InvalidMatchTransition("Winner does not match the requested status")
            return await self.set_winner(match_id, implied, score_change)

        if status == MatchStatus.DRAW:
            return await self.declare_draw(match_id)

        if status == MatchStatus.CANCELLED:
            return await self.cancel_match(match_id)

        async with self._locked_match(match_id) as match:
            if not match.can_transition_to(status):
                raise InvalidMatchTransition()
            match.transition_to(status)
            match.append_log(f"Status set to {status.value} by administrator")
            await self.store.save_match(match)
        return match

    async def list_matches(
        self,
        user_id: Optional[int] = None,
        status: Optional[MatchStatus] = None,
    ) -> List[DuelMatch]:
        return await self.store.list_matches(user_id=user_id, status=status)

    async def get_match(
        self,
        match_id: int,
        user_id: Optional[int] = None,
        is_admin: bool = False,
    ) -> DuelMatch:
        match = await self._require_match(match_id)
        if user_id is not None and not is_admin and not match.is_participant(user_id):
            raise NotMatchParticipant()
        return match

    async def active_match(self, user_id: int) -> Optional[DuelMatch]:
        return await self.store.active_match_for(user_id)

    async def _require_match(self, match_id: int) -> DuelMatch:
        match = await self.store.get_match(match_id)
        if match is None:
            raise MatchNotFound()
        return match

    async def _release_containers(self, match: DuelMatch) -> None:
        """Best-effort teardown of a finished match's containers and sessions."""
        for assignment in match.container_data.values():
            session = self.manager.sessions.get(assignment.session_id)
            if session is not None:
                await self.manager.close_session(session, stop_container=True)
            elif assignment.container_id:
                try:
                    await self.manager.stop_container(assignment.container_id, reason="match_over")
                except SandboxError as e:
                    logger.warning(
                        "Failed to stop duel container",
                        match_id=match.id,
                        container_id=assignment.container_id[:12],
                        error=e.kind.value,
                    )

    # ==========================================================================
    # Ratings
    # ==========================================================================

    async def _stats_for(self, user_id: int) -> DuelStats:
        stats = await self.store.get_stats(user_id)
        if stats is None:
            stats = DuelStats(user_id=user_id, rating=self.settings.duel_default_rating)
        return stats

    async def get_stats(self, user_id: int) -> DuelStats:
        return await self._stats_for(user_id)

    async def leaderboard(self, limit: int = 10) -> List[DuelStats]:
        stats = await self.store.list_stats()
        stats.sort(key=lambda s: (-s.rating, -s.wins, s.user_id))
        return stats[:limit]

    # ==========================================================================
    # Direct challenges
    # ==========================================================================

    async def challenge_user(
        self,
        challenger_id: int,
        challenged_id: int,
        difficulty: str = "medium",
    ) -> DuelChallenge:
        """
        Invite another user to a duel.

        Raises:
            ChallengeConflict: self-challenge, or a pending challenge already
                exists between the two users in either direction
        """
        if challenger_id == challenged_id:
            raise ChallengeConflict("You cannot challenge yourself")

        async with self._challenge_lock:
            now = utcnow()
            for existing in await self.store.list_challenges(challenger_id):
                if existing.expire_if_due(now):
                    await self.store.save_challenge(existing)
                    continue
                if existing.status == ChallengeStatus.PENDING and existing.involves_pair(
                    challenger_id, challenged_id
                ):
                    raise ChallengeConflict()

            challenge = await self.store.create_challenge(
                challenger_id,
                challenged_id,
                difficulty,
                expires_at=now + timedelta(seconds=self.settings.duel_challenge_ttl_seconds),
            )

        logger.info(
            "Duel challenge sent",
            challenge_id=challenge.id,
            challenger_id=challenger_id,
            challenged_id=challenged_id,
        )
        return challenge

    async def respond_to_challenge(
        self,
        challenge_id: int,
        user_id: int,
        accept: bool,
    ) -> Tuple[DuelChallenge, Optional[DuelMatch]]:
        """Accept or reject a pending challenge. Accepting creates a preparing match."""
        match = None
        async with self._challenge_lock:
            challenge = await self.store.get_challenge(challenge_id)
            if challenge is None:
                raise ChallengeNotFound()
            if challenge.challenged_id != user_id:
                raise ChallengeForbidden()

            now = utcnow()
            if challenge.expire_if_due(now):
                await self.store.save_challenge(challenge)
                raise ChallengeNotPending("This challenge has expired")
            if challenge.status != ChallengeStatus.PENDING:
                raise ChallengeNotPending()

            if accept:
                match = await self.create_match(
                    challenge.challenger_id,
                    challenge.challenged_id,
                    source="challenge",
                    preferences=MatchPreferences(difficulty=challenge.difficulty),
                )
                challenge.status = ChallengeStatus.ACCEPTED
                challenge.match_id = match.id
            else:
                challenge.status = ChallengeStatus.REJECTED
            challenge.responded_at = now
            await self.store.save_challenge(challenge)

        logger.info(
            "Duel challenge answered",
            challenge_id=challenge.id,
            status=challenge.status.value,
            match_id=challenge.match_id,
        )
        if match is not None:
            self._schedule_provision(match)
        return challenge, match

    async def list_challenges(self, user_id: int) -> List[DuelChallenge]:
        challenges = await self.store.list_challenges(user_id)
        now = utcnow()
        for challenge in challenges:
            if challenge.expire_if_due(now):
                await self.store.save_challenge(challenge)
        return challenges

    # ==========================================================================
    # Background matchmaking
    # ==========================================================================

    def _schedule_provision(self, match: DuelMatch) -> None:
        if not self.settings.duel_auto_provision:
            return
        task = asyncio.create_task(self._provision_quietly(match.id))
        self._provision_tasks.add(task)
        task.add_done_callback(self._provision_tasks.discard)

    async def _provision_quietly(self, match_id: int) -> None:
        try:
            await self.provision_match(match_id)
        except SandboxError:
            pass  # logged and recorded on the match; it stays in preparing
        except Exception as e:
            logger.exception("Unexpected provisioning error", match_id=match_id, error=str(e))

    async def _matchmaker_loop(self) -> None:
        """Background loop pairing waiting users."""
        while self._running:
            try:
                await asyncio.sleep(self.settings.matchmaking_interval_seconds)
                while True:
                    match = await self.attempt_match()
                    if match is None:
                        break
                    self._schedule_provision(match)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in matchmaker loop", error=str(e))
