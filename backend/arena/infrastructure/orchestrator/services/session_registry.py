"""
Terminal Session Registry - Token-gated access to sandbox streams

Handles:
- Minting sessions bound to a running container (or detached, for simulated mode)
- Constant-structure (session_id, token) validation
- Activity tracking and TTL expiry
- Cascade invalidation when a container goes away
"""

import hmac
import itertools
import secrets
import time
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from ..exceptions import ContainerNotRunning, SessionInvalid
from ..models import LAB_MATCH_ID, ContainerStatus, TerminalSession, utcnow

logger = structlog.get_logger(__name__)

StatusProbe = Callable[[str], Awaitable[ContainerStatus]]

# Compared against when the session id is unknown so both paths do the same work
_DUMMY_TOKEN = secrets.token_urlsafe(32)


class TerminalSessionRegistry:
    """
    Owns every terminal session in the process.

    Mutations never await between reading and writing the map, so each one is
    atomic with respect to other coroutines on the loop. Only the lifecycle
    manager calls `invalidate_container`.
    """

    def __init__(
        self,
        status_probe: StatusProbe,
        ttl_seconds: int = 7200,
    ):
        self._status_probe = status_probe
        self.ttl = timedelta(seconds=ttl_seconds)
        self._sessions: Dict[int, TerminalSession] = {}
        # Seeded from the wall clock so ids stay unique across restarts
        self._ids = itertools.count(int(time.time() * 1000))

    def reserve_session_id(self) -> int:
        """Allocate an id before the session exists (it is stamped on container labels)."""
        return next(self._ids)

    async def create_session(
        self,
        container_id: str,
        user_id: int,
        match_id: int = LAB_MATCH_ID,
        session_id: Optional[int] = None,
    ) -> TerminalSession:
        """
        Mint a session bound to a running container.

        Raises:
            ContainerNotRunning: the container is not running right now
        """
        status = await self._status_probe(container_id)
        if status != ContainerStatus.RUNNING:
            logger.warning(
                "Refusing session for container that is not running",
                container_id=container_id[:12],
                status=status.value,
            )
            raise ContainerNotRunning()

        session = self._mint(user_id, match_id, container_id, session_id)
        logger.info(
            "Terminal session created",
            session_id=session.session_id,
            container_id=container_id[:12],
            user_id=user_id,
            match_id=match_id,
        )
        return session

    def create_detached_session(
        self,
        user_id: int,
        match_id: int = LAB_MATCH_ID,
        session_id: Optional[int] = None,
    ) -> TerminalSession:
        """Mint a session with no container; its stream is always simulated."""
        session = self._mint(user_id, match_id, None, session_id)
        logger.info(
            "Detached terminal session created",
            session_id=session.session_id,
            user_id=user_id,
            match_id=match_id,
        )
        return session

    def _mint(
        self,
        user_id: int,
        match_id: int,
        container_id: Optional[str],
        session_id: Optional[int],
    ) -> TerminalSession:
        if session_id is None:
            session_id = self.reserve_session_id()
        if session_id in self._sessions:
            raise ValueError(f"Session id {session_id} already in use")

        now = utcnow()
        session = TerminalSession(
            session_id=session_id,
            token=secrets.token_urlsafe(32),
            user_id=user_id,
            match_id=match_id,
            container_id=container_id,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self.ttl,
        )
        self._sessions[session_id] = session
        return session

    def validate(self, session_id: int, token: str) -> bool:
        try:
            self.authenticate(session_id, token)
        except SessionInvalid:
            return False
        return True

    def authenticate(self, session_id: int, token: str) -> TerminalSession:
        """
        Return the live session for (session_id, token).

        Raises:
            SessionInvalid: unknown id, wrong token, closed or expired. The
                caller cannot tell these apart.
        """
        session = self._sessions.get(session_id)
        expected = session.token if session else _DUMMY_TOKEN
        token_ok = hmac.compare_digest(
            expected.encode("utf-8"),
            (token or "").encode("utf-8"),
        )
        if session is None or not token_ok or not session.is_live():
            raise SessionInvalid()
        return session

    def touch(self, session_id: int) -> None:
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            return
        now = utcnow()
        if now > session.last_activity_at:
            session.last_activity_at = now

    def close(self, session_id: int) -> bool:
        """Mark inactive. Never touches the container."""
        session = self._sessions.get(session_id)
        if session is None or not session.is_active:
            return False
        session.is_active = False
        logger.info("Terminal session closed", session_id=session_id)
        return True

    def is_active(self, session_id: int) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.is_live()

    def get(self, session_id: int) -> Optional[TerminalSession]:
        return self._sessions.get(session_id)

    def active_session_for(self, user_id: int, match_id: int) -> Optional[TerminalSession]:
        """Most recent live session for (user, match), for reconnect instead of respawn."""
        candidates = [
            s for s in self._sessions.values()
            if s.user_id == user_id and s.match_id == match_id and s.is_live()
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at)

    def sessions_for_user(
        self,
        user_id: int,
        match_id: Optional[int] = None,
    ) -> List[TerminalSession]:
        return sorted(
            (
                s for s in self._sessions.values()
                if s.user_id == user_id
                and s.is_live()
                and (match_id is None or s.match_id == match_id)
            ),
            key=lambda s: s.created_at,
        )

    def has_live_session(self, container_id: str) -> bool:
        return any(
            s.container_id == container_id and s.is_live()
            for s in self._sessions.values()
        )

    def invalidate_container(self, container_id: str) -> int:
        """Close every session bound to the container. Returns how many closed."""
        closed = 0
        for session in self._sessions.values():
            if session.container_id == container_id and session.is_active:
                session.is_active = False
                closed += 1
        if closed:
            logger.info(
                "Sessions invalidated by container stop",
                container_id=container_id[:12],
                count=closed,
            )
        return closed

    def expire_sessions(self, now: Optional[datetime] = None) -> List[TerminalSession]:
        """Close sessions past their TTL and drop long-dead records."""
        now = now or utcnow()
        expired = []
        for session in self._sessions.values():
            if session.is_active and session.is_expired(now):
                session.is_active = False
                expired.append(session)

        # Inactive records are kept one extra TTL for audit, then forgotten
        horizon = now - self.ttl
        for session_id in [
            sid for sid, s in self._sessions.items()
            if not s.is_active and s.expires_at <= horizon
        ]:
            del self._sessions[session_id]

        if expired:
            logger.info("Expired terminal sessions", count=len(expired))
        return expired

    @property
    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_live())
