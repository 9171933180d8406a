"""
Session registry — active login sessions & token lifecycle.

Handles:
- Session creation at login with a per-user concurrency cap (the
  least-recently-active sessions are evicted to make room)
- Per-request validation with lazy idle-timeout expiry
- Refresh-token rotation bound to a persistent session id
- Logout of one session / all sessions of a user
- A periodic sweep for sessions that are never touched again

The registry is advisory state layered on top of stateless JWT
verification.  Nothing here raises for "not found": absence is
reported as `None` / `False` / `0` and the HTTP layer maps it to 401.
"""

import asyncio
import logging
import secrets
import string
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol

from fastapi import Request
from jose import JWTError

from agency_crm.core.config import settings
from agency_crm.core.security import (
    REFRESH_TOKEN_TYPE,
    create_access_token,
    create_refresh_token,
    decode_token,
)
from agency_crm.models.activity import ActivityType
from agency_crm.services.session_store import InMemorySessionStore, Session, SessionStore

logger = logging.getLogger(__name__)

_SESSION_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_session_id() -> str:
    """`sess_<epoch ms>_<9 random base36 chars>`."""
    suffix = "".join(secrets.choice(_SESSION_ID_ALPHABET) for _ in range(9))
    return f"sess_{int(time.time() * 1000)}_{suffix}"


@dataclass(frozen=True, slots=True)
class RequestContext:
    """Provenance of a login / refresh request.  Audit only."""

    ip_address: str = "unknown"
    user_agent: str = "unknown"

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        client_host = request.client.host if request.client else None
        return cls(
            ip_address=client_host or "unknown",
            user_agent=request.headers.get("user-agent") or "unknown",
        )


@dataclass(frozen=True, slots=True)
class TokenPair:
    access_token: str
    refresh_token: str
    session_id: str


class ActivityRecorder(Protocol):
    async def record(
        self,
        activity_type: ActivityType,
        user_id: str,
        description: str,
        metadata: dict[str, Any],
    ) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionRegistry:
    def __init__(
        self,
        store: SessionStore | None = None,
        *,
        activity_recorder: ActivityRecorder | None = None,
        clock: Callable[[], datetime] | None = None,
        secret_key: str | None = None,
        algorithm: str | None = None,
        session_timeout: timedelta | None = None,
        max_sessions_per_user: int | None = None,
        access_token_ttl: timedelta | None = None,
        refresh_token_ttl: timedelta | None = None,
        cleanup_interval: float | None = None,
    ) -> None:
        self.store: SessionStore = store if store is not None else InMemorySessionStore()
        self.activity_recorder = activity_recorder
        self.clock = clock or _utcnow
        self.secret_key = settings.SECRET_KEY if secret_key is None else secret_key
        self.algorithm = settings.JWT_ALGORITHM if algorithm is None else algorithm
        self.session_timeout = (
            timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES) if session_timeout is None else session_timeout
        )
        self.max_sessions_per_user = (
            settings.MAX_SESSIONS_PER_USER if max_sessions_per_user is None else max_sessions_per_user
        )
        self.access_token_ttl = (
            timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES) if access_token_ttl is None else access_token_ttl
        )
        self.refresh_token_ttl = (
            timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS) if refresh_token_ttl is None else refresh_token_ttl
        )
        self.cleanup_interval = (
            settings.SESSION_CLEANUP_INTERVAL_SECONDS if cleanup_interval is None else cleanup_interval
        )
        self._cleanup_task: asyncio.Task | None = None

    # ── Helpers ──────────────────────────────────────────────────────

    def _is_expired(self, session: Session, now: datetime) -> bool:
        return now - session.last_activity > self.session_timeout

    def _issue_tokens(self, session: Session) -> TokenPair:
        now = self.clock()
        access_token = create_access_token(
            {
                "sub": session.user_id,
                "user_id": session.user_id,
                "email": session.email,
                "role": session.role,
                "session_id": session.session_id,
            },
            self.access_token_ttl,
            issued_at=now,
            secret_key=self.secret_key,
            algorithm=self.algorithm,
        )
        refresh_token = create_refresh_token(
            {
                "sub": session.user_id,
                "user_id": session.user_id,
                "session_id": session.session_id,
            },
            self.refresh_token_ttl,
            issued_at=now,
            secret_key=self.secret_key,
            algorithm=self.algorithm,
        )
        return TokenPair(access_token, refresh_token, session.session_id)

    async def _record(
        self,
        activity_type: ActivityType,
        user_id: str,
        description: str,
        metadata: dict[str, Any],
    ) -> None:
        if self.activity_recorder is not None:
            await self.activity_recorder.record(activity_type, user_id, description, metadata)

    def _evict_over_limit(self, user_id: str) -> None:
        """Make room for one more session of `user_id`."""
        user_sessions = self.get_user_sessions(user_id)
        excess = len(user_sessions) - self.max_sessions_per_user + 1
        if excess <= 0:
            return
        user_sessions.sort(key=lambda s: s.last_activity)
        for session in user_sessions[:excess]:
            self.store.delete(session.session_id)
            logger.info(
                "Session removed due to limit (user=%s session=%s)",
                user_id,
                session.session_id,
            )

    # ── Lifecycle ────────────────────────────────────────────────────

    async def create_session(
        self,
        user_id: str,
        email: str,
        role: str,
        context: RequestContext | None = None,
    ) -> TokenPair:
        """
        Open a new session and return its signed token pair.

        Evicts the user's least-recently-active sessions first so that at
        most `max_sessions_per_user` remain once the new one is stored.
        """
        context = context or RequestContext()
        user_id = str(user_id)
        self._evict_over_limit(user_id)

        now = self.clock()
        session = Session(
            session_id=generate_session_id(),
            user_id=user_id,
            email=email,
            role=role,
            last_activity=now,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            created_at=now,
        )
        self.store.set(session)
        tokens = self._issue_tokens(session)

        await self._record(
            ActivityType.USER_LOGIN,
            user_id,
            "User logged in",
            {
                "session_id": session.session_id,
                "ip_address": context.ip_address,
                "user_agent": context.user_agent,
            },
        )
        logger.info(
            "Session created (user=%s session=%s ip=%s)",
            user_id,
            session.session_id,
            context.ip_address,
        )
        return tokens

    def validate_session(self, session_id: str) -> Session | None:
        """
        Return the live session and bump its `last_activity`, or None.

        A session past the idle timeout is deleted on this access, so a
        second call with the same id also returns None.
        """
        session = self.store.get(session_id)
        if session is None:
            return None

        now = self.clock()
        if self._is_expired(session, now):
            self.store.delete(session_id)
            logger.info("Session expired (user=%s session=%s)", session.user_id, session_id)
            return None

        session.last_activity = now
        self.store.set(session)
        return session

    async def refresh_access_token(
        self,
        refresh_token: str,
        context: RequestContext | None = None,
    ) -> TokenPair | None:
        """
        Exchange a refresh token for a rotated pair on the same session.

        Returns None when the token is invalid, expired, not tagged
        `type: refresh`, or its session is gone.
        """
        try:
            payload = decode_token(refresh_token, secret_key=self.secret_key, algorithm=self.algorithm)
        except JWTError as exc:
            logger.warning("Refresh token rejected: %s", exc)
            return None

        if payload.get("type") != REFRESH_TOKEN_TYPE:
            logger.warning("Refresh token rejected: invalid token type %r", payload.get("type"))
            return None

        session_id = payload.get("session_id")
        if not session_id:
            logger.warning("Refresh token rejected: missing session_id")
            return None

        session = self.validate_session(session_id)
        if session is None:
            return None

        tokens = self._issue_tokens(session)
        logger.info(
            "Token refreshed (user=%s session=%s ip=%s)",
            session.user_id,
            session.session_id,
            (context or RequestContext()).ip_address,
        )
        return tokens

    async def destroy_session(self, session_id: str) -> bool:
        """Idempotent logout.  Returns True only if a session was removed."""
        session = self.store.delete(session_id)
        if session is None:
            return False

        await self._record(
            ActivityType.USER_LOGOUT,
            session.user_id,
            "User logged out",
            {"session_id": session_id},
        )
        logger.info("Session destroyed (user=%s session=%s)", session.user_id, session_id)
        return True

    async def destroy_all_user_sessions(self, user_id: str) -> int:
        """Log a user out everywhere.  Returns the number of sessions removed."""
        user_id = str(user_id)
        removed = 0
        for session in self.get_user_sessions(user_id):
            if self.store.delete(session.session_id) is not None:
                removed += 1

        if removed:
            await self._record(
                ActivityType.USER_LOGOUT_ALL,
                user_id,
                "All user sessions terminated",
                {"session_count": removed},
            )
            logger.info("All user sessions destroyed (user=%s count=%d)", user_id, removed)
        return removed

    def get_user_sessions(self, user_id: str) -> list[Session]:
        user_id = str(user_id)
        return [s for s in self.store.scan() if s.user_id == user_id]

    # ── Sweep ────────────────────────────────────────────────────────

    def cleanup_expired_sessions(self) -> int:
        """Delete every session past the idle timeout.  Returns the count."""
        now = self.clock()
        expired = [s for s in self.store.scan() if self._is_expired(s, now)]

        for session in expired:
            self.store.delete(session.session_id)
            logger.info(
                "Expired session cleaned up (user=%s session=%s)",
                session.user_id,
                session.session_id,
            )

        if expired:
            logger.info("Session cleanup completed (cleaned=%d)", len(expired))
        return len(expired)

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup_expired_sessions()
            except Exception:
                logger.exception("Session cleanup failed")

    def start_cleanup(self) -> None:
        """Start the periodic sweep on the running event loop (idempotent)."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())
            logger.info("Session cleanup scheduled every %ss", self.cleanup_interval)

    async def stop_cleanup(self) -> None:
        task, self._cleanup_task = self._cleanup_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ── Stats ────────────────────────────────────────────────────────

    def get_session_stats(self) -> dict[str, Any]:
        counts: dict[str, int] = {}
        total = 0
        for session in self.store.scan():
            counts[session.user_id] = counts.get(session.user_id, 0) + 1
            total += 1

        return {
            "total_active_sessions": total,
            "unique_users": len(counts),
            "average_sessions_per_user": total / max(len(counts), 1),
            "max_sessions_per_user": max(counts.values(), default=0),
        }
