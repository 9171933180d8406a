"""
Session storage port & in-process adapter.

The registry only ever talks to a `SessionStore`: get / set / delete /
scan.  `InMemorySessionStore` backs a single-process deployment; a
multi-instance deployment swaps in an external key-value store with
native TTL behind the same four methods.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol


@dataclass(slots=True, kw_only=True)
class Session:
    """
    One authenticated login.

    `user_id`, `email` and `role` are an identity snapshot taken at
    issuance.  `ip_address` / `user_agent` never change for the life of
    the session; only `last_activity` moves.
    """

    session_id: str
    user_id: str
    email: str
    role: str
    last_activity: datetime
    ip_address: str = "unknown"
    user_agent: str = "unknown"
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SessionStore(Protocol):
    def get(self, session_id: str) -> Session | None: ...

    def set(self, session: Session) -> None: ...

    def delete(self, session_id: str) -> Session | None: ...

    def scan(self) -> Iterator[Session]: ...

    def __len__(self) -> int: ...


class InMemorySessionStore:
    """Dict-backed store.  `scan` iterates a snapshot, so callers may delete while scanning."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    def set(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    def delete(self, session_id: str) -> Session | None:
        return self._sessions.pop(session_id, None)

    def scan(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)
