"""
Shared fixtures: a controllable clock, an activity recorder that keeps
events in memory, and a registry wired to both.
"""

from datetime import datetime, timedelta, timezone

import pytest

from agency_crm.services.session_registry import SessionRegistry
from agency_crm.services.session_store import InMemorySessionStore

TEST_SECRET = "test-secret-key-with-enough-entropy"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingActivityRecorder:
    def __init__(self) -> None:
        self.events: list[tuple] = []

    async def record(self, activity_type, user_id, description, metadata) -> None:
        self.events.append((activity_type, user_id, description, metadata))

    def types(self) -> list[str]:
        return [event[0].value for event in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> RecordingActivityRecorder:
    return RecordingActivityRecorder()


@pytest.fixture
def registry(clock, recorder) -> SessionRegistry:
    return SessionRegistry(
        InMemorySessionStore(),
        activity_recorder=recorder,
        clock=clock,
        secret_key=TEST_SECRET,
        session_timeout=timedelta(minutes=30),
        max_sessions_per_user=5,
    )
