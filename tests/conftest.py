"""
Pytest configuration and shared fixtures for the Lean Coffee tests.

Testing Standards:
- Time never comes from the wall clock: use the ``clock``/``scheduler`` fixtures
- Async tests run under pytest-asyncio (auto mode enabled in pyproject.toml)
- Tests that touch disk write under ``tmp_path`` only
"""

from __future__ import annotations

import pytest

from meeting_store import MeetingStore
from persistence import PersistenceGateway
from phase_timer import PhaseTimer
from session_engine import ClientSession, SessionEngine
from settings import Settings
from tests.helpers.fakes import FakeClock, ManualScheduler, RecordingBroadcaster


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(data_dir=tmp_path / "data")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler(clock: FakeClock) -> ManualScheduler:
    return ManualScheduler(clock)


@pytest.fixture
def store(settings: Settings, clock: FakeClock) -> MeetingStore:
    return MeetingStore(settings, clock=clock)


@pytest.fixture
def expired() -> list:
    return []


@pytest.fixture
def timer(scheduler: ManualScheduler, clock: FakeClock, expired: list) -> PhaseTimer:
    return PhaseTimer(scheduler, clock=clock, on_expiry=lambda meeting, phase: expired.append((meeting.id, phase)))


@pytest.fixture
def gateway(settings: Settings) -> PersistenceGateway:
    return PersistenceGateway(settings.state_file)


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def engine(
    store: MeetingStore,
    broadcaster: RecordingBroadcaster,
    scheduler: ManualScheduler,
    gateway: PersistenceGateway,
) -> SessionEngine:
    return SessionEngine(store, broadcaster, scheduler, gateway=gateway)


@pytest.fixture
def client_session() -> ClientSession:
    return ClientSession(client_id="conn-1")
