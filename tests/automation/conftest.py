"""
Automation Test Fixtures.

Base fixtures:
  - Empty record store and work queue databases
  - Mocked clock at a fixed Monday morning (UTC)
  - Seeded random source
  - Recording alert sink

Factory fixtures:
  - Users, automations (with rules and defaults), drafts (with files)
"""

import random
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest

from src.automation import (
    Automation,
    DefaultValue,
    Draft,
    DraftFile,
    PersistenceAdapter,
    ScheduleRule,
    SqliteWorkQueue,
    User,
)
from src.infra.alerting import AlertManager, Signal, SignalKind


# 2026-01-05 is a Monday
FIXED_DATETIME = datetime(2026, 1, 5, 9, 4, 0, tzinfo=timezone.utc)


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at a fixed aware UTC datetime
    - Advances only when explicitly ticked
    - Callable, so it can be passed wherever a clock function is expected
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time

    def __call__(self) -> datetime:
        return self._current

    def now(self) -> datetime:
        return self._current

    def tick(self, seconds: int = 1) -> None:
        """Advance time by specified seconds."""
        self._current += timedelta(seconds=seconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        self._current = time


class RecordingSignalSink:
    """Signal sink that keeps every signal for assertions."""

    def __init__(self):
        self.signals: list[Signal] = []

    def emit(self, signal: Signal) -> None:
        self.signals.append(signal)

    def of_kind(self, kind: SignalKind) -> list[Signal]:
        return [s for s in self.signals if s.kind == kind]


def _cleanup_db(db_path: str) -> None:
    Path(db_path).unlink(missing_ok=True)
    # Also cleanup WAL and SHM files
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary record store database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    _cleanup_db(db_path)


@pytest.fixture
def temp_queue_db_path() -> Generator[str, None, None]:
    """Create a temporary work queue database file."""
    with tempfile.NamedTemporaryFile(suffix="-queue.db", delete=False) as f:
        db_path = f.name

    yield db_path

    _cleanup_db(db_path)


@pytest.fixture
def mock_clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


@pytest.fixture
def rng() -> random.Random:
    """Seeded random source."""
    return random.Random(1234)


@pytest.fixture
def persistence(temp_db_path: str) -> PersistenceAdapter:
    """Create a fresh PersistenceAdapter with empty database."""
    return PersistenceAdapter(temp_db_path)


@pytest.fixture
def work_queue(temp_queue_db_path: str, mock_clock: MockClock) -> SqliteWorkQueue:
    """Create an empty work queue on the mock clock."""
    return SqliteWorkQueue(temp_queue_db_path, clock=mock_clock)


# =============================================================================
# Alerting Fixtures
# =============================================================================


@pytest.fixture
def recording_sink() -> RecordingSignalSink:
    return RecordingSignalSink()


@pytest.fixture
def alerts(recording_sink: RecordingSignalSink) -> AlertManager:
    """AlertManager delivering only to the recording sink."""
    return AlertManager(sinks=[recording_sink])


# =============================================================================
# Factory Fixtures
# =============================================================================


@pytest.fixture
def create_user(persistence: PersistenceAdapter) -> Callable:
    """Factory fixture for creating users."""

    def _create(timezone: str = "UTC") -> User:
        return persistence.create_user(User.create(timezone=timezone))

    return _create


@pytest.fixture
def create_automation(persistence: PersistenceAdapter, create_user: Callable) -> Callable:
    """
    Factory fixture for creating automations.

    `rules` and `defaults` are lists of keyword dicts for ScheduleRule.create
    and DefaultValue.create. Returns the automation reloaded from the store,
    with its enabled rules, defaults and owner timezone.
    """

    def _create(
        user: Optional[User] = None,
        rules: Optional[list[dict]] = None,
        defaults: Optional[list[dict]] = None,
        **fields,
    ) -> Automation:
        user = user or create_user()
        fields.setdefault("jitter_min_seconds", 0)
        fields.setdefault("jitter_max_seconds", 0)
        automation = persistence.create_automation(Automation.create(user.user_id, **fields))

        for rule in rules or []:
            persistence.create_schedule_rule(
                ScheduleRule.create(automation_id=automation.automation_id, **rule)
            )
        for default in defaults or []:
            persistence.create_default_value(
                DefaultValue.create(automation_id=automation.automation_id, **default)
            )

        return persistence.get_automation(automation.automation_id)

    return _create


@pytest.fixture
def create_draft(persistence: PersistenceAdapter, mock_clock: MockClock) -> Callable:
    """
    Factory fixture for creating drafts.

    `age_minutes` back-dates created_at/updated_at relative to the mock
    clock; `files` attaches that many files.
    """

    def _create(
        user: User,
        files: int = 1,
        age_minutes: int = 0,
        **fields,
    ) -> Draft:
        created_at = mock_clock.now() - timedelta(minutes=age_minutes)
        fields.setdefault("created_at", created_at)
        fields.setdefault("updated_at", created_at)
        draft = persistence.create_draft(Draft.create(user.user_id, **fields))

        for index in range(files):
            persistence.add_draft_file(DraftFile.create(draft.draft_id, f"uploads/{draft.draft_id}/{index}.png"))

        return draft

    return _create
