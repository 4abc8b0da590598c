"""Shared test fixtures for ledgerlock."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import pytest

from ledgerlock.config import LedgerConfig
from ledgerlock.credentials import CredentialStore
from ledgerlock.database import FileDatabase
from ledgerlock.storage import LocalStore

PIN = "123456"


class FakeClock:
    """Settable Unix-seconds clock."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimer:
    """threading.Timer stand-in that only fires when told to."""

    def __init__(self, interval: float, function: Callable[[], None]) -> None:
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True

    def fire(self) -> None:
        if self.started and not self.cancelled:
            self.function()


class FakeTimers:
    """Timer factory recording every timer it builds."""

    def __init__(self) -> None:
        self.created: list[FakeTimer] = []

    def __call__(self, interval: float, function: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(interval, function)
        self.created.append(timer)
        return timer

    @property
    def active(self) -> list[FakeTimer]:
        return [t for t in self.created if t.started and not t.cancelled]

    def fire_active(self) -> None:
        for timer in self.active:
            timer.fire()

    def last(self) -> Optional[FakeTimer]:
        return self.created[-1] if self.created else None


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Provide a temporary ledger home directory."""
    ledger_home = tmp_path / ".ledgerlock"
    ledger_home.mkdir()
    return ledger_home


@pytest.fixture
def config() -> LedgerConfig:
    """Fast settings: low PBKDF2 work factor, test endpoints."""
    return LedgerConfig(
        pbkdf2_iterations=1000,
        api_url="http://coordinator.test",
        share_base_url="https://ledger.test",
        biometric_timeout=2.0,
    )


@pytest.fixture
def store(home: Path) -> LocalStore:
    return LocalStore(home)


@pytest.fixture
def database(home: Path) -> FileDatabase:
    return FileDatabase(home)


@pytest.fixture
def credentials(
    home: Path, store: LocalStore, database: FileDatabase, config: LedgerConfig,
) -> CredentialStore:
    return CredentialStore(home, store, database, config)


@pytest.fixture
def unlocked(credentials: CredentialStore) -> CredentialStore:
    """A credential store with a PIN set and the ledger open."""
    credentials.setup(PIN)
    return credentials


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def timers() -> FakeTimers:
    return FakeTimers()
