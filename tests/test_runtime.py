"""Tests for the assembled LedgerCore."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

from ledgerlock.biometric import SoftwareAuthenticator
from ledgerlock.config import LedgerConfig
from ledgerlock.runtime import LedgerCore, get_core
from ledgerlock.session import AuthStatus

from conftest import PIN, FakeTimers
from test_devices import FakeCoordinator
from test_sync import FakeSyncServer

DEVICE_SECRET = b"s" * 32


def make_core(home: Path, config: LedgerConfig, **kwargs) -> LedgerCore:
    kwargs.setdefault("transport", FakeSyncServer())
    kwargs.setdefault("timer_factory", FakeTimers())
    return LedgerCore(home=home, config=config, **kwargs)


class TestLaunch:
    """Launch check and the automatic biometric attempt."""

    def test_first_launch(self, home: Path, config: LedgerConfig) -> None:
        assert make_core(home, config).launch() == AuthStatus.FIRST_TIME_SETUP

    def test_get_core_launches(self, home: Path) -> None:
        core = get_core(home)
        assert core.home == home
        assert core.sessions.status == AuthStatus.FIRST_TIME_SETUP

    def test_relaunch_needs_pin(self, home: Path, config: LedgerConfig) -> None:
        make_core(home, config).sessions.setup(PIN)
        assert make_core(home, config).launch() == AuthStatus.NEEDS_AUTH

    def test_relaunch_with_biometrics(self, home: Path, config: LedgerConfig) -> None:
        authenticator = SoftwareAuthenticator(DEVICE_SECRET)
        first = make_core(home, config, authenticator=authenticator)
        first.sessions.setup(PIN)
        first.biometric.enroll()
        first.close()

        second = make_core(home, config, authenticator=authenticator)
        assert second.launch() == AuthStatus.AUTHENTICATED
        assert second.credentials.is_unlocked
        assert second.biometric_gate.auto_attempted

    def test_status_drives_sync_observer(self, home: Path, config: LedgerConfig) -> None:
        timers = FakeTimers()
        core = make_core(home, config, timer_factory=timers)
        core.sessions.setup(PIN)
        core.database.record_change("wallets", "w1", {"name": "Cash"})
        assert len(timers.active) == 1

        core.sessions.logout()
        assert timers.active == []
        core.sessions.login(PIN)
        core.database.record_change("wallets", "w2", {"name": "Bank"})
        assert len(timers.active) == 1


class TestProcessLinks:
    """Linking through the core pushes history and retires stale bundles."""

    def test_new_device_gets_history_and_old_bundle_is_dropped(
        self, tmp_path: Path, config: LedgerConfig,
    ) -> None:
        coordinator = FakeCoordinator()
        server = FakeSyncServer()
        old = make_core(tmp_path / "old", config, transport=server)
        new = make_core(
            tmp_path / "new", config, transport=server,
            authenticator=SoftwareAuthenticator(DEVICE_SECRET),
        )

        with patch("ledgerlock.devices.requests.request", side_effect=coordinator):
            old.sessions.setup(PIN)
            old.database.record_change("wallets", "w1", {"name": "Cash"})
            link = old.devices.create_share_link()

            new.devices.consume_share_link(link)
            new.sessions.setup(PIN)
            new.biometric.enroll()
            new.devices.ensure_registered()

            assert old.process_links().new_devices == [new.devices.installation().id]
            report = new.process_links()

        assert report.dek_received
        assert new.biometric.stored_credential() is None
        assert new.sync.pending_initial_sync

        result = new.pull()
        assert result.applied == 1
        assert new.database.get("wallets", "w1") == {"name": "Cash"}
        assert not new.sync.pending_initial_sync
