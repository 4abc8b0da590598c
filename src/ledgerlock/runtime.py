"""
Ledger runtime — wires every service around one ledger home.

Everything is constructed once from a home directory and a config and
handed its collaborators explicitly; there are no module-level
singletons. Tests and embedding applications inject their own
database, authenticator, transport, clock or timer.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from . import LEDGER_HOME
from .biometric import Authenticator, BiometricGate, BiometricKeyWrap
from .config import LedgerConfig, load_config
from .credentials import CredentialStore
from .database import EncryptedDatabase, FileDatabase
from .devices import DeviceLinkManager, LinkReport
from .session import AuthStatus, SessionManager
from .storage import LocalStore
from .sync import HttpSyncTransport, PullResult, SyncEngine, SyncTransport
from .sync.engine import TimerFactory

logger = logging.getLogger("ledgerlock.runtime")


class LedgerCore:
    """The assembled credential, linking and sync core.

    Args:
        home: Ledger home directory. Defaults to LEDGER_HOME.
        config: Settings; loaded from the home when omitted.
        database: Encrypted ledger; a FileDatabase under the home by default.
        authenticator: Platform authenticator, or None without biometrics.
        transport: Sync transport; HTTP to config.api_url by default.
        clock: Unix-seconds clock for session tokens.
        timer_factory: One-shot timer for the push debounce.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        config: Optional[LedgerConfig] = None,
        database: Optional[EncryptedDatabase] = None,
        authenticator: Optional[Authenticator] = None,
        transport: Optional[SyncTransport] = None,
        clock: Callable[[], float] = time.time,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self.home = Path(home or LEDGER_HOME).expanduser()
        self.config = config or load_config(self.home)
        self.store = LocalStore(self.home)
        self.database = database or FileDatabase(self.home)

        self.credentials = CredentialStore(self.home, self.store, self.database, self.config)
        self.sessions = SessionManager(
            self.home, self.credentials, self.store, self.config, clock=clock,
        )
        self.devices = DeviceLinkManager(self.home, self.store, self.credentials, self.config)
        self.biometric = BiometricKeyWrap(
            self.home, self.store, self.credentials, authenticator, self.config,
        )
        self.biometric_gate = BiometricGate(self.biometric, self.sessions)
        self.sync = SyncEngine(
            self.home, self.store, self.database, self.credentials, self.devices,
            transport or HttpSyncTransport(self.config), self.config,
            timer_factory=timer_factory,
        )
        self.sessions.on_status_change(self._on_status_change)

    def launch(self) -> AuthStatus:
        """Check auth state and make the once-per-launch biometric attempt."""
        status = self.sessions.check()
        if status == AuthStatus.NEEDS_AUTH:
            self.biometric_gate.auto_unlock()
        logger.info("Launched with status %s", self.sessions.status.value)
        return self.sessions.status

    def process_links(self) -> LinkReport:
        """Run the link inbox and bring newly linked devices up to date."""
        report = self.devices.process_link_requests()
        if report.new_devices:
            self.sync.push_history(report.new_devices)
        if report.dek_received and self.biometric.stored_credential() is not None:
            # the stored bundle wraps the provisional DEK
            self.biometric.disable()
        return report

    def pull(self, finish_initial_sync: bool = False) -> PullResult:
        """Pull remote changes.

        The initial sync ends with the first pull that applied changes and
        rejected nothing, or when finish_initial_sync is set explicitly.
        """
        result = self.sync.pull()
        if not self.sync.pending_initial_sync or not result.ok:
            return result
        if finish_initial_sync or (result.applied and not result.rejected):
            self.sync.on_initial_sync_complete()
        return result

    def close(self) -> None:
        self.sync.stop()
        self.credentials.lock()

    def _on_status_change(self, status: AuthStatus) -> None:
        if status == AuthStatus.AUTHENTICATED:
            self.sync.start()
        else:
            self.sync.stop()


def get_core(home: Optional[Path] = None) -> LedgerCore:
    """Build a LedgerCore for a home directory and run the launch check."""
    core = LedgerCore(home=home)
    core.launch()
    return core
