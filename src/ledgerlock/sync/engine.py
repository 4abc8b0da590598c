"""
Sync Engine -- debounced push and pull of encrypted change records.

    local write -> notify_write() -> (debounce) -> flush_push()
        changes_since(cursor) -> encrypt for linked installations -> transport.push

    pull() -> transport.pull -> decrypt -> apply (observers silenced) -> ack

Pushes are never attempted while the pending-initial-sync flag is set
(a freshly linked device must first receive the account history), at
most one push runs at a time, and a write that lands during a push
schedules another one. Sync failures are recorded in SyncStatus and
never raised: the ledger always stays usable offline.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from cryptography.exceptions import InvalidTag
from pydantic import ValidationError

from ..audit import audit_event
from ..config import LedgerConfig
from ..credentials import CredentialStore
from ..crypto import canonical_json, hybrid_encrypt
from ..database import ChangeRecord, EncryptedDatabase, Subscription
from ..devices import DeviceLinkManager
from ..errors import NotAuthenticatedError, TransientError
from ..storage import LocalStore, StorageKeys
from .models import PullResult, SyncEnvelope, SyncStatus
from .transport import SyncTransport

logger = logging.getLogger("ledgerlock.sync.engine")

TimerFactory = Callable[[float, Callable[[], None]], Any]


class SyncEngine:
    """Schedules and executes sync for one unlocked ledger.

    Args:
        home: Ledger home directory.
        store: Local key-value entries (pending flag, sync state).
        database: The ledger whose writes are observed and pushed.
        credentials: Must be unlocked for any push or pull.
        devices: Installation identity, jwt, recipients and private key.
        transport: Where envelopes go.
        config: Push debounce delay.
        timer_factory: Builds a cancellable one-shot timer
            (threading.Timer signature).
    """

    def __init__(
        self,
        home: Path,
        store: LocalStore,
        database: EncryptedDatabase,
        credentials: CredentialStore,
        devices: DeviceLinkManager,
        transport: SyncTransport,
        config: Optional[LedgerConfig] = None,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self._home = home
        self._store = store
        self._db = database
        self._credentials = credentials
        self._devices = devices
        self._transport = transport
        self._config = config or LedgerConfig()
        self._timer_factory = timer_factory

        self._lock = threading.Lock()
        self._timer: Optional[Any] = None
        self._pushing = False
        self._dirty = False
        self._subscription: Optional[Subscription] = None
        self._status = self._load_status()

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    def start(self) -> None:
        """Begin observing ledger writes."""
        if self._subscription is None:
            self._subscription = self._db.on_write(self._on_write)

    def stop(self) -> None:
        """Stop observing writes and drop any scheduled push."""
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        with self._lock:
            self._cancel_timer()

    # -------------------------------------------------------------------
    # Push
    # -------------------------------------------------------------------

    def notify_write(self) -> None:
        """A local write happened: (re)start the debounce timer."""
        with self._lock:
            self._dirty = True
            self._schedule()

    def flush_push(self) -> bool:
        """Push unsynced local changes now.

        Returns:
            True if the ledger is in sync with what was pushed (including
            the nothing-to-push case), False if the push was skipped or
            failed.
        """
        with self._lock:
            self._cancel_timer()
            if self.pending_initial_sync:
                logger.debug("Push skipped: waiting for initial sync")
                return False
            if self._pushing:
                self._dirty = True
                return False
            self._pushing = True
            self._dirty = False

        try:
            return self._push()
        finally:
            with self._lock:
                self._pushing = False
                if self._dirty:
                    self._schedule()

    def push_now(self) -> bool:
        return self.flush_push()

    def push_history(self, installation_ids: list[str]) -> bool:
        """Send the full local history to newly linked installations.

        The push cursor does not move.
        """
        recipients = {
            k: v for k, v in self._devices.sync_recipients().items() if k in installation_ids
        }
        if not recipients:
            return False
        try:
            changes = self._db.changes_since(0)
            if not changes:
                return True
            return self._send(changes, recipients)
        except NotAuthenticatedError:
            return False

    @property
    def is_pushing(self) -> bool:
        return self._pushing

    # -------------------------------------------------------------------
    # Pull
    # -------------------------------------------------------------------

    def pull(self) -> PullResult:
        """Fetch, decrypt, apply and ack remote change batches."""
        identity = self._devices.installation()
        if identity is None or not identity.jwt or not self._credentials.is_unlocked:
            return PullResult(error="Not registered or locked")

        since = int(self._status.last_pull_at.timestamp()) if self._status.last_pull_at else 0
        try:
            packages = self._transport.pull(identity.id, since, identity.jwt)
        except TransientError as exc:
            return PullResult(error=self._record_failure("pull", exc))

        result = PullResult(received=len(packages))
        linked = self._devices.list_installations()
        oldest_unacked: Optional[datetime] = None
        for pkg in packages:
            envelope = pkg.package
            if envelope.sender_id not in linked:
                logger.warning("Rejecting package %s from unlinked %s", pkg.id, envelope.sender_id[:8])
                result.rejected.append(pkg.id)
                result.acked.append(pkg.id)
                continue
            try:
                plaintext = self._devices.open_addressed(envelope.model_dump(mode="json"))
                payload = json.loads(plaintext)
                records = [ChangeRecord.model_validate(c) for c in payload.get("changes", [])]
            except (KeyError, ValueError, ValidationError, InvalidTag) as exc:
                logger.error("Sync package %s unreadable: %s", pkg.id, exc)
                result.rejected.append(pkg.id)
                created = envelope.created_at
                if created.tzinfo is None:
                    created = created.replace(tzinfo=timezone.utc)
                if oldest_unacked is None or created < oldest_unacked:
                    oldest_unacked = created
                continue
            with self._db.suppress_notifications():
                result.applied += self._db.apply_changes(records, origin=envelope.sender_id)
            result.acked.append(pkg.id)

        try:
            self._transport.ack(result.acked, identity.jwt)
        except TransientError as exc:
            result.error = self._record_failure("ack", exc)
            return result

        if result.acked:
            self._status.last_pull_at = self._pull_watermark(oldest_unacked)
        self._status.pulls += 1
        self._status.last_error = None
        self._save_status()
        if result.applied:
            audit_event(
                self._home, "SYNC_PULL", "Remote changes applied",
                metadata={"packages": len(result.acked), "changes": result.applied},
            )
        return result

    # -------------------------------------------------------------------
    # Initial sync
    # -------------------------------------------------------------------

    @property
    def pending_initial_sync(self) -> bool:
        return self._store.get(StorageKeys.PENDING_INITIAL_SYNC) == "1"

    def mark_pending_initial_sync(self) -> None:
        self._store.set(StorageKeys.PENDING_INITIAL_SYNC, "1")

    def on_initial_sync_complete(self) -> None:
        """Lift the push block; writes made meanwhile are scheduled."""
        self._store.delete(StorageKeys.PENDING_INITIAL_SYNC)
        logger.info("Initial sync complete")
        with self._lock:
            if self._dirty and not self._pushing:
                self._schedule()

    # -------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------

    def status(self) -> SyncStatus:
        return self._status.model_copy(update={
            "is_pushing": self._pushing,
            "pending_initial_sync": self.pending_initial_sync,
        })

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    @staticmethod
    def _pull_watermark(oldest_unacked: Optional[datetime]) -> datetime:
        """Next pull's lower bound: now, but strictly before any package left unacked."""
        now = datetime.now(timezone.utc)
        if oldest_unacked is None:
            return now
        return min(now, oldest_unacked - timedelta(seconds=1))

    def _on_write(self, record: ChangeRecord) -> None:
        self.notify_write()

    def _schedule(self) -> None:
        """Restart the debounce timer. Caller holds the lock."""
        self._cancel_timer()
        timer = self._timer_factory(self._config.push_debounce_seconds, self._on_timer)
        timer.daemon = True
        timer.start()
        self._timer = timer

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
        self.flush_push()

    def _push(self) -> bool:
        identity = self._devices.installation()
        if identity is None or not identity.jwt:
            logger.debug("Push skipped: installation not registered")
            return False
        recipients = self._devices.sync_recipients()
        if not recipients:
            logger.debug("Push skipped: no linked installations")
            return False
        try:
            changes = self._db.changes_since(self._status.last_push_cursor)
        except NotAuthenticatedError:
            return False
        if not changes:
            return True
        if not self._send(changes, recipients):
            return False

        self._status.last_push_cursor = max(self._status.last_push_cursor, changes[-1].seq)
        self._status.last_push_at = datetime.now(timezone.utc)
        self._status.pushes += 1
        self._status.last_error = None
        self._save_status()
        audit_event(
            self._home, "SYNC_PUSH", "Local changes pushed",
            metadata={"changes": len(changes), "recipients": len(recipients)},
        )
        return True

    def _send(self, changes: list[ChangeRecord], recipients: dict[str, str]) -> bool:
        identity = self._devices.installation()
        if identity is None or not identity.jwt:
            return False
        payload = canonical_json({"changes": [c.model_dump(mode="json") for c in changes]})
        envelope = SyncEnvelope(sender_id=identity.id, **hybrid_encrypt(payload, recipients))
        try:
            self._transport.push(envelope, identity.jwt)
        except TransientError as exc:
            self._record_failure("push", exc)
            return False
        return True

    def _record_failure(self, operation: str, exc: Exception) -> str:
        message = f"{operation} failed: {exc}"
        logger.warning("Sync %s", message)
        self._status.last_error = message
        self._status.failures += 1
        self._save_status()
        return message

    def _load_status(self) -> SyncStatus:
        raw = self._store.get_json(StorageKeys.SYNC_STATE)
        if raw is None:
            return SyncStatus()
        try:
            return SyncStatus.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Failed to load sync state: %s", exc)
            return SyncStatus()

    def _save_status(self) -> None:
        self._store.set_json(StorageKeys.SYNC_STATE, self._status.model_dump(mode="json"))


