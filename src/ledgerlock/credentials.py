"""
Credential Store — PIN-derived key lifecycle.

Key hierarchy:
    PIN + salt ─ PBKDF2 (N)   ─> MasterKey   (memory only)
    PIN + salt ─ PBKDF2 (N+1) ─> PinHash     (persisted, for verify)
    MasterKey  ─ AES-256-GCM  ─> wrapped DEK (persisted)
    DEK        ─ opens        ─> encrypted ledger database

Changing the PIN re-wraps the DEK; the ledger itself is never
re-encrypted. Losing the PIN with no biometric or linked-device path
means the ledger is gone: wipe() is the only way out.

Usage:
    store = CredentialStore(home, LocalStore(home), FileDatabase(home))
    store.setup("123456")
    store.verify("123456")   # True, store unlocked
    store.change_pin("123456", "654321")
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from pydantic import BaseModel

from .audit import audit_event
from .config import LedgerConfig
from .crypto import (
    KEY_LENGTH,
    SALT_LENGTH,
    b64url_decode,
    b64url_encode,
    constant_time_equal,
    derive_master_key,
    hash_pin,
    hkdf,
    random_bytes,
    seal,
    unseal,
    zero,
)
from .database import EncryptedDatabase
from .errors import (
    CorruptedCredentialsError,
    DatabaseKeyError,
    NotAuthenticatedError,
    WeakPinError,
)
from .storage import LocalStore, StorageKeys

logger = logging.getLogger("ledgerlock.credentials")

CREDENTIALS_NAMESPACE = StorageKeys.PBKDF2_SALT[0]


class DerivedKey(BaseModel):
    """Result of a PIN setup: hex key fingerprint and the salt it was derived with.

    The key itself is held by the store; only its salt and a short
    fingerprint leave this module.
    """

    salt: str
    fingerprint: str


class CredentialStore:
    """Derives, verifies and protects the ledger's encryption key.

    Args:
        home: Ledger home directory.
        store: Local key-value entries.
        database: Encrypted ledger collaborator.
        config: Work factor and PIN policy.
    """

    def __init__(
        self,
        home: Path,
        store: LocalStore,
        database: EncryptedDatabase,
        config: Optional[LedgerConfig] = None,
    ) -> None:
        self._home = home
        self._store = store
        self._db = database
        self._config = config or LedgerConfig()
        self._dek: Optional[bytearray] = None
        self._master: Optional[bytearray] = None

    # -------------------------------------------------------------------
    # State checks
    # -------------------------------------------------------------------

    def has_credentials(self) -> bool:
        """True if a PIN has been set up on this device."""
        return self._store.has(StorageKeys.PBKDF2_SALT) or self._store.has(StorageKeys.PIN_HASH)

    def needs_migration(self) -> bool:
        """True if a legacy unencrypted ledger exists without credentials."""
        return self._db.exists() and not self._db.is_encrypted()

    @property
    def is_unlocked(self) -> bool:
        return self._dek is not None

    @property
    def dek(self) -> bytes:
        """The DEK of the unlocked session.

        Raises:
            NotAuthenticatedError: If the store is locked.
        """
        if self._dek is None:
            raise NotAuthenticatedError("Credential store is locked")
        return bytes(self._dek)

    def signing_secret(self) -> bytes:
        """Account signing material for session tokens."""
        raw = self._store.get(StorageKeys.JWT_SALT)
        if not raw:
            raise CorruptedCredentialsError("Session signing secret missing")
        return bytes.fromhex(raw)

    # -------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------

    def setup(self, pin: str) -> DerivedKey:
        """First-time setup: fresh salt, DEK and ledger.

        Destructive: any previous credentials are overwritten.

        Raises:
            WeakPinError: If the PIN is too short.
        """
        self._check_strength(pin)
        dek = random_bytes(KEY_LENGTH)
        derived = self._install_pin(pin, dek)
        self._db.create(dek)
        audit_event(self._home, "PIN_SETUP", "PIN credentials created")
        logger.info("Credentials set up (salt %s…)", derived.salt[:8])
        return derived

    def migrate(self, pin: str) -> DerivedKey:
        """Encrypt a legacy plaintext ledger and protect it with a PIN."""
        self._check_strength(pin)
        dek = random_bytes(KEY_LENGTH)
        self._db.encrypt_existing(dek)
        derived = self._install_pin(pin, dek)
        audit_event(self._home, "PIN_MIGRATE", "Plaintext ledger encrypted")
        return derived

    def verify(self, pin: str) -> bool:
        """Check a PIN and unlock the store on success.

        Returns False on a wrong PIN so callers can count attempts.

        Raises:
            CorruptedCredentialsError: If the salt, hash or wrapped DEK is
                missing, or the hash matches but the DEK cannot be unwrapped.
        """
        salt = self._load_salt()
        stored_hash = self._store.get(StorageKeys.PIN_HASH)
        if not stored_hash:
            raise CorruptedCredentialsError("PIN hash missing")

        candidate = hash_pin(pin, salt, self._config.pbkdf2_iterations)
        if not constant_time_equal(candidate, bytes.fromhex(stored_hash)):
            logger.info("PIN verification failed")
            return False

        master = derive_master_key(pin, salt, self._config.pbkdf2_iterations)
        dek = self._unwrap_dek(master)
        try:
            self._open_database(dek)
        except DatabaseKeyError as exc:
            raise CorruptedCredentialsError("Ledger does not open with the unwrapped DEK") from exc
        self._hold(dek, master)
        return True

    def change_pin(self, old_pin: str, new_pin: str) -> bool:
        """Re-protect the DEK under a new PIN.

        Returns False without touching anything if old_pin is wrong.
        The session signing secret rotates, so outstanding tokens die.

        Raises:
            WeakPinError: If new_pin is too short (checked first).
        """
        self._check_strength(new_pin)
        if not self.verify(old_pin):
            return False

        self._install_pin(new_pin, self.dek)
        audit_event(self._home, "PIN_CHANGE", "PIN changed, DEK re-wrapped")
        logger.info("PIN changed")
        return True

    def unlock_with_dek(self, dek: bytes) -> bool:
        """Unlock through another access path (biometric unwrap).

        The MasterKey stays unknown, so adopt_dek() is unavailable until
        the next PIN verification.

        Returns:
            True if the DEK opens the ledger.
        """
        try:
            self._open_database(dek)
        except DatabaseKeyError:
            logger.warning("Supplied DEK does not open the ledger")
            return False
        self._hold(dek, None)
        return True

    def adopt_dek(self, dek: bytes) -> None:
        """Replace this device's DEK with the account DEK from a linked device.

        Re-wraps the new DEK under the in-memory MasterKey and rekeys the
        (provisional) local ledger.

        Raises:
            NotAuthenticatedError: If the PIN has not been verified this session.
            OSError: If the wrapped DEK cannot be saved; the ledger is
                rekeyed back and the current DEK stays in force.
        """
        if self._master is None or self._dek is None:
            raise NotAuthenticatedError("PIN verification required to adopt a DEK")
        wrapped = seal(dek, bytes(self._master))
        previous = bytes(self._dek)
        if self._db.is_open:
            self._db.rekey(dek)
        try:
            self._store.set(StorageKeys.WRAPPED_DEK, b64url_encode(wrapped))
        except OSError:
            logger.error("Could not persist the adopted DEK; keeping the current one")
            if self._db.is_open:
                self._db.rekey(previous)
            raise
        zero(self._dek)
        self._dek = bytearray(dek)
        audit_event(self._home, "DEK_ADOPT", "Account DEK received from linked device")

    def lock(self) -> None:
        """Discard key material from memory and close the ledger."""
        zero(self._dek)
        zero(self._master)
        self._dek = None
        self._master = None
        self._db.close()

    def wipe(self) -> None:
        """Irreversibly delete all credentials and the ledger. Never raises."""
        self.lock()
        self._store.wipe()
        self._db.wipe()
        audit_event(self._home, "CREDENTIALS_WIPE", "All local credentials and ledger deleted")
        logger.warning("Local credentials and ledger wiped")

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _check_strength(self, pin: str) -> None:
        if len(pin) < self._config.min_pin_length:
            raise WeakPinError(self._config.min_pin_length)

    def _install_pin(self, pin: str, dek: bytes) -> DerivedKey:
        """Persist salt, hash, wrapped DEK and a fresh signing secret for pin,
        and hold the keys.

        All four entries land in one atomic write: a failed save leaves
        the previous PIN fully working.
        """
        iterations = self._config.pbkdf2_iterations
        salt = random_bytes(SALT_LENGTH)
        master = derive_master_key(pin, salt, iterations)
        pin_hash = hash_pin(pin, salt, iterations)
        wrapped = seal(dek, master)

        self._store.set_many(CREDENTIALS_NAMESPACE, {
            StorageKeys.WRAPPED_DEK[1]: b64url_encode(wrapped),
            StorageKeys.PIN_HASH[1]: pin_hash.hex(),
            StorageKeys.PBKDF2_SALT[1]: salt.hex(),
            StorageKeys.JWT_SALT[1]: random_bytes(32).hex(),
        })

        self._hold(dek, master)
        fingerprint = hkdf(master, b"ledgerlock:fingerprint", length=8).hex()
        return DerivedKey(salt=salt.hex(), fingerprint=fingerprint)

    def _hold(self, dek: bytes, master: Optional[bytes]) -> None:
        zero(self._dek)
        zero(self._master)
        self._dek = bytearray(dek)
        self._master = bytearray(master) if master is not None else None

    def _load_salt(self) -> bytes:
        raw = self._store.get(StorageKeys.PBKDF2_SALT)
        if not raw:
            raise CorruptedCredentialsError("No salt found. Credentials may be corrupted.")
        try:
            return bytes.fromhex(raw)
        except ValueError as exc:
            raise CorruptedCredentialsError("Stored salt is not valid hex") from exc

    def _unwrap_dek(self, master: bytes) -> bytes:
        raw = self._store.get(StorageKeys.WRAPPED_DEK)
        if not raw:
            raise CorruptedCredentialsError("Wrapped DEK missing")
        try:
            return unseal(b64url_decode(raw), master)
        except (InvalidTag, ValueError) as exc:
            logger.error("PIN hash matched but DEK unwrap failed")
            raise CorruptedCredentialsError("Wrapped DEK does not match PIN hash") from exc

    def _open_database(self, dek: bytes) -> None:
        if self._db.is_open:
            self._db.close()
        self._db.open(dek)
