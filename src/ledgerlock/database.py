"""
Encrypted ledger database — the collaborator the core opens with a DEK.

The domain tables (budgets, transactions, wallets, ...) are plain CRUD
and live behind this interface. The core only needs to open, create,
rekey and wipe the store, read and apply change records for sync, and
observe local writes so it can schedule a push.

FileDatabase keeps the whole ledger as one AES-256-GCM encrypted JSON
document:

    ~/.ledgerlock/db/ledger.db   # b"LLDB1" || iv || ciphertext || tag

A legacy unencrypted ledger is the same document as plain JSON and is
upgraded in place by encrypt_existing().
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from cryptography.exceptions import InvalidTag
from pydantic import BaseModel, Field

from .crypto import seal, unseal, zero
from .errors import DatabaseKeyError, NotAuthenticatedError

logger = logging.getLogger("ledgerlock.database")

ENCRYPTED_MAGIC = b"LLDB1"


class ChangeRecord(BaseModel):
    """One row-level change, the unit that sync moves between devices."""

    seq: int = 0
    entity: str
    entity_id: str
    data: Optional[dict[str, Any]] = None
    deleted: bool = False
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    origin: str = Field(default="local", description="'local' or the sending installation id")


WriteHandler = Callable[[ChangeRecord], None]


class Subscription:
    """Handle returned by on_write(); call unsubscribe() to stop notifications."""

    def __init__(self, handlers: list[WriteHandler], handler: WriteHandler) -> None:
        self._handlers = handlers
        self._handler = handler

    def unsubscribe(self) -> None:
        if self._handler in self._handlers:
            self._handlers.remove(self._handler)


class EncryptedDatabase(ABC):
    """Interface the core uses to drive the encrypted ledger store."""

    def __init__(self) -> None:
        self._handlers: list[WriteHandler] = []
        self._suppressed = 0

    @abstractmethod
    def exists(self) -> bool:
        """True if a ledger (encrypted or not) is present on disk."""

    @abstractmethod
    def is_encrypted(self) -> bool:
        """True if the on-disk ledger is encrypted."""

    @abstractmethod
    def create(self, dek: bytes) -> None:
        """Create an empty ledger encrypted under dek and open it."""

    @abstractmethod
    def open(self, dek: bytes) -> None:
        """Open the ledger. Raises DatabaseKeyError on a wrong key."""

    @abstractmethod
    def close(self) -> None:
        """Drop decrypted state and key material from memory."""

    @abstractmethod
    def encrypt_existing(self, dek: bytes) -> None:
        """Encrypt a legacy plaintext ledger under dek and open it."""

    @abstractmethod
    def rekey(self, new_dek: bytes) -> None:
        """Re-encrypt the open ledger under a new key."""

    @abstractmethod
    def wipe(self) -> None:
        """Delete the ledger from disk. Never raises."""

    @abstractmethod
    def record_change(
        self,
        entity: str,
        entity_id: str,
        data: Optional[dict[str, Any]] = None,
        deleted: bool = False,
    ) -> ChangeRecord:
        """Apply a local write and append it to the change log."""

    @abstractmethod
    def changes_since(self, cursor: int) -> list[ChangeRecord]:
        """Local changes with seq greater than cursor, in order."""

    @abstractmethod
    def apply_changes(self, records: list[ChangeRecord], origin: str) -> int:
        """Apply remote change records. Returns how many were applied."""

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """True while the ledger is decrypted in memory."""

    # -------------------------------------------------------------------
    # Write observers
    # -------------------------------------------------------------------

    def on_write(self, handler: WriteHandler) -> Subscription:
        """Register a handler called after every local write."""
        self._handlers.append(handler)
        return Subscription(self._handlers, handler)

    @contextlib.contextmanager
    def suppress_notifications(self) -> Iterator[None]:
        """Silence write observers, e.g. while applying pulled changes."""
        self._suppressed += 1
        try:
            yield
        finally:
            self._suppressed -= 1

    def _notify(self, record: ChangeRecord) -> None:
        if self._suppressed:
            return
        for handler in list(self._handlers):
            try:
                handler(record)
            except Exception as exc:
                logger.warning("Write handler %r failed: %s", handler, exc)


class FileDatabase(EncryptedDatabase):
    """Single-file AES-GCM encrypted ledger.

    Args:
        home: Ledger home directory (~/.ledgerlock).
    """

    def __init__(self, home: Path) -> None:
        super().__init__()
        self._path = home / "db" / "ledger.db"
        self._doc: Optional[dict[str, Any]] = None
        self._key: Optional[bytearray] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._doc is not None

    def exists(self) -> bool:
        return self._path.exists()

    def is_encrypted(self) -> bool:
        if not self._path.exists():
            return False
        with self._path.open("rb") as f:
            return f.read(len(ENCRYPTED_MAGIC)) == ENCRYPTED_MAGIC

    def create(self, dek: bytes) -> None:
        self._key = bytearray(dek)
        self._doc = _empty_document()
        self._flush()
        logger.info("Created encrypted ledger at %s", self._path)

    def open(self, dek: bytes) -> None:
        if not self.is_encrypted():
            raise DatabaseKeyError("Ledger is missing or not encrypted")
        blob = self._path.read_bytes()[len(ENCRYPTED_MAGIC):]
        try:
            plaintext = unseal(blob, dek)
        except (InvalidTag, ValueError) as exc:
            raise DatabaseKeyError("Ledger key rejected") from exc
        self._doc = json.loads(plaintext.decode("utf-8"))
        self._key = bytearray(dek)

    def close(self) -> None:
        zero(self._key)
        self._key = None
        self._doc = None

    def encrypt_existing(self, dek: bytes) -> None:
        if not self.exists() or self.is_encrypted():
            raise DatabaseKeyError("No plaintext ledger to encrypt")
        try:
            doc = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise DatabaseKeyError(f"Plaintext ledger unreadable: {exc}") from exc
        self._doc = {**_empty_document(), **doc}
        self._key = bytearray(dek)
        self._flush()
        logger.info("Migrated plaintext ledger to encrypted storage")

    def rekey(self, new_dek: bytes) -> None:
        self._require_open()
        zero(self._key)
        self._key = bytearray(new_dek)
        self._flush()

    def wipe(self) -> None:
        self.close()
        try:
            self._path.unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Could not delete ledger: %s", exc)

    def record_change(
        self,
        entity: str,
        entity_id: str,
        data: Optional[dict[str, Any]] = None,
        deleted: bool = False,
    ) -> ChangeRecord:
        doc = self._require_open()
        doc["seq"] += 1
        record = ChangeRecord(
            seq=doc["seq"], entity=entity, entity_id=entity_id,
            data=data, deleted=deleted,
        )
        _apply_row(doc, record)
        doc["changes"].append(record.model_dump(mode="json"))
        self._flush()
        self._notify(record)
        return record

    def changes_since(self, cursor: int) -> list[ChangeRecord]:
        doc = self._require_open()
        return [
            ChangeRecord.model_validate(c) for c in doc["changes"]
            if c["seq"] > cursor and c.get("origin", "local") == "local"
        ]

    def apply_changes(self, records: list[ChangeRecord], origin: str) -> int:
        doc = self._require_open()
        for incoming in records:
            doc["seq"] += 1
            record = incoming.model_copy(update={"seq": doc["seq"], "origin": origin})
            _apply_row(doc, record)
            doc["changes"].append(record.model_dump(mode="json"))
        if records:
            self._flush()
        return len(records)

    @property
    def latest_seq(self) -> int:
        return self._require_open()["seq"]

    def get(self, entity: str, entity_id: str) -> Optional[dict[str, Any]]:
        return self._require_open()["tables"].get(entity, {}).get(entity_id)

    def rows(self, entity: str) -> dict[str, dict[str, Any]]:
        return dict(self._require_open()["tables"].get(entity, {}))

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _require_open(self) -> dict[str, Any]:
        if self._doc is None:
            raise NotAuthenticatedError("Ledger is locked")
        return self._doc

    def _flush(self) -> None:
        doc = self._require_open()
        if self._key is None:
            raise NotAuthenticatedError("Ledger key not loaded")
        payload = json.dumps(doc, default=str).encode("utf-8")
        blob = ENCRYPTED_MAGIC + seal(payload, bytes(self._key))
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
            os.replace(tmp, self._path)
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise


def _empty_document() -> dict[str, Any]:
    return {"version": 1, "seq": 0, "tables": {}, "changes": []}


def _apply_row(doc: dict[str, Any], record: ChangeRecord) -> None:
    table = doc["tables"].setdefault(record.entity, {})
    if record.deleted:
        table.pop(record.entity_id, None)
    else:
        table[record.entity_id] = record.data or {}
