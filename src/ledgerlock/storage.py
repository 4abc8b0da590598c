"""
Persisted local key-value entries.

Small device-local state (salt, wrapped keys, the session token, the
installation map) lives outside the encrypted database so it can be
read before the database is opened. Each namespace is one JSON file:

    ~/.ledgerlock/local/
    ├── credentials.json   # salt, PIN hash, wrapped DEK, signing secret
    ├── session.json       # current signed session token
    ├── device.json        # installation id, key pair, share-link state
    └── sync.json          # pending-initial-sync flag, sync status
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("ledgerlock.storage")


class StorageKeys:
    """Well-known entry names and the namespace each one lives in."""

    PBKDF2_SALT = ("credentials", "pbkdf2_salt")
    PIN_HASH = ("credentials", "pin_hash")
    WRAPPED_DEK = ("credentials", "wrapped_dek")
    JWT_SALT = ("credentials", "jwt_salt")
    WEBAUTHN_DATA = ("credentials", "webauthn_data")
    PRF_UNSUPPORTED = ("credentials", "prf_unsupported")

    SESSION_TOKEN = ("session", "session_token")

    INSTALLATION_ID = ("device", "installation_id")
    KEY_PAIR = ("device", "key_pair")
    SHARED_UUID = ("device", "shared_uuid")
    SHARED_PUBLIC_KEY = ("device", "shared_public_key")
    LINKED_INSTALLATIONS = ("device", "linked_installations")

    PENDING_INITIAL_SYNC = ("sync", "pending_initial_sync")
    SYNC_STATE = ("sync", "sync_state")


class LocalStore:
    """Namespaced key-value store backed by JSON files.

    Args:
        home: Ledger home directory (~/.ledgerlock).
    """

    def __init__(self, home: Path) -> None:
        self._home = home
        self._dir = home / "local"

    @property
    def directory(self) -> Path:
        return self._dir

    def get(self, key: tuple[str, str], default: Optional[str] = None) -> Optional[str]:
        namespace, name = key
        value = self._load(namespace).get(name)
        return default if value is None else value

    def set(self, key: tuple[str, str], value: str) -> None:
        namespace, name = key
        data = self._load(namespace)
        data[name] = value
        self._save(namespace, data)

    def set_many(self, namespace: str, values: dict[str, str]) -> None:
        """Write several entries of one namespace in a single atomic save."""
        data = self._load(namespace)
        data.update(values)
        self._save(namespace, data)

    def delete(self, key: tuple[str, str]) -> None:
        namespace, name = key
        data = self._load(namespace)
        if name in data:
            del data[name]
            self._save(namespace, data)

    def has(self, key: tuple[str, str]) -> bool:
        return self.get(key) is not None

    def get_json(self, key: tuple[str, str]) -> Any:
        """Return a JSON-encoded entry decoded, or None if absent or unreadable."""
        raw = self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Entry %s/%s is not valid JSON", key[0], key[1])
            return None

    def set_json(self, key: tuple[str, str], value: Any) -> None:
        self.set(key, json.dumps(value, sort_keys=True))

    def clear_namespace(self, namespace: str) -> None:
        path = self._path(namespace)
        if path.exists():
            path.unlink()

    def wipe(self) -> None:
        """Delete every namespace file."""
        if not self._dir.exists():
            return
        for f in self._dir.glob("*.json"):
            try:
                f.unlink()
            except OSError as exc:
                logger.error("Could not delete %s: %s", f.name, exc)

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _path(self, namespace: str) -> Path:
        return self._dir / f"{namespace}.json"

    def _load(self, namespace: str) -> dict[str, str]:
        path = self._path(namespace)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Failed to load %s store: %s", namespace, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, namespace: str, data: dict[str, str]) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._dir, prefix=f".{namespace}-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp, self._path(namespace))
        except OSError:
            Path(tmp).unlink(missing_ok=True)
            raise
