"""
Biometric Key Wrap — DEK access through a platform authenticator's PRF.

The authenticator's pseudo-random function output for a per-credential
salt is stretched with HKDF into a key-encryption key (KEK) that wraps
the DEK with AES-256-GCM:

    PRF(credential, prf_salt) ─ HKDF-SHA256 ─> KEK ─ AES-GCM(iv) ─> wrapped DEK

Only {credential_id, prf_salt, wrapped_dek, iv} is stored. Biometric
unlock is a fast path: every failure resolves to "use the PIN".
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from cryptography.exceptions import InvalidTag
from pydantic import BaseModel, ValidationError

from .audit import audit_event
from .config import LedgerConfig
from .credentials import CredentialStore
from .crypto import (
    aes_gcm_decrypt,
    aes_gcm_encrypt,
    b64url_decode,
    b64url_encode,
    hkdf,
    random_bytes,
)
from .errors import BiometricUnavailableError, NotAuthenticatedError
from .storage import LocalStore, StorageKeys

if TYPE_CHECKING:
    from .session import SessionManager

logger = logging.getLogger("ledgerlock.biometric")

HKDF_INFO = b"ledgerlock-KEK"
HKDF_SALT = bytes(32)
PRF_SALT_LENGTH = 32

T = TypeVar("T")


class AuthenticatorCancelled(Exception):
    """The user dismissed the platform authenticator prompt."""


class BiometricAvailability(str, Enum):
    """Whether the biometric fast path can be offered."""

    UNSUPPORTED = "unsupported"
    DISABLED = "disabled"
    READY = "ready"


class AuthenticatorResult(BaseModel):
    """What the platform authenticator hands back."""

    credential_id: bytes
    prf_output: Optional[bytes] = None


class WebAuthnCredentialData(BaseModel):
    """Stored bundle for one enrolled credential (all base64url)."""

    credential_id: str
    prf_salt: str
    wrapped_dek: str
    iv: str


class Authenticator(ABC):
    """Platform authenticator with PRF support (Face ID, Windows Hello, ...)."""

    @abstractmethod
    def is_available(self) -> bool:
        """True if a user-verifying platform authenticator is present."""

    @abstractmethod
    def create_credential(self, prf_salt: bytes) -> AuthenticatorResult:
        """Register a credential and evaluate the PRF for prf_salt.

        Raises:
            AuthenticatorCancelled: If the user dismisses the prompt.
        """

    @abstractmethod
    def get_prf(self, credential_id: bytes, prf_salt: bytes) -> AuthenticatorResult:
        """Assert an existing credential and evaluate the PRF for prf_salt.

        Raises:
            AuthenticatorCancelled: If the user dismisses the prompt.
        """


class SoftwareAuthenticator(Authenticator):
    """Device-secret PRF emulation for headless installs and tests.

    PRF(credential, salt) = HMAC-SHA256(device_secret || credential_id, salt).

    Args:
        device_secret: Secret bound to this device.
        supports_prf: Set False to emulate a platform without PRF.
        available: Set False to emulate missing hardware.
    """

    def __init__(
        self,
        device_secret: bytes,
        supports_prf: bool = True,
        available: bool = True,
    ) -> None:
        self._secret = device_secret
        self._supports_prf = supports_prf
        self._available = available

    def is_available(self) -> bool:
        return self._available

    def create_credential(self, prf_salt: bytes) -> AuthenticatorResult:
        credential_id = random_bytes(16)
        return AuthenticatorResult(
            credential_id=credential_id,
            prf_output=self._prf(credential_id, prf_salt),
        )

    def get_prf(self, credential_id: bytes, prf_salt: bytes) -> AuthenticatorResult:
        return AuthenticatorResult(
            credential_id=credential_id,
            prf_output=self._prf(credential_id, prf_salt),
        )

    def _prf(self, credential_id: bytes, salt: bytes) -> Optional[bytes]:
        if not self._supports_prf:
            return None
        return hmac.new(self._secret + credential_id, salt, hashlib.sha256).digest()


def derive_kek(prf_output: bytes) -> bytes:
    """HKDF-SHA256 over the PRF output (zero salt, fixed info)."""
    return hkdf(prf_output, HKDF_INFO, salt=HKDF_SALT)


class BiometricKeyWrap:
    """Enrolls and unlocks the DEK through a platform authenticator.

    Args:
        home: Ledger home directory.
        store: Local key-value entries (credential bundle, PRF flag).
        credentials: Source of the DEK during enrollment.
        authenticator: Platform authenticator, or None where there is none.
        config: Prompt timeout.
    """

    def __init__(
        self,
        home: Path,
        store: LocalStore,
        credentials: CredentialStore,
        authenticator: Optional[Authenticator],
        config: Optional[LedgerConfig] = None,
    ) -> None:
        self._home = home
        self._store = store
        self._credentials = credentials
        self._authenticator = authenticator
        self._config = config or LedgerConfig()

    def availability(self) -> BiometricAvailability:
        if self._authenticator is None or self.is_prf_known_unsupported():
            return BiometricAvailability.UNSUPPORTED
        try:
            if not self._authenticator.is_available():
                return BiometricAvailability.UNSUPPORTED
        except Exception as exc:
            logger.warning("Authenticator availability check failed: %s", exc)
            return BiometricAvailability.UNSUPPORTED
        if self.stored_credential() is None:
            return BiometricAvailability.DISABLED
        return BiometricAvailability.READY

    def stored_credential(self) -> Optional[WebAuthnCredentialData]:
        raw = self._store.get_json(StorageKeys.WEBAUTHN_DATA)
        if raw is None:
            return None
        try:
            return WebAuthnCredentialData.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Stored biometric credential unreadable: %s", exc)
            return None

    def is_prf_known_unsupported(self) -> bool:
        return self._store.get(StorageKeys.PRF_UNSUPPORTED) == "1"

    def clear_prf_unsupported_flag(self) -> None:
        self._store.delete(StorageKeys.PRF_UNSUPPORTED)

    def enroll(self) -> WebAuthnCredentialData:
        """Register a credential and wrap the current DEK under its PRF.

        Raises:
            NotAuthenticatedError: If the credential store is locked.
            BiometricUnavailableError: If there is no authenticator, the
                prompt was cancelled, or the platform lacks PRF (the last
                case also records the PRF-unsupported flag).
        """
        dek = self._credentials.dek
        if self._authenticator is None or not self._authenticator.is_available():
            raise BiometricUnavailableError("No platform authenticator available")

        prf_salt = random_bytes(PRF_SALT_LENGTH)
        try:
            result = self._prompt(lambda: self._authenticator.create_credential(prf_salt))
        except AuthenticatorCancelled as exc:
            raise BiometricUnavailableError("Biometric enrollment cancelled") from exc
        except TimeoutError as exc:
            raise BiometricUnavailableError("Biometric enrollment timed out") from exc

        if not result.prf_output:
            self._store.set(StorageKeys.PRF_UNSUPPORTED, "1")
            logger.info("Authenticator has no PRF support; biometrics disabled")
            raise BiometricUnavailableError("PRF extension not supported on this platform")

        iv, wrapped = aes_gcm_encrypt(dek, derive_kek(result.prf_output))
        data = WebAuthnCredentialData(
            credential_id=b64url_encode(result.credential_id),
            prf_salt=b64url_encode(prf_salt),
            wrapped_dek=b64url_encode(wrapped),
            iv=b64url_encode(iv),
        )
        self._store.set_json(StorageKeys.WEBAUTHN_DATA, data.model_dump())
        self.clear_prf_unsupported_flag()
        audit_event(self._home, "BIOMETRIC_ENROLL", "Biometric credential enrolled")
        return data

    def unlock(self) -> Optional[bytes]:
        """Recover the DEK through the authenticator.

        Returns:
            The DEK, or None on cancel, timeout, missing PRF, or any
            decryption failure (fall back to PIN).
        """
        data = self.stored_credential()
        if data is None or self._authenticator is None:
            return None

        try:
            credential_id = b64url_decode(data.credential_id)
            prf_salt = b64url_decode(data.prf_salt)
            result = self._prompt(lambda: self._authenticator.get_prf(credential_id, prf_salt))
        except AuthenticatorCancelled:
            logger.info("Biometric prompt cancelled")
            return None
        except TimeoutError:
            logger.info("Biometric prompt timed out")
            return None
        except Exception as exc:
            logger.warning("Biometric assertion failed: %s", exc)
            return None

        if not result.prf_output:
            return None

        try:
            return aes_gcm_decrypt(
                b64url_decode(data.iv),
                b64url_decode(data.wrapped_dek),
                derive_kek(result.prf_output),
            )
        except (InvalidTag, ValueError):
            logger.warning("Biometric KEK did not unwrap the DEK")
            return None

    def disable(self) -> None:
        self._store.delete(StorageKeys.WEBAUTHN_DATA)
        audit_event(self._home, "BIOMETRIC_DISABLE", "Biometric credential removed")

    def _prompt(self, call: Callable[[], T]) -> T:
        """Run an authenticator call bounded by biometric_timeout.

        The call runs on a daemon thread, so a prompt that never answers
        is abandoned on timeout and does not hold up interpreter exit.

        Raises:
            TimeoutError: If the authenticator did not answer in time.
        """
        outcome: dict[str, Any] = {}
        done = threading.Event()

        def run() -> None:
            try:
                outcome["result"] = call()
            except Exception as exc:
                outcome["error"] = exc
            finally:
                done.set()

        threading.Thread(target=run, name="biometric-prompt", daemon=True).start()
        if not done.wait(self._config.biometric_timeout):
            raise TimeoutError("Authenticator did not answer in time")
        if "error" in outcome:
            raise outcome["error"]
        return outcome["result"]


class BiometricGate:
    """Once-per-launch automatic biometric attempt plus manual retry.

    Args:
        wrap: The biometric key wrap.
        sessions: Session manager that starts the session from the DEK.
    """

    def __init__(self, wrap: BiometricKeyWrap, sessions: "SessionManager") -> None:
        self._wrap = wrap
        self._sessions = sessions
        self._auto_attempted = False

    @property
    def auto_attempted(self) -> bool:
        return self._auto_attempted

    def auto_unlock(self) -> bool:
        """Try biometrics once per launch when enrolled and available."""
        if self._auto_attempted:
            return False
        self._auto_attempted = True
        if self._wrap.availability() != BiometricAvailability.READY:
            return False
        return self._attempt()

    def retry(self) -> bool:
        """Explicit user retry; always allowed."""
        if self._wrap.availability() != BiometricAvailability.READY:
            return False
        return self._attempt()

    def _attempt(self) -> bool:
        dek = self._wrap.unlock()
        if dek is None:
            return False
        try:
            return self._sessions.login_with_dek(dek)
        except NotAuthenticatedError:
            return False
