"""
Session Manager — short-lived signed tokens gating ledger access.

A session token is a JSON payload {iat, exp} (Unix seconds, exp - iat =
900) with a detached HMAC-SHA256 signature made with the account's
signing secret, serialized as base64url and kept in the local store.

Status machine:

    checking ─┬─> first_time_setup ──setup()──> authenticated
              ├─> needs_migration  ──migrate()─> authenticated
              ├─> needs_auth ──login() ok──> authenticated
              │        └──login() fails──> auth_failed ──> needs_auth
              └─> authenticated ──expiry / logout──> needs_auth

Token expiry always lands in needs_auth. auth_failed is reserved for a
rejected credential. Failed attempts are counted for UI warnings only;
nothing locks the account.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from .audit import audit_event
from .config import LedgerConfig
from .credentials import CredentialStore, DerivedKey
from .crypto import b64url_decode, b64url_encode, canonical_json, hmac_sign, hmac_verify
from .errors import CorruptedCredentialsError, NotAuthenticatedError
from .storage import LocalStore, StorageKeys

logger = logging.getLogger("ledgerlock.session")


class AuthStatus(str, Enum):
    """Where the app stands with respect to authentication."""

    CHECKING = "checking"
    FIRST_TIME_SETUP = "first_time_setup"
    NEEDS_MIGRATION = "needs_migration"
    NEEDS_AUTH = "needs_auth"
    AUTHENTICATED = "authenticated"
    AUTH_FAILED = "auth_failed"


class SessionPayload(BaseModel):
    """The signed content of a session token."""

    iat: int = Field(description="Issued at (Unix seconds)")
    exp: int = Field(description="Expires at (Unix seconds)")


class SignedSessionToken(BaseModel):
    """A session payload and its detached signature."""

    payload: SessionPayload
    signature: str

    def encode(self) -> str:
        """Portable base64url form stored locally."""
        return b64url_encode(self.model_dump_json().encode("utf-8"))

    @classmethod
    def decode(cls, token: str) -> "SignedSessionToken":
        """Parse the base64url form.

        Raises:
            ValueError: If the token is not a well-formed signed token.
        """
        try:
            return cls.model_validate_json(b64url_decode(token))
        except (ValidationError, ValueError, UnicodeError) as exc:
            raise ValueError(f"Malformed session token: {exc}") from exc


class LoginResult(BaseModel):
    """Outcome of a PIN login attempt."""

    success: bool
    status: AuthStatus
    failed_attempts: int = 0
    warn: bool = Field(default=False, description="Show the repeated-failure warning")


StatusHandler = Callable[[AuthStatus], None]


class SessionManager:
    """Issues and validates session tokens and drives AuthStatus.

    Args:
        home: Ledger home directory.
        credentials: The credential store holding the signing secret and DEK.
        store: Local key-value entries (token persistence).
        config: TTL and warning cadence.
        clock: Returns the current Unix time in seconds.
    """

    def __init__(
        self,
        home: Path,
        credentials: CredentialStore,
        store: LocalStore,
        config: Optional[LedgerConfig] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._home = home
        self._credentials = credentials
        self._store = store
        self._config = config or LedgerConfig()
        self._clock = clock
        self._status = AuthStatus.CHECKING
        self._failed_attempts = 0
        self._handlers: list[StatusHandler] = []

    # -------------------------------------------------------------------
    # Observable state
    # -------------------------------------------------------------------

    @property
    def status(self) -> AuthStatus:
        return self._status

    @property
    def failed_attempts(self) -> int:
        return self._failed_attempts

    @property
    def should_warn(self) -> bool:
        """True at every Nth consecutive failure (N = failed_attempt_warn_every)."""
        every = self._config.failed_attempt_warn_every
        return self._failed_attempts > 0 and self._failed_attempts % every == 0

    def on_status_change(self, handler: StatusHandler) -> Callable[[], None]:
        """Register a status observer. Returns a function that unregisters it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    # -------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------

    def issue_token(self) -> SignedSessionToken:
        """Issue, sign and persist a fresh token.

        Raises:
            NotAuthenticatedError: If no credential check has succeeded.
        """
        if not self._credentials.is_unlocked:
            raise NotAuthenticatedError("Cannot issue a session token before verification")

        now = int(self._clock())
        payload = SessionPayload(iat=now, exp=now + self._config.session_ttl_seconds)
        signature = hmac_sign(
            canonical_json(payload.model_dump()), self._credentials.signing_secret()
        )
        token = SignedSessionToken(payload=payload, signature=signature)
        self._store.set(StorageKeys.SESSION_TOKEN, token.encode())
        return token

    def validate_token(self, token: Optional[str]) -> bool:
        """Check signature and expiry. A token is valid up to and including exp."""
        if not token:
            return False
        try:
            signed = SignedSessionToken.decode(token)
        except ValueError as exc:
            logger.debug("Rejecting token: %s", exc)
            return False

        try:
            secret = self._credentials.signing_secret()
        except CorruptedCredentialsError:
            return False

        data = canonical_json(signed.payload.model_dump())
        if not hmac_verify(data, signed.signature, secret):
            logger.warning("Session token signature mismatch")
            return False

        return self._clock() <= signed.payload.exp

    def current_token(self) -> Optional[str]:
        return self._store.get(StorageKeys.SESSION_TOKEN)

    def has_valid_session(self) -> bool:
        return self.validate_token(self.current_token())

    def refresh(self) -> bool:
        """Extend a still-valid session with a new token."""
        if not self._credentials.is_unlocked or not self.has_valid_session():
            return False
        self.issue_token()
        return True

    # -------------------------------------------------------------------
    # Status transitions
    # -------------------------------------------------------------------

    def check(self) -> AuthStatus:
        """Check local credentials and the stored token."""
        self._set_status(AuthStatus.CHECKING)
        if not self._credentials.has_credentials():
            if self._credentials.needs_migration():
                return self._set_status(AuthStatus.NEEDS_MIGRATION)
            return self._set_status(AuthStatus.FIRST_TIME_SETUP)

        if self._credentials.is_unlocked and self.has_valid_session():
            return self._set_status(AuthStatus.AUTHENTICATED)
        return self._expire()

    def setup(self, pin: str) -> DerivedKey:
        """First-time PIN setup; authenticated on success."""
        derived = self._credentials.setup(pin)
        self._authenticated()
        return derived

    def migrate(self, pin: str) -> DerivedKey:
        """Encrypt a legacy ledger under a new PIN; authenticated on success."""
        derived = self._credentials.migrate(pin)
        self._authenticated()
        return derived

    def login(self, pin: str) -> LoginResult:
        """Verify a PIN and start a session.

        Raises:
            CorruptedCredentialsError: Propagated from verification; the
                only recovery is wipe().
        """
        if self._credentials.verify(pin):
            self._authenticated()
            audit_event(self._home, "AUTH_SUCCESS", "PIN login")
            return LoginResult(success=True, status=self._status)

        self._failed()
        return LoginResult(
            success=False,
            status=self._status,
            failed_attempts=self._failed_attempts,
            warn=self.should_warn,
        )

    def login_with_dek(self, dek: bytes) -> bool:
        """Start a session from a biometric-unwrapped DEK."""
        if not self._credentials.unlock_with_dek(dek):
            self._failed()
            return False
        self._authenticated()
        audit_event(self._home, "AUTH_SUCCESS", "Biometric login")
        return True

    def change_pin(self, old_pin: str, new_pin: str) -> bool:
        """Change the PIN; the rotated signing secret requires a new token."""
        if not self._credentials.change_pin(old_pin, new_pin):
            self._failed_attempts += 1
            audit_event(self._home, "AUTH_FAILED", "Wrong PIN during PIN change")
            return False
        self._authenticated()
        return True

    def acknowledge_failure(self) -> AuthStatus:
        """Leave auth_failed so the PIN prompt can be shown again."""
        if self._status == AuthStatus.AUTH_FAILED:
            self._set_status(AuthStatus.NEEDS_AUTH)
        return self._status

    def ensure_authenticated(self) -> bool:
        """Gate an operation: expire the session if its token lapsed."""
        if self._status == AuthStatus.AUTHENTICATED and self.has_valid_session():
            return True
        if self._status == AuthStatus.AUTHENTICATED:
            logger.info("Session token expired")
            self._expire()
        return False

    def logout(self) -> None:
        """Destroy the token and discard key material."""
        self._store.delete(StorageKeys.SESSION_TOKEN)
        self._credentials.lock()
        audit_event(self._home, "SESSION_LOGOUT", "Session ended")
        self._set_status(AuthStatus.NEEDS_AUTH)

    def wipe(self) -> None:
        """Forgot-PIN path: delete everything and start over."""
        self._credentials.wipe()
        self._failed_attempts = 0
        self._set_status(AuthStatus.FIRST_TIME_SETUP)

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _authenticated(self) -> None:
        self._failed_attempts = 0
        self.issue_token()
        self._set_status(AuthStatus.AUTHENTICATED)

    def _failed(self) -> None:
        # a failed login never leaves an earlier session usable
        self._store.delete(StorageKeys.SESSION_TOKEN)
        self._credentials.lock()
        self._failed_attempts += 1
        audit_event(
            self._home, "AUTH_FAILED", "Credential check failed",
            metadata={"failed_attempts": self._failed_attempts},
        )
        self._set_status(AuthStatus.AUTH_FAILED)

    def _expire(self) -> AuthStatus:
        self._store.delete(StorageKeys.SESSION_TOKEN)
        self._credentials.lock()
        return self._set_status(AuthStatus.NEEDS_AUTH)

    def _set_status(self, status: AuthStatus) -> AuthStatus:
        if status != self._status:
            logger.debug("Auth status %s -> %s", self._status.value, status.value)
            self._status = status
            for handler in list(self._handlers):
                handler(status)
        return status
