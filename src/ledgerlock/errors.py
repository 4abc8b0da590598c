"""
Error taxonomy for the credential and sync core.

User-input errors are recoverable by re-prompting. Environment errors
tell the caller whether to fall back (biometrics) or to wipe (corrupted
credentials). Transient errors are always retryable and never block
local use of the ledger.
"""

from __future__ import annotations

from typing import Optional


class LedgerLockError(Exception):
    """Base class for every error raised by ledgerlock."""


# --- user input -------------------------------------------------------------


class WeakPinError(LedgerLockError):
    """The PIN is shorter than the configured minimum length."""

    def __init__(self, min_length: int) -> None:
        super().__init__(f"PIN must be at least {min_length} characters")
        self.min_length = min_length


class InvalidShareLinkError(LedgerLockError):
    """A share link does not point at /share or lacks a uuid."""


# --- environment ------------------------------------------------------------


class CorruptedCredentialsError(LedgerLockError):
    """Local credential material is missing or inconsistent.

    The only way forward is an explicit wipe.
    """


class BiometricUnavailableError(LedgerLockError):
    """The platform authenticator cannot provide a PRF output."""


class NotAuthenticatedError(LedgerLockError):
    """An operation needs an unlocked credential store."""


class DatabaseKeyError(LedgerLockError):
    """The database could not be opened with the supplied key."""


# --- transient infrastructure ----------------------------------------------


class TransientError(LedgerLockError):
    """Network failure that the caller should retry later.

    Attributes:
        status_code: HTTP status of the rejection, if any.
        timed_out: True when the request hit its timeout.
    """

    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.timed_out = timed_out


class RegistrationError(TransientError):
    """Installation registration with the coordinator failed."""


class CoordinatorError(TransientError):
    """A device-link handshake call to the coordinator failed."""


class SyncTransportError(TransientError):
    """A sync push, pull or ack call failed."""
