"""Tests for the PRF-based biometric key wrap."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from ledgerlock.biometric import (
    AuthenticatorCancelled,
    AuthenticatorResult,
    BiometricAvailability,
    BiometricGate,
    BiometricKeyWrap,
    SoftwareAuthenticator,
    derive_kek,
)
from ledgerlock.config import LedgerConfig
from ledgerlock.credentials import CredentialStore
from ledgerlock.crypto import b64url_decode, b64url_encode
from ledgerlock.errors import BiometricUnavailableError, NotAuthenticatedError
from ledgerlock.session import AuthStatus, SessionManager
from ledgerlock.storage import LocalStore, StorageKeys

from conftest import PIN

DEVICE_SECRET = b"d" * 32


class CancellingAuthenticator(SoftwareAuthenticator):
    """User dismisses every assertion prompt."""

    def get_prf(self, credential_id: bytes, prf_salt: bytes) -> AuthenticatorResult:
        raise AuthenticatorCancelled()


class HangingAuthenticator(SoftwareAuthenticator):
    """Assertion prompt that never answers until released."""

    def __init__(self) -> None:
        super().__init__(DEVICE_SECRET)
        self.release = threading.Event()
        self.entered = threading.Event()
        self.on_daemon_thread = False

    def get_prf(self, credential_id: bytes, prf_salt: bytes) -> AuthenticatorResult:
        self.on_daemon_thread = threading.current_thread().daemon
        self.entered.set()
        self.release.wait(5)
        return super().get_prf(credential_id, prf_salt)


def make_wrap(
    home: Path, store: LocalStore, credentials: CredentialStore,
    authenticator, config: LedgerConfig,
) -> BiometricKeyWrap:
    return BiometricKeyWrap(home, store, credentials, authenticator, config)


@pytest.fixture
def wrap(home, store, unlocked, config) -> BiometricKeyWrap:
    return make_wrap(home, store, unlocked, SoftwareAuthenticator(DEVICE_SECRET), config)


class TestAvailability:
    """unsupported / disabled / ready."""

    def test_no_authenticator_is_unsupported(self, home, store, unlocked, config) -> None:
        wrap = make_wrap(home, store, unlocked, None, config)
        assert wrap.availability() == BiometricAvailability.UNSUPPORTED

    def test_missing_hardware_is_unsupported(self, home, store, unlocked, config) -> None:
        auth = SoftwareAuthenticator(DEVICE_SECRET, available=False)
        wrap = make_wrap(home, store, unlocked, auth, config)
        assert wrap.availability() == BiometricAvailability.UNSUPPORTED
        with pytest.raises(BiometricUnavailableError):
            wrap.enroll()

    def test_not_enrolled_is_disabled(self, wrap: BiometricKeyWrap) -> None:
        assert wrap.availability() == BiometricAvailability.DISABLED

    def test_enrolled_is_ready(self, wrap: BiometricKeyWrap) -> None:
        wrap.enroll()
        assert wrap.availability() == BiometricAvailability.READY

    def test_disable(self, wrap: BiometricKeyWrap, home: Path) -> None:
        wrap.enroll()
        wrap.disable()
        assert wrap.availability() == BiometricAvailability.DISABLED
        assert wrap.unlock() is None


class TestEnroll:
    """Wrapping the DEK under a PRF-derived KEK."""

    def test_enroll_stores_bundle(self, wrap: BiometricKeyWrap, store: LocalStore) -> None:
        data = wrap.enroll()
        assert store.get_json(StorageKeys.WEBAUTHN_DATA) == data.model_dump()
        assert len(b64url_decode(data.prf_salt)) == 32
        assert len(b64url_decode(data.iv)) == 12

    def test_bundle_never_holds_raw_dek(self, wrap: BiometricKeyWrap, unlocked) -> None:
        data = wrap.enroll()
        assert b64url_encode(unlocked.dek) not in data.model_dump_json()

    def test_enroll_requires_unlock(self, wrap: BiometricKeyWrap, unlocked) -> None:
        unlocked.lock()
        with pytest.raises(NotAuthenticatedError):
            wrap.enroll()

    def test_missing_prf_sets_flag(self, home, store, unlocked, config) -> None:
        auth = SoftwareAuthenticator(DEVICE_SECRET, supports_prf=False)
        wrap = make_wrap(home, store, unlocked, auth, config)
        with pytest.raises(BiometricUnavailableError):
            wrap.enroll()
        assert wrap.is_prf_known_unsupported()
        assert store.get(StorageKeys.WEBAUTHN_DATA) is None
        assert wrap.availability() == BiometricAvailability.UNSUPPORTED

    def test_successful_enroll_clears_flag(self, wrap: BiometricKeyWrap, store: LocalStore) -> None:
        store.set(StorageKeys.PRF_UNSUPPORTED, "1")
        assert wrap.availability() == BiometricAvailability.UNSUPPORTED
        wrap.clear_prf_unsupported_flag()
        wrap.enroll()
        assert not wrap.is_prf_known_unsupported()

    def test_kek_derivation_is_stable(self) -> None:
        assert derive_kek(b"p" * 32) == derive_kek(b"p" * 32)
        assert derive_kek(b"p" * 32) != derive_kek(b"q" * 32)


class TestUnlock:
    """Recovering the DEK or falling back to the PIN."""

    def test_round_trip(self, wrap: BiometricKeyWrap, unlocked) -> None:
        wrap.enroll()
        assert wrap.unlock() == unlocked.dek

    def test_cancel_returns_none(self, home, store, unlocked, config) -> None:
        make_wrap(home, store, unlocked, SoftwareAuthenticator(DEVICE_SECRET), config).enroll()
        wrap = make_wrap(home, store, unlocked, CancellingAuthenticator(DEVICE_SECRET), config)
        assert wrap.unlock() is None

    def test_timeout_returns_none(self, home, store, unlocked) -> None:
        config = LedgerConfig(pbkdf2_iterations=1000, biometric_timeout=0.05)
        make_wrap(home, store, unlocked, SoftwareAuthenticator(DEVICE_SECRET), config).enroll()
        hanging = HangingAuthenticator()
        wrap = make_wrap(home, store, unlocked, hanging, config)
        try:
            assert wrap.unlock() is None
        finally:
            hanging.release.set()

    def test_timed_out_prompt_does_not_block_exit(self, home, store, unlocked) -> None:
        config = LedgerConfig(pbkdf2_iterations=1000, biometric_timeout=0.05)
        make_wrap(home, store, unlocked, SoftwareAuthenticator(DEVICE_SECRET), config).enroll()
        hanging = HangingAuthenticator()
        wrap = make_wrap(home, store, unlocked, hanging, config)
        try:
            assert wrap.unlock() is None
            assert hanging.entered.wait(5)
            assert hanging.on_daemon_thread
        finally:
            hanging.release.set()

    def test_other_device_secret_returns_none(self, home, store, unlocked, config) -> None:
        make_wrap(home, store, unlocked, SoftwareAuthenticator(DEVICE_SECRET), config).enroll()
        other = make_wrap(home, store, unlocked, SoftwareAuthenticator(b"x" * 32), config)
        assert other.unlock() is None

    def test_tampered_bundle_returns_none(self, wrap: BiometricKeyWrap, store: LocalStore) -> None:
        data = wrap.enroll()
        blob = bytearray(b64url_decode(data.wrapped_dek))
        blob[0] ^= 0xFF
        tampered = data.model_copy(update={"wrapped_dek": b64url_encode(bytes(blob))})
        store.set_json(StorageKeys.WEBAUTHN_DATA, tampered.model_dump())
        assert wrap.unlock() is None

    def test_unreadable_bundle_is_disabled(self, wrap: BiometricKeyWrap, store: LocalStore) -> None:
        store.set_json(StorageKeys.WEBAUTHN_DATA, {"credential_id": "x"})
        assert wrap.availability() == BiometricAvailability.DISABLED
        assert wrap.unlock() is None


class TestGate:
    """Once-per-launch auto attempt and manual retry."""

    @pytest.fixture
    def sessions(self, home, unlocked, store, config) -> SessionManager:
        sessions = SessionManager(home, unlocked, store, config)
        sessions.setup(PIN)
        return sessions

    def test_auto_unlock_once(self, home, store, unlocked, config, sessions) -> None:
        wrap = make_wrap(home, store, unlocked, SoftwareAuthenticator(DEVICE_SECRET), config)
        wrap.enroll()
        sessions.logout()
        gate = BiometricGate(wrap, sessions)

        assert gate.auto_unlock()
        assert sessions.status == AuthStatus.AUTHENTICATED
        sessions.logout()
        assert not gate.auto_unlock()
        assert gate.auto_attempted
        assert sessions.status == AuthStatus.NEEDS_AUTH

    def test_retry_is_always_allowed(self, home, store, unlocked, config, sessions) -> None:
        wrap = make_wrap(home, store, unlocked, SoftwareAuthenticator(DEVICE_SECRET), config)
        wrap.enroll()
        sessions.logout()
        gate = BiometricGate(wrap, sessions)
        gate.auto_unlock()
        sessions.logout()
        assert gate.retry()
        sessions.logout()
        assert gate.retry()

    def test_not_enrolled_does_nothing(self, home, store, unlocked, config, sessions) -> None:
        wrap = make_wrap(home, store, unlocked, SoftwareAuthenticator(DEVICE_SECRET), config)
        sessions.logout()
        gate = BiometricGate(wrap, sessions)
        assert not gate.auto_unlock()
        assert not gate.retry()
        assert sessions.status == AuthStatus.NEEDS_AUTH

    def test_cancelled_prompt_leaves_pin_path(self, home, store, unlocked, config, sessions) -> None:
        make_wrap(home, store, unlocked, SoftwareAuthenticator(DEVICE_SECRET), config).enroll()
        sessions.logout()
        wrap = make_wrap(home, store, unlocked, CancellingAuthenticator(DEVICE_SECRET), config)
        gate = BiometricGate(wrap, sessions)
        assert not gate.auto_unlock()
        assert sessions.status == AuthStatus.NEEDS_AUTH
        assert sessions.failed_attempts == 0
        assert sessions.login(PIN).success
