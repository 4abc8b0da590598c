"""Tests for the shared cryptographic helpers."""

from __future__ import annotations

import pytest
from cryptography.exceptions import InvalidTag

from ledgerlock.crypto import (
    IV_LENGTH,
    b64url_decode,
    b64url_encode,
    canonical_json,
    derive_master_key,
    generate_rsa_keypair,
    hash_pin,
    hkdf,
    hmac_sign,
    hmac_verify,
    hybrid_decrypt,
    hybrid_encrypt,
    random_bytes,
    seal,
    unseal,
    zero,
)


class TestEncoding:
    """base64url and buffer helpers."""

    def test_b64url_is_unpadded_and_urlsafe(self) -> None:
        encoded = b64url_encode(b"\xfb\xff\xfe")
        assert "=" not in encoded
        assert "+" not in encoded and "/" not in encoded
        assert b64url_decode(encoded) == b"\xfb\xff\xfe"

    def test_b64url_decodes_any_length(self) -> None:
        for n in range(1, 6):
            data = bytes(range(n))
            assert b64url_decode(b64url_encode(data)) == data

    def test_zero_overwrites_buffer(self) -> None:
        buf = bytearray(b"secret")
        zero(buf)
        assert buf == bytearray(6)

    def test_zero_accepts_none(self) -> None:
        zero(None)


class TestKeyDerivation:
    """PBKDF2 and HKDF derivation."""

    def test_master_key_is_deterministic(self) -> None:
        salt = b"s" * 16
        assert derive_master_key("123456", salt, 1000) == derive_master_key("123456", salt, 1000)

    def test_hash_differs_from_master_key(self) -> None:
        salt = b"s" * 16
        assert hash_pin("123456", salt, 1000) != derive_master_key("123456", salt, 1000)

    def test_different_salt_different_key(self) -> None:
        assert derive_master_key("123456", b"a" * 16, 1000) != derive_master_key(
            "123456", b"b" * 16, 1000,
        )

    def test_hkdf_info_separates_keys(self) -> None:
        assert hkdf(b"material", b"one") != hkdf(b"material", b"two")
        assert len(hkdf(b"material", b"one", length=8)) == 8


class TestSymmetric:
    """AES-GCM sealing."""

    def test_seal_prepends_iv(self) -> None:
        key = random_bytes(32)
        blob = seal(b"payload", key)
        assert len(blob) == IV_LENGTH + len(b"payload") + 16
        assert unseal(blob, key) == b"payload"

    def test_unseal_wrong_key_raises(self) -> None:
        blob = seal(b"payload", random_bytes(32))
        with pytest.raises(InvalidTag):
            unseal(blob, random_bytes(32))

    def test_fresh_iv_each_time(self) -> None:
        key = random_bytes(32)
        assert seal(b"same", key) != seal(b"same", key)


class TestSignatures:
    """HMAC signing over canonical JSON."""

    def test_canonical_json_sorts_keys(self) -> None:
        assert canonical_json({"b": 1, "a": 2}) == b'{"a":2,"b":1}'

    def test_verify_accepts_own_signature(self) -> None:
        sig = hmac_sign(b"data", b"secret")
        assert hmac_verify(b"data", sig, b"secret")

    def test_verify_rejects_tampered_data(self) -> None:
        sig = hmac_sign(b"data", b"secret")
        assert not hmac_verify(b"datA", sig, b"secret")

    def test_verify_rejects_wrong_secret(self) -> None:
        sig = hmac_sign(b"data", b"secret")
        assert not hmac_verify(b"data", sig, b"other")

    def test_verify_rejects_non_ascii_signature(self) -> None:
        assert not hmac_verify(b"data", "é" * 64, b"secret")


class TestHybrid:
    """RSA-OAEP wrapped AES-GCM envelopes."""

    @pytest.fixture(scope="class")
    def keypairs(self) -> dict[str, tuple[str, bytes]]:
        return {"alpha": generate_rsa_keypair(), "beta": generate_rsa_keypair()}

    def test_every_recipient_can_open(self, keypairs) -> None:
        public = {rid: pair[0] for rid, pair in keypairs.items()}
        envelope = hybrid_encrypt(b"ledger changes", public)
        assert {rk["installation_id"] for rk in envelope["recipient_keys"]} == {"alpha", "beta"}
        for rid, (_, private) in keypairs.items():
            assert hybrid_decrypt(envelope, rid, private) == b"ledger changes"

    def test_non_recipient_gets_key_error(self, keypairs) -> None:
        envelope = hybrid_encrypt(b"x", {"alpha": keypairs["alpha"][0]})
        with pytest.raises(KeyError):
            hybrid_decrypt(envelope, "beta", keypairs["beta"][1])

    def test_wrong_private_key_fails(self, keypairs) -> None:
        envelope = hybrid_encrypt(b"x", {"alpha": keypairs["alpha"][0]})
        with pytest.raises(ValueError):
            hybrid_decrypt(envelope, "alpha", keypairs["beta"][1])
