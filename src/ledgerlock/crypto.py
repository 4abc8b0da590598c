"""
Cryptographic helpers shared by the credential, biometric, linking and
sync modules.

    PIN       -> PBKDF2-HMAC-SHA256 -> MasterKey / PinHash
    MasterKey -> AES-256-GCM        -> wrapped DEK
    PRF       -> HKDF-SHA256        -> biometric KEK
    secret    -> HMAC-SHA256        -> session token signature
    RSA-OAEP  + AES-256-GCM         -> hybrid envelopes for other devices
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from typing import Any, Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SALT_LENGTH = 16
KEY_LENGTH = 32
IV_LENGTH = 12
RSA_KEY_SIZE = 2048


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------

def b64url_encode(data: bytes) -> str:
    """Unpadded base64url, as used in share links and stored bundles."""
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padded = text + "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def random_bytes(length: int) -> bytes:
    return secrets.token_bytes(length)


def zero(buf: Optional[bytearray]) -> None:
    """Overwrite a mutable key buffer in place."""
    if buf is None:
        return
    for i in range(len(buf)):
        buf[i] = 0


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def pbkdf2(pin: str, salt: bytes, iterations: int, length: int = KEY_LENGTH) -> bytes:
    """Derive key bytes from a PIN with PBKDF2-HMAC-SHA256.

    Args:
        pin: The user's PIN.
        salt: Account salt.
        iterations: Work factor.
        length: Output length in bytes.

    Returns:
        Derived key bytes.
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(pin.encode("utf-8"))


def derive_master_key(pin: str, salt: bytes, iterations: int) -> bytes:
    return pbkdf2(pin, salt, iterations)


def hash_pin(pin: str, salt: bytes, iterations: int) -> bytes:
    """Verification hash of a PIN.

    Uses one extra iteration so the stored hash never equals the
    MasterKey derived from the same (PIN, salt).
    """
    return pbkdf2(pin, salt, iterations + 1)


def hkdf(material: bytes, info: bytes, salt: Optional[bytes] = None, length: int = KEY_LENGTH) -> bytes:
    """Derive a key using HKDF-SHA256."""
    return HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info,
    ).derive(material)


# ---------------------------------------------------------------------------
# Symmetric encryption
# ---------------------------------------------------------------------------

def aes_gcm_encrypt(plaintext: bytes, key: bytes, aad: Optional[bytes] = None) -> tuple[bytes, bytes]:
    """Encrypt with AES-256-GCM under a fresh random IV.

    Returns:
        (iv, ciphertext-with-tag)
    """
    iv = random_bytes(IV_LENGTH)
    return iv, AESGCM(key).encrypt(iv, plaintext, aad)


def aes_gcm_decrypt(iv: bytes, ciphertext: bytes, key: bytes, aad: Optional[bytes] = None) -> bytes:
    """Decrypt AES-256-GCM. Raises cryptography's InvalidTag on mismatch."""
    return AESGCM(key).decrypt(iv, ciphertext, aad)


def seal(plaintext: bytes, key: bytes) -> bytes:
    """AES-GCM with the IV prepended: iv (12) || ciphertext || tag (16)."""
    iv, ct = aes_gcm_encrypt(plaintext, key)
    return iv + ct


def unseal(blob: bytes, key: bytes) -> bytes:
    return aes_gcm_decrypt(blob[:IV_LENGTH], blob[IV_LENGTH:], key)


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

def canonical_json(payload: Any) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def hmac_sign(data: bytes, secret: bytes) -> str:
    return hmac.new(secret, data, hashlib.sha256).hexdigest()


def hmac_verify(data: bytes, signature_hex: str, secret: bytes) -> bool:
    expected = hmac_sign(data, secret)
    try:
        return hmac.compare_digest(expected, signature_hex)
    except TypeError:
        # non-ASCII signature text
        return False


def constant_time_equal(a: bytes, b: bytes) -> bool:
    return hmac.compare_digest(a, b)


# ---------------------------------------------------------------------------
# Asymmetric (device linking, sync envelopes)
# ---------------------------------------------------------------------------

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


def generate_rsa_keypair() -> tuple[str, bytes]:
    """Generate an RSA-OAEP key pair.

    Returns:
        (public key as base64url SPKI DER, private key as PKCS8 DER)
    """
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    public_der = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    private_der = private_key.private_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return b64url_encode(public_der), private_der


def rsa_encrypt(data: bytes, public_key_b64: str) -> bytes:
    public_key = serialization.load_der_public_key(b64url_decode(public_key_b64))
    return public_key.encrypt(data, _OAEP)


def rsa_decrypt(data: bytes, private_der: bytes) -> bytes:
    private_key = serialization.load_der_private_key(private_der, password=None)
    return private_key.decrypt(data, _OAEP)


def hybrid_encrypt(plaintext: bytes, public_keys: dict[str, str]) -> dict[str, Any]:
    """Encrypt once, wrap the content key for each recipient.

    A fresh AES-256-GCM key encrypts the payload; RSA-OAEP wraps that
    key under every recipient's public key.

    Args:
        plaintext: Payload bytes.
        public_keys: Recipient id -> base64url public key.

    Returns:
        Dict with iv, ciphertext and recipient_keys (all base64url).
    """
    content_key = random_bytes(KEY_LENGTH)
    iv, ciphertext = aes_gcm_encrypt(plaintext, content_key)
    recipient_keys = [
        {"installation_id": rid, "encrypted_key": b64url_encode(rsa_encrypt(content_key, pub))}
        for rid, pub in public_keys.items()
    ]
    return {
        "iv": b64url_encode(iv),
        "ciphertext": b64url_encode(ciphertext),
        "recipient_keys": recipient_keys,
    }


def hybrid_decrypt(envelope: dict[str, Any], recipient_id: str, private_der: bytes) -> bytes:
    """Open a hybrid envelope addressed to recipient_id.

    Raises:
        KeyError: If the envelope has no key for this recipient.
    """
    wrapped = next(
        (rk["encrypted_key"] for rk in envelope.get("recipient_keys", [])
         if rk.get("installation_id") == recipient_id),
        None,
    )
    if wrapped is None:
        raise KeyError(f"No content key for recipient {recipient_id[:8]}")
    content_key = rsa_decrypt(b64url_decode(wrapped), private_der)
    return aes_gcm_decrypt(
        b64url_decode(envelope["iv"]),
        b64url_decode(envelope["ciphertext"]),
        content_key,
    )
