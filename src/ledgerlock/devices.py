"""
Device Link Manager — share links, installation registry, DEK hand-off.

Each installation has a uuid, an optional coordinator jwt and its own
RSA-OAEP key pair (private half sealed under the DEK). Linking a second
device:

    existing device                  coordinator                 new device
    create_share_link() ── /share?uuid=A&pub=PA ─────────────> consume_share_link()
                                                               setup(pin)  (provisional DEK)
                                  <── POST /register ──────── ensure_registered()
                                  <── POST /sync/init ─────── send_link_request()
    process_link_requests() <──── GET /sync/init                 {link_request, B, PB}
        link B, seal DEK for PB ─> POST /sync/init
                                     GET /sync/init ─────────> receive_dek()
                                                               adopt_dek(), pending sync

Payloads travel as hybrid envelopes: a fresh AES-256-GCM key encrypts
the message and RSA-OAEP wraps that key for the recipient. Unlinking is
local only and cannot revoke a DEK already handed out.
"""

from __future__ import annotations

import json
import logging
import uuid as uuidlib
from pathlib import Path
from typing import Any, Optional
from urllib.parse import parse_qs, urlencode, urlparse

import requests
from cryptography.exceptions import InvalidTag
from pydantic import BaseModel, Field, ValidationError

from .audit import audit_event
from .config import LedgerConfig
from .credentials import CredentialStore
from .crypto import (
    b64url_decode,
    b64url_encode,
    canonical_json,
    generate_rsa_keypair,
    hybrid_decrypt,
    hybrid_encrypt,
    seal,
    unseal,
)
from .errors import (
    CoordinatorError,
    InvalidShareLinkError,
    NotAuthenticatedError,
    RegistrationError,
)
from .storage import LocalStore, StorageKeys

logger = logging.getLogger("ledgerlock.devices")

SHARE_PATH = "/share"
DIRECT_RECIPIENT = "direct"


class KeyPair(BaseModel):
    """This installation's linking key pair as persisted."""

    public_key: str = Field(description="base64url SPKI DER")
    encrypted_private_key: str = Field(description="PKCS8 DER sealed under the DEK, base64url")


class InstallationData(BaseModel):
    """Identity of this installation with the coordinator."""

    id: str
    jwt: Optional[str] = None


class ShareLink(BaseModel):
    """Parsed share link."""

    uuid: str
    public_key: Optional[str] = None


class RegistrationResult(BaseModel):
    jwt: str


class LinkMessage(BaseModel):
    """Decrypted content of a /sync/init package."""

    kind: str = Field(description="link_request | introduce | dek_grant")
    uuid: str
    public_key: str = ""
    dek: Optional[str] = None


class LinkReport(BaseModel):
    """Outcome of one pass over the link inbox."""

    new_devices: list[str] = Field(default_factory=list)
    dek_received: bool = False
    processed: int = 0


# ---------------------------------------------------------------------------
# Hybrid envelopes
# ---------------------------------------------------------------------------

def seal_for(public_key: str, plaintext: bytes) -> dict[str, Any]:
    """Encrypt plaintext for the holder of public_key."""
    return hybrid_encrypt(plaintext, {DIRECT_RECIPIENT: public_key})


def open_sealed(private_key: bytes, envelope: dict[str, Any]) -> bytes:
    """Open an envelope made by seal_for().

    Raises:
        ValueError: If the envelope was not sealed for this key.
    """
    try:
        return hybrid_decrypt(envelope, DIRECT_RECIPIENT, private_key)
    except (KeyError, InvalidTag) as exc:
        raise ValueError(f"Envelope cannot be opened: {exc!r}") from exc


class DeviceLinkManager:
    """Creates and consumes share links and keeps the Installation map.

    Args:
        home: Ledger home directory.
        store: Local key-value entries (identity, key pair, share state, map).
        credentials: Holder of the DEK for sealing and adoption.
        config: Coordinator URL, share origin, registration timeout.
    """

    def __init__(
        self,
        home: Path,
        store: LocalStore,
        credentials: CredentialStore,
        config: Optional[LedgerConfig] = None,
    ) -> None:
        self._home = home
        self._store = store
        self._credentials = credentials
        self._config = config or LedgerConfig()

    # -------------------------------------------------------------------
    # Installation identity
    # -------------------------------------------------------------------

    def installation(self) -> Optional[InstallationData]:
        raw = self._store.get_json(StorageKeys.INSTALLATION_ID)
        if raw is None:
            return None
        try:
            return InstallationData.model_validate(raw)
        except ValidationError:
            logger.warning("Installation record unreadable; a new id will be issued")
            return None

    def ensure_installation_id(self) -> InstallationData:
        data = self.installation()
        if data is None:
            data = InstallationData(id=str(uuidlib.uuid4()))
            self._save_installation(data)
            logger.info("Generated installation id %s", data.id[:8])
        return data

    def register_installation(self, installation_id: str) -> RegistrationResult:
        """Register an installation id with the coordinator.

        Args:
            installation_id: The uuid to register.

        Returns:
            RegistrationResult carrying the coordinator jwt.

        Raises:
            RegistrationError: On timeout, transport failure, a non-2xx
                status or a response without a jwt. Always retryable.
        """
        url = f"{self._config.api_url.rstrip('/')}/register"
        try:
            resp = requests.request(
                "POST", url,
                json={"id": installation_id},
                timeout=self._config.registration_timeout,
            )
        except requests.Timeout as exc:
            raise RegistrationError("Registration timed out", timed_out=True) from exc
        except requests.RequestException as exc:
            raise RegistrationError(f"Registration failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise RegistrationError(
                f"Registration rejected: {resp.status_code}",
                status_code=resp.status_code,
            )
        try:
            result = RegistrationResult.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise RegistrationError(
                "Registration response has no jwt", status_code=resp.status_code,
            ) from exc

        audit_event(
            self._home, "INSTALLATION_REGISTER", "Installation registered",
            metadata={"installation_id": installation_id[:8]},
        )
        return result

    def ensure_registered(self) -> Optional[InstallationData]:
        """Launch-time registration retry and pending-link completion.

        Returns:
            The registered installation, or None while the coordinator
            is unreachable (try again next launch).
        """
        data = self.ensure_installation_id()
        if not data.jwt:
            try:
                result = self.register_installation(data.id)
            except RegistrationError as exc:
                logger.warning("Installation registration deferred: %s", exc)
                return None
            data = self.store_registration(data.id, result)

        self._complete_pending_link(data)
        return data

    def store_registration(self, installation_id: str, result: RegistrationResult) -> InstallationData:
        data = InstallationData(id=installation_id, jwt=result.jwt)
        self._save_installation(data)
        return data

    # -------------------------------------------------------------------
    # Key pair
    # -------------------------------------------------------------------

    def public_key(self) -> str:
        """This installation's public key, generating the pair on first use.

        Raises:
            NotAuthenticatedError: If the pair must be created while locked.
        """
        return self._ensure_key_pair().public_key

    def _ensure_key_pair(self) -> KeyPair:
        raw = self._store.get_json(StorageKeys.KEY_PAIR)
        if raw is not None:
            try:
                return KeyPair.model_validate(raw)
            except ValidationError:
                logger.warning("Stored key pair unreadable; generating a new one")
        public_key, private_der = generate_rsa_keypair()
        return self._save_key_pair(public_key, private_der)

    def _save_key_pair(self, public_key: str, private_der: bytes) -> KeyPair:
        pair = KeyPair(
            public_key=public_key,
            encrypted_private_key=b64url_encode(seal(private_der, self._credentials.dek)),
        )
        self._store.set_json(StorageKeys.KEY_PAIR, pair.model_dump())
        return pair

    def _private_key(self) -> bytes:
        pair = self._ensure_key_pair()
        return unseal(b64url_decode(pair.encrypted_private_key), self._credentials.dek)

    # -------------------------------------------------------------------
    # Share links
    # -------------------------------------------------------------------

    def create_share_link(self) -> str:
        """Build a share link for this installation.

        Registration is attempted but not required; an offline device can
        still hand out a link.

        Raises:
            NotAuthenticatedError: If the key pair must be created while locked.
        """
        data = self.ensure_installation_id()
        public_key = self.public_key()
        if not data.jwt:
            self.ensure_registered()

        query = urlencode({"uuid": data.id, "pub": public_key})
        link = f"{self._config.share_base_url.rstrip('/')}{SHARE_PATH}?{query}"
        audit_event(self._home, "SHARE_LINK_CREATE", "Share link created")
        return link

    def consume_share_link(self, url: str) -> ShareLink:
        """Parse a share link and remember it until PIN setup completes.

        Raises:
            InvalidShareLinkError: If the path is not /share or uuid is missing.
        """
        link = parse_share_link(url)
        own = self.installation()
        if own is not None and own.id == link.uuid:
            raise InvalidShareLinkError("Share link points at this installation")

        self._store.set(StorageKeys.SHARED_UUID, link.uuid)
        if link.public_key:
            self._store.set(StorageKeys.SHARED_PUBLIC_KEY, link.public_key)
        else:
            self._store.delete(StorageKeys.SHARED_PUBLIC_KEY)
        self._store.set(StorageKeys.PENDING_INITIAL_SYNC, "1")
        audit_event(
            self._home, "SHARE_LINK_CONSUME", "Share link accepted",
            metadata={"uuid": link.uuid[:8]},
        )
        return link

    def pending_share(self) -> Optional[ShareLink]:
        shared = self._store.get(StorageKeys.SHARED_UUID)
        if not shared:
            return None
        return ShareLink(uuid=shared, public_key=self._store.get(StorageKeys.SHARED_PUBLIC_KEY))

    # -------------------------------------------------------------------
    # Installation map
    # -------------------------------------------------------------------

    def list_installations(self) -> dict[str, str]:
        """Installation id -> public key. Upgrades the legacy id list form."""
        raw = self._store.get_json(StorageKeys.LINKED_INSTALLATIONS)
        if raw is None:
            return {}
        if isinstance(raw, list):
            upgraded = {str(i): "" for i in raw}
            self._store.set_json(StorageKeys.LINKED_INSTALLATIONS, upgraded)
            logger.info("Upgraded %d legacy linked installations", len(upgraded))
            return upgraded
        if isinstance(raw, dict):
            return {str(k): str(v or "") for k, v in raw.items()}
        return {}

    def link_installation(self, installation_id: str, public_key: str = "") -> None:
        installations = self.list_installations()
        if public_key or installation_id not in installations:
            installations[installation_id] = public_key
        self._store.set_json(StorageKeys.LINKED_INSTALLATIONS, installations)
        audit_event(
            self._home, "INSTALLATION_LINK", "Installation linked",
            metadata={"installation_id": installation_id[:8]},
        )

    def unlink_installation(self, installation_id: str) -> bool:
        """Forget an installation locally. Returns True if it was linked."""
        installations = self.list_installations()
        if installation_id not in installations:
            return False
        del installations[installation_id]
        self._store.set_json(StorageKeys.LINKED_INSTALLATIONS, installations)
        audit_event(
            self._home, "INSTALLATION_UNLINK", "Installation unlinked",
            metadata={"installation_id": installation_id[:8]},
        )
        return True

    def sync_recipients(self) -> dict[str, str]:
        """Linked installations with a known public key."""
        return {k: v for k, v in self.list_installations().items() if v}

    def open_addressed(self, envelope: dict[str, Any]) -> bytes:
        """Decrypt a multi-recipient envelope addressed to this installation.

        Raises:
            KeyError: If the envelope carries no key for this installation.
            NotAuthenticatedError: If locked.
        """
        own = self.ensure_installation_id()
        return hybrid_decrypt(envelope, own.id, self._private_key())

    # -------------------------------------------------------------------
    # Link handshake
    # -------------------------------------------------------------------

    def send_link_request(self, target_uuid: str, target_public_key: str) -> None:
        """Introduce this installation to the device that shared a link.

        Raises:
            CoordinatorError: If not registered or the coordinator refuses.
            NotAuthenticatedError: If locked (own key pair needed).
        """
        data = self.installation()
        if data is None or not data.jwt:
            raise CoordinatorError("Installation not registered")
        message = LinkMessage(kind="link_request", uuid=data.id, public_key=self.public_key())
        self._post_message(data.jwt, target_uuid, target_public_key, message)

    def process_link_requests(self) -> LinkReport:
        """Handle every package waiting in this installation's link inbox.

        link_request: link the sender, grant it the DEK, introduce it to
        the other linked devices. introduce: link the named device.
        dek_grant: adopt the account DEK from an already linked device.

        Raises:
            CoordinatorError: If the inbox cannot be fetched.
        """
        report = LinkReport()
        data = self.installation()
        if data is None or not data.jwt or not self._credentials.is_unlocked:
            return report

        packages = self._coordinator(
            "GET", "/sync/init", data.jwt, params={"uuid": data.id},
        ) or []
        private_key = self._private_key()
        done: list[int] = []

        for package in packages:
            package_id = package.get("id")
            try:
                envelope = json.loads(b64url_decode(package["encrypted_payload"]))
                message = LinkMessage.model_validate_json(open_sealed(private_key, envelope))
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Discarding unreadable link package %s: %s", package_id, exc)
                done.append(package_id)
                continue

            if message.kind == "link_request":
                self._accept_link_request(data, message)
                report.new_devices.append(message.uuid)
            elif message.kind == "introduce":
                self.link_installation(message.uuid, message.public_key)
                report.new_devices.append(message.uuid)
            elif message.kind == "dek_grant":
                if not self._adopt_granted_dek(message, private_key):
                    continue
                report.dek_received = True
            else:
                logger.warning("Unknown link package kind %r", message.kind)
            done.append(package_id)

        if done:
            self._coordinator("DELETE", "/sync/init", data.jwt, {"ids": done})
        report.processed = len(done)
        return report

    def receive_dek(self) -> bool:
        """New-device side: poll the inbox until the DEK grant arrives."""
        return self.process_link_requests().dek_received

    # -------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------

    def _save_installation(self, data: InstallationData) -> None:
        self._store.set_json(StorageKeys.INSTALLATION_ID, data.model_dump())

    def _complete_pending_link(self, data: InstallationData) -> None:
        pending = self.pending_share()
        if pending is None:
            return
        if pending.public_key:
            if not self._credentials.is_unlocked:
                return
            try:
                self.send_link_request(pending.uuid, pending.public_key)
            except CoordinatorError as exc:
                logger.warning("Link request deferred: %s", exc)
                return

        self.link_installation(pending.uuid, pending.public_key or "")
        self._store.delete(StorageKeys.SHARED_UUID)
        self._store.delete(StorageKeys.SHARED_PUBLIC_KEY)
        self._store.set(StorageKeys.PENDING_INITIAL_SYNC, "1")
        logger.info("Linked to %s; waiting for initial sync", pending.uuid[:8])

    def _accept_link_request(self, own: InstallationData, message: LinkMessage) -> None:
        existing = self.sync_recipients()
        self.link_installation(message.uuid, message.public_key)
        if not message.public_key:
            return

        own_public = self.public_key()
        grant = LinkMessage(
            kind="dek_grant", uuid=own.id, public_key=own_public,
            dek=b64url_encode(self._credentials.dek),
        )
        self._post_message(own.jwt, message.uuid, message.public_key, grant)

        for other_id, other_pub in existing.items():
            if other_id in (message.uuid, own.id):
                continue
            try:
                self._post_message(
                    own.jwt, other_id, other_pub,
                    LinkMessage(kind="introduce", uuid=message.uuid, public_key=message.public_key),
                )
                self._post_message(
                    own.jwt, message.uuid, message.public_key,
                    LinkMessage(kind="introduce", uuid=other_id, public_key=other_pub),
                )
            except CoordinatorError as exc:
                logger.warning("Introduction to %s failed: %s", other_id[:8], exc)

    def _adopt_granted_dek(self, message: LinkMessage, private_key: bytes) -> bool:
        if message.uuid not in self.list_installations() or not message.dek:
            logger.warning("Ignoring DEK grant from unlinked installation %s", message.uuid[:8])
            return True
        pair = self._ensure_key_pair()
        try:
            self._credentials.adopt_dek(b64url_decode(message.dek))
        except NotAuthenticatedError:
            logger.info("DEK grant waits for a PIN login")
            return False
        self._save_key_pair(pair.public_key, private_key)
        if message.public_key:
            self.link_installation(message.uuid, message.public_key)
        return True

    def _post_message(
        self, jwt: Optional[str], target_uuid: str, target_public_key: str, message: LinkMessage,
    ) -> None:
        envelope = seal_for(target_public_key, message.model_dump_json().encode("utf-8"))
        self._coordinator(
            "POST", "/sync/init", jwt,
            {"target_uuid": target_uuid, "encrypted_payload": b64url_encode(canonical_json(envelope))},
        )

    def _coordinator(
        self,
        method: str,
        endpoint: str,
        jwt: Optional[str],
        data: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> Any:
        """Call the coordinator's handshake API.

        Raises:
            CoordinatorError: On transport failure or a non-2xx status.
        """
        url = f"{self._config.api_url.rstrip('/')}{endpoint}"
        headers = {"Authorization": f"Bearer {jwt}", "Content-Type": "application/json"}
        try:
            resp = requests.request(
                method, url, headers=headers, json=data, params=params,
                timeout=self._config.sync_timeout,
            )
        except requests.Timeout as exc:
            raise CoordinatorError(f"{method} {endpoint} timed out", timed_out=True) from exc
        except requests.RequestException as exc:
            raise CoordinatorError(f"{method} {endpoint} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise CoordinatorError(
                f"Coordinator {method} {endpoint}: {resp.status_code}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError:
            return None


def parse_share_link(url: str) -> ShareLink:
    """Extract uuid and optional pub from a share link.

    Raises:
        InvalidShareLinkError: If the path is not /share or uuid is missing.
    """
    try:
        parsed = urlparse(url.strip())
    except ValueError as exc:
        raise InvalidShareLinkError(f"Unparseable share link: {exc}") from exc
    if parsed.path.rstrip("/") != SHARE_PATH:
        raise InvalidShareLinkError("Share link path must be /share")
    query = parse_qs(parsed.query)
    uuid_value = (query.get("uuid") or [""])[0].strip()
    if not uuid_value:
        raise InvalidShareLinkError("Share link has no uuid")
    pub = (query.get("pub") or [""])[0].strip() or None
    return ShareLink(uuid=uuid_value, public_key=pub)
