"""
Sync transports -- where encrypted envelopes go.

The engine only sees the SyncTransport interface. HttpSyncTransport
talks to the sync server:

    POST {api_url}/sync/push                       {"package": envelope}
    GET  {api_url}/sync/pull?installation_id&since -> {"packages": [...]}
    POST {api_url}/sync/ack                        {"package_ids": [...]}

All calls carry the installation jwt as a bearer token.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Union

import requests
from pydantic import ValidationError

from ..config import LedgerConfig
from ..errors import SyncTransportError
from .models import SyncEnvelope, SyncPackage

logger = logging.getLogger("ledgerlock.sync.transport")


class SyncTransport(ABC):
    """Abstract sync transport."""

    @abstractmethod
    def push(self, envelope: SyncEnvelope, jwt: str) -> None:
        """Upload one envelope.

        Raises:
            SyncTransportError: On any failure.
        """

    @abstractmethod
    def pull(self, installation_id: str, since: int, jwt: str) -> list[SyncPackage]:
        """Fetch envelopes addressed to installation_id.

        Raises:
            SyncTransportError: On any failure.
        """

    @abstractmethod
    def ack(self, package_ids: list[Union[int, str]], jwt: str) -> None:
        """Tell the server these packages were applied.

        Raises:
            SyncTransportError: On any failure.
        """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable transport name."""


class HttpSyncTransport(SyncTransport):
    """requests-based transport for the sync server.

    Args:
        config: api_url and sync_timeout.
    """

    def __init__(self, config: Optional[LedgerConfig] = None) -> None:
        self._config = config or LedgerConfig()

    @property
    def name(self) -> str:
        return f"http ({self._config.api_url})"

    def push(self, envelope: SyncEnvelope, jwt: str) -> None:
        self._api("POST", "/sync/push", jwt, data={"package": envelope.model_dump(mode="json")})

    def pull(self, installation_id: str, since: int, jwt: str) -> list[SyncPackage]:
        body = self._api(
            "GET", "/sync/pull", jwt,
            params={"installation_id": installation_id, "since": str(since)},
        ) or {}
        packages = []
        for raw in body.get("packages", []):
            try:
                packages.append(SyncPackage.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping malformed sync package: %s", exc)
        return packages

    def ack(self, package_ids: list[Union[int, str]], jwt: str) -> None:
        if package_ids:
            self._api("POST", "/sync/ack", jwt, data={"package_ids": package_ids})

    def _api(
        self,
        method: str,
        endpoint: str,
        jwt: str,
        data: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, str]] = None,
    ) -> Any:
        """Make an authenticated sync API request.

        Raises:
            SyncTransportError: On timeout, transport failure or status >= 400.
        """
        url = f"{self._config.api_url.rstrip('/')}{endpoint}"
        headers = {
            "Authorization": f"Bearer {jwt}",
            "Content-Type": "application/json",
        }
        try:
            resp = requests.request(
                method, url, headers=headers, json=data, params=params,
                timeout=self._config.sync_timeout,
            )
        except requests.Timeout as exc:
            raise SyncTransportError(f"Sync {method} {endpoint} timed out", timed_out=True) from exc
        except requests.RequestException as exc:
            raise SyncTransportError(f"Sync {method} {endpoint} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise SyncTransportError(
                f"Sync {method} {endpoint}: {resp.status_code} {resp.text}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise SyncTransportError(f"Sync {method} {endpoint}: invalid JSON") from exc
