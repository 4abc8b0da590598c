"""
Sync data models -- envelopes on the wire and engine state on disk.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field


class RecipientKey(BaseModel):
    """Content key wrapped for one linked installation."""

    installation_id: str
    encrypted_key: str


class SyncEnvelope(BaseModel):
    """A batch of change records encrypted for every linked installation.

    The payload is one AES-256-GCM ciphertext; its key is wrapped with
    RSA-OAEP once per recipient. The server only ever sees this.
    """

    sender_id: str
    iv: str
    ciphertext: str
    recipient_keys: list[RecipientKey] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def recipients(self) -> list[str]:
        return [rk.installation_id for rk in self.recipient_keys]


class SyncPackage(BaseModel):
    """A pulled envelope with the server-side id used for ack."""

    id: Union[int, str]
    package: SyncEnvelope


class SyncStatus(BaseModel):
    """Persisted engine state, observable by the UI."""

    last_push_at: Optional[datetime] = None
    last_pull_at: Optional[datetime] = None
    last_push_cursor: int = Field(default=0, description="Highest local seq pushed")
    last_error: Optional[str] = None
    pushes: int = 0
    pulls: int = 0
    failures: int = 0
    is_pushing: bool = Field(default=False, exclude=True)
    pending_initial_sync: bool = Field(default=False, exclude=True)


class PullResult(BaseModel):
    """Outcome of one pull pass."""

    received: int = 0
    applied: int = 0
    acked: list[Union[int, str]] = Field(default_factory=list)
    rejected: list[Union[int, str]] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None
