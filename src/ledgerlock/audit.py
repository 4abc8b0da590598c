"""
Security audit trail.

Every credential, linking and sync event is appended to
<home>/security/audit.log as one JSON object per line (JSONL), so the
log stays append-only and machine-parseable. Entries never contain
key material, PINs or tokens.
"""

from __future__ import annotations

import json
import logging
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("ledgerlock.audit")

AUDIT_LOG_NAME = "audit.log"


class AuditEntry(BaseModel):
    """A single structured audit log entry."""

    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    event_type: str
    detail: str
    host: str = Field(default_factory=socket.gethostname)
    metadata: Optional[dict] = None


def audit_event(
    home: Path,
    event_type: str,
    detail: str,
    metadata: Optional[dict] = None,
) -> Optional[AuditEntry]:
    """Append a structured event to the audit log.

    Audit is best effort: an unwritable log is reported at debug level
    and never fails the operation being audited.

    Args:
        home: Ledger home directory.
        event_type: Event category (PIN_SETUP, AUTH_FAILED, SYNC_PUSH, ...).
        detail: Human-readable description.
        metadata: Optional structured extras.

    Returns:
        The entry written, or None if the log could not be written.
    """
    entry = AuditEntry(event_type=event_type, detail=detail, metadata=metadata)
    try:
        security_dir = home / "security"
        security_dir.mkdir(parents=True, exist_ok=True)
        with (security_dir / AUDIT_LOG_NAME).open("a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")
    except OSError as exc:
        logger.debug("Audit log unavailable: %s — %s (%s)", event_type, detail, exc)
        return None
    return entry


def read_audit_log(home: Path, limit: int = 0) -> list[AuditEntry]:
    """Read the audit log.

    Args:
        home: Ledger home directory.
        limit: Maximum entries to return (0 = all). The newest are kept.

    Returns:
        Parsed entries in write order.
    """
    audit_log = home / "security" / AUDIT_LOG_NAME
    if not audit_log.exists():
        return []

    entries: list[AuditEntry] = []
    for line in audit_log.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(AuditEntry.model_validate(json.loads(line)))
        except ValueError:
            entries.append(AuditEntry(event_type="UNPARSEABLE", detail=line))

    if limit > 0:
        entries = entries[-limit:]
    return entries
