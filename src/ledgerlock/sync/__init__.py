"""
Ledger Sync -- encrypted change records between linked installations.

Every push is encrypted for the linked devices before it leaves this
one. The server stores opaque envelopes and never sees the DEK.
"""

from .engine import SyncEngine
from .models import PullResult, SyncEnvelope, SyncStatus
from .transport import HttpSyncTransport, SyncTransport

__all__ = [
    "HttpSyncTransport",
    "PullResult",
    "SyncEngine",
    "SyncEnvelope",
    "SyncStatus",
    "SyncTransport",
]
