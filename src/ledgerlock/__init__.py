"""
LedgerLock — credential, key-management and sync core.

Protects a local-first finance ledger: PIN-derived keys, short-lived
session tokens, biometric key wrapping, device linking, and debounced
encrypted sync of change records.
"""

import os

__version__ = "0.1.0"

LEDGER_HOME = os.environ.get("LEDGERLOCK_HOME", "~/.ledgerlock")
