"""
Distribution ledger persistence.
"""

from .ledger import LedgerStore, JsonFileLedgerStore, InMemoryLedgerStore

__all__ = [
    "LedgerStore",
    "JsonFileLedgerStore",
    "InMemoryLedgerStore",
]
