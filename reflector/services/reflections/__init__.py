"""
Reflection distribution: fee harvesting, holder allocation and payouts.
"""

from .core.distributor import ReflectionDistributor
from .core.fee_collection import FeeCollectionJob, FeeCollectionResult
from .storage.ledger import InMemoryLedgerStore, JsonFileLedgerStore, LedgerStore

__all__ = [
    "ReflectionDistributor",
    "FeeCollectionJob",
    "FeeCollectionResult",
    "LedgerStore",
    "JsonFileLedgerStore",
    "InMemoryLedgerStore",
]
