"""
Core reflection components.
"""

from .types import RunStatus, RunStats, RemainderPolicy, MintInfo, HolderAccount, Allocation
from .allocator import allocate
from .eligibility import filter_eligible, merge_by_owner, order_for_distribution

__all__ = [
    "RunStatus",
    "RunStats",
    "RemainderPolicy",
    "MintInfo",
    "HolderAccount",
    "Allocation",
    "allocate",
    "filter_eligible",
    "merge_by_owner",
    "order_for_distribution",
]
