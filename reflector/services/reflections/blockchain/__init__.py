"""
Ledger reads and fee harvesting.
"""

from .balance_reader import BalanceReader
from .holder_reader import HolderReader, TokenAccountScanner
from .fee_harvester import FeeHarvester

__all__ = [
    "BalanceReader",
    "HolderReader",
    "TokenAccountScanner",
    "FeeHarvester",
]
