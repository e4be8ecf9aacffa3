"""
Holder eligibility rules.
"""

from typing import Dict, Iterable, List, Sequence

from solders.pubkey import Pubkey

from .types import HolderAccount


# System program address; tokens owned by it are unrecoverable
BURN_ADDRESS = "11111111111111111111111111111111"


def filter_eligible(
    holders: Sequence[HolderAccount],
    min_holding: int,
    excluded_wallets: Iterable[str],
    treasury_wallet: str
) -> List[HolderAccount]:
    """
    Drop excluded owners and balances below `min_holding`.

    The exclusion set is the deny-list plus the treasury and burn address,
    compared case-insensitively. A balance equal to `min_holding` is
    eligible.
    """
    excluded = {wallet.lower() for wallet in excluded_wallets}
    excluded.add(treasury_wallet.lower())
    excluded.add(BURN_ADDRESS.lower())

    return [
        holder for holder in holders
        if str(holder.owner).lower() not in excluded and holder.balance >= min_holding
    ]


def merge_by_owner(holders: Iterable[HolderAccount]) -> List[HolderAccount]:
    """Combine token accounts of the same wallet, keeping first-seen order."""
    merged: Dict[Pubkey, HolderAccount] = {}
    for holder in holders:
        existing = merged.get(holder.owner)
        if existing is None:
            merged[holder.owner] = holder
        else:
            merged[holder.owner] = HolderAccount(
                address=existing.address,
                owner=holder.owner,
                balance=existing.balance + holder.balance
            )
    return list(merged.values())


def order_for_distribution(holders: Iterable[HolderAccount]) -> List[HolderAccount]:
    """Deterministic order: largest balance first, then owner address."""
    return sorted(holders, key=lambda h: (-h.balance, str(h.owner)))
