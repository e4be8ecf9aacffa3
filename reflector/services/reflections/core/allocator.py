"""
Integer-exact proportional allocation.
"""

from typing import Hashable, List, Sequence, Tuple, TypeVar

from .types import RemainderPolicy


T = TypeVar("T", bound=Hashable)


def allocate(
    participants: Sequence[Tuple[T, int]],
    pool: int,
    remainder_policy: RemainderPolicy = RemainderPolicy.DROP
) -> List[Tuple[T, int]]:
    """
    Split `pool` across weighted participants.

    Each participant gets floor(weight * pool / total_weight), in input
    order; zero amounts are dropped. With RemainderPolicy.DROP the
    truncation remainder is left unallocated, so the sum may be below
    `pool`. With RemainderPolicy.LAST_RECIPIENT the last participant
    receives whatever is left, so the sum equals `pool`.
    """
    if pool < 0:
        raise ValueError(f"Pool must be non-negative, got {pool}")
    for _, weight in participants:
        if weight < 0:
            raise ValueError(f"Weight must be non-negative, got {weight}")

    total_weight = sum(weight for _, weight in participants)
    if total_weight == 0 or pool == 0:
        return []

    allocations: List[Tuple[T, int]] = []
    remaining = pool
    last_index = len(participants) - 1

    for index, (participant, weight) in enumerate(participants):
        amount = weight * pool // total_weight
        if remainder_policy is RemainderPolicy.LAST_RECIPIENT and index == last_index:
            amount = remaining
        if amount <= 0:
            continue
        remaining -= amount
        allocations.append((participant, amount))

    return allocations
