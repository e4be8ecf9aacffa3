"""
Types for reflection distribution.
"""

from datetime import datetime
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from solders.pubkey import Pubkey

from reflector.core.config import RUN_HISTORY_LIMIT


class RunStatus(Enum):
    """Terminal state of a distribution run."""
    COMPLETED = "completed"
    POOL_BELOW_MINIMUM = "pool_below_minimum"
    NO_ELIGIBLE_HOLDERS = "no_eligible_holders"
    NOTHING_TO_DISTRIBUTE = "nothing_to_distribute"


class RunPhase(Enum):
    """Orchestrator state machine phases."""
    IDLE = "idle"
    HARVESTING = "harvesting"
    ENUMERATING = "enumerating"
    FILTERING = "filtering"
    ALLOCATING = "allocating"
    SWAPPING = "swapping"
    FALLBACK_CHECK = "fallback_check"
    DISBURSING = "disbursing"
    RECORDING = "recording"


class RemainderPolicy(Enum):
    """What happens to the integer-division remainder of an allocation."""
    DROP = "drop"                      # stays with the payer (holder reflections)
    LAST_RECIPIENT = "last_recipient"  # last participant absorbs it (fee splits)


@dataclass(frozen=True)
class MintInfo:
    """Fee-bearing or reward mint as read from the ledger."""
    address: Pubkey
    program_id: Pubkey
    decimals: int
    supply: int
    fee_basis_points: int = 0
    max_fee: int = 0
    withheld_amount: int = 0
    has_transfer_fee: bool = False

    def ui_amount(self, amount: int) -> str:
        """Format base units with the mint decimals, trailing zeros trimmed."""
        return format_amount(amount, self.decimals)


@dataclass(frozen=True)
class HolderAccount:
    """One token account holding units of the mint."""
    address: Pubkey
    owner: Pubkey
    balance: int


@dataclass(frozen=True)
class Allocation:
    """Amount assigned to one participant."""
    recipient: Pubkey
    amount: int


@dataclass
class DistributionRecord:
    owner: str
    amount: int
    batch_ref: str

    def to_dict(self) -> Dict[str, Any]:
        return {"owner": self.owner, "amount": str(self.amount), "batchRef": self.batch_ref}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DistributionRecord":
        return cls(
            owner=data["owner"],
            amount=int(data["amount"]),
            batch_ref=data.get("batchRef") or data.get("signature", "")
        )


@dataclass
class DisbursementResult:
    """Outcome of a disbursement pass."""
    succeeded: int = 0
    failed: int = 0
    total_paid: int = 0
    records: List[DistributionRecord] = field(default_factory=list)
    failed_batches: List[List[Allocation]] = field(default_factory=list)


@dataclass
class RunRecord:
    """One run's outcome as persisted in the distribution ledger."""
    timestamp: str
    success_count: int
    fail_count: int
    total_distributed: int
    records: List[DistributionRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "successCount": self.success_count,
            "failCount": self.fail_count,
            "totalDistributed": str(self.total_distributed),
            "records": [record.to_dict() for record in self.records],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunRecord":
        return cls(
            timestamp=data["timestamp"],
            success_count=int(data.get("successCount", 0)),
            fail_count=int(data.get("failCount", 0)),
            total_distributed=int(data.get("totalDistributed", "0")),
            records=[DistributionRecord.from_dict(r) for r in data.get("records", [])]
        )


@dataclass
class LedgerState:
    """Persisted per-mint distribution state."""
    last_distribution: Optional[str] = None
    total_distributed: int = 0
    distributions: List[RunRecord] = field(default_factory=list)

    def append(self, record: RunRecord, limit: int = RUN_HISTORY_LIMIT) -> None:
        """Record a run; lifetime total never decreases, history keeps the newest `limit`."""
        self.last_distribution = record.timestamp
        self.total_distributed += record.total_distributed
        self.distributions.append(record)
        if len(self.distributions) > limit:
            self.distributions = self.distributions[-limit:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastDistribution": self.last_distribution,
            "totalDistributed": str(self.total_distributed),
            "distributions": [record.to_dict() for record in self.distributions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerState":
        return cls(
            last_distribution=data.get("lastDistribution"),
            total_distributed=int(data.get("totalDistributed", "0")),
            distributions=[RunRecord.from_dict(r) for r in data.get("distributions", [])]
        )


@dataclass(frozen=True)
class SwapOk:
    amount: int
    signature: str


@dataclass(frozen=True)
class SwapFailed:
    error: str
    fallback_amount: Optional[int] = None


SwapResult = Union[SwapOk, SwapFailed]


@dataclass
class HarvestResult:
    accounts_harvested: int = 0
    signatures: List[str] = field(default_factory=list)
    pre_balance: int = 0
    post_balance: int = 0

    @property
    def delta(self) -> int:
        return self.post_balance - self.pre_balance


@dataclass
class RunOutcome:
    status: RunStatus
    pool: int = 0
    record: Optional[RunRecord] = None


@dataclass
class RunStats:
    """Statistics collected during a run."""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    harvested: int = 0
    holders_found: int = 0
    eligible_holders: int = 0
    allocations: int = 0
    truncated_allocations: int = 0
    swap_used_fallback: bool = False

    @property
    def duration(self) -> float:
        if not self.start_time or not self.end_time:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()


def format_amount(amount: int, decimals: int) -> str:
    """Render base units as a decimal string without trailing zeros."""
    if decimals == 0:
        return str(amount)
    base = 10 ** decimals
    sign = "-" if amount < 0 else ""
    whole, fraction = divmod(abs(amount), base)
    if fraction == 0:
        return f"{sign}{whole}"
    return f"{sign}{whole}.{str(fraction).rjust(decimals, '0').rstrip('0')}"
