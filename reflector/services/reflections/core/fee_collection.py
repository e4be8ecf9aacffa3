"""
One-shot withheld fee collection with an optional split to downstream wallets.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

import structlog
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from reflector.core.config import SplitRecipient
from reflector.core.exceptions import ConfigurationError, ReflectorError
from reflector.services.solana_client import LedgerRpc
from .allocator import allocate
from .types import Allocation, DisbursementResult, HarvestResult, MintInfo, RemainderPolicy
from ..blockchain.balance_reader import BalanceReader
from ..blockchain.fee_harvester import FeeHarvester
from ..transactions.disburser import BatchDisburser


logger = structlog.get_logger(__name__)


@dataclass
class FeeCollectionResult:
    mint: MintInfo
    harvest: HarvestResult
    distribution: Optional[DisbursementResult] = None

    @property
    def collected(self) -> int:
        return self.harvest.delta


class FeeCollectionJob:
    """
    Harvests withheld fees into the treasury, then optionally splits the
    collected amount by weight.

    The split gives the last recipient the rounding remainder so the whole
    collected amount leaves the treasury, and all transfers go out in a
    single atomic transaction.
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        authority: Keypair,
        treasury_owner: Pubkey,
        mint: Pubkey,
        explicit_accounts: Optional[Sequence[Pubkey]] = None,
        split: Optional[List[SplitRecipient]] = None,
        treasury_authority: Optional[Keypair] = None,
        program_id: Optional[Pubkey] = None,
        harvester: Optional[FeeHarvester] = None
    ):
        self.rpc = rpc
        self.authority = authority
        self.treasury_owner = treasury_owner
        self.mint = mint
        self.explicit_accounts = explicit_accounts
        self.split = split or []
        self.treasury_authority = treasury_authority
        self.program_id = program_id
        self.balances = BalanceReader(rpc)
        self.harvester = harvester or FeeHarvester(rpc, authority)
        self.logger = logger.bind(service="fee_collection")

    def resolve_treasury_signer(self) -> Keypair:
        """Keypair allowed to move funds out of the treasury account."""
        if self.treasury_owner == self.authority.pubkey():
            return self.authority
        if self.treasury_authority is None:
            raise ConfigurationError(
                "Split distribution requires signing authority for the treasury account owner. "
                "Provide --treasury-authority or ensure the withdraw authority owns the treasury account."
            )
        if self.treasury_authority.pubkey() != self.treasury_owner:
            raise ConfigurationError(
                f"Provided treasury authority ({self.treasury_authority.pubkey()}) "
                f"does not own the treasury account ({self.treasury_owner})"
            )
        return self.treasury_authority

    def split_allocations(self, amount: int) -> List[Allocation]:
        # Split recipients absorb the remainder on the last entry
        shares = allocate(
            [(recipient.wallet, recipient.bps) for recipient in self.split],
            amount,
            RemainderPolicy.LAST_RECIPIENT
        )
        return [Allocation(recipient=wallet, amount=share) for wallet, share in shares]

    async def run(self) -> FeeCollectionResult:
        # Fail before harvesting if the split could never be signed
        treasury_signer = self.resolve_treasury_signer() if self.split else None

        mint_info = await self.balances.read_mint(self.mint)
        if self.program_id is not None and mint_info.program_id != self.program_id:
            raise ConfigurationError(
                f"Mint {self.mint} is owned by {mint_info.program_id}, not {self.program_id}"
            )

        self.logger.info(
            "Collecting transfer fees",
            mint=str(self.mint),
            program=str(mint_info.program_id),
            treasury_owner=str(self.treasury_owner)
        )

        harvest = await self.harvester.harvest(mint_info, self.treasury_owner, self.explicit_accounts)
        result = FeeCollectionResult(mint=mint_info, harvest=harvest)

        self.logger.info(
            "Fees collected into treasury",
            collected=harvest.delta,
            collected_ui=mint_info.ui_amount(harvest.delta),
            success=True
        )

        if not self.split or harvest.delta <= 0:
            return result

        allocations = self.split_allocations(harvest.delta)
        disburser = BatchDisburser(
            self.rpc,
            treasury_signer,
            batch_size=max(len(allocations), 1),
            payer=self.authority
        )
        result.distribution = await disburser.disburse(allocations, mint_info)
        if result.distribution.failed:
            raise ReflectorError(
                "Split distribution transaction failed; collected fees remain in the treasury",
                "SPLIT_FAILED",
                {"collected": harvest.delta}
            )

        for allocation in allocations:
            self.logger.info(
                "Split share",
                recipient=str(allocation.recipient),
                amount=allocation.amount,
                amount_ui=mint_info.ui_amount(allocation.amount)
            )
        return result
