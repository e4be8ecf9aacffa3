"""
Reflection distribution run.

Harvest -> (swap) -> snapshot holders -> filter -> allocate -> disburse -> record.
"""

from datetime import datetime, timezone
from typing import List, Optional

import structlog
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from reflector.core.config import Settings, parse_pubkey
from reflector.core.exceptions import InsufficientPoolError, ReflectorError
from reflector.services.solana_client import LedgerRpc
from .allocator import allocate
from .eligibility import filter_eligible, merge_by_owner, order_for_distribution
from .types import (
    Allocation,
    MintInfo,
    RemainderPolicy,
    RunOutcome,
    RunPhase,
    RunRecord,
    RunStats,
    RunStatus,
    SwapFailed,
)
from ..blockchain.balance_reader import BalanceReader
from ..blockchain.fee_harvester import FeeHarvester
from ..blockchain.holder_reader import HolderReader
from ..storage.ledger import LedgerStore
from ..swap.jupiter import JupiterSwapService
from ..transactions.disburser import BatchDisburser


logger = structlog.get_logger(__name__)


class ReflectionDistributor:
    """
    Runs one reflection distribution for the configured mint.

    Collaborators default to the ledger-backed implementations and can be
    replaced individually. The ledger lease is held from before harvesting
    until the run ends, whatever the outcome.
    """

    def __init__(
        self,
        settings: Settings,
        rpc: LedgerRpc,
        store: LedgerStore,
        treasury: Keypair,
        withdraw_authority: Optional[Keypair] = None,
        swapper: Optional[JupiterSwapService] = None,
        harvester: Optional[FeeHarvester] = None,
        holder_reader: Optional[HolderReader] = None,
        disburser: Optional[BatchDisburser] = None,
        balances: Optional[BalanceReader] = None
    ):
        self.settings = settings
        self.rpc = rpc
        self.store = store
        self.treasury = treasury
        self.swapper = swapper
        self._owns_swapper = swapper is None

        self.balances = balances or BalanceReader(rpc)
        self.harvester = harvester or FeeHarvester(
            rpc,
            withdraw_authority or treasury,
            chunk_size=settings.holder_fetch_chunk_size
        )
        self.holder_reader = holder_reader or HolderReader(rpc, settings.holder_fetch_chunk_size)
        self.disburser = disburser or BatchDisburser(
            rpc,
            treasury,
            batch_size=settings.disburse_batch_size,
            retry_failed=settings.retry_failed_batches,
            retry_attempts=settings.batch_retry_attempts
        )

        self.phase = RunPhase.IDLE
        self.stats = RunStats()
        self.logger = logger.bind(service="reflection_distributor")

    async def run(self) -> RunOutcome:
        """Execute one distribution. Fatal problems raise; skips return a status."""
        if self.phase != RunPhase.IDLE:
            raise ReflectorError(f"Distribution already running (phase: {self.phase.value})")

        fee_mint_address = self.settings.require_mint()
        reward_mint_address = self.settings.reward_mint()
        ledger_key = str(fee_mint_address)

        self.store.acquire(ledger_key)
        self.stats = RunStats(start_time=datetime.now(timezone.utc))

        try:
            self.logger.info(
                "Starting reflection distribution",
                treasury=str(self.treasury.pubkey()),
                fee_mint=str(fee_mint_address)
            )
            return await self._run(fee_mint_address, reward_mint_address, ledger_key)
        except Exception as e:
            self.logger.error("Reflection distribution failed", phase=self.phase.value, error=str(e))
            raise
        finally:
            self.stats.end_time = datetime.now(timezone.utc)
            self.logger.info("Reflection run finished", duration_seconds=round(self.stats.duration, 3))
            self.phase = RunPhase.IDLE
            self.store.release(ledger_key)
            if self._owns_swapper and self.swapper is not None:
                await self.swapper.close()
                self.swapper = None

    async def _run(self, fee_mint_address: Pubkey, reward_mint_address: Pubkey, ledger_key: str) -> RunOutcome:
        settings = self.settings
        state = self.store.load(ledger_key)

        fee_mint = await self.balances.read_mint(fee_mint_address)
        needs_swap = reward_mint_address != fee_mint_address
        reward_mint = await self.balances.read_mint(reward_mint_address) if needs_swap else fee_mint

        self.logger.info(
            "Mints loaded",
            fee_supply=fee_mint.supply,
            fee_decimals=fee_mint.decimals,
            fee_program=str(fee_mint.program_id),
            reward_mint=str(reward_mint.address),
            swap_required=needs_swap
        )

        self.phase = RunPhase.HARVESTING
        fee_pool = await self._collect_pool(fee_mint)
        self.logger.info("Fee pool available", pool=fee_pool, pool_ui=fee_mint.ui_amount(fee_pool))

        if fee_pool < settings.min_total_pool:
            self.logger.warning(
                "Fee pool below minimum, skipping distribution",
                pool=fee_pool,
                minimum=settings.min_total_pool
            )
            return RunOutcome(status=RunStatus.POOL_BELOW_MINIMUM, pool=fee_pool)

        pool = fee_pool
        if needs_swap:
            pool = await self._swap_pool(fee_mint, reward_mint, fee_pool)
            if pool < settings.min_total_pool:
                self.logger.warning(
                    "Reward pool below minimum, skipping distribution",
                    pool=pool,
                    minimum=settings.min_total_pool
                )
                return RunOutcome(status=RunStatus.POOL_BELOW_MINIMUM, pool=pool)
        else:
            self.logger.info("Using fee pool directly for distribution")

        # Eligibility is always measured on the fee mint
        self.phase = RunPhase.ENUMERATING
        holders = await self.holder_reader.get_holders(fee_mint)
        self.stats.holders_found = len(holders)

        self.phase = RunPhase.FILTERING
        eligible = filter_eligible(
            merge_by_owner(holders),
            settings.min_holding,
            settings.excluded_wallet_list,
            str(self.treasury.pubkey())
        )
        self.stats.eligible_holders = len(eligible)
        self.logger.info("Eligible holders", eligible=len(eligible), total=len(holders))

        if not eligible:
            self.logger.warning("No eligible holders for reflection")
            return RunOutcome(status=RunStatus.NO_ELIGIBLE_HOLDERS, pool=pool)

        self.phase = RunPhase.ALLOCATING
        allocations = self._allocate(eligible, pool)
        if not allocations:
            self.logger.warning("Every share rounds to zero, nothing to distribute", pool=pool)
            return RunOutcome(status=RunStatus.NOTHING_TO_DISTRIBUTE, pool=pool)

        self.phase = RunPhase.DISBURSING
        result = await self.disburser.disburse(allocations, reward_mint)
        for batch in result.failed_batches:
            self.logger.warning(
                "Batch not paid this run",
                recipients=[str(a.recipient) for a in batch],
                amount=sum(a.amount for a in batch)
            )

        self.phase = RunPhase.RECORDING
        record = RunRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            success_count=result.succeeded,
            fail_count=result.failed,
            total_distributed=result.total_paid,
            records=result.records
        )
        state.append(record)
        self.store.save(ledger_key, state)

        self.logger.info(
            "Distribution summary",
            successful=result.succeeded,
            failed=result.failed,
            total_distributed=result.total_paid,
            total_distributed_ui=reward_mint.ui_amount(result.total_paid),
            remaining_pool=pool - result.total_paid,
            lifetime_distributed=state.total_distributed,
            reward_mint=str(reward_mint.address)
        )
        self.logger.info("Distribution complete", success=True)

        return RunOutcome(status=RunStatus.COMPLETED, pool=pool, record=record)

    async def _collect_pool(self, fee_mint: MintInfo) -> int:
        """Harvest withheld fees and return the amount available for distribution."""
        treasury_owner = self.treasury.pubkey()

        if not self.settings.harvest_enabled:
            self.logger.info("Harvesting disabled, using treasury balance")
            return await self.balances.treasury_balance(treasury_owner, fee_mint)

        explicit = None
        if self.settings.harvest_account_list:
            explicit = [parse_pubkey("HARVEST_ACCOUNTS", a) for a in self.settings.harvest_account_list]

        harvest = await self.harvester.harvest(fee_mint, treasury_owner, explicit)
        self.stats.harvested = harvest.delta

        if self.settings.distribute_full_treasury:
            return harvest.post_balance
        return harvest.delta

    async def _swap_pool(self, fee_mint: MintInfo, reward_mint: MintInfo, amount: int) -> int:
        """Convert the fee pool into the reward token, falling back to the existing reward balance."""
        self.phase = RunPhase.SWAPPING
        if self.swapper is None:
            self.swapper = JupiterSwapService(
                self.rpc,
                self.treasury,
                base_url=self.settings.jupiter_api_url,
                timeout=self.settings.rpc_timeout
            )

        result = await self.swapper.convert_with_fallback(
            fee_mint, reward_mint, amount, self.settings.swap_slippage_bps
        )

        if not isinstance(result, SwapFailed):
            self.logger.info("Fee pool swapped", input_amount=amount, output_amount=result.amount)
            return result.amount

        self.phase = RunPhase.FALLBACK_CHECK
        self.stats.swap_used_fallback = True
        if result.fallback_amount is None:
            self.logger.error("No reward tokens available in treasury, cannot distribute", error=result.error)
            raise InsufficientPoolError(self.settings.min_total_pool, None)

        self.logger.info("Using existing treasury reward balance", pool=result.fallback_amount)
        return result.fallback_amount

    def _allocate(self, eligible, pool: int) -> List[Allocation]:
        ordered = order_for_distribution(eligible)
        # Holder reflections keep the rounding remainder in the treasury
        shares = allocate(
            [(holder.owner, holder.balance) for holder in ordered],
            pool,
            RemainderPolicy.DROP
        )
        allocations = [Allocation(recipient=owner, amount=amount) for owner, amount in shares]
        self.stats.allocations = len(allocations)

        limit = self.settings.max_distributions_per_run
        if len(allocations) > limit:
            self.stats.truncated_allocations = len(allocations) - limit
            self.logger.warning(
                "Limiting distributions for this run",
                limit=limit,
                total=len(allocations)
            )
            allocations = allocations[:limit]
        return allocations
