"""
Withheld transfer fee harvesting into the treasury.
"""

from typing import List, Optional, Sequence

import structlog
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_2022_PROGRAM_ID
from spl.token.instructions import create_idempotent_associated_token_account, get_associated_token_address

from reflector.core.config import HARVEST_ACCOUNTS_PER_TX
from reflector.core.exceptions import HarvestError, SolanaRPCError
from reflector.services.solana_client import LedgerRpc
from reflector.services.token_instructions import (
    withdraw_withheld_tokens_from_accounts,
    withdraw_withheld_tokens_from_mint,
)
from .balance_reader import BalanceReader
from .holder_reader import TokenAccountScanner
from ..core.types import HarvestResult, MintInfo


logger = structlog.get_logger(__name__)


class FeeHarvester:
    """
    Withdraws withheld fees from token accounts and from the mint pool.

    The returned delta is measured on the treasury account (post minus pre
    balance) rather than summed from the withdrawn amounts.
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        authority: Keypair,
        chunk_size: int = 50,
        accounts_per_tx: int = HARVEST_ACCOUNTS_PER_TX
    ):
        self.rpc = rpc
        self.authority = authority
        self.accounts_per_tx = accounts_per_tx
        self.balances = BalanceReader(rpc)
        self.scanner = TokenAccountScanner(rpc, chunk_size)
        self.logger = logger.bind(service="fee_harvester")

    async def discover_withheld_accounts(self, mint: MintInfo) -> List[Pubkey]:
        """Token accounts of `mint` whose withheld fee balance is non-zero."""
        accounts = await self.scanner.scan(mint)
        candidates = [account.address for account in accounts if account.withheld_amount > 0]

        self.logger.info(
            "Withheld fee accounts discovered",
            scanned=len(accounts),
            with_withheld_fees=len(candidates)
        )
        return candidates

    async def harvest(
        self,
        mint: MintInfo,
        treasury_owner: Pubkey,
        explicit_accounts: Optional[Sequence[Pubkey]] = None
    ) -> HarvestResult:
        """Collect withheld fees of `mint` into `treasury_owner`'s token account."""
        treasury_ata = get_associated_token_address(
            treasury_owner, mint.address, token_program_id=mint.program_id
        )
        pre_balance = await self.balances.read_token_balance(treasury_ata)

        result = HarvestResult(pre_balance=pre_balance or 0, post_balance=pre_balance or 0)

        if mint.program_id != TOKEN_2022_PROGRAM_ID or not mint.has_transfer_fee:
            self.logger.warning(
                "Mint has no transfer fee extension, skipping harvest",
                mint=str(mint.address)
            )
            return result

        if pre_balance is None:
            self.logger.info("Creating treasury token account", treasury_ata=str(treasury_ata))
            await self._submit(
                [create_idempotent_associated_token_account(
                    payer=self.authority.pubkey(),
                    owner=treasury_owner,
                    mint=mint.address,
                    token_program_id=mint.program_id
                )],
                "create_treasury_account"
            )

        if explicit_accounts is not None:
            sources = list(explicit_accounts)
        else:
            sources = await self.discover_withheld_accounts(mint)

        self.logger.info("Accounts to harvest", count=len(sources))

        for i in range(0, len(sources), self.accounts_per_tx):
            chunk = sources[i:i + self.accounts_per_tx]
            signature = await self._submit(
                [withdraw_withheld_tokens_from_accounts(
                    mint.address, treasury_ata, self.authority.pubkey(), chunk, mint.program_id
                )],
                "withdraw_from_accounts"
            )
            result.signatures.append(signature)
            result.accounts_harvested += len(chunk)
            self.logger.info(
                "Withheld fees withdrawn from accounts",
                accounts=len(chunk),
                signature=signature,
                success=True
            )

        refreshed = await self.balances.read_mint(mint.address)
        if refreshed.withheld_amount > 0:
            signature = await self._submit(
                [withdraw_withheld_tokens_from_mint(
                    mint.address, treasury_ata, self.authority.pubkey(), mint.program_id
                )],
                "withdraw_from_mint"
            )
            result.signatures.append(signature)
            self.logger.info(
                "Withheld fees withdrawn from mint pool",
                withheld=refreshed.withheld_amount,
                signature=signature,
                success=True
            )

        post_balance = await self.balances.read_token_balance(treasury_ata)
        result.post_balance = post_balance or 0

        self.logger.info(
            "Harvest completed",
            treasury_ata=str(treasury_ata),
            collected=result.delta,
            collected_ui=mint.ui_amount(result.delta),
            pre_balance=result.pre_balance,
            post_balance=result.post_balance
        )
        return result

    async def _submit(self, instructions, operation: str) -> str:
        try:
            return await self.rpc.submit_atomic_batch(instructions, [self.authority], self.authority)
        except SolanaRPCError as e:
            self.logger.error("Harvest transaction failed", operation=operation, error=e.message)
            raise HarvestError(
                f"Harvest step {operation} failed: {e.message}",
                {"operation": operation, **e.details}
            )
