"""
Mint and token balance reads.
"""

from typing import Optional

import structlog
from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from reflector.core.exceptions import SolanaRPCError
from reflector.services.solana_client import LedgerRpc
from reflector.services.token_instructions import TOKEN_PROGRAMS
from reflector.services.token_layout import decode_mint, decode_token_account
from ..core.types import MintInfo


logger = structlog.get_logger(__name__)


class BalanceReader:
    """Reads mint metadata and token balances."""

    def __init__(self, rpc: LedgerRpc):
        self.rpc = rpc
        self.logger = logger.bind(service="balance_reader")

    async def read_mint(self, mint: Pubkey) -> MintInfo:
        """Read a mint; its owning program tells Token-2022 from legacy SPL."""
        account = await self.rpc.get_account(mint)
        if account is None:
            raise SolanaRPCError(f"Mint not found: {mint}", {"mint": str(mint)})
        if account.owner not in TOKEN_PROGRAMS:
            raise SolanaRPCError(
                f"Account {mint} is not owned by a token program",
                {"mint": str(mint), "owner": str(account.owner)}
            )

        decoded = decode_mint(mint, account.data)
        fee_config = decoded.transfer_fee_config

        info = MintInfo(
            address=mint,
            program_id=account.owner,
            decimals=decoded.decimals,
            supply=decoded.supply,
            fee_basis_points=fee_config.newer_transfer_fee.basis_points if fee_config else 0,
            max_fee=fee_config.newer_transfer_fee.maximum_fee if fee_config else 0,
            withheld_amount=fee_config.withheld_amount if fee_config else 0,
            has_transfer_fee=fee_config is not None,
        )

        self.logger.debug(
            "Mint loaded",
            mint=str(mint),
            program=str(info.program_id),
            decimals=info.decimals,
            supply=info.supply,
            fee_bps=info.fee_basis_points
        )
        return info

    async def read_token_balance(self, token_account: Pubkey) -> Optional[int]:
        """Balance of a token account, or None if it does not exist."""
        account = await self.rpc.get_account(token_account)
        if account is None:
            return None
        return decode_token_account(token_account, account.data).amount

    async def treasury_balance(self, owner: Pubkey, mint: MintInfo) -> int:
        """Balance of `owner`'s associated token account; 0 when absent."""
        ata = get_associated_token_address(owner, mint.address, token_program_id=mint.program_id)
        balance = await self.read_token_balance(ata)
        return balance or 0
