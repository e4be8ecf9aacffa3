"""
Token holder enumeration with chunked account reads.
"""

from typing import List, Optional, Sequence

import structlog
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID

from reflector.core.exceptions import AccountDecodeError
from reflector.services.solana_client import LedgerRpc
from reflector.services.token_layout import ACCOUNT_LEN, TokenAccount, decode_token_account
from ..core.types import HolderAccount, MintInfo


logger = structlog.get_logger(__name__)


class TokenAccountScanner:
    """
    Scans every token account of a mint and decodes them in fixed-size chunks.

    Accounts that fail to decode are logged and skipped; a failure of the
    scan or of a chunk fetch propagates.
    """

    def __init__(self, rpc: LedgerRpc, chunk_size: int = 50):
        self.rpc = rpc
        self.chunk_size = chunk_size
        self.logger = logger.bind(service="token_account_scanner")

    async def scan(self, mint: MintInfo) -> List[TokenAccount]:
        # Legacy token accounts have a fixed size; Token-2022 ones vary with extensions
        data_size = ACCOUNT_LEN if mint.program_id == TOKEN_PROGRAM_ID else None
        addresses = await self.rpc.scan_mint_accounts(mint.program_id, mint.address, data_size)

        self.logger.info(
            "Token accounts found",
            mint=str(mint.address),
            count=len(addresses),
            chunk_size=self.chunk_size
        )
        return await self.fetch(addresses, mint.address)

    async def fetch(self, addresses: Sequence[Pubkey], mint: Optional[Pubkey] = None) -> List[TokenAccount]:
        """Fetch and decode `addresses` in chunks, skipping undecodable accounts."""
        decoded: List[TokenAccount] = []
        skipped = 0

        for i in range(0, len(addresses), self.chunk_size):
            chunk = list(addresses[i:i + self.chunk_size])
            infos = await self.rpc.get_multiple_accounts(chunk)

            for address, info in zip(chunk, infos):
                if info is None:
                    continue
                try:
                    account = decode_token_account(address, info.data)
                except AccountDecodeError as e:
                    skipped += 1
                    self.logger.warning(
                        "Failed to decode token account",
                        address=str(address),
                        error=e.message
                    )
                    continue

                if not account.is_initialized:
                    continue
                if mint is not None and account.mint != mint:
                    continue
                decoded.append(account)

        if skipped:
            self.logger.warning("Skipped undecodable token accounts", skipped=skipped)

        return decoded


class HolderReader:
    """Enumerates holders with a positive balance."""

    def __init__(self, rpc: LedgerRpc, chunk_size: int = 50):
        self.scanner = TokenAccountScanner(rpc, chunk_size)
        self.logger = logger.bind(service="holder_reader")

    async def get_holders(self, mint: MintInfo) -> List[HolderAccount]:
        accounts = await self.scanner.scan(mint)

        holders = [
            HolderAccount(address=account.address, owner=account.owner, balance=account.amount)
            for account in accounts
            if account.amount > 0
        ]

        self.logger.info(
            "Holder snapshot completed",
            accounts=len(accounts),
            holders=len(holders)
        )
        return holders
