"""
Solana RPC client service for the reflection engine.
Exposes the small capability set the engine needs: account reads,
mint-filtered program scans and atomic transaction submission.
"""

from typing import List, Optional, Sequence
from dataclasses import dataclass

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solana.rpc.types import DataSliceOpts, MemcmpOpts, TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
import structlog

from reflector.core.exceptions import SolanaRPCError


logger = structlog.get_logger(__name__)


@dataclass
class AccountInfo:
    """Account information from Solana blockchain."""
    pubkey: Pubkey
    lamports: int
    owner: Pubkey
    data: bytes


class LedgerRpc:
    """
    Async Solana RPC client for the distribution job.

    Provides high-level methods for:
    - Reading single and multiple accounts
    - Scanning token accounts of a mint
    - Submitting and confirming atomic transactions
    """

    def __init__(self, endpoint: str, commitment: str = "confirmed", timeout: int = 30):
        """Initialize Solana client with configuration."""
        self.endpoint = endpoint
        self.commitment = Commitment(commitment)
        self.client = AsyncClient(
            endpoint=endpoint,
            commitment=self.commitment,
            timeout=timeout
        )
        self.logger = logger.bind(service="ledger_rpc")

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def close(self):
        """Close the RPC client connection."""
        await self.client.close()

    async def get_account(self, address: Pubkey) -> Optional[AccountInfo]:
        """Get account information, or None if the account does not exist."""
        try:
            response = await self.client.get_account_info(address, commitment=self.commitment)
        except Exception as e:
            self.logger.error("Failed to get account info", address=str(address), error=str(e))
            raise SolanaRPCError(f"Failed to get account info: {e}", {"address": str(address)})

        account = response.value
        if not account:
            return None

        return AccountInfo(
            pubkey=address,
            lamports=account.lamports,
            owner=account.owner,
            data=bytes(account.data)
        )

    async def get_multiple_accounts(self, addresses: Sequence[Pubkey]) -> List[Optional[AccountInfo]]:
        """Get several accounts in one round trip; missing accounts are None."""
        try:
            response = await self.client.get_multiple_accounts(
                list(addresses),
                commitment=self.commitment
            )
        except Exception as e:
            self.logger.error("Failed to get multiple accounts", count=len(addresses), error=str(e))
            raise SolanaRPCError(f"Failed to get multiple accounts: {e}", {"count": len(addresses)})

        accounts: List[Optional[AccountInfo]] = []
        for address, account in zip(addresses, response.value):
            if account is None:
                accounts.append(None)
                continue
            accounts.append(AccountInfo(
                pubkey=address,
                lamports=account.lamports,
                owner=account.owner,
                data=bytes(account.data)
            ))
        return accounts

    async def scan_mint_accounts(
        self,
        program_id: Pubkey,
        mint: Pubkey,
        data_size: Optional[int] = None
    ) -> List[Pubkey]:
        """
        List addresses of every token account of `mint` owned by `program_id`.

        Only addresses are returned (zero-length data slice); callers fetch
        account data in chunks.
        """
        filters: list = [MemcmpOpts(offset=0, bytes=str(mint))]
        if data_size is not None:
            filters.insert(0, data_size)

        try:
            response = await self.client.get_program_accounts(
                program_id,
                commitment=self.commitment,
                encoding="base64",
                data_slice=DataSliceOpts(offset=0, length=0),
                filters=filters
            )
        except Exception as e:
            self.logger.error(
                "Failed to scan mint accounts",
                program_id=str(program_id),
                mint=str(mint),
                error=str(e)
            )
            raise SolanaRPCError(
                f"Failed to scan token accounts: {e}",
                {"program_id": str(program_id), "mint": str(mint)}
            )

        return [keyed.pubkey for keyed in response.value]

    async def get_latest_blockhash(self) -> Hash:
        try:
            response = await self.client.get_latest_blockhash(commitment=self.commitment)
            return response.value.blockhash
        except Exception as e:
            raise SolanaRPCError(f"Failed to get latest blockhash: {e}")

    async def is_blockhash_valid(self, blockhash: Hash) -> bool:
        """Whether a transaction built on `blockhash` could still land."""
        try:
            response = await self.client.is_blockhash_valid(blockhash, commitment=self.commitment)
        except Exception as e:
            raise SolanaRPCError(f"Failed to check blockhash: {e}", {"blockhash": str(blockhash)})
        return bool(response.value)

    async def send_instructions(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        payer: Keypair,
        recent_blockhash: Optional[Hash] = None
    ) -> str:
        """Compile, sign and send a v0 transaction. Returns the signature."""
        if recent_blockhash is None:
            recent_blockhash = await self.get_latest_blockhash()

        # Payer first, no duplicate signers
        unique_signers = [payer]
        for signer in signers:
            if signer.pubkey() not in [s.pubkey() for s in unique_signers]:
                unique_signers.append(signer)

        try:
            message = MessageV0.try_compile(
                payer=payer.pubkey(),
                instructions=list(instructions),
                address_lookup_table_accounts=[],
                recent_blockhash=recent_blockhash,
            )
            transaction = VersionedTransaction(message, unique_signers)
        except Exception as e:
            raise SolanaRPCError(f"Failed to build transaction: {e}")

        try:
            opts = TxOpts(skip_preflight=False, preflight_commitment=self.commitment)
            response = await self.client.send_transaction(transaction, opts=opts)
        except Exception as e:
            raise SolanaRPCError(f"Failed to send transaction: {e}")

        return str(response.value)

    async def send_raw_transaction(self, raw: bytes) -> str:
        try:
            opts = TxOpts(skip_preflight=False, preflight_commitment=self.commitment, max_retries=3)
            response = await self.client.send_raw_transaction(raw, opts=opts)
        except Exception as e:
            raise SolanaRPCError(f"Failed to send raw transaction: {e}")
        return str(response.value)

    async def confirm(self, signature: str) -> None:
        """Wait for confirmation; raise SolanaRPCError if the transaction failed."""
        try:
            confirmation = await self.client.confirm_transaction(
                Signature.from_string(signature),
                commitment=self.commitment
            )
        except Exception as e:
            raise SolanaRPCError(
                f"Failed to confirm transaction: {e}",
                {"signature": signature}
            )

        err = confirmation.value[0].err
        if err:
            raise SolanaRPCError(
                f"Transaction failed: {err}",
                {"signature": signature}
            )

    async def submit_atomic_batch(
        self,
        instructions: Sequence[Instruction],
        signers: Sequence[Keypair],
        payer: Keypair
    ) -> str:
        """Send one transaction containing `instructions` and await confirmation."""
        signature = await self.send_instructions(instructions, signers, payer)
        await self.confirm(signature)
        return signature

    async def is_signature_confirmed(self, signature: str) -> bool:
        """True if the signature landed without error."""
        try:
            response = await self.client.get_signature_statuses(
                [Signature.from_string(signature)],
                search_transaction_history=True
            )
        except Exception as e:
            raise SolanaRPCError(
                f"Failed to get signature status: {e}",
                {"signature": signature}
            )

        status = response.value[0]
        return status is not None and status.err is None and status.confirmation_status is not None
