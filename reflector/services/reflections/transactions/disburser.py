"""
Batched reward transfers from the treasury to recipients.
"""

import asyncio
from typing import List, Optional, Sequence

import structlog
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from spl.token.instructions import (
    TransferCheckedParams,
    create_idempotent_associated_token_account,
    get_associated_token_address,
    transfer_checked,
)

from reflector.core.exceptions import SolanaRPCError
from reflector.services.solana_client import LedgerRpc
from ..core.types import Allocation, DisbursementResult, DistributionRecord, MintInfo


logger = structlog.get_logger(__name__)


class BatchDisburser:
    """
    Sends allocations in fixed-size atomic batches.

    A batch either lands entirely or not at all; a failed batch counts all of
    its recipients as failed and the remaining batches still run.

    With retries enabled, a batch is resent only after the blockhash of the
    previous attempt has expired and that attempt is known not to have
    landed. A batch whose previous attempt stays pending past
    `expiry_wait_seconds` is counted as failed instead of being resent.
    """

    def __init__(
        self,
        rpc: LedgerRpc,
        treasury: Keypair,
        batch_size: int = 5,
        retry_failed: bool = False,
        retry_attempts: int = 2,
        pause_seconds: float = 0.1,
        payer: Optional[Keypair] = None,
        expiry_poll_seconds: float = 2.0,
        expiry_wait_seconds: float = 120.0
    ):
        self.rpc = rpc
        self.treasury = treasury
        self.payer = payer or treasury
        self.batch_size = batch_size
        self.retry_failed = retry_failed
        self.retry_attempts = retry_attempts
        self.pause_seconds = pause_seconds
        self.expiry_poll_seconds = expiry_poll_seconds
        self.expiry_wait_seconds = expiry_wait_seconds
        self.logger = logger.bind(service="batch_disburser")

    def build_instructions(self, batch: Sequence[Allocation], mint: MintInfo) -> List[Instruction]:
        """Idempotent account creation plus a checked transfer per recipient."""
        payer = self.payer.pubkey()
        owner = self.treasury.pubkey()
        source = get_associated_token_address(owner, mint.address, token_program_id=mint.program_id)

        instructions: List[Instruction] = []
        for allocation in batch:
            destination = get_associated_token_address(
                allocation.recipient, mint.address, token_program_id=mint.program_id
            )
            instructions.append(create_idempotent_associated_token_account(
                payer=payer,
                owner=allocation.recipient,
                mint=mint.address,
                token_program_id=mint.program_id
            ))
            instructions.append(transfer_checked(
                TransferCheckedParams(
                    program_id=mint.program_id,
                    source=source,
                    mint=mint.address,
                    dest=destination,
                    owner=owner,
                    amount=allocation.amount,
                    decimals=mint.decimals
                )
            ))
        return instructions

    async def disburse(self, allocations: Sequence[Allocation], mint: MintInfo) -> DisbursementResult:
        """Pay every allocation; returns counts, the amount paid and one record per paid recipient."""
        result = DisbursementResult()
        payable = [a for a in allocations if a.amount > 0]
        total_batches = (len(payable) + self.batch_size - 1) // self.batch_size

        for index, start in enumerate(range(0, len(payable), self.batch_size), start=1):
            batch = payable[start:start + self.batch_size]
            signature = await self._send_batch(batch, mint, index, total_batches)

            if signature is None:
                result.failed += len(batch)
                result.failed_batches.append(list(batch))
            else:
                result.succeeded += len(batch)
                for allocation in batch:
                    result.total_paid += allocation.amount
                    result.records.append(DistributionRecord(
                        owner=str(allocation.recipient),
                        amount=allocation.amount,
                        batch_ref=signature
                    ))

            if start + self.batch_size < len(payable):
                await asyncio.sleep(self.pause_seconds)

        self.logger.info(
            "Disbursement completed",
            batches=total_batches,
            succeeded=result.succeeded,
            failed=result.failed,
            total_paid=result.total_paid,
            total_paid_ui=mint.ui_amount(result.total_paid)
        )
        return result

    async def _send_batch(
        self,
        batch: Sequence[Allocation],
        mint: MintInfo,
        index: int,
        total: int
    ) -> Optional[str]:
        """Submit one batch, honoring the retry policy. Returns the landed signature or None."""
        instructions = self.build_instructions(batch, mint)
        attempts = 1 + (self.retry_attempts if self.retry_failed else 0)
        previous: Optional[str] = None
        previous_blockhash: Optional[Hash] = None

        for attempt in range(1, attempts + 1):
            if previous is not None:
                landed = await self._settle(previous, previous_blockhash, index)
                if landed is None:
                    return None
                if landed:
                    self.logger.info(
                        "Previous batch attempt landed, not resending",
                        batch=index,
                        signature=previous,
                        success=True
                    )
                    return previous

            signature: Optional[str] = None
            try:
                blockhash = await self.rpc.get_latest_blockhash()
                signature = await self.rpc.send_instructions(
                    instructions, [self.treasury], self.payer, recent_blockhash=blockhash
                )
                previous, previous_blockhash = signature, blockhash
                await self.rpc.confirm(signature)
            except SolanaRPCError as e:
                self.logger.error(
                    "Batch failed",
                    batch=index,
                    total_batches=total,
                    recipients=len(batch),
                    attempt=attempt,
                    error=e.message
                )
                continue

            self.logger.info(
                "Batch sent",
                batch=index,
                total_batches=total,
                recipients=len(batch),
                signature=signature,
                success=True
            )
            return signature

        if previous is not None and attempts > 1 and await self._settle(previous, previous_blockhash, index):
            self.logger.info("Final batch attempt landed", batch=index, signature=previous, success=True)
            return previous

        return None

    async def _settle(self, signature: str, blockhash: Hash, index: int) -> Optional[bool]:
        """
        Decide whether an unconfirmed attempt landed.

        Waits for `blockhash` to expire so the attempt can no longer land,
        then checks its status. Returns None when that cannot be established.
        """
        waited = 0.0
        try:
            while await self.rpc.is_blockhash_valid(blockhash):
                if waited >= self.expiry_wait_seconds:
                    self.logger.error(
                        "Previous batch attempt still pending, not resending",
                        batch=index,
                        signature=signature,
                        waited_seconds=waited
                    )
                    return None
                await asyncio.sleep(self.expiry_poll_seconds)
                waited += self.expiry_poll_seconds
            return await self.rpc.is_signature_confirmed(signature)
        except SolanaRPCError as e:
            self.logger.error(
                "Cannot settle previous batch attempt, not resending",
                batch=index,
                signature=signature,
                error=e.message
            )
            return None
