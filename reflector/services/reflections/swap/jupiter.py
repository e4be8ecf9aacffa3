"""
Jupiter aggregator swap service.
Converts collected fees into a different reward token.
"""

import asyncio
import base64
from typing import Any, Dict, Optional

import aiohttp
import structlog
from solders.keypair import Keypair
from solders.transaction import VersionedTransaction
from spl.token.instructions import get_associated_token_address

from reflector.core.exceptions import ReflectorError, SwapError
from reflector.services.solana_client import LedgerRpc
from ..blockchain.balance_reader import BalanceReader
from ..core.types import MintInfo, SwapFailed, SwapOk, SwapResult


logger = structlog.get_logger(__name__)


class JupiterSwapService:
    """Quote, build, sign and submit swaps through the Jupiter HTTP API."""

    def __init__(
        self,
        rpc: LedgerRpc,
        signer: Keypair,
        base_url: str = "https://quote-api.jup.ag/v6",
        timeout: int = 30,
        session: Optional[aiohttp.ClientSession] = None
    ):
        self.rpc = rpc
        self.signer = signer
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.session = session
        self.balances = BalanceReader(rpc)
        self.logger = logger.bind(service="jupiter_swap")

    async def __aenter__(self):
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self.session

    async def quote(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        slippage_bps: int
    ) -> Dict[str, Any]:
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        }
        session = self._get_session()
        async with session.get(f"{self.base_url}/quote", params=params) as response:
            if response.status != 200:
                body = await response.text()
                raise SwapError(
                    f"Quote request failed with status {response.status}",
                    {"status": response.status, "body": body[:500]}
                )
            quote = await response.json()

        if not quote or "outAmount" not in quote:
            raise SwapError("Failed to get Jupiter quote", {"response": quote})
        return quote

    async def build_swap_transaction(self, quote: Dict[str, Any], signer: Keypair) -> VersionedTransaction:
        """Request a swap transaction for `quote` and sign it with `signer`."""
        payload = {
            "quoteResponse": quote,
            "userPublicKey": str(signer.pubkey()),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": "auto",
        }
        session = self._get_session()
        async with session.post(f"{self.base_url}/swap", json=payload) as response:
            if response.status != 200:
                body = await response.text()
                raise SwapError(
                    f"Swap request failed with status {response.status}",
                    {"status": response.status, "body": body[:500]}
                )
            data = await response.json()

        encoded = data.get("swapTransaction")
        if not encoded:
            raise SwapError("Swap response missing transaction", {"response": data})

        unsigned = VersionedTransaction.from_bytes(base64.b64decode(encoded))
        return VersionedTransaction(unsigned.message, [signer])

    async def swap(
        self,
        from_mint: MintInfo,
        to_mint: MintInfo,
        amount: int,
        slippage_bps: int
    ) -> SwapOk:
        """
        Swap `amount` of `from_mint` into `to_mint`.

        Returns the treasury's observed reward balance increase.
        """
        self.logger.info(
            "Initiating swap",
            amount=amount,
            input_mint=str(from_mint.address),
            output_mint=str(to_mint.address),
            slippage_bps=slippage_bps
        )

        owner = self.signer.pubkey()
        before = await self.balances.treasury_balance(owner, to_mint)

        quote = await self.quote(str(from_mint.address), str(to_mint.address), amount, slippage_bps)
        self.logger.info(
            "Quote received",
            out_amount=quote.get("outAmount"),
            price_impact_pct=quote.get("priceImpactPct", 0)
        )
        transaction = await self.build_swap_transaction(quote, self.signer)

        signature = await self.rpc.send_raw_transaction(bytes(transaction))
        self.logger.info("Swap transaction sent", signature=signature)
        await self.rpc.confirm(signature)

        after = await self.balances.treasury_balance(owner, to_mint)
        received = after - before
        if received <= 0:
            raise SwapError(
                "Swap confirmed but no reward tokens were received",
                {"signature": signature, "before": before, "after": after}
            )

        self.logger.info("Swap confirmed", signature=signature, received=received, success=True)
        return SwapOk(amount=received, signature=signature)

    async def convert_with_fallback(
        self,
        from_mint: MintInfo,
        to_mint: MintInfo,
        amount: int,
        slippage_bps: int
    ) -> SwapResult:
        """
        Attempt one swap; on failure report the treasury's existing reward balance.

        Never raises for a failed swap.
        """
        try:
            return await self.swap(from_mint, to_mint, amount, slippage_bps)
        except (ReflectorError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            error = e.message if isinstance(e, ReflectorError) else (str(e) or type(e).__name__)
            self.logger.error("Swap failed", error=error)

        self.logger.info("Checking if treasury already has reward tokens")
        fallback_amount = await self.existing_reward_balance(to_mint)
        return SwapFailed(error=error, fallback_amount=fallback_amount)

    async def existing_reward_balance(self, to_mint: MintInfo) -> Optional[int]:
        """Treasury reward balance, or None when the reward account is missing or unreadable."""
        ata = get_associated_token_address(
            self.signer.pubkey(), to_mint.address, token_program_id=to_mint.program_id
        )
        try:
            return await self.balances.read_token_balance(ata)
        except ReflectorError as e:
            self.logger.error("Failed to read treasury reward balance", error=e.message)
            return None
