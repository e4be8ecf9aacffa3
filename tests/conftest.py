"""
Shared fixtures: an in-memory ledger that applies token program effects.
"""

import struct
from typing import Callable, Dict, List, Optional, Sequence, Set

import pytest
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from reflector.core.exceptions import SolanaRPCError
from reflector.services.solana_client import AccountInfo


AMOUNT_OFFSET = 64
ACCOUNT_WITHHELD_OFFSET = 170
MINT_WITHHELD_OFFSET = 234


def token_account_data(
    mint: Pubkey,
    owner: Pubkey,
    amount: int,
    state: int = 1,
    withheld: Optional[int] = None
) -> bytes:
    """Token account bytes; `withheld` adds Token-2022 fee extensions."""
    data = bytearray(165)
    data[0:32] = bytes(mint)
    data[32:64] = bytes(owner)
    struct.pack_into("<Q", data, AMOUNT_OFFSET, amount)
    data[108] = state
    if withheld is not None:
        data += bytes([2])
        data += struct.pack("<HHQ", 2, 8, withheld)
        data += struct.pack("<HH", 7, 0)
    return bytes(data)


def mint_data(
    supply: int,
    decimals: int,
    fee_bps: Optional[int] = None,
    max_fee: int = 0,
    withheld: int = 0,
    withdraw_authority: Optional[Pubkey] = None
) -> bytes:
    """Mint bytes; `fee_bps` adds a Token-2022 transfer fee config."""
    data = bytearray(82)
    struct.pack_into("<Q", data, 36, supply)
    data[44] = decimals
    data[45] = 1
    if fee_bps is not None:
        data += bytes(165 - 82)
        data += bytes([1])
        fee = struct.pack("<QQH", 0, max_fee, fee_bps)
        value = (
            bytes(32)
            + bytes(withdraw_authority or Pubkey.default())
            + struct.pack("<Q", withheld)
            + fee
            + fee
        )
        data += struct.pack("<HH", 1, len(value)) + value
    return bytes(data)


def _read_u64(data: bytes, offset: int) -> int:
    return struct.unpack_from("<Q", data, offset)[0]


def _write_u64(data: bytes, offset: int, value: int) -> bytes:
    buf = bytearray(data)
    struct.pack_into("<Q", buf, offset, value)
    return bytes(buf)


class FakeLedgerRpc:
    """
    In-memory ledger implementing the LedgerRpc surface.

    Submitted transactions are applied atomically: associated account
    creation, TransferChecked and withheld fee withdrawals update the stored
    account bytes, and any failure leaves every account untouched.
    """

    def __init__(self):
        self.accounts: Dict[Pubkey, AccountInfo] = {}
        self.sent: List[List[Instruction]] = []
        self.raw_sent: List[bytes] = []
        self.multiple_calls: List[int] = []
        self.failing_destinations: Set[Pubkey] = set()
        self.fail_sends: Set[int] = set()
        self.landed_but_unconfirmed: Set[int] = set()
        self.dropped: Set[int] = set()
        self.blockhash_valid_polls = 0
        self.blockhash_checks = 0
        self.blockhashes: List[Optional[Hash]] = []
        self.confirmed: Set[str] = set()
        self.on_raw_transaction: Optional[Callable[[bytes], None]] = None
        self.scan_error: Optional[Exception] = None
        self._pending_failure: Optional[str] = None

    # Setup helpers

    def set_account(self, address: Pubkey, owner: Pubkey, data: bytes, lamports: int = 2_039_280):
        self.accounts[address] = AccountInfo(pubkey=address, lamports=lamports, owner=owner, data=data)

    def add_mint(self, program_id: Pubkey = TOKEN_2022_PROGRAM_ID, **kwargs) -> Pubkey:
        mint = Pubkey.new_unique()
        self.set_account(mint, program_id, mint_data(**kwargs))
        return mint

    def add_token_account(
        self,
        mint: Pubkey,
        owner: Pubkey,
        amount: int,
        program_id: Pubkey = TOKEN_2022_PROGRAM_ID,
        address: Optional[Pubkey] = None,
        withheld: Optional[int] = None,
        state: int = 1
    ) -> Pubkey:
        if address is None:
            address = get_associated_token_address(owner, mint, program_id)
        if withheld is None and program_id == TOKEN_2022_PROGRAM_ID:
            withheld = 0
        self.set_account(address, program_id, token_account_data(mint, owner, amount, state, withheld))
        return address

    def balance(self, address: Pubkey) -> Optional[int]:
        account = self.accounts.get(address)
        return None if account is None else _read_u64(account.data, AMOUNT_OFFSET)

    def credit(self, address: Pubkey, amount: int):
        account = self.accounts[address]
        new = _read_u64(account.data, AMOUNT_OFFSET) + amount
        self.accounts[address] = AccountInfo(
            account.pubkey, account.lamports, account.owner, _write_u64(account.data, AMOUNT_OFFSET, new)
        )

    # LedgerRpc surface

    async def get_account(self, address: Pubkey) -> Optional[AccountInfo]:
        return self.accounts.get(address)

    async def get_multiple_accounts(self, addresses: Sequence[Pubkey]) -> List[Optional[AccountInfo]]:
        self.multiple_calls.append(len(addresses))
        return [self.accounts.get(address) for address in addresses]

    async def scan_mint_accounts(self, program_id: Pubkey, mint: Pubkey, data_size: Optional[int] = None) -> List[Pubkey]:
        if self.scan_error is not None:
            raise self.scan_error
        return [
            address for address, account in self.accounts.items()
            if account.owner == program_id
            and account.data[0:32] == bytes(mint)
            and (data_size is None or len(account.data) == data_size)
        ]

    async def get_latest_blockhash(self) -> Hash:
        return Hash.new_unique()

    async def is_blockhash_valid(self, blockhash: Hash) -> bool:
        self.blockhash_checks += 1
        return self.blockhash_checks <= self.blockhash_valid_polls

    async def send_instructions(self, instructions, signers, payer, recent_blockhash=None) -> str:
        self.sent.append(list(instructions))
        self.blockhashes.append(recent_blockhash)
        index = len(self.sent)
        signature = f"sig-{index}"

        if index in self.fail_sends:
            raise SolanaRPCError("Failed to send transaction: simulated", {"signature": signature})

        if index in self.dropped:
            self._pending_failure = signature
            return signature

        snapshot = dict(self.accounts)
        try:
            for instruction in instructions:
                self._apply(instruction)
        except SolanaRPCError:
            self.accounts = snapshot
            self._pending_failure = signature
            return signature

        if index in self.landed_but_unconfirmed:
            self.confirmed.add(signature)
            self._pending_failure = signature
            return signature

        self.confirmed.add(signature)
        self._pending_failure = None
        return signature

    async def confirm(self, signature: str) -> None:
        if self._pending_failure == signature:
            raise SolanaRPCError("Transaction failed: simulated", {"signature": signature})

    async def submit_atomic_batch(self, instructions, signers, payer) -> str:
        signature = await self.send_instructions(instructions, signers, payer)
        await self.confirm(signature)
        return signature

    async def send_raw_transaction(self, raw: bytes) -> str:
        self.raw_sent.append(raw)
        if self.on_raw_transaction is not None:
            self.on_raw_transaction(raw)
        signature = f"raw-{len(self.raw_sent)}"
        self.confirmed.add(signature)
        return signature

    async def is_signature_confirmed(self, signature: str) -> bool:
        return signature in self.confirmed

    # Token program simulation

    def _apply(self, instruction: Instruction) -> None:
        keys = [meta.pubkey for meta in instruction.accounts]
        data = bytes(instruction.data)

        if instruction.program_id == ASSOCIATED_TOKEN_PROGRAM_ID:
            ata, owner, mint, program_id = keys[1], keys[2], keys[3], keys[5]
            if ata not in self.accounts:
                self.add_token_account(mint, owner, 0, program_id=program_id, address=ata)
            return

        if data[0] == 12:
            source, destination = keys[0], keys[2]
            amount = _read_u64(data, 1)
            if destination in self.failing_destinations or destination not in self.accounts:
                raise SolanaRPCError("invalid account data for instruction")
            if self.balance(source) is None or self.balance(source) < amount:
                raise SolanaRPCError("insufficient funds")
            self.credit(source, -amount)
            self.credit(destination, amount)
            return

        if data[0] == 26 and data[1] == 3:
            destination, sources = keys[1], keys[3:]
            for source in sources:
                account = self.accounts[source]
                withheld = _read_u64(account.data, ACCOUNT_WITHHELD_OFFSET)
                self.accounts[source] = AccountInfo(
                    account.pubkey, account.lamports, account.owner,
                    _write_u64(account.data, ACCOUNT_WITHHELD_OFFSET, 0)
                )
                self.credit(destination, withheld)
            return

        if data[0] == 26 and data[1] == 2:
            mint, destination = keys[0], keys[1]
            account = self.accounts[mint]
            withheld = _read_u64(account.data, MINT_WITHHELD_OFFSET)
            self.accounts[mint] = AccountInfo(
                account.pubkey, account.lamports, account.owner,
                _write_u64(account.data, MINT_WITHHELD_OFFSET, 0)
            )
            self.credit(destination, withheld)
            return

        raise SolanaRPCError(f"unsupported instruction {data[:2].hex()}")


@pytest.fixture
def rpc() -> FakeLedgerRpc:
    return FakeLedgerRpc()


@pytest.fixture
def treasury() -> Keypair:
    return Keypair()


@pytest.fixture
def legacy_program() -> Pubkey:
    return TOKEN_PROGRAM_ID


@pytest.fixture
def token_2022_program() -> Pubkey:
    return TOKEN_2022_PROGRAM_ID
