"""
SPL Token / Token-2022 account decoding.

Base fields are parsed with the layouts shipped in `spl.token._layouts`:

Token account (165 bytes)
- mint: Pubkey (32)
- owner: Pubkey (32)
- amount: u64 (8)
- delegate: COption<Pubkey> (36)
- state: u8 (1)            0 = uninitialized, 1 = initialized, 2 = frozen
- is_native: COption<u64> (12)
- delegated_amount: u64 (8)
- close_authority: COption<Pubkey> (36)

Mint (82 bytes)
- mint_authority: COption<Pubkey> (36)
- supply: u64 (8)
- decimals: u8 (1)
- is_initialized: bool (1)
- freeze_authority: COption<Pubkey> (36)

Token-2022 accounts with extensions are padded to 165 bytes, followed by
an account-type byte and TLV entries (u16 type, u16 length, value).
"""

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional, Union

from solders.pubkey import Pubkey
from spl.token._layouts import ACCOUNT_LAYOUT, MINT_LAYOUT

from reflector.core.exceptions import AccountDecodeError


ACCOUNT_LEN = 165
MINT_LEN = 82
ACCOUNT_TYPE_OFFSET = 165
TLV_START = 166

ZERO_PUBKEY = Pubkey.default()


class AccountType(IntEnum):
    UNINITIALIZED = 0
    MINT = 1
    ACCOUNT = 2


class ExtensionType(IntEnum):
    """Token-2022 extension identifiers used by this engine."""
    UNINITIALIZED = 0
    TRANSFER_FEE_CONFIG = 1
    TRANSFER_FEE_AMOUNT = 2
    IMMUTABLE_OWNER = 7


@dataclass(frozen=True)
class TransferFee:
    epoch: int
    maximum_fee: int
    basis_points: int


@dataclass(frozen=True)
class TransferFeeConfigExtension:
    """Mint-level fee configuration and withheld pool."""
    config_authority: Optional[Pubkey]
    withdraw_withheld_authority: Optional[Pubkey]
    withheld_amount: int
    older_transfer_fee: TransferFee
    newer_transfer_fee: TransferFee
    extension_type: ExtensionType = field(default=ExtensionType.TRANSFER_FEE_CONFIG, init=False)


@dataclass(frozen=True)
class TransferFeeAmountExtension:
    """Per-account withheld fee balance."""
    withheld_amount: int
    extension_type: ExtensionType = field(default=ExtensionType.TRANSFER_FEE_AMOUNT, init=False)


@dataclass(frozen=True)
class ImmutableOwnerExtension:
    extension_type: ExtensionType = field(default=ExtensionType.IMMUTABLE_OWNER, init=False)


@dataclass(frozen=True)
class UnknownExtension:
    type_id: int
    raw: bytes


Extension = Union[
    TransferFeeConfigExtension,
    TransferFeeAmountExtension,
    ImmutableOwnerExtension,
    UnknownExtension,
]


@dataclass
class TokenAccount:
    """Decoded token account."""
    address: Pubkey
    mint: Pubkey
    owner: Pubkey
    amount: int
    state: int
    extensions: List[Extension] = field(default_factory=list)

    @property
    def is_initialized(self) -> bool:
        return self.state != 0

    @property
    def withheld_amount(self) -> int:
        for ext in self.extensions:
            if isinstance(ext, TransferFeeAmountExtension):
                return ext.withheld_amount
        return 0


@dataclass
class Mint:
    """Decoded mint account."""
    address: Pubkey
    supply: int
    decimals: int
    is_initialized: bool
    extensions: List[Extension] = field(default_factory=list)

    @property
    def transfer_fee_config(self) -> Optional[TransferFeeConfigExtension]:
        for ext in self.extensions:
            if isinstance(ext, TransferFeeConfigExtension):
                return ext
        return None


def _optional_pubkey(raw: bytes) -> Optional[Pubkey]:
    key = Pubkey.from_bytes(raw)
    return None if key == ZERO_PUBKEY else key


def _decode_transfer_fee(raw: bytes) -> TransferFee:
    epoch, maximum_fee, basis_points = struct.unpack("<QQH", raw)
    return TransferFee(epoch=epoch, maximum_fee=maximum_fee, basis_points=basis_points)


def _decode_extension(type_id: int, value: bytes) -> Extension:
    if type_id == ExtensionType.TRANSFER_FEE_CONFIG:
        if len(value) != 108:
            raise ValueError(f"transfer fee config length {len(value)}")
        return TransferFeeConfigExtension(
            config_authority=_optional_pubkey(value[0:32]),
            withdraw_withheld_authority=_optional_pubkey(value[32:64]),
            withheld_amount=struct.unpack("<Q", value[64:72])[0],
            older_transfer_fee=_decode_transfer_fee(value[72:90]),
            newer_transfer_fee=_decode_transfer_fee(value[90:108]),
        )
    if type_id == ExtensionType.TRANSFER_FEE_AMOUNT:
        if len(value) != 8:
            raise ValueError(f"transfer fee amount length {len(value)}")
        return TransferFeeAmountExtension(withheld_amount=struct.unpack("<Q", value)[0])
    if type_id == ExtensionType.IMMUTABLE_OWNER:
        return ImmutableOwnerExtension()
    return UnknownExtension(type_id=type_id, raw=bytes(value))


def decode_extensions(data: bytes, expected: AccountType) -> List[Extension]:
    """Decode the TLV region of a Token-2022 account, if present."""
    if len(data) <= ACCOUNT_TYPE_OFFSET:
        return []

    account_type = data[ACCOUNT_TYPE_OFFSET]
    if account_type != expected:
        raise ValueError(f"unexpected account type {account_type}")

    extensions: List[Extension] = []
    offset = TLV_START
    while offset + 4 <= len(data):
        type_id, length = struct.unpack_from("<HH", data, offset)
        if type_id == ExtensionType.UNINITIALIZED:
            break
        start = offset + 4
        end = start + length
        if end > len(data):
            raise ValueError(f"extension {type_id} overruns account data")
        extensions.append(_decode_extension(type_id, data[start:end]))
        offset = end
    return extensions


def decode_token_account(address: Pubkey, data: bytes) -> TokenAccount:
    """Decode a token account, raising AccountDecodeError on malformed data."""
    if len(data) < ACCOUNT_LEN:
        raise AccountDecodeError(str(address), f"data too small: {len(data)} bytes")
    base = ACCOUNT_LAYOUT.parse(bytes(data[:ACCOUNT_LEN]))
    try:
        extensions = decode_extensions(data, AccountType.ACCOUNT)
    except (ValueError, struct.error) as e:
        raise AccountDecodeError(str(address), str(e))

    return TokenAccount(
        address=address,
        mint=Pubkey.from_bytes(base.mint),
        owner=Pubkey.from_bytes(base.owner),
        amount=base.amount,
        state=base.state,
        extensions=extensions,
    )


def decode_mint(address: Pubkey, data: bytes) -> Mint:
    """Decode a mint account, raising AccountDecodeError on malformed data."""
    if len(data) < MINT_LEN:
        raise AccountDecodeError(str(address), f"data too small: {len(data)} bytes")
    base = MINT_LAYOUT.parse(bytes(data[:MINT_LEN]))
    try:
        extensions = decode_extensions(data, AccountType.MINT)
    except (ValueError, struct.error) as e:
        raise AccountDecodeError(str(address), str(e))

    return Mint(
        address=address,
        supply=base.supply,
        decimals=base.decimals,
        is_initialized=bool(base.is_initialized),
        extensions=extensions,
    )
