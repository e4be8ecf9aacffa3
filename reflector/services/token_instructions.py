"""
Token-2022 transfer fee withdrawal instructions.

Account creation and transfers come from `spl.token.instructions`; the
TransferFeeExtension withdrawals are not covered there and are encoded here.
"""

from typing import List, Sequence

from solders.instruction import Instruction, AccountMeta
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_2022_PROGRAM_ID, TOKEN_PROGRAM_ID


TRANSFER_FEE_EXTENSION = 26

# TransferFeeExtension sub-instructions
WITHDRAW_WITHHELD_FROM_MINT = 2
WITHDRAW_WITHHELD_FROM_ACCOUNTS = 3

TOKEN_PROGRAMS = (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID)


def withdraw_withheld_tokens_from_accounts(
    mint: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
    sources: Sequence[Pubkey],
    token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID
) -> Instruction:
    """Move withheld fees from token accounts into `destination`."""
    if not sources or len(sources) > 255:
        raise ValueError(f"Invalid number of source accounts: {len(sources)}")

    accounts: List[AccountMeta] = [
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    accounts.extend(
        AccountMeta(pubkey=source, is_signer=False, is_writable=True) for source in sources
    )
    data = bytes([TRANSFER_FEE_EXTENSION, WITHDRAW_WITHHELD_FROM_ACCOUNTS, len(sources)])
    return Instruction(program_id=token_program_id, accounts=accounts, data=data)


def withdraw_withheld_tokens_from_mint(
    mint: Pubkey,
    destination: Pubkey,
    authority: Pubkey,
    token_program_id: Pubkey = TOKEN_2022_PROGRAM_ID
) -> Instruction:
    """Move the mint's own withheld pool into `destination`."""
    accounts = [
        AccountMeta(pubkey=mint, is_signer=False, is_writable=True),
        AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
        AccountMeta(pubkey=authority, is_signer=True, is_writable=False),
    ]
    data = bytes([TRANSFER_FEE_EXTENSION, WITHDRAW_WITHHELD_FROM_MINT])
    return Instruction(program_id=token_program_id, accounts=accounts, data=data)
