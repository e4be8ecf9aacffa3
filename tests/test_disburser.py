"""
Tests for batched reward transfers.
"""

import struct

import pytest
from solders.pubkey import Pubkey
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from reflector.services.reflections.blockchain.balance_reader import BalanceReader
from reflector.services.reflections.core.types import Allocation
from reflector.services.reflections.transactions.disburser import BatchDisburser


async def funded_mint(rpc, treasury, balance=1_000_000):
    mint = rpc.add_mint(supply=10 ** 12, decimals=6, fee_bps=100)
    rpc.add_token_account(mint, treasury.pubkey(), balance)
    return await BalanceReader(rpc).read_mint(mint)


def allocations(count, amount=100):
    return [Allocation(recipient=Pubkey.new_unique(), amount=amount) for _ in range(count)]


@pytest.mark.asyncio
async def test_batches_of_five(rpc, treasury):
    mint = await funded_mint(rpc, treasury)
    payouts = allocations(12)

    result = await BatchDisburser(rpc, treasury, pause_seconds=0).disburse(payouts, mint)

    assert result.succeeded == 12
    assert result.failed == 0
    assert result.total_paid == 1_200
    # create + transfer per recipient
    assert [len(tx) for tx in rpc.sent] == [10, 10, 4]
    for payout in payouts:
        ata = get_associated_token_address(payout.recipient, mint.address, mint.program_id)
        assert rpc.balance(ata) == 100
    assert [r.batch_ref for r in result.records[:5]] == ["sig-1"] * 5


@pytest.mark.asyncio
async def test_failed_batch_counts_every_recipient_and_others_continue(rpc, treasury):
    mint = await funded_mint(rpc, treasury)
    payouts = allocations(10)
    bad = payouts[2]
    rpc.failing_destinations.add(get_associated_token_address(bad.recipient, mint.address, mint.program_id))

    result = await BatchDisburser(rpc, treasury, pause_seconds=0).disburse(payouts, mint)

    assert result.failed == 5
    assert result.succeeded == 5
    assert result.total_paid == 500
    assert len(result.failed_batches) == 1
    assert result.failed_batches[0] == payouts[:5]
    for payout in payouts[:5]:
        assert rpc.balance(get_associated_token_address(payout.recipient, mint.address, mint.program_id)) is None
    assert {r.owner for r in result.records} == {str(p.recipient) for p in payouts[5:]}


@pytest.mark.asyncio
async def test_drop_policy_does_not_retry(rpc, treasury):
    mint = await funded_mint(rpc, treasury)
    rpc.fail_sends.add(1)

    result = await BatchDisburser(rpc, treasury, pause_seconds=0).disburse(allocations(3), mint)

    assert result.failed == 3
    assert len(rpc.sent) == 1


@pytest.mark.asyncio
async def test_retry_policy_resends_failed_batch(rpc, treasury):
    mint = await funded_mint(rpc, treasury)
    rpc.fail_sends.add(1)

    disburser = BatchDisburser(rpc, treasury, retry_failed=True, retry_attempts=2, pause_seconds=0)
    result = await disburser.disburse(allocations(3), mint)

    assert result.succeeded == 3
    assert result.total_paid == 300
    assert len(rpc.sent) == 2
    assert {r.batch_ref for r in result.records} == {"sig-2"}


@pytest.mark.asyncio
async def test_retry_policy_does_not_double_pay_landed_batch(rpc, treasury):
    mint = await funded_mint(rpc, treasury, balance=1_000)
    payouts = allocations(2)
    rpc.landed_but_unconfirmed.add(1)

    disburser = BatchDisburser(rpc, treasury, retry_failed=True, retry_attempts=2, pause_seconds=0)
    result = await disburser.disburse(payouts, mint)

    assert result.succeeded == 2
    assert len(rpc.sent) == 1
    treasury_ata = get_associated_token_address(treasury.pubkey(), mint.address, mint.program_id)
    assert rpc.balance(treasury_ata) == 800


@pytest.mark.asyncio
async def test_zero_allocations_are_not_sent(rpc, treasury):
    mint = await funded_mint(rpc, treasury)

    result = await BatchDisburser(rpc, treasury).disburse([Allocation(Pubkey.new_unique(), 0)], mint)

    assert result.succeeded == 0
    assert rpc.sent == []


@pytest.mark.asyncio
async def test_retry_waits_for_previous_blockhash_to_expire(rpc, treasury):
    mint = await funded_mint(rpc, treasury)
    rpc.dropped.add(1)
    rpc.blockhash_valid_polls = 2

    disburser = BatchDisburser(
        rpc, treasury, retry_failed=True, pause_seconds=0, expiry_poll_seconds=0
    )
    result = await disburser.disburse(allocations(3), mint)

    assert result.succeeded == 3
    assert len(rpc.sent) == 2
    # two polls while the first blockhash is live, one once it has expired
    assert rpc.blockhash_checks == 3
    assert rpc.blockhashes[0] != rpc.blockhashes[1]


@pytest.mark.asyncio
async def test_retry_gives_up_while_previous_attempt_can_still_land(rpc, treasury):
    mint = await funded_mint(rpc, treasury)
    rpc.dropped.add(1)
    rpc.blockhash_valid_polls = 100

    disburser = BatchDisburser(
        rpc, treasury, retry_failed=True, pause_seconds=0,
        expiry_poll_seconds=0.5, expiry_wait_seconds=0
    )
    result = await disburser.disburse(allocations(3), mint)

    assert result.failed == 3
    assert len(rpc.sent) == 1


@pytest.mark.asyncio
async def test_instructions_address_the_mint_token_program(rpc, treasury, legacy_program):
    address = rpc.add_mint(program_id=legacy_program, supply=10 ** 9, decimals=4)
    mint = await BalanceReader(rpc).read_mint(address)
    payout = Allocation(recipient=Pubkey.new_unique(), amount=2_500)

    create, transfer = BatchDisburser(rpc, treasury).build_instructions([payout], mint)

    assert create.program_id == ASSOCIATED_TOKEN_PROGRAM_ID
    assert create.accounts[5].pubkey == legacy_program
    assert create.accounts[1].pubkey == get_associated_token_address(
        payout.recipient, address, token_program_id=legacy_program
    )
    assert transfer.program_id == legacy_program
    assert bytes(transfer.data) == struct.pack("<BQB", 12, 2_500, 4)
    assert transfer.accounts[3].pubkey == treasury.pubkey()
