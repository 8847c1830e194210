"""
Tests for grouping per-wallet operations into bounded batches.
"""

import math

import pytest
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer

from bulkbuy.solana.batching import (
    BatchPolicy,
    OperationSkipped,
    accumulate_batches,
    batch_operations,
    build_operations,
    chunk,
)
from bulkbuy.solana.models import Operation
from bulkbuy.solana.pump_sdk import CurveStateError
from bulkbuy.solana.wallet_manager import MissingWalletInfoError

PREFIX = [set_compute_unit_limit(360_000), set_compute_unit_price(1)]


def transfer_op(wallet: Keypair, sign: bool = False) -> Operation:
    ix = transfer(TransferParams(from_pubkey=Pubkey.default(), to_pubkey=wallet.pubkey(), lamports=1))
    return Operation(wallet=str(wallet.pubkey()), instructions=[ix], signers=[wallet] if sign else [])


@pytest.mark.parametrize("count,size", [(0, 4), (1, 4), (4, 4), (5, 4), (5, 2), (23, 10), (7, 1)])
def test_batch_count_and_sizes(count, size):
    wallets = [Keypair() for _ in range(count)]
    batches = accumulate_batches(wallets, transfer_op, BatchPolicy(max_operations=size))

    assert len(batches) == math.ceil(count / size)
    assert all(len(b) <= size for b in batches)
    if batches:
        assert all(len(b) == size for b in batches[:-1])
        assert len(batches[-1]) == count - size * (len(batches) - 1)


def test_order_is_preserved_across_batches():
    wallets = [Keypair() for _ in range(7)]
    batches = accumulate_batches(wallets, transfer_op, BatchPolicy(max_operations=3))

    flattened = [w for b in batches for w in b.wallets]
    assert flattened == [str(w.pubkey()) for w in wallets]
    assert [b.index for b in batches] == [0, 1, 2]


def test_empty_input_yields_no_batches():
    assert accumulate_batches([], transfer_op, BatchPolicy(max_operations=10, prefix_instructions=PREFIX)) == []


def test_prefix_leads_every_batch():
    wallets = [Keypair() for _ in range(5)]
    batches = accumulate_batches(wallets, transfer_op, BatchPolicy(max_operations=2, prefix_instructions=PREFIX))

    for batch in batches:
        assert batch.instructions[:2] == PREFIX
        assert len(batch.instructions) == 2 + len(batch)


def test_final_partial_batch_is_emitted():
    wallets = [Keypair() for _ in range(5)]
    batches = accumulate_batches(wallets, transfer_op, BatchPolicy(max_operations=4))

    assert [len(b) for b in batches] == [4, 1]
    assert batches[-1].wallets == [str(wallets[-1].pubkey())]


def test_signers_are_the_batch_wallets_without_duplicates():
    wallet = Keypair()
    other = Keypair()
    ops = [transfer_op(wallet, sign=True), transfer_op(wallet, sign=True), transfer_op(other, sign=True)]
    batches = batch_operations(ops, BatchPolicy(max_operations=3))

    assert [kp.pubkey() for kp in batches[0].signers] == [wallet.pubkey(), other.pubkey()]


def test_operations_without_signers_add_none():
    batches = accumulate_batches([Keypair(), Keypair()], transfer_op, BatchPolicy(max_operations=10))
    assert batches[0].signers == []


def test_operation_with_no_instructions_still_counts():
    wallets = [Keypair() for _ in range(3)]
    batches = accumulate_batches(wallets, lambda kp: Operation(wallet=str(kp.pubkey())), BatchPolicy(max_operations=2))
    assert [len(b) for b in batches] == [2, 1]


@pytest.mark.parametrize("kwargs", [{"max_operations": 0}, {"max_operations": 1, "max_retries": -1}])
def test_policy_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        BatchPolicy(**kwargs)


def test_chunk_rejects_zero_size():
    with pytest.raises(ValueError):
        chunk([1, 2], 0)


async def test_build_operations_skips_failing_entities():
    wallets = [Keypair() for _ in range(4)]

    async def build(kp):
        if kp is wallets[1]:
            raise MissingWalletInfoError("no info")
        if kp is wallets[2]:
            raise CurveStateError("curve complete")
        return transfer_op(kp)

    operations, skipped = await build_operations(wallets, build, describe=lambda kp: str(kp.pubkey()))

    assert [op.wallet for op in operations] == [str(wallets[0].pubkey()), str(wallets[3].pubkey())]
    assert skipped == [str(wallets[1].pubkey()), str(wallets[2].pubkey())]


async def test_build_operations_propagates_unexpected_errors():
    async def build(kp):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await build_operations([Keypair()], build)


def test_missing_wallet_info_is_a_skip():
    assert issubclass(MissingWalletInfoError, OperationSkipped)
