from dataclasses import dataclass

import pytest

from chainnode.block import (
    ZERO_HASH,
    Block,
    BlockHeader,
    ChainParams,
    Contract,
    Operation,
    Transaction,
    TxIn,
    TxioKey,
    TxOut,
    generate_keypair,
    hash_parts,
    sign,
)
from chainnode.ledger import Ledger
from chainnode.proofs import ProofOfSpace, ProofOfTime, TimeSegment
from chainnode.validation import (
    ValidationError,
    check_vdf_proof_shape,
    clamp_diff,
    next_space_diff,
    next_time_diff,
    validate_block,
    validate_diff_adjust,
    validate_transaction,
)

COIN = 1_000_000
NUM_KEYS = 10


@dataclass
class PubKeySolution:
    pubkey: bytes
    signature: bytes = b""


def free_params(**kwargs):
    return ChainParams(min_txfee=0, min_txfee_io=0, **kwargs)


def address_of(pubkey):
    return hash_parts(pubkey)


def spend(prev_key, keypair, dst, amount, contract=ZERO_HASH):
    sk, pk = keypair
    tx = Transaction(
        inputs=[TxIn(prev=prev_key)],
        outputs=[TxOut(address=dst, contract=contract, amount=amount)],
    )
    tx.finalize()
    tx.solutions = [PubKeySolution(pk, sign(sk, tx.id))]
    return tx


def make_block(prev, keys, tx_list=(), tx_base=None, time_diff=None, space_diff=None):
    pool_sk, pool_pk = keys[0]
    farmer_sk, farmer_pk = keys[1]
    block = Block(
        prev=prev.hash,
        height=prev.height + 1,
        time_diff=prev.time_diff if time_diff is None else time_diff,
        space_diff=prev.space_diff if space_diff is None else space_diff,
        proof=ProofOfSpace(ksize=32, pool_key=pool_pk, farmer_key=farmer_pk),
        tx_base=tx_base,
        tx_list=list(tx_list),
    )
    block.finalize()
    block.pool_sig = sign(pool_sk, block.hash)
    block.farmer_sig = sign(farmer_sk, block.hash)
    return block


@pytest.fixture
def keys():
    return [generate_keypair(hash_parts("seed", i)) for i in range(NUM_KEYS)]


@pytest.fixture
def addrs(keys):
    return [address_of(pk) for _, pk in keys]


@pytest.fixture
def world(addrs):
    base = Transaction(outputs=[TxOut(address=a, amount=COIN) for a in addrs])
    base.finalize()
    genesis = Block(time_diff=1000, space_diff=10, tx_base=base)
    genesis.finalize()
    ledger = Ledger()
    assert ledger.apply(genesis)
    return genesis, ledger


def genesis_key(genesis, i):
    return TxioKey(genesis.tx_base.id, i)


# --- difficulty ---------------------------------------------------------------


def test_diff_adjust_within_limit():
    validate_diff_adjust(1025, 1024, 10)
    validate_diff_adjust(1023, 1024, 10)
    validate_diff_adjust(1024, 1024, 10)
    with pytest.raises(ValidationError, match="upwards"):
        validate_diff_adjust(1026, 1024, 10)


def test_diff_adjust_downwards_rejected():
    with pytest.raises(ValidationError, match="downwards"):
        validate_diff_adjust(1022, 1024, 10)


def test_diff_adjust_minimum_step_is_one():
    validate_diff_adjust(1, 0, 10)
    with pytest.raises(ValidationError, match="upwards"):
        validate_diff_adjust(2, 0, 10)


def test_clamp_diff():
    assert clamp_diff(2000, 1024, 10) == 1025
    assert clamp_diff(0, 1024, 10) == 1023
    assert clamp_diff(1024, 1024, 10) == 1024
    assert clamp_diff(1100, 1000, 2) == 1100


def test_next_space_diff_small_changes():
    params = ChainParams(target_score=500, max_diff_adjust=10)
    assert next_space_diff(params, 10, 500) == 10
    assert next_space_diff(params, 10, 0) == 11
    assert next_space_diff(params, 10, 999) == 9


def test_next_space_diff_large_changes():
    params = ChainParams(target_score=500, max_diff_adjust=10)
    assert next_space_diff(params, 1024000, 0) == 1025000
    assert next_space_diff(params, 1024000, 1000) == 1023001


def test_next_space_diff_never_below_one():
    params = ChainParams(target_score=500, max_diff_adjust=10)
    assert next_space_diff(params, 1, 1000) == 1


def test_next_time_diff_steady():
    params = ChainParams(block_time=10, time_diff_constant=1000, max_diff_adjust=2)
    prev = BlockHeader(time_diff=1000, vdf_iters=0)
    assert next_time_diff(params, prev, 1_000_000, 10_000_000) == 1000


def test_next_time_diff_faster_blocks_raise_difficulty():
    params = ChainParams(block_time=10, time_diff_constant=1000, max_diff_adjust=2)
    prev = BlockHeader(time_diff=1000, vdf_iters=0)
    assert next_time_diff(params, prev, 1_000_000, 5_000_000) == 1100


def test_next_time_diff_clamped_and_no_delta():
    params = ChainParams(block_time=10, time_diff_constant=1000, max_diff_adjust=10)
    prev = BlockHeader(time_diff=1000, vdf_iters=0)
    assert next_time_diff(params, prev, 1_000_000, 5_000_000) == 1001
    assert next_time_diff(params, prev, 1_000_000, 0) == 1000


# --- transactions --------------------------------------------------------------


def test_spend_every_genesis_output(keys, addrs, world):
    genesis, ledger = world
    params = free_params()
    txs = [
        spend(genesis_key(genesis, i), keys[i], addrs[(i * 7 + 3) % NUM_KEYS], COIN)
        for i in range(NUM_KEYS)
    ]
    block = make_block(genesis, keys, txs)
    assert validate_block(block, genesis.get_header(), params, ledger, {}, 0) == 0
    assert ledger.apply(block)
    assert ledger.get_total_balance(addrs) == NUM_KEYS * COIN
    assert ledger.get_balance(addrs[3]) == COIN

    # next round: every new owner forwards its coin again
    txs2 = []
    for i, tx in enumerate(block.tx_list):
        owner = (i * 7 + 3) % NUM_KEYS
        txs2.append(spend(TxioKey(tx.id, 0), keys[owner], addrs[(owner + 1) % NUM_KEYS], COIN))
    block2 = make_block(block, keys, txs2)
    assert validate_block(block2, block.get_header(), params, ledger, {}, 0) == 0
    assert ledger.apply(block2)
    assert ledger.get_total_balance(addrs) == NUM_KEYS * COIN


def test_wrong_pubkey_rejected(keys, addrs, world):
    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[1], addrs[2], COIN)
    with pytest.raises(ValidationError, match="invalid solution"):
        validate_transaction(tx, free_params(), ledger, {}, None)


def test_wrong_signature_rejected(keys, addrs, world):
    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[0], addrs[2], COIN)
    tx.solutions = [PubKeySolution(keys[0][1], sign(keys[1][0], tx.id))]
    with pytest.raises(ValidationError, match="invalid solution"):
        validate_transaction(tx, free_params(), ledger, {}, None)


def test_output_greater_than_input(keys, addrs, world):
    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[0], addrs[2], COIN + 1)
    with pytest.raises(ValidationError, match="tx over-spend"):
        validate_transaction(tx, free_params(), ledger, {}, None)


def test_output_of_unfunded_contract(keys, addrs, world):
    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[0], addrs[2], 5, contract=b"\x01" * 32)
    with pytest.raises(ValidationError, match="tx over-spend"):
        validate_transaction(tx, free_params(), ledger, {}, None)


def test_invalid_tx_id(keys, addrs, world):
    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[0], addrs[2], COIN)
    tx.outputs[0].amount = 10
    with pytest.raises(ValidationError, match="invalid tx id"):
        validate_transaction(tx, free_params(), ledger, {}, None)


def test_tx_without_input(world, addrs):
    _, ledger = world
    tx = Transaction(outputs=[TxOut(address=addrs[0], amount=1)])
    tx.finalize()
    with pytest.raises(ValidationError, match="tx without input"):
        validate_transaction(tx, free_params(), ledger, {}, None)


def test_unknown_utxo(keys, addrs, world):
    _, ledger = world
    tx = spend(TxioKey(b"\x07" * 32, 0), keys[0], addrs[2], COIN)
    with pytest.raises(ValidationError, match="utxo not found"):
        validate_transaction(tx, free_params(), ledger, {}, None)


def test_missing_solution(keys, addrs, world):
    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[0], addrs[2], COIN)
    tx.solutions = []
    with pytest.raises(ValidationError, match="missing solution"):
        validate_transaction(tx, free_params(), ledger, {}, None)


def test_zero_output(keys, addrs, world):
    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[0], addrs[2], 0)
    with pytest.raises(ValidationError, match="zero tx output"):
        validate_transaction(tx, free_params(), ledger, {}, None)


def test_insufficient_fee(keys, addrs, world):
    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[0], addrs[2], COIN)
    with pytest.raises(ValidationError, match=r"insufficient fee: 0 < 300"):
        validate_transaction(tx, ChainParams(), ledger, {}, None)


def test_fee_is_returned(keys, addrs, world):
    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[0], addrs[2], COIN - 500)
    assert validate_transaction(tx, ChainParams(), ledger, {}, None) == 500


def test_base_contract_refuses(keys, addrs, world):
    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[0], addrs[2], COIN)
    with pytest.raises(ValidationError, match="invalid solution"):
        validate_transaction(tx, free_params(), ledger, {addrs[0]: Contract()}, None)


def test_accepting_contract_overrides_pubkey(keys, addrs, world):
    class AcceptAll(Contract):
        def validate(self, operation, solution, txid):
            return True

    genesis, ledger = world
    tx = spend(genesis_key(genesis, 0), keys[5], addrs[2], COIN - 1)
    assert validate_transaction(tx, free_params(), ledger, {addrs[0]: AcceptAll()}, None) == 1


def _coin_base(prev_hash, address, amount, contract=ZERO_HASH):
    base = Transaction(
        inputs=[TxIn(prev=TxioKey(txid=prev_hash))],
        outputs=[TxOut(address=address, contract=contract, amount=amount)],
    )
    base.finalize()
    return base


def test_coin_base_amount(addrs, world):
    genesis, ledger = world
    block = Block(prev=genesis.hash, height=1)
    base = _coin_base(genesis.hash, addrs[0], 777)
    assert validate_transaction(base, free_params(), ledger, {}, block) == 777


def test_coin_base_rejects_operations(addrs, world):
    genesis, ledger = world
    block = Block(prev=genesis.hash, height=1)
    base = _coin_base(genesis.hash, addrs[0], 777)
    base.execute = [Operation()]
    base.finalize()
    with pytest.raises(ValidationError, match="cannot have operations"):
        validate_transaction(base, free_params(), ledger, {}, block)


def test_coin_base_wrong_input(addrs, world):
    genesis, ledger = world
    block = Block(prev=genesis.hash, height=1)
    base = _coin_base(b"\x02" * 32, addrs[0], 777)
    with pytest.raises(ValidationError, match="invalid coin base input"):
        validate_transaction(base, free_params(), ledger, {}, block)


def test_coin_base_needs_one_input(addrs, world):
    genesis, ledger = world
    block = Block(prev=genesis.hash, height=1)
    base = Transaction(outputs=[TxOut(address=addrs[0], amount=1)])
    base.finalize()
    with pytest.raises(ValidationError, match="must have one input"):
        validate_transaction(base, free_params(), ledger, {}, block)


def test_coin_base_other_contract(addrs, world):
    genesis, ledger = world
    block = Block(prev=genesis.hash, height=1)
    base = _coin_base(genesis.hash, addrs[0], 5, contract=b"\x03" * 32)
    with pytest.raises(ValidationError, match="invalid coin base output"):
        validate_transaction(base, free_params(), ledger, {}, block)


# --- blocks ---------------------------------------------------------------------


def test_block_without_prev(keys, world):
    genesis, ledger = world
    block = make_block(genesis, keys)
    with pytest.raises(ValidationError, match="invalid prev"):
        validate_block(block, None, free_params(), ledger, {}, 0)


def test_block_state_mismatch(keys, world):
    genesis, ledger = world
    other = BlockHeader(hash=b"\x09" * 32, time_diff=1000, space_diff=10)
    block = make_block(other, keys)
    with pytest.raises(ValidationError, match="state mismatch"):
        validate_block(block, other, free_params(), ledger, {}, 0)


def test_block_invalid_height(keys, world):
    genesis, ledger = world
    block = make_block(genesis, keys)
    block.height = 5
    with pytest.raises(ValidationError, match="invalid height"):
        validate_block(block, genesis, free_params(), ledger, {}, 0)


def test_block_zero_difficulty(keys, world):
    genesis, ledger = world
    block = make_block(genesis, keys, space_diff=0)
    with pytest.raises(ValidationError, match="invalid difficulty"):
        validate_block(block, genesis, free_params(), ledger, {}, 0)


def test_block_difficulty_jump(keys, world):
    genesis, ledger = world
    block = make_block(genesis, keys, time_diff=1005)
    with pytest.raises(ValidationError, match="upwards"):
        validate_block(block, genesis, free_params(), ledger, {}, 0)


def test_block_bad_pool_signature(keys, world):
    genesis, ledger = world
    block = make_block(genesis, keys)
    block.pool_sig = sign(keys[5][0], block.hash)
    with pytest.raises(ValidationError, match="invalid pool signature"):
        validate_block(block, genesis, free_params(), ledger, {}, 0)


def test_block_missing_farmer_signature(keys, world):
    genesis, ledger = world
    block = make_block(genesis, keys)
    block.farmer_sig = None
    with pytest.raises(ValidationError, match="invalid farmer signature"):
        validate_block(block, genesis, free_params(), ledger, {}, 0)


def test_dummy_block_rules(keys, addrs, world):
    genesis, ledger = world
    empty = Block(prev=genesis.hash, height=1, time_diff=1000, space_diff=10)
    empty.finalize()
    assert validate_block(empty, genesis, free_params(), ledger, {}, 0) == 0

    with_tx = Block(
        prev=genesis.hash,
        height=1,
        time_diff=1000,
        space_diff=10,
        tx_list=[spend(genesis_key(genesis, 0), keys[0], addrs[1], COIN)],
    )
    with_tx.finalize()
    with pytest.raises(ValidationError, match="transactions not allowed"):
        validate_block(with_tx, genesis, free_params(), ledger, {}, 0)

    changed = Block(prev=genesis.hash, height=1, time_diff=1001, space_diff=10)
    changed.finalize()
    with pytest.raises(ValidationError, match="invalid difficulty adjustment"):
        validate_block(changed, genesis, free_params(), ledger, {}, 0)


def test_block_double_spend(keys, addrs, world):
    genesis, ledger = world
    key = genesis_key(genesis, 0)
    txs = [spend(key, keys[0], addrs[1], COIN), spend(key, keys[0], addrs[2], COIN)]
    block = make_block(genesis, keys, txs)
    with pytest.raises(ValidationError, match="double spend"):
        validate_block(block, genesis, free_params(), ledger, {}, 0)


def test_block_cost_too_high(keys, addrs, world):
    genesis, ledger = world
    params = ChainParams(min_txfee=0, min_txfee_io=1, max_block_cost=1)
    tx = spend(genesis_key(genesis, 0), keys[0], addrs[1], COIN - 2)
    block = make_block(genesis, keys, [tx])
    with pytest.raises(ValidationError, match="block cost too high: 2"):
        validate_block(block, genesis, params, ledger, {}, 0)


def test_block_returns_fees(keys, addrs, world):
    genesis, ledger = world
    params = ChainParams(min_txfee=0, min_txfee_io=1)
    txs = [spend(genesis_key(genesis, i), keys[i], addrs[0], COIN - 10) for i in range(3)]
    block = make_block(genesis, keys, txs)
    assert validate_block(block, genesis, params, ledger, {}, 0) == 30


def test_coin_base_over_spend(keys, addrs, world):
    genesis, ledger = world
    base = _coin_base(genesis.hash, addrs[0], 1000)
    block = make_block(genesis, keys, tx_base=base)
    with pytest.raises(ValidationError, match="coin base over-spend"):
        validate_block(block, genesis, free_params(), ledger, {}, 0)
    assert validate_block(block, genesis, free_params(), ledger, {}, 1000) == 0
    assert validate_block(block, genesis, free_params(min_reward=1000), ledger, {}, 0) == 0


# --- proof of time shape --------------------------------------------------------


def _proof(height, start, iters):
    return ProofOfTime(height=height, start=start, segments=[TimeSegment(num_iters=n) for n in iters])


def test_vdf_shape_accepts_matching_proof():
    params = ChainParams(min_vdf_segments=2, max_vdf_segments=4)
    proof = _proof(6, 1000, [10, 20, 30])
    check_vdf_proof_shape(proof, params, 5, 1000, 60)
    assert proof.get_num_iters() == 60


@pytest.mark.parametrize(
    "proof, message",
    [
        (_proof(6, 1000, [60]), "not enough segments: 1"),
        (_proof(6, 1000, [10] * 5), "too many segments: 5"),
        (_proof(6, 999, [30, 30]), "invalid start: 999 != 1000"),
        (_proof(7, 1000, [30, 30]), "invalid height: 7 != 6"),
        (_proof(6, 1000, [30, 31]), "wrong delta iters: 61 != 60"),
    ],
)
def test_vdf_shape_errors(proof, message):
    params = ChainParams(min_vdf_segments=2, max_vdf_segments=4)
    with pytest.raises(ValidationError, match=message):
        check_vdf_proof_shape(proof, params, 5, 1000, 60)