"""Consensus checks for transactions, blocks, difficulty changes and VDF proofs."""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Mapping, Optional

from chainnode.block import (
    ZERO_HASH,
    Block,
    BlockHeader,
    ChainParams,
    Contract,
    Transaction,
    TxioKey,
    hash_parts,
    verify_signature,
)
from chainnode.ledger import Ledger
from chainnode.proofs import ProofOfTime


class ValidationError(ValueError):
    """Raised when a transaction, block or proof breaks a consensus rule."""


def _max_update(prev: int, max_diff_adjust: int) -> int:
    return max(prev >> max_diff_adjust, 1)


def validate_diff_adjust(block_diff: int, prev_diff: int, max_diff_adjust: int) -> None:
    """Reject a difficulty that moved further from the previous one than allowed."""
    max_update = _max_update(prev_diff, max_diff_adjust)
    if block_diff > prev_diff and block_diff - prev_diff > max_update:
        raise ValidationError("invalid difficulty adjustment upwards")
    if block_diff < prev_diff and prev_diff - block_diff > max_update:
        raise ValidationError("invalid difficulty adjustment downwards")


def clamp_diff(value: int, prev: int, max_diff_adjust: int) -> int:
    """Limit a difficulty to the range a single block may move it."""
    max_update = _max_update(prev, max_diff_adjust)
    value = min(value, prev + max_update)
    return max(value, prev - max_update)


def next_time_diff(params: ChainParams, prev: BlockHeader, block_iters: int, time_delta_us: int) -> int:
    """Time difficulty for the block after prev, from how long its VDF took to arrive."""
    time_diff = prev.time_diff
    if time_delta_us > 0:
        gain = 0.1
        iters = (block_iters - prev.vdf_iters) // params.time_diff_constant
        new_diff = params.block_time * iters / (time_delta_us * 1e-6)
        new_diff = prev.time_diff * (1 - gain) + new_diff * gain
        time_diff = max(int(new_diff + 0.5), 1)
    return clamp_diff(time_diff, prev.time_diff, params.max_diff_adjust)


def next_space_diff(params: ChainParams, prev_space_diff: int, score: int) -> int:
    """Space difficulty for the next block, nudged towards the target score."""
    delta = float(prev_space_diff)
    if score < params.target_score:
        delta *= params.target_score - score
    else:
        delta *= -1 * float(score - params.target_score)
    delta /= params.target_score
    delta /= 1 << params.max_diff_adjust

    if 0 < delta < 1:
        update = 1
    elif -1 < delta < 0:
        update = -1
    else:
        update = int(delta + 0.5)
    space_diff = max(prev_space_diff + update, 1)
    return clamp_diff(space_diff, prev_space_diff, params.max_diff_adjust)


def _pubkey_accepts(address: bytes, solution: Any, txid: bytes) -> bool:
    pubkey = getattr(solution, "pubkey", None)
    if not isinstance(pubkey, (bytes, bytearray)):
        return False
    if hash_parts(bytes(pubkey)) != address:
        return False
    return verify_signature(bytes(pubkey), txid, getattr(solution, "signature", None))


def validate_transaction(
    tx: Transaction,
    params: ChainParams,
    ledger: Ledger,
    contracts: Optional[Mapping[bytes, Contract]] = None,
    block: Optional[BlockHeader] = None,
) -> int:
    """Check a transaction against the ledger.

    With a block the transaction is checked as that block's coin base and the
    amount it pays out is returned; otherwise the fee it leaves is returned.
    """
    contracts = contracts or {}
    if tx.id != tx.calc_hash():
        raise ValidationError("invalid tx id")
    if block is not None:
        if tx.execute:
            raise ValidationError("coin base cannot have operations")
        if len(tx.inputs) != 1:
            raise ValidationError("coin base must have one input")
        prev = tx.inputs[0].prev
        if prev.txid != block.prev or prev.index != 0:
            raise ValidationError("invalid coin base input")
    elif not tx.inputs:
        raise ValidationError("tx without input")

    amounts: dict[bytes, int] = defaultdict(int)
    if block is None:
        for tx_in in tx.inputs:
            out = ledger.utxo_map.get(tx_in.prev)
            if out is None:
                raise ValidationError("utxo not found")
            solution = tx.get_solution(tx_in.solution)
            if solution is None:
                raise ValidationError("missing solution")
            contract = contracts.get(out.address)
            if contract is not None:
                accepted = contract.validate(None, solution, tx.id)
            else:
                accepted = _pubkey_accepts(out.address, solution, tx.id)
            if not accepted:
                raise ValidationError("invalid solution")
            amounts[out.contract] += out.amount

    base_amount = 0
    for out in tx.outputs:
        if out.amount == 0:
            raise ValidationError("zero tx output")
        if block is not None:
            if out.contract != ZERO_HASH:
                raise ValidationError("invalid coin base output")
            base_amount += out.amount
        else:
            if out.amount > amounts[out.contract]:
                raise ValidationError("tx over-spend")
            amounts[out.contract] -= out.amount

    if block is not None:
        return base_amount
    fee_amount = amounts[ZERO_HASH]
    fee_needed = tx.calc_min_fee(params)
    if fee_amount < fee_needed:
        raise ValidationError(f"insufficient fee: {fee_amount} < {fee_needed}")
    return fee_amount


def validate_block(
    block: Block,
    prev: Optional[BlockHeader],
    params: ChainParams,
    ledger: Ledger,
    contracts: Optional[Mapping[bytes, Contract]] = None,
    block_reward: int = 0,
) -> int:
    """Check a block on top of prev and the ledger state; return its total fees."""
    if prev is None:
        raise ValidationError("invalid prev")
    if prev.hash != ledger.state_hash:
        raise ValidationError("state mismatch")
    if block.height != prev.height + 1:
        raise ValidationError("invalid height")
    if block.time_diff == 0 or block.space_diff == 0:
        raise ValidationError("invalid difficulty")

    proof = block.proof
    if proof:
        if not verify_signature(proof.pool_key, block.hash, block.pool_sig):
            raise ValidationError("invalid pool signature")
        if not verify_signature(proof.farmer_key, block.hash, block.farmer_sig):
            raise ValidationError("invalid farmer signature")
        validate_diff_adjust(block.time_diff, prev.time_diff, params.max_diff_adjust)
        validate_diff_adjust(block.space_diff, prev.space_diff, params.max_diff_adjust)
    else:
        if block.tx_base or block.tx_list:
            raise ValidationError("transactions not allowed")
        if block.time_diff != prev.time_diff or block.space_diff != prev.space_diff:
            raise ValidationError("invalid difficulty adjustment")

    base_spent = 0
    if block.tx_base:
        base_spent = validate_transaction(block.tx_base, params, ledger, contracts, block)

    spent: set[TxioKey] = set()
    for tx in block.tx_list:
        for tx_in in tx.inputs:
            if tx_in.prev in spent:
                raise ValidationError("double spend")
            spent.add(tx_in.prev)

    total_fees = 0
    total_cost = 0
    for tx in block.tx_list:
        total_fees += validate_transaction(tx, params, ledger, contracts)
        total_cost += tx.calc_min_fee(params)
    if total_cost > params.max_block_cost:
        raise ValidationError(f"block cost too high: {total_cost}")

    base_allowed = max(block_reward, params.min_reward, total_fees)
    if base_spent > base_allowed:
        raise ValidationError("coin base over-spend")
    return total_fees


def check_vdf_proof_shape(
    proof: ProofOfTime,
    params: ChainParams,
    prev_height: int,
    prev_iters: int,
    expected_iters: int,
) -> None:
    """Check segment count, start, height and length of a proof of time."""
    count = len(proof.segments)
    if count < params.min_vdf_segments:
        raise ValidationError(f"not enough segments: {count}")
    if count > params.max_vdf_segments:
        raise ValidationError(f"too many segments: {count}")
    if proof.start != prev_iters:
        raise ValidationError(f"invalid start: {proof.start} != {prev_iters}")
    if proof.height != prev_height + 1:
        raise ValidationError(f"invalid height: {proof.height} != {prev_height + 1}")
    num_iters = proof.get_num_iters()
    if num_iters != expected_iters:
        raise ValidationError(f"wrong delta iters: {num_iters} != {expected_iters}")