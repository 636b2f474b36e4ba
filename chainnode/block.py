"""Core chain data: transactions, contracts, block headers and blocks."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field, fields
from typing import Any, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

ZERO_HASH = bytes(32)
_UINT64_MAX = (1 << 64) - 1


def hash_parts(*args: Any) -> bytes:
    """SHA-256 over the concatenated encoding of the arguments.

    Byte strings are written as they are, text as UTF-8 and integers as
    unsigned 64-bit little-endian values.
    """
    digest = hashlib.sha256()
    for part in args:
        if isinstance(part, (bytes, bytearray, memoryview)):
            digest.update(bytes(part))
        elif isinstance(part, str):
            digest.update(part.encode("utf-8"))
        elif isinstance(part, int):
            if not 0 <= part <= _UINT64_MAX:
                raise ValueError(f"integer out of 64-bit range: {part}")
            digest.update(part.to_bytes(8, "little"))
        else:
            raise TypeError(f"cannot hash value of type {type(part).__name__}")
    return digest.digest()


def generate_keypair(seed: bytes) -> tuple[bytes, bytes]:
    """Derive a (private key, public key) pair from a 32-byte seed."""
    if len(seed) != 32:
        raise ValueError("seed must be 32 bytes")
    private = Ed25519PrivateKey.from_private_bytes(bytes(seed))
    public = private.public_key().public_bytes(
        serialization.Encoding.Raw, serialization.PublicFormat.Raw
    )
    return bytes(seed), public


def sign(private_key: bytes, message: bytes) -> bytes:
    """Sign a message with a raw 32-byte private key."""
    return Ed25519PrivateKey.from_private_bytes(private_key).sign(message)


def verify_signature(public_key: bytes, message: bytes, signature: Optional[bytes]) -> bool:
    """Return whether the signature over the message matches the public key."""
    if not signature:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


@dataclass
class ChainParams:
    """Consensus parameters of a chain."""

    decimals: int = 6
    min_ksize: int = 26
    max_ksize: int = 32
    plot_filter: int = 4
    score_bits: int = 10
    score_threshold: int = 1000
    target_score: int = 500
    time_diff_constant: int = 1000
    challenge_interval: int = 48
    challenge_delay: int = 4
    finality_delay: int = 3
    commit_delay: int = 18
    num_vdf_segments: int = 256
    min_vdf_segments: int = 128
    max_vdf_segments: int = 8192
    max_diff_adjust: int = 10
    block_time: int = 10
    initial_time_diff: int = 1000
    initial_space_diff: int = 10
    vdf_seed: str = "vdf_seed"
    min_reward: int = 0
    reward_factor: int = 1000
    max_block_cost: int = 10_000_000
    min_txfee: int = 100
    min_txfee_io: int = 100


@dataclass(frozen=True, order=True)
class TxioKey:
    """Reference to one output of a transaction."""

    txid: bytes = ZERO_HASH
    index: int = 0


@dataclass
class TxIn:
    """Transaction input spending a previous output."""

    prev: TxioKey = field(default_factory=TxioKey)
    solution: int = 0


@dataclass
class TxOut:
    """Transaction output paying an amount of a contract's coin to an address."""

    address: bytes = ZERO_HASH
    contract: bytes = ZERO_HASH
    amount: int = 0


class Operation:
    """Contract operation carried by a transaction."""

    def calc_hash(self) -> bytes:
        return ZERO_HASH


class Contract:
    """Base contract: never valid, so it accepts no solution."""

    def is_valid(self) -> bool:
        return False

    def calc_hash(self) -> bytes:
        return ZERO_HASH

    def validate(self, operation: Optional[Operation], solution: Any, txid: bytes) -> bool:
        """Check that a solution signs the transaction id for a valid contract.

        The solution is expected to carry ``pubkey`` and ``signature``
        attributes. An invalid contract accepts nothing.
        """
        if not self.is_valid() or solution is None:
            return False
        pubkey = getattr(solution, "pubkey", None)
        signature = getattr(solution, "signature", None)
        if pubkey is None:
            return False
        return verify_signature(pubkey, txid, signature)


@dataclass
class Transaction:
    """A transfer of outputs, identified by the hash of its content."""

    id: bytes = ZERO_HASH
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    execute: list[Operation] = field(default_factory=list)
    solutions: list[Any] = field(default_factory=list)

    def calc_hash(self) -> bytes:
        parts: list[Any] = [len(self.inputs)]
        for tx_in in self.inputs:
            parts += [tx_in.prev.txid, tx_in.prev.index, tx_in.solution & _UINT64_MAX]
        parts.append(len(self.outputs))
        for out in self.outputs:
            parts += [out.address, out.contract, out.amount]
        parts.append(len(self.execute))
        parts += [op.calc_hash() for op in self.execute]
        return hash_parts(*parts)

    def finalize(self) -> None:
        self.id = self.calc_hash()

    def is_valid(self) -> bool:
        return self.id == self.calc_hash()

    def calc_min_fee(self, params: ChainParams) -> int:
        return params.min_txfee + (len(self.inputs) + len(self.outputs)) * params.min_txfee_io

    def get_solution(self, index: int) -> Any:
        if 0 <= index < len(self.solutions):
            return self.solutions[index]
        return None


@dataclass
class BlockHeader:
    """Block header; its hash commits to the proof, coin base and transactions."""

    prev: bytes = ZERO_HASH
    height: int = 0
    time_diff: int = 0
    space_diff: int = 0
    vdf_iters: int = 0
    vdf_output: tuple[bytes, bytes] = (ZERO_HASH, ZERO_HASH)
    proof: Any = None
    tx_base: Optional[Transaction] = None
    tx_hash: bytes = ZERO_HASH
    hash: bytes = ZERO_HASH
    pool_sig: Optional[bytes] = None
    farmer_sig: Optional[bytes] = None

    def calc_hash(self) -> bytes:
        return hash_parts(
            self.prev,
            self.height,
            self.time_diff,
            self.space_diff,
            self.vdf_iters,
            self.vdf_output[0],
            self.vdf_output[1],
            self.proof.calc_hash() if self.proof else ZERO_HASH,
            self.tx_base.calc_hash() if self.tx_base else ZERO_HASH,
            self.tx_hash,
        )

    def is_valid(self) -> bool:
        return self.calc_hash() == self.hash


@dataclass
class Block(BlockHeader):
    """A block header together with its transactions."""

    tx_list: list[Transaction] = field(default_factory=list)

    def calc_tx_hash(self) -> bytes:
        return hash_parts(*(tx.calc_hash() for tx in self.tx_list))

    def finalize(self) -> None:
        self.tx_hash = self.calc_tx_hash()
        self.hash = self.calc_hash()

    def is_valid(self) -> bool:
        return super().is_valid() and self.calc_tx_hash() == self.tx_hash

    def get_header(self) -> BlockHeader:
        return BlockHeader(**{f.name: getattr(self, f.name) for f in fields(BlockHeader)})