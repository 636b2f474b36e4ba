"""Farmer: holds plot keys and signs blocks that pay out rewards."""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional

from chainnode.block import (
    BlockHeader,
    Transaction,
    TxIn,
    TxioKey,
    TxOut,
    hash_parts,
    sign,
)

log = logging.getLogger(__name__)


class Farmer:
    """Signs blocks for proofs made with keys it knows."""

    def __init__(
        self,
        name: str = "Farmer",
        reward_addr: Optional[bytes] = None,
        project_addr: Optional[bytes] = None,
        devfee_ratio: float = 0.0,
    ) -> None:
        self.name = name
        self.reward_addr = reward_addr
        self.project_addr = project_addr
        self.devfee_ratio = devfee_ratio
        self.key_map: dict[bytes, bytes] = {}
        self._mac_addr = int.from_bytes(hash_parts(name)[:8], "little")

    def add_keys(self, public_key: bytes, private_key: bytes) -> None:
        self.key_map[public_key] = private_key
        log.info("Got key: %s", public_key.hex())

    def get_mac_addr(self) -> int:
        return self._mac_addr

    def _private_key(self, public_key: bytes, what: str) -> bytes:
        try:
            return self.key_map[public_key]
        except KeyError:
            raise ValueError(f"unknown {what} key") from None

    def sign_block(self, block: BlockHeader, reward_amount: int) -> BlockHeader:
        """Return a copy of the block with a coin base and both signatures."""
        proof = block.proof
        if not proof:
            raise ValueError("invalid proof")
        pool_sk = self._private_key(proof.pool_key, "pool")
        farmer_sk = self._private_key(proof.farmer_key, "farmer")

        base = Transaction(inputs=[TxIn(prev=TxioKey(txid=block.prev))])
        amount_left = reward_amount
        if self.project_addr and amount_left > 0:
            fee = int(float(amount_left) * self.devfee_ratio)
            if fee > 0:
                amount_left -= fee
                base.outputs.append(TxOut(address=self.project_addr, amount=fee))
        if self.reward_addr and amount_left > 0:
            base.outputs.append(TxOut(address=self.reward_addr, amount=amount_left))
        base.finalize()

        copy = dataclasses.replace(block)
        copy.tx_base = base
        copy.hash = copy.calc_hash()
        copy.pool_sig = sign(pool_sk, copy.hash)
        copy.farmer_sig = sign(farmer_sk, copy.hash)
        return copy