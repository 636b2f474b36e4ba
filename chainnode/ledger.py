"""Unspent and spent output bookkeeping with revertible per-block change logs."""

from __future__ import annotations

import enum
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from chainnode.block import ZERO_HASH, Block, Transaction, TxioKey, TxOut


@dataclass(frozen=True)
class Utxo:
    """An output together with the height of the block that created it."""

    address: bytes = ZERO_HASH
    contract: bytes = ZERO_HASH
    amount: int = 0
    height: int = 0

    @classmethod
    def from_output(cls, out: TxOut, height: int) -> Utxo:
        return cls(address=out.address, contract=out.contract, amount=out.amount, height=height)


@dataclass(frozen=True)
class UtxoEntry:
    """An unspent output and the key that refers to it."""

    key: TxioKey
    output: Utxo


@dataclass(frozen=True)
class StxoEntry:
    """A spent output, its key and the input key that spent it."""

    key: TxioKey
    output: Utxo
    spent: TxioKey


@dataclass(frozen=True)
class TxoInfo:
    """What is known about an output: the output and, if spent, the spending input."""

    output: Utxo
    spent: Optional[TxioKey] = None


class TxType(enum.Enum):
    RECEIVE = "receive"
    SEND = "send"


@dataclass(frozen=True)
class TxEntry:
    """One line of an address history."""

    height: int
    type: TxType
    contract: bytes
    address: bytes
    amount: int


@dataclass
class ChangeLog:
    """Everything one applied block changed, so that it can be reverted or committed."""

    prev_state: bytes
    utxo_added: dict[TxioKey, Utxo] = field(default_factory=dict)
    utxo_removed: dict[TxioKey, StxoEntry] = field(default_factory=dict)
    tx_added: list[bytes] = field(default_factory=list)


def _discard(index: dict[bytes, set[TxioKey]], address: bytes, key: TxioKey) -> None:
    keys = index.get(address)
    if keys is None:
        return
    keys.discard(key)
    if not keys:
        del index[address]


class Ledger:
    """Output state of the chain: committed history plus uncommitted applied blocks."""

    def __init__(self) -> None:
        self.state_hash: bytes = ZERO_HASH
        self.utxo_map: dict[TxioKey, Utxo] = {}
        self.addr_map: dict[bytes, set[TxioKey]] = defaultdict(set)
        self.taddr_map: dict[bytes, set[TxioKey]] = defaultdict(set)
        self.stxo_index: dict[TxioKey, StxoEntry] = {}
        self.saddr_map: dict[bytes, list[TxioKey]] = defaultdict(list)
        self.tx_map: dict[bytes, int] = {}
        self.tx_index: dict[bytes, int] = {}
        self.change_log: deque[ChangeLog] = deque()

    def apply(self, block: Block) -> bool:
        """Apply a block on top of the current state; False if it does not follow it."""
        if block.prev != self.state_hash:
            return False
        log = ChangeLog(prev_state=self.state_hash)
        if block.tx_base:
            self._apply_tx(block, block.tx_base, log)
        for tx in block.tx_list:
            self._apply_tx(block, tx, log)
        self.state_hash = block.hash
        self.change_log.append(log)
        return True

    def _apply_tx(self, block: Block, tx: Transaction, log: ChangeLog) -> None:
        for i, tx_in in enumerate(tx.inputs):
            stxo = self.utxo_map.pop(tx_in.prev, None)
            if stxo is not None:
                spent = TxioKey(tx.id, i)
                log.utxo_removed[tx_in.prev] = StxoEntry(tx_in.prev, stxo, spent)
                _discard(self.taddr_map, stxo.address, tx_in.prev)
        for i, out in enumerate(tx.outputs):
            key = TxioKey(tx.id, i)
            utxo = Utxo.from_output(out, block.height)
            self.utxo_map[key] = utxo
            self.taddr_map[utxo.address].add(key)
            log.utxo_added[key] = utxo
        self.tx_map[tx.id] = block.height
        log.tx_added.append(tx.id)

    def revert(self) -> bool:
        """Undo the most recently applied block; False if nothing is left to undo."""
        if not self.change_log:
            return False
        log = self.change_log.pop()
        for key, utxo in log.utxo_added.items():
            self.utxo_map.pop(key, None)
            _discard(self.taddr_map, utxo.address, key)
        for key, entry in log.utxo_removed.items():
            utxo = entry.output
            self.utxo_map[key] = utxo
            if key not in self.addr_map.get(utxo.address, ()):
                self.taddr_map[utxo.address].add(key)
        for txid in log.tx_added:
            self.tx_map.pop(txid, None)
        self.state_hash = log.prev_state
        return True

    def commit(self, block: Block) -> bool:
        """Make the oldest applied block permanent; False if it is not that block."""
        if not self.change_log or self.change_log[0].prev_state != block.prev:
            return False
        log = self.change_log.popleft()
        for key, entry in log.utxo_removed.items():
            address = entry.output.address
            self.stxo_index[key] = entry
            self.saddr_map[address].append(key)
            _discard(self.addr_map, address, key)
        for key, utxo in log.utxo_added.items():
            self.addr_map[utxo.address].add(key)
            _discard(self.taddr_map, utxo.address, key)
        for txid in log.tx_added:
            self.tx_map.pop(txid, None)
            self.tx_index[txid] = block.height
        return True

    def get_tx_height(self, txid: bytes) -> Optional[int]:
        height = self.tx_map.get(txid)
        if height is not None:
            return height
        return self.tx_index.get(txid)

    def get_txo_info(self, key: TxioKey) -> TxoInfo:
        utxo = self.utxo_map.get(key)
        if utxo is not None:
            return TxoInfo(output=utxo)
        entry = self.stxo_index.get(key)
        if entry is None:
            for log in self.change_log:
                entry = log.utxo_removed.get(key)
                if entry is not None:
                    break
        if entry is None:
            raise KeyError("no such txo entry")
        return TxoInfo(output=entry.output, spent=entry.spent)

    def get_utxo_list(self, addresses: Iterable[bytes]) -> list[UtxoEntry]:
        result = []
        for address in addresses:
            for index in (self.addr_map, self.taddr_map):
                for key in sorted(index.get(address, ())):
                    utxo = self.utxo_map.get(key)
                    if utxo is not None:
                        result.append(UtxoEntry(key, utxo))
        return result

    def get_stxo_list(self, addresses: Iterable[bytes]) -> list[StxoEntry]:
        addresses = list(addresses)
        result = []
        for address in addresses:
            for key in self.saddr_map.get(address, ()):
                entry = self.stxo_index.get(key)
                if entry is not None:
                    result.append(entry)
        addr_set = set(addresses)
        for log in self.change_log:
            result.extend(e for e in log.utxo_removed.values() if e.output.address in addr_set)
        return result

    def get_balance(self, address: bytes, contract: bytes = ZERO_HASH) -> int:
        return self.get_total_balance([address], contract)

    def get_total_balance(self, addresses: Iterable[bytes], contract: bytes = ZERO_HASH) -> int:
        return sum(
            entry.output.amount
            for entry in self.get_utxo_list(addresses)
            if entry.output.contract == contract
        )

    def get_history_for(
        self,
        addresses: Iterable[bytes],
        min_height: int,
        get_transaction: Callable[[bytes], Optional[Transaction]],
    ) -> list[TxEntry]:
        """Receive and send entries for the addresses from min_height on, by height."""
        addresses = list(addresses)
        addr_set = set(addresses)
        outputs: dict[bytes, list[Utxo]] = defaultdict(list)
        inputs: dict[bytes, list[StxoEntry]] = defaultdict(list)
        txids: dict[bytes, None] = {}

        for entry in self.get_utxo_list(addresses):
            if entry.output.height >= min_height:
                outputs[entry.key.txid].append(entry.output)
                txids.setdefault(entry.key.txid)
        for entry in self.get_stxo_list(addresses):
            if entry.output.height >= min_height:
                outputs[entry.key.txid].append(entry.output)
                txids.setdefault(entry.key.txid)
            inputs[entry.spent.txid].append(entry)
            txids.setdefault(entry.spent.txid)

        history: list[TxEntry] = []
        for txid in txids:
            amount: dict[bytes, int] = defaultdict(int)
            for utxo in outputs.get(txid, ()):
                amount[utxo.contract] += utxo.amount
            for entry in inputs.get(txid, ()):
                amount[entry.output.contract] -= entry.output.amount
            for utxo in outputs.get(txid, ()):
                if amount[utxo.contract] > 0:
                    history.append(
                        TxEntry(utxo.height, TxType.RECEIVE, utxo.contract, utxo.address, utxo.amount)
                    )
            if not inputs.get(txid):
                continue
            height = self.get_tx_height(txid)
            if height is None or height < min_height:
                continue
            tx = get_transaction(txid)
            if tx is None:
                continue
            for out in tx.outputs:
                if amount[out.contract] < 0 and out.address not in addr_set:
                    history.append(TxEntry(height, TxType.SEND, out.contract, out.address, out.amount))
        history.sort(key=lambda e: e.height)
        return history