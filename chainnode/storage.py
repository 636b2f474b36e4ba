"""Append-only block file with offset indexes for blocks and transactions."""

from __future__ import annotations

import json
import logging
import os
import struct
from contextlib import contextmanager
from dataclasses import fields, is_dataclass
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from chainnode.block import Block, BlockHeader, Operation, Transaction, TxIn, TxioKey, TxOut
from chainnode.proofs import ProofOfSpace, ProofOfTime, TimeSegment

log = logging.getLogger(__name__)

_RECORD = struct.Struct("<cI")
_HEADER = b"H"
_TX = b"T"
_END = b"E"

_TYPES = {
    cls.__name__: cls
    for cls in (TxioKey, TxIn, TxOut, Transaction, BlockHeader, ProofOfSpace, ProofOfTime, TimeSegment)
}


def _encode(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, (bytes, bytearray)):
        return {"$b": bytes(value).hex()}
    if isinstance(value, tuple):
        return {"$tuple": [_encode(v) for v in value]}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    if isinstance(value, dict):
        return {"$dict": [[_encode(k), _encode(v)] for k, v in value.items()]}
    if type(value) is Operation:
        return {"$obj": "Operation", "fields": {}}
    name = type(value).__name__
    if is_dataclass(value) and _TYPES.get(name) is type(value):
        return {"$obj": name, "fields": {f.name: _encode(getattr(value, f.name)) for f in fields(value)}}
    raise TypeError(f"cannot store value of type {name}")


def _decode(value: Any) -> Any:
    if isinstance(value, list):
        return [_decode(v) for v in value]
    if not isinstance(value, dict):
        return value
    if "$b" in value:
        return bytes.fromhex(value["$b"])
    if "$tuple" in value:
        return tuple(_decode(v) for v in value["$tuple"])
    if "$dict" in value:
        return {_decode(k): _decode(v) for k, v in value["$dict"]}
    name = value["$obj"]
    if name == "Operation":
        return Operation()
    cls = _TYPES[name]
    return cls(**{k: _decode(v) for k, v in value["fields"].items()})


def _as_block(header: BlockHeader, tx_list: list[Transaction]) -> Block:
    return Block(**{f.name: getattr(header, f.name) for f in fields(BlockHeader)}, tx_list=tx_list)


class BlockStore:
    """Blocks stored one after another: a header, its transactions and an end marker."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self.path = Path(path)
        self._file = None
        self.block_index: dict[int, tuple[int, bytes]] = {}
        self.tx_index: dict[bytes, tuple[int, int]] = {}
        self._hash_index: dict[bytes, int] = {}

    def __enter__(self) -> BlockStore:
        self.open()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def open(self) -> None:
        if self._file is not None:
            raise RuntimeError("block store is already open")
        self._file = open(self.path, "r+b" if self.path.exists() else "w+b")

    def close(self) -> None:
        if self._file is None:
            return
        self._write_record(_END, None)
        self._file.flush()
        self._file.truncate()
        self._file.close()
        self._file = None

    @property
    def _handle(self):
        if self._file is None:
            raise RuntimeError("block store is not open")
        return self._file

    def _write_record(self, kind: bytes, value: Any) -> None:
        payload = b"" if value is None else json.dumps(_encode(value)).encode("utf-8")
        self._handle.write(_RECORD.pack(kind, len(payload)))
        self._handle.write(payload)

    def _read_record(self) -> Optional[tuple[bytes, Any]]:
        head = self._handle.read(_RECORD.size)
        if not head:
            return None
        if len(head) < _RECORD.size:
            raise ValueError("truncated record header")
        kind, length = _RECORD.unpack(head)
        payload = self._handle.read(length)
        if len(payload) != length:
            raise ValueError("truncated record")
        if kind == _END:
            return kind, None
        if kind not in (_HEADER, _TX):
            raise ValueError(f"unknown record type {kind!r}")
        return kind, _decode(json.loads(payload))

    def _read_transactions(self) -> list[tuple[int, Transaction]]:
        txs = []
        while True:
            offset = self._handle.tell()
            record = self._read_record()
            if record is None:
                raise ValueError("missing end of block")
            kind, value = record
            if kind == _END:
                return txs
            if kind != _TX or not isinstance(value, Transaction):
                raise ValueError("unexpected record inside block")
            txs.append((offset, value))

    @contextmanager
    def _preserve_position(self) -> Iterator[None]:
        position = self._handle.tell()
        try:
            yield
        finally:
            self._handle.seek(position)

    def read_block(self) -> Optional[Block]:
        """Read the next block and index it; None at the end or on a damaged tail."""
        offset = self._handle.tell()
        try:
            record = self._read_record()
            if record is not None and record[0] == _HEADER and isinstance(record[1], BlockHeader):
                header = record[1]
                txs = self._read_transactions()
                self.block_index[header.height] = (offset, header.hash)
                self._hash_index[header.hash] = header.height
                for tx_offset, tx in txs:
                    self.tx_index[tx.id] = (tx_offset, header.height)
                return _as_block(header, [tx for _, tx in txs])
        except (ValueError, TypeError, KeyError) as ex:
            log.warning("Failed to read block: %s", ex)
        self._handle.seek(offset)
        return None

    def write_block(self, block: Block) -> None:
        handle = self._handle
        offset = handle.tell()
        self.block_index[block.height] = (offset, block.hash)
        self._hash_index[block.hash] = block.height
        self._write_record(_HEADER, block.get_header())
        for tx in block.tx_list:
            self.tx_index[tx.id] = (handle.tell(), block.height)
            self._write_record(_TX, tx)
        self._write_record(_END, None)
        handle.flush()
        handle.truncate()

    def load_block(self, block_hash: bytes) -> Optional[Block]:
        """Read a stored block by hash without touching the write position."""
        height = self._hash_index.get(block_hash)
        if height is None or height not in self.block_index:
            return None
        offset, _ = self.block_index[height]
        with self._preserve_position():
            self._handle.seek(offset)
            try:
                record = self._read_record()
                if record is None or not isinstance(record[1], BlockHeader):
                    return None
                txs = self._read_transactions()
            except (ValueError, TypeError, KeyError):
                return None
        return _as_block(record[1], [tx for _, tx in txs])

    def load_transaction(self, txid: bytes) -> Optional[Transaction]:
        """Read a stored transaction by id without touching the write position."""
        entry = self.tx_index.get(txid)
        if entry is None:
            return None
        with self._preserve_position():
            self._handle.seek(entry[0])
            record = self._read_record()
        if record is None or not isinstance(record[1], Transaction):
            raise ValueError("stored record is not a transaction")
        return record[1]

    def block_hash_at(self, height: int) -> Optional[bytes]:
        entry = self.block_index.get(height)
        return entry[1] if entry else None

    def tx_height(self, txid: bytes) -> Optional[int]:
        entry = self.tx_index.get(txid)
        return entry[1] if entry else None