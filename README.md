# chainnode

A library for running the core of a blockchain node built on proof of space
and proof of time: block and transaction data, an unspent-output ledger that
can apply, revert and commit blocks, an append-only block file, consensus
checks, a fork tree with best-fork selection, and a `Node` that ties these
together and produces blocks.

## Modules

- `chainnode.block` – `ChainParams` (consensus parameters), `TxioKey`,
  `TxIn`, `TxOut`, `Transaction`, `Operation`, `Contract`, `BlockHeader` and
  `Block`. Hashes are SHA-256 over `hash_parts(*args)`, which writes bytes
  as-is, text as UTF-8 and integers as unsigned 64-bit little-endian values.
  `generate_keypair(seed)` takes a 32-byte seed; `sign` and
  `verify_signature` use Ed25519.
- `chainnode.proofs` – `ProofOfSpace`, `ProofOfTime` and `TimeSegment`.
  `iterate_hash`, `build_segments` and `verify_segments` work on a plain
  SHA-256 hash chain; `verify_chain(proof, chain, begin)` recomputes one of
  the two chains of a `ProofOfTime`, including infused values, and raises
  `ValueError` naming the first bad segment.
- `chainnode.farmer` – `Farmer` keeps a map of public to private keys
  (`add_keys`) and `sign_block` returns a copy of a block with a coin-base
  transaction paying the reward (minus an optional `devfee_ratio` share to
  `project_addr`) and pool and farmer signatures. `get_mac_addr` returns an
  integer derived from the farmer's name.
- `chainnode.ledger` – `Ledger` holds unspent outputs (`Utxo`) and, per
  applied block, a `ChangeLog`. `apply`, `revert` and `commit` move the
  state; `get_balance`, `get_total_balance`, `get_utxo_list`,
  `get_stxo_list`, `get_txo_info`, `get_tx_height` and `get_history_for`
  (returning `TxEntry` items of type `TxType.RECEIVE` or `TxType.SEND`)
  answer queries.
- `chainnode.storage` – `BlockStore`, a file of length-prefixed JSON records
  (header, transactions, end marker) indexed by height, block hash and
  transaction id. Usable as a context manager.
- `chainnode.validation` – `validate_transaction`, `validate_block`,
  `validate_diff_adjust`, `clamp_diff`, `next_time_diff`, `next_space_diff`
  and `check_vdf_proof_shape`; rule violations raise `ValidationError`
  (a `ValueError`).
- `chainnode.chain` – `Chain` with its fork tree of `Fork` objects,
  committed history, `VdfPoint`s, fork weighting (`calc_fork_weight`,
  `find_best_fork`) and `fork_to`, which reverts and re-applies blocks and
  restores the previous state if a block fails validation.
- `chainnode.node` – `Node`: `start`, `update`, `add_block`,
  `add_transaction`, `handle_proof_of_time`, `handle_proof_response`,
  `make_block`, sync (`start_sync`, `sync_more`, `sync_result`), queries such
  as `get_height`, `get_block_at` and `get_transaction`, and `close`.

## Installation

```
pip install .
```

## Example

```python
from chainnode.block import Block, Transaction, TxOut, generate_keypair, sign, verify_signature
from chainnode.ledger import Ledger
from chainnode.proofs import build_segments, verify_segments

# A block commits to its header fields and its transaction list.
block = Block()
block.finalize()
assert block.is_valid()

# A hash chain split into segments verifies segment by segment.
begin = bytes(32)
segments = build_segments(begin, 1000, 100)
verify_segments(begin, segments)

# Signing with a key pair derived from a 32-byte seed.
private_key, public_key = generate_keypair(bytes(range(32)))
signature = sign(private_key, b"message")
assert verify_signature(public_key, b"message", signature)

# Applying a block with a coin base credits its outputs.
address = bytes(range(32, 64))
base = Transaction(outputs=[TxOut(address=address, amount=1_000_000)])
base.finalize()
genesis = Block(tx_base=base)
genesis.finalize()
ledger = Ledger()
ledger.apply(genesis)
assert ledger.get_balance(address) == 1_000_000
```

A node kept in memory creates its genesis block on start:

```python
from chainnode.node import Node

node = Node()
node.start()
assert node.get_height() == 0
node.close()
```

Pass `storage_path=` to keep committed blocks in a `BlockStore` file, and
`publish=` (a callable taking a topic and a value) to receive what the node
emits, such as `"committed_blocks"`, `"challenges"` and `"interval_request"`.

## What it does not do

- There is no network layer and no command-line program. Blocks for sync
  come from a `router` callable given to `Node` (height to list of blocks),
  farmers are looked up in the `farmers` mapping by `get_mac_addr()`, and
  all output goes through the `publish` callback.
- There is no plot harvesting: proofs of space are checked, with a quality
  derived by hashing, but nothing reads plot files to produce them.
- Proofs of time are verified on the CPU, one after another; nothing
  computes them.

## Running the tests

```
pip install .[test]
pytest
```