"""Fork tree, committed history and state switching between competing forks."""

from __future__ import annotations

import logging
import time
import weakref
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional

from chainnode.block import ZERO_HASH, Block, BlockHeader, ChainParams, Contract, hash_parts
from chainnode.ledger import Ledger
from chainnode.storage import BlockStore
from chainnode.validation import validate_block

log = logging.getLogger(__name__)


def _now_micros() -> int:
    return time.time_ns() // 1000


@dataclass
class VdfPoint:
    """A verified point on both VDF chains at a given height."""

    height: int = 0
    iters: int = 0
    output: tuple[bytes, bytes] = (ZERO_HASH, ZERO_HASH)
    recv_time: int = 0


@dataclass(eq=False)
class Fork:
    """A block not yet committed, with what is known about it so far.

    The link to the previous fork is weak: once the parent is dropped from
    the tree (committed or purged) the link ends the fork line.
    """

    block: Block
    recv_time: int = 0
    is_verified: bool = False
    is_proof_verified: bool = False
    is_finalized: bool = False
    proof_score: int = 0
    diff_block: Optional[BlockHeader] = None
    _prev: Optional[weakref.ref] = field(default=None, repr=False)

    @property
    def prev(self) -> Optional[Fork]:
        return self._prev() if self._prev is not None else None

    @prev.setter
    def prev(self, fork: Optional[Fork]) -> None:
        self._prev = weakref.ref(fork) if fork is not None else None


class Chain:
    """Blocks in the fork tree on top of a committed history, and the ledger state."""

    def __init__(
        self,
        params: Optional[ChainParams] = None,
        ledger: Optional[Ledger] = None,
        contracts: Optional[Mapping[bytes, Contract]] = None,
        store: Optional[BlockStore] = None,
        max_history: int = 1000,
        on_block_verified: Optional[Callable[[Block], None]] = None,
    ) -> None:
        self.params = params or ChainParams()
        self.ledger = ledger or Ledger()
        self.contracts: Mapping[bytes, Contract] = contracts if contracts is not None else {}
        self.store = store
        self.max_history = max_history
        self.on_block_verified = on_block_verified
        self.fork_tree: dict[bytes, Fork] = {}
        self.history: dict[int, BlockHeader] = {}
        self.hash_index: dict[bytes, int] = {}
        self.verified_vdfs: dict[int, VdfPoint] = {}
        self.is_synced = False
        self.is_replay = False

    @property
    def state_hash(self) -> bytes:
        return self.ledger.state_hash

    # lookups

    def get_root(self) -> Optional[BlockHeader]:
        """The most recently committed header, or None before anything was committed."""
        if not self.history:
            return None
        return next(reversed(self.history.values()))

    def find_fork(self, block_hash: bytes) -> Optional[Fork]:
        return self.fork_tree.get(block_hash)

    def find_block(self, block_hash: bytes) -> Optional[Block]:
        fork = self.find_fork(block_hash)
        return fork.block if fork else None

    def find_header(self, block_hash: bytes) -> Optional[BlockHeader]:
        block = self.find_block(block_hash)
        if block is not None:
            return block
        height = self.hash_index.get(block_hash)
        if height is not None:
            return self.history.get(height)
        return None

    def find_prev_fork(self, fork: Optional[Fork], distance: int = 1) -> Optional[Fork]:
        for _ in range(distance):
            if fork is None:
                break
            fork = fork.prev
        return fork

    def find_prev_header(
        self, block: Optional[BlockHeader], distance: int = 1, clamped: bool = False
    ) -> Optional[BlockHeader]:
        """Walk back the given number of blocks; clamped stops at genesis."""
        if block is None:
            return None
        if distance > self.params.finality_delay and (block.height >= distance or clamped):
            height = block.height - distance if block.height > distance else 0
            header = self.history.get(height)
            if header is not None:
                return header
        for _ in range(distance):
            if block is None:
                break
            if clamped and block.height == 0:
                break
            block = self.find_header(block.prev)
        return block

    def find_diff_header(self, block: BlockHeader, offset: int = 0) -> Optional[BlockHeader]:
        """The header whose difficulties apply to the block at the given offset."""
        interval = self.params.challenge_interval
        if offset > interval:
            raise ValueError("offset out of range")
        height = block.height + offset
        height -= height % interval
        return self.find_prev_header(block, block.height + interval - height, True)

    def get_challenge(self, block: BlockHeader, vdf_challenge: bytes, offset: int = 0) -> bytes:
        diff_block = self.find_diff_header(block, offset)
        if diff_block is None:
            return ZERO_HASH
        return hash_parts(diff_block.hash, vdf_challenge)

    def find_vdf_challenge(self, block: BlockHeader, offset: int = 0) -> Optional[bytes]:
        """The VDF output that seeds the challenge, or None if its block is unknown."""
        delay = self.params.challenge_delay
        if offset > delay:
            raise ValueError("offset out of range")
        vdf_block = self.find_prev_header(block, delay - offset, True)
        if vdf_block is None:
            return None
        return vdf_block.vdf_output[1]

    def calc_block_reward(self, block: BlockHeader) -> int:
        """Nominal reward of a block: zero without a proof, else scaled by space difficulty."""
        if not block.proof:
            return 0
        diff_block = self.find_diff_header(block)
        if diff_block is None:
            return 0
        return self.params.reward_factor * diff_block.space_diff

    # fork tree

    def add_block(self, block: Block, recv_time: Optional[int] = None) -> bool:
        """Put a block into the fork tree; False if it is known, too old or invalid."""
        if block.hash in self.fork_tree:
            return False
        root = self.get_root()
        if root is not None and block.height <= root.height:
            return False
        if not block.is_valid():
            return False
        fork = Fork(block=block, recv_time=_now_micros() if recv_time is None else recv_time)
        fork.prev = self.find_fork(block.prev)
        for other in self.fork_tree.values():
            if other.prev is None and other.block.prev == block.hash:
                other.prev = fork
        self.fork_tree[block.hash] = fork
        return True

    def get_fork_line(self, fork_head: Optional[Fork] = None) -> list[Fork]:
        """Forks from the oldest uncommitted one up to the head (default: current state)."""
        fork = fork_head if fork_head is not None else self.find_fork(self.state_hash)
        line = []
        while fork is not None:
            line.append(fork)
            fork = fork.prev
        line.reverse()
        return line

    def calc_fork_weight(self, root: BlockHeader, fork: Optional[Fork]) -> Optional[int]:
        """Total weight of the forks back to root, or None if they do not all qualify."""
        threshold = self.params.score_threshold
        total = 0
        while fork is not None:
            if not fork.is_proof_verified or fork.proof_score > threshold:
                return None
            total += 2 * threshold - fork.proof_score
            if fork.block.prev == root.hash:
                return total
            fork = fork.prev
        return None

    def find_best_fork(
        self, root: Optional[BlockHeader] = None, at_height: Optional[int] = None
    ) -> Optional[Fork]:
        """Heaviest fork above root; ties go to the smaller block hash."""
        if root is None:
            root = self.get_root()
        if root is None:
            return None
        best: Optional[Fork] = None
        max_weight = 0
        for fork in self.fork_tree.values():
            block = fork.block
            if block.height <= root.height:
                continue
            if at_height is not None and block.height != at_height:
                continue
            weight = self.calc_fork_weight(root, fork)
            if weight is None:
                continue
            if (
                best is None
                or weight > max_weight
                or (weight == max_weight and block.hash < best.block.hash)
            ):
                best = fork
                max_weight = weight
        return best

    def purge_tree(self) -> None:
        """Drop forks at or below the committed root."""
        root = self.get_root()
        if root is None:
            return
        stale = [h for h, fork in self.fork_tree.items() if fork.block.height <= root.height]
        for block_hash in stale:
            del self.fork_tree[block_hash]

    # state

    def apply(self, block: Block) -> bool:
        return self.ledger.apply(block)

    def revert(self) -> bool:
        return self.ledger.revert()

    def commit(self, block: Block) -> bool:
        """Make the oldest applied block part of the history; False if it cannot be."""
        root = self.get_root()
        if root is not None and block.prev != root.hash:
            return False
        if not self.ledger.commit(block):
            return False
        self.hash_index[block.hash] = block.height
        self.history[block.height] = block.get_header()

        while len(self.history) > self.max_history:
            del self.history[next(iter(self.history))]
        if self.history:
            begin = next(iter(self.history))
            for height in [h for h in self.verified_vdfs if h < begin]:
                del self.verified_vdfs[height]

        if self.store is not None and not self.is_replay:
            self.store.write_block(block)
        self.fork_tree.pop(block.hash, None)
        self.purge_tree()
        return True

    def validate(self, block: Block) -> int:
        """Check a block against the current state; return its total fees."""
        prev = self.find_prev_header(block)
        return validate_block(
            block, prev, self.params, self.ledger, self.contracts, self.calc_block_reward(block)
        )

    def fork_to(self, fork_head: Fork) -> Optional[BlockHeader]:
        """Switch the state to the given fork.

        Returns the header where the state forked off, or None if the new
        fork simply extends the current state. A block that fails validation
        is dropped, the previous state is restored and the error re-raised.
        """
        prev_state = self.find_fork(self.state_hash)
        fork_line = self.get_fork_line(fork_head)

        did_fork = False
        forked_at: Optional[BlockHeader] = None
        while True:
            match = next((f.block for f in fork_line if f.block.hash == self.state_hash), None)
            if match is not None:
                forked_at = match
                break
            did_fork = True
            if not self.revert():
                forked_at = self.get_root()
                break

        for fork in fork_line:
            block = fork.block
            if block.prev != self.state_hash:
                continue
            if not fork.is_verified:
                try:
                    self.validate(block)
                except ValueError as ex:
                    log.warning(
                        "Block verification failed for height %d with: %s", block.height, ex
                    )
                    self.fork_tree.pop(block.hash, None)
                    if prev_state is not None and prev_state is not fork:
                        self.fork_to(prev_state)
                    raise
                fork.is_verified = True
                if self.is_synced:
                    if self.on_block_verified is not None:
                        self.on_block_verified(block)
                else:
                    self.verified_vdfs[block.height] = VdfPoint(
                        height=block.height,
                        iters=block.vdf_iters,
                        output=block.vdf_output,
                        recv_time=_now_micros(),
                    )
            self.apply(block)
        return forked_at if did_fork else None