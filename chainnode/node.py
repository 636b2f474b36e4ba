"""Full node: receives blocks, transactions and proofs, keeps the best chain and makes blocks."""

from __future__ import annotations

import logging
import os
import time
from collections import deque
from typing import Any, Callable, Iterable, Optional, Union

from chainnode.block import ZERO_HASH, Block, BlockHeader, ChainParams, Contract, Transaction, hash_parts
from chainnode.chain import Chain, Fork, VdfPoint
from chainnode.farmer import Farmer
from chainnode.ledger import Ledger
from chainnode.proofs import ProofOfSpace, ProofOfTime, verify_chain
from chainnode.storage import BlockStore
from chainnode.validation import (
    ValidationError,
    check_vdf_proof_shape,
    next_space_diff,
    next_time_diff,
    validate_transaction,
    verify_signature,
)

log = logging.getLogger(__name__)

_NO_PEAK = (1 << 32) - 1
_MAX_TASKS = 10_000


def _now_micros() -> int:
    return time.time_ns() // 1000


class Node:
    """Keeps the fork tree and ledger up to date and drives block production."""

    def __init__(
        self,
        params: Optional[ChainParams] = None,
        storage_path: Union[str, os.PathLike, None] = None,
        farmers: Optional[dict[int, Farmer]] = None,
        router: Optional[Callable[[int], list[Block]]] = None,
        publish: Optional[Callable[[str, Any], None]] = None,
        contracts: Optional[dict[bytes, Contract]] = None,
        do_sync: bool = False,
        max_sync_jobs: int = 16,
        num_sync_retries: int = 3,
        replay_height: int = _NO_PEAK,
        max_history: int = 1000,
    ) -> None:
        self.params = params or ChainParams()
        self.store = BlockStore(storage_path) if storage_path is not None else None
        self.chain = Chain(
            self.params,
            Ledger(),
            contracts if contracts is not None else {},
            self.store,
            max_history,
            on_block_verified=lambda block: self._publish("verified_blocks", block),
        )
        self.farmers = farmers if farmers is not None else {}
        self.router = router
        self.publish = publish
        self.do_sync = do_sync
        self.max_sync_jobs = max_sync_jobs
        self.num_sync_retries = num_sync_retries
        self.replay_height = replay_height
        self.tx_pool: dict[bytes, Transaction] = {}
        self.proof_map: dict[bytes, Any] = {}
        self.challenge_map: dict[int, list[bytes]] = {}
        self.pending_vdfs: dict[int, list[ProofOfTime]] = {}
        self.vdf_verify_pending = 0
        self.sync_pos = 0
        self.sync_peak = _NO_PEAK
        self.sync_retry = 0
        self.sync_update = 0
        self.sync_pending: set[int] = set()
        self._tasks: deque[Callable[[], None]] = deque()
        self._running = False

    @property
    def is_synced(self) -> bool:
        return self.chain.is_synced

    @is_synced.setter
    def is_synced(self, value: bool) -> None:
        self.chain.is_synced = value

    def _publish(self, topic: str, value: Any) -> None:
        if self.publish is not None:
            self.publish(topic, value)

    def _add_task(self, task: Callable[[], None]) -> None:
        self._tasks.append(task)

    def _run_tasks(self) -> None:
        if self._running:
            return
        self._running = True
        try:
            count = 0
            while self._tasks and count < _MAX_TASKS:
                self._tasks.popleft()()
                count += 1
        finally:
            self._running = False

    def _vdf_seed(self) -> bytes:
        return hash_parts(self.params.vdf_seed)

    # life cycle

    def start(self) -> None:
        """Load stored blocks, create genesis if needed and run a first update."""
        seed = self._vdf_seed()
        self.chain.verified_vdfs[0] = VdfPoint(0, 0, (seed, seed), _now_micros())
        if self.store is not None:
            self.store.open()
            self.chain.is_replay = True
            begin = time.monotonic()
            while (block := self.store.read_block()) is not None:
                self.chain.apply(block)
                self._commit(block)
                if block.height >= self.replay_height:
                    break
            self.chain.is_replay = False
            peak = self.chain.find_header(self.chain.state_hash)
            if peak is not None:
                log.info("Loaded %d blocks from disk, took %.3f sec", peak.height + 1, time.monotonic() - begin)
        self.is_synced = not self.do_sync

        if self.chain.state_hash == ZERO_HASH:
            genesis = Block(
                time_diff=self.params.initial_time_diff,
                space_diff=self.params.initial_space_diff,
                vdf_output=(seed, seed),
            )
            genesis.finalize()
            self.chain.apply(genesis)
            self._commit(genesis)

        peak = self.chain.find_header(self.chain.state_hash)
        if peak is not None:
            self.chain.verified_vdfs[peak.height] = VdfPoint(
                peak.height, peak.vdf_iters, peak.vdf_output, _now_micros()
            )
        self.update()

    def close(self) -> None:
        if self.store is not None:
            self.store.close()

    # queries

    def get_height(self) -> int:
        peak = self.chain.find_header(self.chain.state_hash)
        if peak is None:
            raise RuntimeError("have no peak")
        return peak.height

    def get_synced_height(self) -> Optional[int]:
        return self.get_height() if self.is_synced else None

    def get_block(self, block_hash: bytes) -> Optional[Block]:
        block = self.chain.find_block(block_hash)
        if block is not None:
            return block
        if self.store is not None:
            return self.store.load_block(block_hash)
        return None

    def get_block_at(self, height: int) -> Optional[Block]:
        if self.store is not None:
            block_hash = self.store.block_hash_at(height)
            if block_hash is not None:
                return self.get_block(block_hash)
        line = self.chain.get_fork_line()
        if line:
            index = height - line[0].block.height
            if 0 <= index < len(line):
                return line[index].block
        return None

    def get_header_at(self, height: int) -> Optional[BlockHeader]:
        header = self.chain.history.get(height)
        if header is not None:
            return header
        block = self.get_block_at(height)
        return block.get_header() if block is not None else None

    def get_block_hash(self, height: int) -> Optional[bytes]:
        if self.store is not None:
            block_hash = self.store.block_hash_at(height)
            if block_hash is not None:
                return block_hash
        header = self.get_header_at(height)
        return header.hash if header is not None else None

    def get_transaction(self, txid: bytes) -> Optional[Transaction]:
        tx = self.tx_pool.get(txid)
        if tx is not None:
            return tx
        if self.store is not None:
            return self.store.load_transaction(txid)
        return None

    def get_transactions(self, ids: Iterable[bytes]) -> list[Optional[Transaction]]:
        result = []
        for txid in ids:
            try:
                result.append(self.get_transaction(txid))
            except (ValueError, KeyError):
                continue
        return result

    # inputs

    def add_block(self, block: Block) -> bool:
        return self.chain.add_block(block)

    def add_transaction(self, tx: Transaction) -> bool:
        if tx.id in self.tx_pool or not tx.is_valid():
            return False
        self.tx_pool[tx.id] = tx
        self._publish("transactions", tx)
        return True

    def handle_proof_of_time(self, proof: ProofOfTime) -> None:
        verified = self.chain.verified_vdfs
        if proof.height in verified:
            return
        if proof.height == self.vdf_verify_pending:
            self.pending_vdfs.setdefault(proof.height, []).append(proof)
            return
        prev = verified.get(proof.height - 1)
        if prev is None:
            self.pending_vdfs.setdefault(proof.height, []).append(proof)
            log.info("Waiting on VDF for height %d", proof.height - 1)
            return
        try:
            self.vdf_verify_pending = proof.height
            self.verify_vdf(proof, prev)
        except ValueError as ex:
            if self.is_synced:
                log.warning("VDF verification failed with: %s", ex)
            self.vdf_verify_pending = 0
            self.check_vdfs()
        self._run_tasks()

    def handle_proof_response(self, response: Any) -> None:
        if not response.proof or not response.request or response.score >= self.params.score_threshold:
            return
        challenge = response.request.challenge
        known = self.proof_map.get(challenge)
        if known is not None and response.score >= known.score:
            return
        try:
            score = self._verify_space_proof(response.proof, challenge, response.request.space_diff)
            if score != response.score:
                raise ValidationError("score mismatch")
        except ValueError as ex:
            log.warning("Got invalid proof: %s", ex)
            return
        if known is None:
            self.challenge_map.setdefault(response.request.height, []).append(challenge)
        self.proof_map[challenge] = response

    # proofs

    def _plot_filter_passes(self, challenge: bytes, plot_id: bytes) -> bool:
        bits = self.params.plot_filter
        if bits <= 0:
            return True
        value = int.from_bytes(hash_parts(challenge, plot_id)[:8], "big")
        return value >> (64 - bits) == 0

    def _proof_score(self, quality: bytes, space_diff: int) -> int:
        value = int.from_bytes(quality[:8], "big")
        return (value // max(space_diff, 1)) % (1 << self.params.score_bits)

    def _verify_space_proof(self, proof: ProofOfSpace, challenge: bytes, space_diff: int) -> int:
        params = self.params
        if proof.ksize < params.min_ksize:
            raise ValidationError("ksize too small")
        if proof.ksize > params.max_ksize:
            raise ValidationError("ksize too big")
        if hash_parts(proof.pool_key, proof.local_key, proof.farmer_key) != proof.plot_id:
            raise ValidationError("invalid proof keys")
        if not verify_signature(proof.local_key, proof.calc_hash(), proof.local_sig):
            raise ValidationError("invalid proof signature")
        if not self._plot_filter_passes(challenge, proof.plot_id):
            raise ValidationError("plot filter failed")
        quality = hash_parts(proof.plot_id, challenge, proof.proof_bytes)
        score = self._proof_score(quality, space_diff)
        if score >= params.score_threshold:
            raise ValidationError("invalid score")
        return score

    def verify_proof(self, block: Block, vdf_challenge: bytes) -> int:
        """Check a block's VDF iterations and proof of space; return its score."""
        prev = self.chain.find_prev_header(block)
        if prev is None:
            raise ValidationError("invalid prev")
        diff_block = self.chain.find_diff_header(block)
        if diff_block is None:
            raise ValidationError("cannot verify")
        if block.vdf_iters != prev.vdf_iters + diff_block.time_diff * self.params.time_diff_constant:
            raise ValidationError("invalid vdf_iters")
        if not block.proof:
            return self.params.score_threshold
        challenge = self.chain.get_challenge(block, vdf_challenge)
        return self._verify_space_proof(block.proof, challenge, diff_block.space_diff)

    def verify_vdf(self, proof: ProofOfTime, prev: VdfPoint) -> None:
        """Check a proof of time following prev and record its end point."""
        params = self.params
        header = self.get_header_at(prev.height)
        if header is None:
            raise ValidationError("cannot verify: missing block")
        diff_block = self.chain.find_diff_header(header, 1)
        if diff_block is None:
            raise ValidationError("cannot verify: missing diff block")
        expected = diff_block.time_diff * params.time_diff_constant
        check_vdf_proof_shape(proof, params, prev.height, prev.iters, expected)

        if proof.start > 0:
            if len(proof.infuse[0]) != 1:
                raise ValidationError("missing infusion on chain 0")
            (infused_iters, infused_hash), = proof.infuse[0].items()
            if infused_iters != proof.start:
                raise ValidationError("invalid infusion point on chain 0: must be at start")
            infused_block = self.chain.find_header(infused_hash)
            if infused_block is None:
                raise ValidationError("invalid infusion value on chain 0")
            target_iters = infused_block.vdf_iters
            for i in range(params.finality_delay):
                step = self.chain.find_diff_header(infused_block, i + 1)
                if step is None:
                    raise ValidationError("cannot verify")
                target_iters += step.time_diff * params.time_diff_constant
                if infused_block.height == 0 and infused_iters == target_iters:
                    break
            if infused_iters != target_iters:
                raise ValidationError(
                    f"invalid infusion point on chain 0: {infused_iters} != {target_iters}"
                )
            interval = params.challenge_interval
            need_second = infused_block.height >= interval and infused_block.height % interval == 0
            if len(proof.infuse[1]) != (1 if need_second else 0):
                raise ValidationError(f"wrong number of infusions on chain 1: {len(proof.infuse[1])}")
            if need_second and proof.infuse[1] != {infused_iters: infused_hash}:
                raise ValidationError("invalid infusion on chain 1")

        begin = _now_micros()
        for chain in (0, 1):
            verify_chain(proof, chain, prev.output[chain])
        point = VdfPoint(
            height=proof.height,
            iters=proof.start + proof.get_num_iters(),
            output=(proof.get_output(0), proof.get_output(1)),
            recv_time=begin,
        )
        self.chain.verified_vdfs[proof.height] = point
        self.vdf_verify_pending = 0
        log.info(
            "Verified VDF for height %d, delta = %.3f sec",
            proof.height,
            (point.recv_time - prev.recv_time) / 1e6,
        )
        self._publish("verified_vdfs", proof)
        self.update()

    def check_vdfs(self) -> None:
        """Schedule pending proofs of time whose predecessor is now verified."""
        for height in list(self.pending_vdfs):
            if height - 1 in self.chain.verified_vdfs and height != self.vdf_verify_pending:
                for proof in self.pending_vdfs.pop(height):
                    self._add_task(lambda p=proof: self.handle_proof_of_time(p))

    # state machine

    def _commit(self, block: Block) -> None:
        if not self.chain.commit(block):
            return
        for challenge in self.challenge_map.pop(block.height, ()):
            self.proof_map.pop(challenge, None)
        if self.chain.history:
            begin = next(iter(self.chain.history))
            for height in [h for h in self.pending_vdfs if h < begin]:
                del self.pending_vdfs[height]
        self._publish("committed_blocks", block)

    def _verify_fork_proofs(self) -> None:
        chain = self.chain
        root = chain.get_root()
        for block_hash, fork in list(chain.fork_tree.items()):
            block = fork.block
            if fork.diff_block is None:
                fork.diff_block = chain.find_diff_header(block)
            has_prev = fork.prev is not None
            if fork.is_proof_verified or fork.diff_block is None:
                continue
            if not has_prev and (root is None or block.prev != root.hash):
                continue
            if self.is_synced:
                point = chain.verified_vdfs.get(block.height)
                if point is None:
                    continue
                if block.vdf_iters != point.iters or tuple(block.vdf_output) != tuple(point.output):
                    log.warning("VDF verification failed for a block at height %d", block.height)
                    chain.fork_tree.pop(block_hash, None)
                    continue
            vdf_challenge = chain.find_vdf_challenge(block)
            if vdf_challenge is None:
                continue
            try:
                fork.proof_score = self.verify_proof(block, vdf_challenge)
                fork.is_proof_verified = True
            except ValueError as ex:
                chain.fork_tree.pop(block_hash, None)
                log.warning("Proof verification failed for a block at height %d with: %s", block.height, ex)

    def _choose_best_fork(self) -> Optional[BlockHeader]:
        chain = self.chain
        while True:
            chain.purge_tree()
            best = chain.find_best_fork()
            if best is None or best.block.hash == chain.state_hash:
                return None
            try:
                forked_at = chain.fork_to(best)
            except ValueError:
                continue
            line = chain.get_fork_line()
            for fork in line:
                prev = chain.find_prev_fork(fork, self.params.finality_delay)
                if prev is not None and not prev.is_finalized:
                    prev.is_finalized = True
                    log.info(
                        "Finalized height %d with: ntx = %d, score = %d",
                        prev.block.height, len(prev.block.tx_list), prev.proof_score,
                    )
            for fork in line[: max(len(line) - self.params.commit_delay, 0)]:
                self._commit(fork.block)
            return forked_at

    def _publish_vdf_requests(self, peak: BlockHeader) -> None:
        params, chain = self.params, self.chain
        values: dict[int, bytes] = {}
        vdf_iters = peak.vdf_iters
        for i in range(params.finality_delay + 1):
            diff_block = chain.find_diff_header(peak, i + 1)
            if diff_block is None:
                continue
            prev = chain.find_prev_header(peak, params.finality_delay - i, True)
            if prev is not None and vdf_iters > 0:
                values[vdf_iters] = prev.hash
            vdf_iters += diff_block.time_diff * params.time_diff_constant
        self._publish("timelord_infuse", {"chain": 0, "values": values})

        interval = params.challenge_interval
        height = peak.height - peak.height % interval
        prev = chain.find_prev_header(peak, peak.height - height)
        if prev is not None and prev.height >= interval:
            diff_block = chain.find_prev_header(prev, interval, True)
            if diff_block is not None:
                iters = prev.vdf_iters + diff_block.time_diff * params.time_diff_constant * params.finality_delay
                self._publish("timelord_infuse", {"chain": 1, "values": {iters: prev.hash}})

        vdf_iters = peak.vdf_iters
        for i in range(params.finality_delay):
            diff_block = chain.find_diff_header(peak, i + 1)
            if diff_block is None:
                continue
            begin = vdf_iters
            vdf_iters += diff_block.time_diff * params.time_diff_constant
            self._publish("interval_request", {
                "begin": begin,
                "end": vdf_iters,
                "height": peak.height + i + 1,
                "num_segments": params.num_vdf_segments,
                "start_values": peak.vdf_output if i == 0 else None,
            })

    def _try_make_block(self, peak: BlockHeader, root: BlockHeader) -> None:
        chain = self.chain
        prev: Optional[BlockHeader] = peak
        made_block = False
        for _ in range(2):
            if prev is None or prev.height < root.height:
                break
            vdf_challenge = chain.find_vdf_challenge(prev, 1)
            if vdf_challenge is None:
                break
            response = self.proof_map.get(chain.get_challenge(prev, vdf_challenge, 1))
            if response is not None:
                best = chain.find_best_fork(prev, prev.height + 1)
                if best is None or response.score < best.proof_score:
                    try:
                        made_block = self.make_block(prev, response) or made_block
                    except (ValueError, KeyError) as ex:
                        log.warning("Failed to create a block: %s", ex)
            prev = chain.find_prev_header(prev)
        if made_block:
            fork = chain.find_fork(peak.hash)
            if fork is not None:
                chain.fork_to(fork)
            self._add_task(self.update)

    def update(self) -> None:
        """Verify forks, switch to the best one, commit, and produce what follows."""
        chain, params = self.chain, self.params
        self.check_vdfs()
        self._verify_fork_proofs()
        prev_peak = chain.find_header(chain.state_hash)
        forked_at = self._choose_best_fork()

        peak = chain.find_header(chain.state_hash)
        if peak is None:
            log.warning("Have no peak!")
            return
        root = chain.get_root()
        if prev_peak is None or peak.hash != prev_peak.hash:
            log.info(
                "New peak at height %d%s", peak.height,
                f" (forked at {forked_at.height})" if forked_at is not None else "",
            )

        if not self.is_synced and self.sync_pos >= self.sync_peak and not self.sync_pending:
            if self.sync_retry < self.num_sync_retries:
                log.info("Reached sync peak at height %d", self.sync_peak - 1)
                self.sync_pos = self.sync_peak
                self.sync_peak = _NO_PEAK
                self.sync_retry += 1
            else:
                self.is_synced = True
                log.info("Finished sync at height %d", peak.height)
        if not self.is_synced:
            self.sync_more()
            self._run_tasks()
            return

        self._publish_vdf_requests(peak)
        if root is not None:
            self._try_make_block(peak, root)

        point = chain.verified_vdfs.get(peak.height + 1)
        if point is not None:
            dummy = Block(
                prev=peak.hash,
                height=peak.height + 1,
                time_diff=peak.time_diff,
                space_diff=peak.space_diff,
                vdf_iters=point.iters,
                vdf_output=point.output,
            )
            dummy.finalize()
            self.add_block(dummy)

        for i in range(params.challenge_delay + 1):
            vdf_challenge = chain.find_vdf_challenge(peak, i)
            if vdf_challenge is None:
                continue
            diff_block = chain.find_diff_header(peak, i)
            if diff_block is not None:
                self._publish("challenges", {
                    "height": peak.height + i,
                    "challenge": chain.get_challenge(peak, vdf_challenge, i),
                    "space_diff": diff_block.space_diff,
                })
        self._run_tasks()

    def make_block(self, prev: BlockHeader, response: Any) -> bool:
        """Build, have signed and add a block on prev; False if its VDF is not known yet."""
        chain, params = self.chain, self.params
        fork = chain.find_fork(prev.hash)
        root = chain.get_root()
        if fork is not None:
            chain.fork_to(fork)
        elif root is not None and prev.height == root.height:
            while chain.revert():
                pass
        else:
            raise ValidationError("cannot fork")

        height = prev.height + 1
        point = chain.verified_vdfs.get(height)
        if point is None:
            return False
        prev_point = chain.verified_vdfs.get(prev.height)
        time_delta = point.recv_time - prev_point.recv_time if prev_point is not None else 0
        block = Block(
            prev=prev.hash,
            height=height,
            time_diff=next_time_diff(params, prev, point.iters, time_delta),
            space_diff=next_space_diff(params, prev.space_diff, response.score),
            vdf_iters=point.iters,
            vdf_output=point.output,
            proof=response.proof,
        )

        invalid: set[bytes] = set()
        spent: set = set()
        candidates: list[Transaction] = []
        for txid, tx in self.tx_pool.items():
            if txid in chain.ledger.tx_map:
                continue
            keys = [tx_in.prev for tx_in in tx.inputs]
            if any(key in spent for key in keys) or len(set(keys)) != len(keys):
                invalid.add(txid)
                log.warning("TX validation failed with: double spend")
                continue
            spent.update(keys)
            candidates.append(tx)

        total_fees = 0
        total_cost = 0
        for tx in candidates:
            if any(i.prev.txid in self.tx_pool and i.prev.txid not in chain.ledger.tx_map for i in tx.inputs):
                continue
            try:
                fee = validate_transaction(tx, params, chain.ledger, chain.contracts)
            except ValueError as ex:
                invalid.add(tx.id)
                log.warning("TX validation failed with: %s", ex)
                continue
            cost = tx.calc_min_fee(params)
            if total_cost + cost < params.max_block_cost:
                block.tx_list.append(tx)
                total_fees += fee
                total_cost += cost
        for txid in invalid:
            self.tx_pool.pop(txid, None)
        block.finalize()

        farmer = self.farmers[response.farmer_addr]
        block_reward = chain.calc_block_reward(block)
        final_reward = max(block_reward, params.min_reward, total_fees)
        signed = farmer.sign_block(block, final_reward)
        if signed is None:
            raise ValidationError("farmer refused")
        block.tx_base = signed.tx_base
        block.pool_sig = signed.pool_sig
        block.farmer_sig = signed.farmer_sig
        block.finalize()
        self.add_block(block)
        log.info(
            "Created block at height %d with: ntx = %d, score = %d, reward = %d",
            block.height, len(block.tx_list), response.score, final_reward,
        )
        return True

    # sync

    def start_sync(self, force: bool = False) -> None:
        if (not self.is_synced or not self.do_sync) and not force:
            return
        self.sync_pos = 0
        self.sync_peak = _NO_PEAK
        self.sync_retry = 0
        self.is_synced = False
        while self.chain.revert():
            pass
        self.chain.fork_tree.clear()
        self.sync_more()
        self._run_tasks()

    def sync_more(self) -> None:
        if self.is_synced:
            return
        if not self.sync_pos:
            root = self.chain.get_root()
            self.sync_pos = (root.height + 1) if root is not None else 0
            self.sync_update = self.sync_pos
            log.info("Starting sync at height %d", self.sync_pos)
        while len(self.sync_pending) < self.max_sync_jobs and self.sync_pos < self.sync_peak:
            height = self.sync_pos
            self.sync_pos += 1
            self.sync_pending.add(height)
            self._add_task(lambda h=height: self.sync_result(h, self.router(h) if self.router else []))

    def sync_result(self, height: int, blocks: list[Optional[Block]]) -> None:
        self.sync_pending.discard(height)
        for block in blocks:
            if block is not None:
                self.add_block(block)
        if not blocks and height < self.sync_peak:
            self.sync_peak = height
        self.sync_more()
        if self.sync_pos - self.sync_update >= 32:
            self.sync_update = self.sync_pos
            self._add_task(self.update)