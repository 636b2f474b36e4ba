"""Proofs of space and proofs of time (hash-chain delay functions)."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from typing import Optional

from chainnode.block import ZERO_HASH, hash_parts


def iterate_hash(point: bytes, count: int) -> bytes:
    """Apply SHA-256 to the point the given number of times."""
    for _ in range(count):
        point = hashlib.sha256(point).digest()
    return point


def build_segments(begin: bytes, num_iters: int, segment_len: int) -> list[tuple[int, bytes]]:
    """Run the hash chain from begin and split it into (iters, output) segments."""
    if segment_len <= 0:
        raise ValueError("segment length must be positive")
    segments = []
    point = begin
    remaining = num_iters
    while remaining > 0:
        count = min(segment_len, remaining)
        point = iterate_hash(point, count)
        segments.append((count, point))
        remaining -= count
    return segments


def verify_segments(begin: bytes, segments: list[tuple[int, bytes]]) -> bytes:
    """Check each (iters, output) segment of a plain hash chain; return the end point."""
    point = begin
    for i, (count, output) in enumerate(segments):
        if iterate_hash(point, count) != output:
            raise ValueError(f"invalid proof at segment {i}")
        point = output
    return point


@dataclass
class TimeSegment:
    """A stretch of the two hash chains and their outputs."""

    num_iters: int = 0
    output: tuple[bytes, bytes] = (ZERO_HASH, ZERO_HASH)


@dataclass
class ProofOfSpace:
    """Proof that a plot holds a quality for a challenge."""

    ksize: int = 0
    plot_id: bytes = ZERO_HASH
    proof_bytes: bytes = b""
    local_key: bytes = b""
    farmer_key: bytes = b""
    pool_key: bytes = b""
    local_sig: Optional[bytes] = None

    def calc_hash(self) -> bytes:
        return hash_parts(
            self.ksize,
            self.plot_id,
            len(self.proof_bytes),
            self.proof_bytes,
            self.local_key,
            self.farmer_key,
            self.pool_key,
        )


@dataclass
class ProofOfTime:
    """Segmented proof over two hash chains with infused values."""

    height: int = 0
    start: int = 0
    segments: list[TimeSegment] = field(default_factory=list)
    infuse: tuple[dict[int, bytes], dict[int, bytes]] = field(default_factory=lambda: ({}, {}))
    timelord_key: bytes = b""

    def calc_hash(self) -> bytes:
        parts: list = []
        for chain in self.infuse:
            for iters, value in sorted(chain.items()):
                parts += [iters, value]
        for seg in self.segments:
            parts += [seg.num_iters, seg.output[0], seg.output[1]]
        parts.append(self.timelord_key)
        return hash_parts(*parts)

    def get_output(self, chain: int) -> bytes:
        if chain not in (0, 1):
            raise ValueError("invalid chain")
        if not self.segments:
            return ZERO_HASH
        return self.segments[-1].output[chain]

    def get_num_iters(self) -> int:
        return sum(seg.num_iters for seg in self.segments)

    def compressed(self) -> ProofOfTime:
        segment = TimeSegment(
            num_iters=self.get_num_iters(),
            output=(self.get_output(0), self.get_output(1)),
        )
        return ProofOfTime(
            height=self.height,
            start=self.start,
            segments=[segment],
            infuse=(dict(self.infuse[0]), dict(self.infuse[1])),
        )


def verify_chain(proof: ProofOfTime, chain: int, begin: bytes) -> bytes:
    """Recompute one chain of a proof of time; return its final output."""
    if chain not in (0, 1):
        raise ValueError("invalid chain")
    if not proof.segments:
        raise ValueError("no segments to verify")
    infusions = proof.infuse[chain]
    point = begin
    iters = proof.start
    for i, seg in enumerate(proof.segments):
        if iters in infusions:
            point = hashlib.sha256(point + infusions[iters]).digest()
        if iterate_hash(point, seg.num_iters) != seg.output[chain]:
            raise ValueError(f"invalid output at segment {i}")
        point = seg.output[chain]
        iters += seg.num_iters
    return point