"""Blockchain node library: blocks, proofs, farmer signing, ledger, block storage, validation, fork choice and node."""

__version__ = "0.1.0"

__all__ = ["block", "proofs", "farmer", "ledger", "storage", "validation", "chain", "node"]