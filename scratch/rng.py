"""
SCRATCHWORKS - Seeded, Verifiable RNG

Every random decision for a card (tier draw, winning positions, fillers,
final shuffle) is derived from the card's 32-byte seed, so an auditor who
is given the seed can replay the whole purchase.

Architecture:
    seed           = os.urandom(32).hex()            (stored on the card)
    draw n, stream = HMAC-SHA256(seed, stream + ":" + n)
    float          = first 13 hex chars / 16**13      (52 bits, [0, 1))
    commitment     = SHA-256(canonical JSON {instance_id, outcome, seed})

Streams ("outcome", "layout") are independent, so regenerating the layout
never depends on how many draws the outcome generator consumed.

Usage:
    from scratch.rng import SeededRNG, new_seed, verification_hash

    seed = new_seed()
    rng = SeededRNG(seed, "layout")
    rng.shuffle(symbols)
"""

from __future__ import annotations

import hashlib
import hmac
import json
import os
from typing import Sequence, TypeVar

T = TypeVar("T")

_FLOAT_HEX_CHARS = 13
_FLOAT_SCALE = 16 ** _FLOAT_HEX_CHARS


def new_seed() -> str:
    """Fresh 256-bit seed as hex."""
    return os.urandom(32).hex()


class SeededRNG:
    """Deterministic HMAC-SHA256 counter stream.

    Exposes the subset of random.Random the engine needs; any HMAC-SHA256
    implementation reproduces the same sequence.
    """

    def __init__(self, seed: str, stream: str = "default"):
        if not seed:
            raise ValueError("SeededRNG needs a non-empty seed")
        self.seed = seed
        self.stream = stream
        self.nonce = 0

    def _next_hash(self) -> str:
        message = f"{self.stream}:{self.nonce}"
        self.nonce += 1
        return hmac.new(self.seed.encode(), message.encode(), hashlib.sha256).hexdigest()

    def random(self) -> float:
        """Float in [0, 1)."""
        return int(self._next_hash()[:_FLOAT_HEX_CHARS], 16) / _FLOAT_SCALE

    def randbelow(self, n: int) -> int:
        """Int in [0, n)."""
        if n <= 0:
            raise ValueError("randbelow() needs n > 0")
        return min(int(self.random() * n), n - 1)

    def choice(self, seq: Sequence[T]) -> T:
        if not seq:
            raise IndexError("Cannot choose from an empty sequence")
        return seq[self.randbelow(len(seq))]

    def shuffle(self, items: list) -> None:
        """In-place Fisher-Yates."""
        for i in range(len(items) - 1, 0, -1):
            j = self.randbelow(i + 1)
            items[i], items[j] = items[j], items[i]

    def sample(self, population: Sequence[T], k: int) -> list[T]:
        """k distinct elements, partial Fisher-Yates."""
        pool = list(population)
        if not 0 <= k <= len(pool):
            raise ValueError(f"Sample size {k} out of range for population of {len(pool)}")
        for i in range(k):
            j = i + self.randbelow(len(pool) - i)
            pool[i], pool[j] = pool[j], pool[i]
        return pool[:k]


# ═══════════════════════════════════════════════════════════════
# Commitment
# ═══════════════════════════════════════════════════════════════

def commitment_payload(instance_id: str, outcome: dict, seed: str) -> str:
    """Canonical JSON of the committed fields (sorted keys, no whitespace)."""
    return json.dumps(
        {"instance_id": instance_id, "outcome": outcome, "seed": seed},
        sort_keys=True,
        separators=(",", ":"),
    )


def verification_hash(instance_id: str, outcome: dict, seed: str) -> str:
    """SHA-256 hex digest (64 chars) over the commitment payload."""
    payload = commitment_payload(instance_id, outcome, seed)
    return hashlib.sha256(payload.encode()).hexdigest()


def verify_commitment(instance_id: str, outcome: dict, seed: str, expected_hash: str) -> bool:
    """Constant-time comparison of a recomputed commitment."""
    return hmac.compare_digest(verification_hash(instance_id, outcome, seed), expected_hash)
