"""Deterministic random number generation with forkable streams.

Every subsystem that needs randomness (the solver, the zone search, and
external decoration scatter) receives its own DeterministicRandom forked from
the master stream by label. This ensures that:

1. Generation is fully deterministic from the same master seed
2. Changes to one subsystem's random consumption don't shift another's draws
3. Adding a new forked consumer doesn't change any existing sequence

Usage:
    root = DeterministicRandom(12345)
    attempt = root.fork("attempt.0")
    solver_rng = attempt.fork("solver")
    zone_rng = attempt.fork("zones").fork("start")

Label naming convention (hierarchical, dot separated):
    - "attempt.<n>" for each whole generation attempt
    - "solver", "zones", "refine.<zone id>" inside an attempt
    - "decor.<zone id>" is reserved for external decoration collaborators
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from random import Random

from terraweave.types import Seed

SEED_BITS = 64
_SEED_LIMIT = 1 << SEED_BITS


def random_seed() -> Seed:
    """Draw a fresh 64-bit master seed from system entropy."""
    # An unseeded Random is seeded from os.urandom.
    return Random().getrandbits(SEED_BITS)


def derive_seed(seed: Seed, label: str) -> Seed:
    """Derive a child seed from a parent seed and a label.

    Uses blake2b instead of hash() - hash() is randomized per Python session
    via PYTHONHASHSEED, which would break cross-session determinism.
    """
    digest = hashlib.blake2b(f"{seed}:{label}".encode(), digest_size=8).digest()
    return int.from_bytes(digest, "little")


class DeterministicRandom:
    """Seeded pseudo-random stream that can fork independent sub-streams.

    Only integer seeding and Mersenne Twister draws are used, so sequences
    are identical on every host and interpreter session.
    """

    def __init__(self, seed: Seed) -> None:
        if not 0 <= seed < _SEED_LIMIT:
            raise ValueError(f"Seed must be an unsigned 64-bit integer, got {seed}")
        self._seed = seed
        self._random = Random(seed)

    @property
    def seed(self) -> Seed:
        return self._seed

    def fork(self, label: str) -> DeterministicRandom:
        """Return an independent stream keyed by this stream's seed and a label.

        Forking does not consume draws from this stream, so the order in which
        sub-streams are created never changes any sequence.
        """
        return DeterministicRandom(derive_seed(self._seed, label))

    def next_float(self) -> float:
        """Return random float in [0.0, 1.0)."""
        return self._random.random()

    def next_int(self, lo: int, hi: int) -> int:
        """Return random integer N such that lo <= N <= hi."""
        return self._random.randint(lo, hi)

    def weighted_index(self, weights: Sequence[float]) -> int:
        """Return an index into weights, chosen with probability proportional
        to its weight.

        Raises:
            ValueError: If weights is empty or sums to zero.
        """
        total = 0.0
        for weight in weights:
            total += weight
        if not weights or total <= 0.0:
            raise ValueError("weighted_index needs at least one positive weight")

        threshold = self._random.random() * total
        cumulative = 0.0
        for index, weight in enumerate(weights):
            cumulative += weight
            if threshold < cumulative:
                return index
        # Rounding can leave threshold == total; fall back to the last
        # positive weight.
        for index in range(len(weights) - 1, -1, -1):
            if weights[index] > 0.0:
                return index
        raise AssertionError("unreachable")

    def __repr__(self) -> str:
        return f"DeterministicRandom(seed={self._seed})"
