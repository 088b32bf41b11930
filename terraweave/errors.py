"""Error taxonomy for map generation and serialization.

USE FOR:
- ConfigError: malformed tile catalogs, size configs or zone requests. Raised
  once at construction time, never while solving.
- GenerationFailure: the solver retry budget ran out, the time limit was hit,
  or a mandatory zone could not be placed.
- CorruptDataError / SizeExceededError: failures at the encode/decode boundary.

Contradictions inside a single attempt are handled by the solver and the
orchestrator and never surface as one of these.
"""

from __future__ import annotations


class TerraweaveError(Exception):
    """Base class for all errors raised by this package."""

    pass


class ConfigError(TerraweaveError):
    """Raised when static configuration is malformed."""

    pass


class GenerationFailure(TerraweaveError):
    """Raised (or returned) when no valid map could be produced.

    Attributes:
        reason: Human-readable description of what ran out or failed.
        seed: The master seed of the failed generation.
        attempts: How many whole attempts were started.
        zone_id: The mandatory zone responsible, if any.
    """

    def __init__(
        self,
        reason: str,
        *,
        seed: int | None = None,
        attempts: int = 0,
        zone_id: str | None = None,
    ) -> None:
        super().__init__(reason)
        self.reason = reason
        self.seed = seed
        self.attempts = attempts
        self.zone_id = zone_id


class CorruptDataError(TerraweaveError):
    """Raised when a serialized map cannot be decoded faithfully."""

    pass


class SizeExceededError(TerraweaveError):
    """Raised when an encoded map would not fit in the caller's byte budget."""

    def __init__(self, size: int, budget: int) -> None:
        super().__init__(f"Encoded map is {size} bytes, budget is {budget} bytes")
        self.size = size
        self.budget = budget
