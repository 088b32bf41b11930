"""Map generation orchestrator.

Drives one generation from a master seed to an immutable MapModel:

    root = DeterministicRandom(seed)
    for attempt in range(max_attempts):
        attempt_rng = root.fork(f"attempt.{attempt}")
        1. Solve a fresh Grid with attempt_rng.fork("solver").
           A contradiction abandons the attempt and the loop retries.
        2. Place zones with attempt_rng.fork("zones").
           A mandatory zone with no valid center also abandons the attempt.
           A mandatory zone whose localized re-solve contradicts fails the
           generation.
        3. Snapshot the grid into a MapModel.

Every random draw comes from a stream forked from the master seed by label, so
the same seed, catalog, size config and zone requests always produce the same
map. Each attempt owns its Grid; nothing mutable is shared between attempts
or between generate() calls.

Expected failures are returned as typed results rather than raised:

    result = generator.generate(seed=12345, zone_requests=[start_zone])
    if result.ok:
        model = result.model
    else:
        print(result.failure.reason)

    model = generator.generate(seed=12345).unwrap()  # raises GenerationFailure
"""

from __future__ import annotations

import logging
import time
from collections.abc import Generator, Iterable, Sequence
from dataclasses import dataclass, field

from terraweave import config
from terraweave.environment.generators.constraint_solver import (
    AdjacencyRules,
    ConstraintSolver,
    ContradictionError,
)
from terraweave.environment.generators.zones import (
    PlacementReport,
    SkippedZone,
    ZonePlacer,
    ZoneRequest,
    ZoneStatus,
    check_unique_ids,
)
from terraweave.environment.grid import Grid, SizeConfig
from terraweave.environment.map_model import MapModel
from terraweave.environment.serialization import MapSerializer, decode
from terraweave.environment.tile_catalog import TileCatalog
from terraweave.environment.tile_types import create_default_catalog
from terraweave.errors import ConfigError, CorruptDataError, GenerationFailure
from terraweave.types import Seed
from terraweave.util.rng import DeterministicRandom, random_seed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptReport:
    """Progress yielded by generate_stepwise() after each whole attempt.

    Attributes:
        attempt: Zero-based attempt index.
        succeeded: True if this attempt produced the final map.
        reason: Why the attempt ended unsuccessfully, empty on success.
        elapsed: Seconds since the generation started.
    """

    attempt: int
    succeeded: bool
    reason: str = ""
    elapsed: float = 0.0


@dataclass
class GenerationResult:
    """Outcome of one generate() call.

    Exactly one of model and failure is set.
    """

    seed: Seed
    attempts: int
    model: MapModel | None = None
    failure: GenerationFailure | None = None
    skipped_zones: list[SkippedZone] = field(default_factory=list)
    zone_statuses: dict[str, ZoneStatus] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.model is not None

    def unwrap(self) -> MapModel:
        """Return the model or raise the carried GenerationFailure."""
        if self.model is None:
            assert self.failure is not None
            raise self.failure
        return self.model


@dataclass
class LoadResult:
    """Outcome of one load() call."""

    model: MapModel | None = None
    error: CorruptDataError | None = None

    @property
    def ok(self) -> bool:
        return self.model is not None

    def unwrap(self) -> MapModel:
        """Return the model or raise the carried CorruptDataError."""
        if self.model is None:
            assert self.error is not None
            raise self.error
        return self.model


class MapGenerator:
    """Seeded map generation with whole-attempt retry and zone placement."""

    def __init__(
        self,
        catalog: TileCatalog,
        size_config: SizeConfig,
        max_attempts: int = config.DEFAULT_MAX_ATTEMPTS,
        candidate_budget: int = config.DEFAULT_ZONE_CANDIDATES,
        time_limit: float | None = None,
    ) -> None:
        """Initialize the generator.

        Args:
            catalog: The validated tile catalog.
            size_config: Grid dimensions, height limit and byte budget.
            max_attempts: Whole attempts to start before giving up.
            candidate_budget: Candidate centers drawn per zone.
            time_limit: Optional wall-clock limit in seconds. Checked only
                between attempts; a running attempt is never interrupted.

        Raises:
            ConfigError: If any budget is not positive.
        """
        if max_attempts <= 0:
            raise ConfigError("max_attempts must be positive")
        if time_limit is not None and time_limit <= 0:
            raise ConfigError("time_limit must be positive")

        self.catalog = catalog
        self.size_config = size_config
        self.max_attempts = max_attempts
        self.time_limit = time_limit
        self.rules = AdjacencyRules(catalog, size_config.max_height_delta)
        self.placer = ZonePlacer(
            catalog, candidate_budget=candidate_budget, rules=self.rules
        )
        self.serializer = MapSerializer(catalog, size_config.byte_budget)

    def validate_requests(self, zone_requests: Iterable[ZoneRequest]) -> list[ZoneRequest]:
        """Check zone requests against this generator's catalog and grid.

        Raises:
            ConfigError: On duplicate ids, undefined tiles, or a footprint
                that can never fit inside the grid.
        """
        requests = list(zone_requests)
        check_unique_ids(requests)
        for request in requests:
            request.validate_for(self.catalog)
            side = 2 * request.edge_margin + 1
            if side > self.size_config.width or side > self.size_config.height:
                raise ConfigError(
                    f"Zone {request.id} needs {side}x{side} cells but the grid is "
                    f"{self.size_config.width}x{self.size_config.height}"
                )
        return requests

    def generate(
        self, seed: Seed | None = None, zone_requests: Sequence[ZoneRequest] = ()
    ) -> GenerationResult:
        """Generate a map, retrying whole attempts on contradiction or when a
        mandatory zone finds no valid center.

        Args:
            seed: Master seed. None draws a fresh one, returned in the result.
            zone_requests: Zones to place, in any order.

        Raises:
            ConfigError: If the zone requests are invalid.
            ValueError: If seed is not an unsigned 64-bit integer.
        """
        stepper = self.generate_stepwise(seed, zone_requests)
        while True:
            try:
                next(stepper)
            except StopIteration as stop:
                return stop.value

    def generate_stepwise(
        self, seed: Seed | None = None, zone_requests: Sequence[ZoneRequest] = ()
    ) -> Generator[AttemptReport, None, GenerationResult]:
        """Like generate(), but yield an AttemptReport after each attempt.

        The generator's return value (StopIteration.value) is the final
        GenerationResult.
        """
        requests = self.validate_requests(zone_requests)
        if seed is None:
            seed = random_seed()
        root = DeterministicRandom(seed)
        width, height = self.size_config.width, self.size_config.height
        logger.debug(
            f"Generating {width}x{height} map, seed {seed}, {len(requests)} zone(s)"
        )

        start = time.perf_counter()
        attempts = 0
        last_report: PlacementReport | None = None
        for attempt in range(self.max_attempts):
            elapsed = time.perf_counter() - start
            if attempt > 0 and self.time_limit is not None and elapsed >= self.time_limit:
                failure = GenerationFailure(
                    f"Time limit of {self.time_limit}s reached after "
                    f"{attempts} attempt(s)",
                    seed=seed,
                    attempts=attempts,
                )
                logger.warning(failure.reason)
                return GenerationResult(seed=seed, attempts=attempts, failure=failure)

            attempts += 1
            attempt_rng = root.fork(f"attempt.{attempt}")
            grid = Grid.from_size_config(self.size_config, self.catalog.tile_count)
            solver = ConstraintSolver(
                self.catalog, attempt_rng.fork("solver"), rules=self.rules
            )

            try:
                solver.solve(grid)
            except ContradictionError as exc:
                logger.debug(f"Attempt {attempt} contradicted: {exc}")
                yield AttemptReport(
                    attempt, False, str(exc), time.perf_counter() - start
                )
                continue

            report = self.placer.refine_zones(grid, requests, attempt_rng.fork("zones"))
            if report.failure is not None:
                elapsed = time.perf_counter() - start
                if report.retryable:
                    last_report = report
                    logger.debug(f"Attempt {attempt} ended: {report.failure.reason}")
                    yield AttemptReport(attempt, False, report.failure.reason, elapsed)
                    continue

                failure = GenerationFailure(
                    report.failure.reason,
                    seed=seed,
                    attempts=attempts,
                    zone_id=report.failure.zone_id,
                )
                logger.warning(failure.reason)
                yield AttemptReport(attempt, False, failure.reason, elapsed)
                return GenerationResult(
                    seed=seed,
                    attempts=attempts,
                    failure=failure,
                    skipped_zones=report.skipped,
                    zone_statuses=report.statuses,
                )

            model = MapModel.create(
                seed=seed,
                tiles=grid.tiles(),
                zones=report.committed,
                catalog_checksum=self.catalog.checksum,
            )
            elapsed = time.perf_counter() - start
            yield AttemptReport(attempt, True, "", elapsed)
            logger.info(
                f"Generated {width}x{height} map (seed {seed}) in {attempts} "
                f"attempt(s), {elapsed * 1000:.1f} ms, {len(report.committed)} zone(s)"
            )
            return GenerationResult(
                seed=seed,
                attempts=attempts,
                model=model,
                skipped_zones=report.skipped,
                zone_statuses=report.statuses,
            )

        if last_report is not None and last_report.failure is not None:
            failure = GenerationFailure(
                f"{last_report.failure.reason} (in {attempts} attempt(s))",
                seed=seed,
                attempts=attempts,
                zone_id=last_report.failure.zone_id,
            )
            logger.warning(failure.reason)
            return GenerationResult(
                seed=seed,
                attempts=attempts,
                failure=failure,
                skipped_zones=last_report.skipped,
                zone_statuses=last_report.statuses,
            )

        failure = GenerationFailure(
            f"Every one of {attempts} attempt(s) contradicted",
            seed=seed,
            attempts=attempts,
        )
        logger.warning(failure.reason)
        return GenerationResult(seed=seed, attempts=attempts, failure=failure)

    def encode(self, model: MapModel) -> bytes:
        """Serialize a model within this generator's byte budget."""
        return self.serializer.encode(model)

    def load(self, data: bytes) -> LoadResult:
        """Decode a map produced with this generator's catalog."""
        return load(data, self.catalog.checksum, self.catalog)


def generate(
    size_config: SizeConfig,
    seed: Seed | None = None,
    zone_requests: Sequence[ZoneRequest] = (),
    *,
    catalog: TileCatalog | None = None,
    max_attempts: int = config.DEFAULT_MAX_ATTEMPTS,
    candidate_budget: int = config.DEFAULT_ZONE_CANDIDATES,
    time_limit: float | None = None,
) -> GenerationResult:
    """One-shot generation. Uses the default terrain catalog if none is given."""
    generator = MapGenerator(
        catalog if catalog is not None else create_default_catalog(),
        size_config,
        max_attempts=max_attempts,
        candidate_budget=candidate_budget,
        time_limit=time_limit,
    )
    return generator.generate(seed, zone_requests)


def load(
    data: bytes,
    expected_catalog_checksum: int,
    catalog: TileCatalog | None = None,
) -> LoadResult:
    """Decode a serialized map, reporting corruption as a LoadResult.

    Raises:
        ConfigError: If catalog is given but its checksum is not the expected one.
    """
    if catalog is not None and catalog.checksum != expected_catalog_checksum:
        raise ConfigError(
            f"Catalog checksum {catalog.checksum:#010x} does not match expected "
            f"{expected_catalog_checksum:#010x}"
        )
    try:
        model = decode(data, catalog, expected_checksum=expected_catalog_checksum)
    except CorruptDataError as exc:
        logger.debug(f"Load failed: {exc}")
        return LoadResult(error=exc)
    return LoadResult(model=model)
