"""Zone placement: positioning designer-significant regions on a solved grid.

A zone is a square footprint of side 2 * radius + 1 around a center cell,
restricted to a biome (a subset of tile types) and subject to hard placement
constraints. Zones are placed in a fixed priority order (e.g. a "start" zone
before a zone that must be far away from it).

For each zone the placer draws up to `candidate_budget` centers from a stream
forked by zone id and validates them against the current grid state:
- distance to the map edge
- separation from every zone already committed
- footprint flatness (if required)
- no water under the footprint (if required)
- the biome can be bridged to the surrounding resolved tiles through the
  one-cell halo

The first passing candidate is committed: the footprint is pinned to the biome,
footprint and halo are reopened, and a localized solve re-resolves them against
the untouched surroundings. A re-solve is required rather than a direct
overwrite because the pinned tiles may conflict with their resolved neighbors.

The re-solved footprint is checked against the no-water and flatness
constraints again, since a biome may itself contain water or steep tiles. A
footprint that no longer passes is rolled back and the search continues.

Failure policy:
- No candidate passes: optional zones are skipped and reported. Mandatory
  zones fail the placement with a retryable report, and the orchestrator
  starts a fresh attempt.
- The localized re-solve contradicts: mandatory zones fail the generation;
  optional zones are rolled back and reported as skipped.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum, auto

import numpy as np

from terraweave import config
from terraweave.environment.generators.constraint_solver import (
    AdjacencyRules,
    ConstraintSolver,
    ContradictionError,
)
from terraweave.environment.grid import Grid
from terraweave.environment.tile_catalog import TileCatalog
from terraweave.errors import ConfigError, GenerationFailure
from terraweave.types import DomainMask, GridPos, TileID
from terraweave.util.rng import DeterministicRandom

logger = logging.getLogger(__name__)

# Serialized zone ids and sub-placement names are length-prefixed with a byte,
# and so is each zone's sub-placement list.
MAX_NAME_BYTES = 255
MAX_SUB_PLACEMENTS = 255


class ZoneStatus(Enum):
    """Lifecycle of a zone request."""

    PROPOSED = auto()
    VALIDATED = auto()
    COMMITTED = auto()
    SKIPPED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class SubPlacement:
    """A named point anchored to a zone center.

    Decoration collaborators resolve these to grid positions once the zone is
    committed. Offsets must stay inside the zone footprint.
    """

    name: str
    offset: tuple[int, int] = (0, 0)


@dataclass(frozen=True)
class ZoneConstraints:
    """Hard placement constraints for a zone.

    Attributes:
        flat: Require the footprint's height variance to stay under
            flatness_threshold.
        flatness_threshold: Maximum footprint height variance when flat.
        no_water: Reject footprints covering any water tile.
        min_edge_distance: Minimum distance from the center to the map edge.
            The footprint always fits, so the effective minimum is at least
            the zone radius.
        min_zone_distance: Minimum distance between this zone's center and
            any other committed center. The larger of the two zones'
            minimums applies.
    """

    flat: bool = False
    flatness_threshold: float = config.DEFAULT_FLATNESS_THRESHOLD
    no_water: bool = False
    min_edge_distance: int = 0
    min_zone_distance: float = 0.0

    def __post_init__(self) -> None:
        if self.flatness_threshold < 0:
            raise ConfigError("flatness_threshold must not be negative")
        if not 0 <= self.min_edge_distance <= 0xFFFF:
            raise ConfigError("min_edge_distance must be 0..65535")
        if self.min_zone_distance < 0:
            raise ConfigError("min_zone_distance must not be negative")


@dataclass(frozen=True)
class ZoneRequest:
    """A zone the designer wants on the map.

    Attributes:
        id: Unique zone identifier (e.g. "start").
        radius: Footprint half-size; the footprint is (2r+1) x (2r+1).
        allowed_tiles: Biome - tile IDs the footprint may resolve to.
        constraints: Hard placement constraints.
        sub_placements: Ordered points anchored to the center.
        mandatory: Fail the whole generation if this zone cannot be placed.
        priority: Placement order; lower values are placed first.
    """

    id: str
    radius: int
    allowed_tiles: frozenset[TileID]
    constraints: ZoneConstraints = field(default_factory=ZoneConstraints)
    sub_placements: tuple[SubPlacement, ...] = ()
    mandatory: bool = False
    priority: int = 0

    def __post_init__(self) -> None:
        if not self.id or len(self.id.encode()) > MAX_NAME_BYTES:
            raise ConfigError(f"Zone id must be 1..{MAX_NAME_BYTES} bytes: {self.id!r}")
        if self.radius < 0:
            raise ConfigError(f"Zone {self.id} has a negative radius")
        if not self.allowed_tiles:
            raise ConfigError(f"Zone {self.id} allows no tiles")
        if not -(2**31) <= self.priority < 2**31:
            raise ConfigError(f"Zone {self.id} priority must fit in 32 bits")
        # Accept any iterable of ids / placements but store hashable tuples.
        object.__setattr__(self, "allowed_tiles", frozenset(self.allowed_tiles))
        object.__setattr__(self, "sub_placements", tuple(self.sub_placements))
        if len(self.sub_placements) > MAX_SUB_PLACEMENTS:
            raise ConfigError(
                f"Zone {self.id} has {len(self.sub_placements)} sub-placements; "
                f"at most {MAX_SUB_PLACEMENTS} are supported"
            )
        for placement in self.sub_placements:
            dx, dy = placement.offset
            if max(abs(dx), abs(dy)) > self.radius:
                raise ConfigError(
                    f"Sub-placement {placement.name!r} of zone {self.id} lies "
                    f"outside its footprint"
                )
            if len(placement.name.encode()) > MAX_NAME_BYTES:
                raise ConfigError(f"Sub-placement name too long: {placement.name!r}")

    def validate_for(self, catalog: TileCatalog) -> None:
        """Check the biome only names tiles the catalog defines."""
        for tile_id in self.allowed_tiles:
            if not 0 <= tile_id < catalog.tile_count:
                raise ConfigError(f"Zone {self.id} allows undefined tile id {tile_id}")

    @property
    def edge_margin(self) -> int:
        """Minimum center distance to the map edge actually enforced."""
        return max(self.constraints.min_edge_distance, self.radius)


@dataclass(frozen=True)
class Zone:
    """A committed zone: the request plus its final center."""

    request: ZoneRequest
    center: GridPos

    @property
    def id(self) -> str:
        return self.request.id

    @property
    def radius(self) -> int:
        return self.request.radius

    @property
    def allowed_tiles(self) -> frozenset[TileID]:
        return self.request.allowed_tiles

    def footprint(self) -> list[GridPos]:
        """Footprint cells in row-major order.

        Committed zones always fit inside the grid, so no clipping is needed.
        """
        cx, cy = self.center
        r = self.radius
        return [
            (x, y)
            for y in range(cy - r, cy + r + 1)
            for x in range(cx - r, cx + r + 1)
        ]

    def contains(self, x: int, y: int) -> bool:
        cx, cy = self.center
        return max(abs(x - cx), abs(y - cy)) <= self.radius

    def sub_placement_positions(self) -> list[tuple[str, GridPos]]:
        """Resolve sub-placements to grid positions, in request order."""
        cx, cy = self.center
        return [
            (placement.name, (cx + placement.offset[0], cy + placement.offset[1]))
            for placement in self.request.sub_placements
        ]


@dataclass(frozen=True)
class SkippedZone:
    """An optional zone that could not be placed, and why."""

    zone_id: str
    reason: str


@dataclass
class PlacementReport:
    """Outcome of placing an ordered list of zone requests.

    Attributes:
        retryable: Set with failure when the mandatory zone found no valid
            center. A fresh attempt may succeed; a re-solve contradiction
            is final.
    """

    committed: list[Zone] = field(default_factory=list)
    skipped: list[SkippedZone] = field(default_factory=list)
    statuses: dict[str, ZoneStatus] = field(default_factory=dict)
    failure: GenerationFailure | None = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None


def order_requests(requests: Iterable[ZoneRequest]) -> list[ZoneRequest]:
    """Sort requests by priority, keeping caller order within a priority."""
    return sorted(requests, key=lambda request: request.priority)


def check_unique_ids(requests: Sequence[ZoneRequest]) -> None:
    seen: set[str] = set()
    for request in requests:
        if request.id in seen:
            raise ConfigError(f"Zone id {request.id!r} is requested more than once")
        seen.add(request.id)


class ZonePlacer:
    """Searches for valid zone centers and re-solves committed footprints."""

    def __init__(
        self,
        catalog: TileCatalog,
        max_height_delta: float = config.DEFAULT_MAX_HEIGHT_DELTA,
        candidate_budget: int = config.DEFAULT_ZONE_CANDIDATES,
        *,
        rules: AdjacencyRules | None = None,
    ) -> None:
        """Initialize the placer.

        Args:
            catalog: The validated tile catalog.
            max_height_delta: Height transition limit for the local re-solve.
            candidate_budget: Centers drawn per zone before giving up.
            rules: Precomputed adjacency rules to share with other solvers.
        """
        if candidate_budget <= 0:
            raise ConfigError("candidate_budget must be positive")
        self.catalog = catalog
        self.candidate_budget = candidate_budget
        self.rules = rules or AdjacencyRules(catalog, max_height_delta)

    def refine_zones(
        self,
        grid: Grid,
        requests: Sequence[ZoneRequest],
        rng: DeterministicRandom,
    ) -> PlacementReport:
        """Place every request on a solved grid, in priority order.

        Args:
            grid: A fully resolved grid; modified in place.
            requests: Zone requests in any order; sorted by priority here.
            rng: The zone stream. Each zone forks its own candidate and
                re-solve streams from it.

        Returns:
            The committed zones, skipped zones, and a failure if a mandatory
            zone could not be placed. Placement stops at the first failure.
        """
        report = PlacementReport()
        for request in order_requests(requests):
            report.statuses[request.id] = ZoneStatus.PROPOSED
            zone, reason = self.place_zone(
                grid, request, report.committed, rng, statuses=report.statuses
            )

            if zone is not None:
                report.committed.append(zone)
                report.statuses[request.id] = ZoneStatus.COMMITTED
                logger.debug(f"Committed zone {request.id} at {zone.center}")
                continue

            if request.mandatory:
                # Still PROPOSED means no candidate ever reached the re-solve.
                report.retryable = report.statuses[request.id] is ZoneStatus.PROPOSED
                report.statuses[request.id] = ZoneStatus.FAILED
                report.failure = GenerationFailure(
                    f"Mandatory zone {request.id!r} could not be placed: {reason}",
                    zone_id=request.id,
                )
                logger.debug(report.failure.reason)
                return report

            report.statuses[request.id] = ZoneStatus.SKIPPED
            report.skipped.append(SkippedZone(request.id, reason))
            logger.warning(f"Skipped optional zone {request.id}: {reason}")

        return report

    def place_zone(
        self,
        grid: Grid,
        request: ZoneRequest,
        committed: Sequence[Zone],
        rng: DeterministicRandom,
        statuses: dict[str, ZoneStatus] | None = None,
    ) -> tuple[Zone | None, str]:
        """Search for a center and commit the zone there.

        Args:
            grid: The solved grid; modified in place on success.
            request: The zone to place.
            committed: Zones already on the map.
            rng: The zone stream to fork candidate and re-solve streams from.
            statuses: Optional lifecycle map updated as the zone progresses.

        Returns:
            (zone, "") on success, or (None, reason) on failure.
        """
        margin = request.edge_margin
        max_x = grid.width - 1 - margin
        max_y = grid.height - 1 - margin
        if max_x < margin or max_y < margin:
            return None, "zone does not fit inside the grid"

        candidate_rng = rng.fork(f"candidates.{request.id}")
        last_reason = "no candidates drawn"
        for _ in range(self.candidate_budget):
            center = (
                candidate_rng.next_int(margin, max_x),
                candidate_rng.next_int(margin, max_y),
            )
            rejection = self.validate_candidate(grid, request, center, committed)
            if rejection is not None:
                last_reason = rejection
                continue

            if statuses is not None:
                statuses[request.id] = ZoneStatus.VALIDATED
            zone = Zone(request, center)
            state = grid.snapshot()
            conflict = self.commit(grid, zone, rng.fork(f"refine.{request.id}"))
            if conflict is not None:
                return None, conflict

            violation = self._footprint_rejection(grid, request, center)
            if violation is not None:
                grid.restore(state)
                if statuses is not None:
                    statuses[request.id] = ZoneStatus.PROPOSED
                last_reason = f"re-solved {violation}"
                logger.debug(f"Zone {request.id} at {center} rolled back: {violation}")
                continue
            return zone, ""

        return None, (
            f"no valid center in {self.candidate_budget} candidates "
            f"(last rejection: {last_reason})"
        )

    def validate_candidate(
        self,
        grid: Grid,
        request: ZoneRequest,
        center: GridPos,
        committed: Sequence[Zone],
    ) -> str | None:
        """Check a candidate center against the current grid state.

        Returns:
            None if the candidate passes, otherwise the rejection reason.
        """
        cx, cy = center
        edge_distance = min(cx, cy, grid.width - 1 - cx, grid.height - 1 - cy)
        if edge_distance < request.edge_margin:
            return "too close to the map edge"

        for other in committed:
            separation = max(
                request.constraints.min_zone_distance,
                other.request.constraints.min_zone_distance,
            )
            ox, oy = other.center
            dx, dy = cx - ox, cy - oy
            if dx * dx + dy * dy < separation * separation:
                return f"too close to zone {other.id}"

        rejection = self._footprint_rejection(grid, request, center)
        if rejection is not None:
            return rejection

        if not self._can_bridge(grid, request, center):
            return "biome cannot be bridged to the surrounding tiles"

        return None

    def _footprint_rejection(
        self, grid: Grid, request: ZoneRequest, center: GridPos
    ) -> str | None:
        """Check the tiles currently under the footprint."""
        footprint = grid.square(center[0], center[1], request.radius)
        xs = np.array([x for x, _ in footprint], dtype=np.intp)
        ys = np.array([y for _, y in footprint], dtype=np.intp)
        tiles = grid.resolved[xs, ys]
        if np.any(tiles < 0):
            return "footprint is not resolved"

        if request.constraints.no_water and np.any(self.catalog.water_map(tiles)):
            return "footprint covers water"

        if request.constraints.flat:
            variance = self.footprint_height_variance(tiles)
            if variance > request.constraints.flatness_threshold:
                return f"footprint is not flat (variance {variance:.3f})"

        return None

    def footprint_height_variance(self, tiles: np.ndarray) -> float:
        """Expected variance of terrain height over a set of tiles.

        Law of total variance: the variance of the baseline elevations plus the
        mean per-tile elevation variance. Sums use math.fsum so the result is
        independent of vectorized summation order.
        """
        elevations = self.catalog.elevation_map(tiles).tolist()
        variances = self.catalog.elevation_variance_map(tiles).tolist()
        count = len(elevations)
        if count == 0:
            return 0.0
        mean = math.fsum(elevations) / count
        spread = math.fsum((h - mean) * (h - mean) for h in elevations) / count
        return spread + math.fsum(variances) / count

    def _can_bridge(self, grid: Grid, request: ZoneRequest, center: GridPos) -> bool:
        """Can the biome connect to the resolved cells just outside the halo?

        Each such cell is two steps away from the footprint, so its tile must
        lie in the support of the support of the biome.
        """
        cx, cy = center
        allowed = self.catalog.mask_for(request.allowed_tiles)
        reachable = self.rules.support(self.rules.support(allowed))
        halo_radius = request.radius + 1
        for x, y in self._outer_ring(grid, cx, cy, halo_radius):
            tile = grid.resolved_tile(x, y)
            if tile is not None and not reachable >> tile & 1:
                return False
        return True

    @staticmethod
    def _outer_ring(grid: Grid, cx: int, cy: int, radius: int) -> list[GridPos]:
        """In-bounds cells 4-adjacent to the square of the given radius."""
        ring: list[GridPos] = []
        for offset in range(-radius, radius + 1):
            ring.extend(
                [
                    (cx + offset, cy - radius - 1),
                    (cx + offset, cy + radius + 1),
                    (cx - radius - 1, cy + offset),
                    (cx + radius + 1, cy + offset),
                ]
            )
        return [(x, y) for x, y in ring if grid.in_bounds(x, y)]

    def commit(
        self, grid: Grid, zone: Zone, rng: DeterministicRandom
    ) -> str | None:
        """Pin the footprint and re-solve footprint plus halo.

        On a contradiction the grid is restored to its pre-commit state.

        Returns:
            None on success, otherwise the reason the re-solve failed.
        """
        cx, cy = zone.center
        allowed: DomainMask = self.catalog.mask_for(zone.allowed_tiles)
        region = grid.square(cx, cy, zone.radius + 1)
        state = grid.snapshot()

        for x, y in region:
            grid.reopen(x, y)
        for x, y in zone.footprint():
            grid.pin(x, y, allowed)

        solver = ConstraintSolver(self.catalog, rng, rules=self.rules)
        try:
            solver.solve(grid, scope=region)
        except ContradictionError as exc:
            grid.restore(state)
            logger.debug(f"Re-solve for zone {zone.id} at {zone.center} failed: {exc}")
            return f"localized re-solve contradicted: {exc}"
        return None
