"""Deterministic Wave Function Collapse solver over a Grid.

The solver fills every in-scope cell of a Grid with a tile so that every pair
of 4-connected neighbors is allowed by the TileCatalog and no neighbor pair
rises or falls by more than the configured maximum height transition.

Usage:
    from terraweave.environment.generators.constraint_solver import ConstraintSolver

    grid = Grid(width, height, catalog.tile_count)
    solver = ConstraintSolver(catalog, rng.fork("solver"))
    solver.solve(grid)  # Raises ContradictionError if the attempt is dead

    # Localized re-solve of a reopened region; out-of-scope cells act as
    # fixed boundary conditions.
    solver.solve(grid, scope=region_cells)

Algorithm:
    1. Select: the unresolved in-scope cell with the smallest domain. Ties are
       broken by a random key drawn whenever a cell's domain changes, scaled
       by the cell's total rarity weight so cells holding rarer candidates
       tend to be collapsed first.
    2. Collapse: pick one candidate, weighted by rarity weight.
    3. Propagate: breadth-first arc consistency. Each neighbor's domain is
       intersected with the support of the changed cell.
    4. An emptied domain is a contradiction. There is no local backtracking:
       the whole attempt is abandoned and the orchestrator retries with a
       freshly forked stream.

Performance notes:
    Domains are bitmasks (bit N = TileID N). The support of a domain (every
    tile allowed next to at least one of its candidates) is memoized per mask,
    turning the inner propagation step into a dict lookup and a bitwise AND.
    The solve loop works on flat Python lists in row-major order and writes
    the result back to the Grid when it finishes.
"""

from __future__ import annotations

import heapq
import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass

from terraweave import config
from terraweave.environment.grid import Grid
from terraweave.environment.tile_catalog import TileCatalog
from terraweave.types import DomainMask, GridPos, TileID
from terraweave.util.rng import DeterministicRandom

logger = logging.getLogger(__name__)


class ContradictionError(Exception):
    """Raised when propagation empties a cell's domain.

    This means no valid completion exists for the current attempt. It never
    leaves the generation attempt that raised it.
    """

    def __init__(self, message: str, position: GridPos | None = None) -> None:
        super().__init__(message)
        self.position = position


class AdjacencyRules:
    """Neighbor compatibility derived from a catalog and a height limit.

    For each tile we precompute a bitmask of the tiles that may sit next to
    it, combining catalog adjacency with the maximum height transition. Both
    are symmetric, so one mask per tile serves all four directions.
    """

    def __init__(
        self,
        catalog: TileCatalog,
        max_height_delta: float = config.DEFAULT_MAX_HEIGHT_DELTA,
    ) -> None:
        self.catalog = catalog
        self.max_height_delta = max_height_delta
        self.tile_count = catalog.tile_count

        self._compatible: list[DomainMask] = []
        for a in range(self.tile_count):
            mask = 0
            for b in range(self.tile_count):
                if not catalog.adjacency_allowed(a, b):
                    continue
                if abs(catalog.height_delta(a, b)) > max_height_delta:
                    continue
                mask |= 1 << b
            self._compatible.append(mask)
        self._support_cache: dict[DomainMask, DomainMask] = {}

    def compatible_mask(self, tile_id: TileID) -> DomainMask:
        return self._compatible[tile_id]

    def pair_allowed(self, a: TileID, b: TileID) -> bool:
        """Can resolved tiles a and b be neighbors?"""
        return bool(self._compatible[a] >> b & 1)

    def support(self, mask: DomainMask) -> DomainMask:
        """Tiles allowed next to at least one candidate of mask."""
        cached = self._support_cache.get(mask)
        if cached is not None:
            return cached

        result = 0
        remaining = mask
        while remaining:
            low_bit = remaining & -remaining
            result |= self._compatible[low_bit.bit_length() - 1]
            remaining ^= low_bit
        self._support_cache[mask] = result
        return result


@dataclass
class SolveStats:
    """Counters from one solve() call, for logging and benchmarks."""

    cells: int = 0
    collapses: int = 0
    propagation_steps: int = 0


class ConstraintSolver:
    """Entropy-ordered collapse with breadth-first constraint propagation."""

    def __init__(
        self,
        catalog: TileCatalog,
        rng: DeterministicRandom,
        max_height_delta: float = config.DEFAULT_MAX_HEIGHT_DELTA,
        *,
        rules: AdjacencyRules | None = None,
    ) -> None:
        """Initialize the solver.

        Args:
            catalog: The validated tile catalog.
            rng: Stream every random choice is drawn from.
            max_height_delta: Largest allowed elevation change between
                neighboring tiles. Ignored when rules is given.
            rules: Precomputed adjacency rules to share between solvers.
        """
        if rules is None:
            rules = AdjacencyRules(catalog, max_height_delta)
        elif rules.catalog is not catalog:
            raise ValueError("rules were built for a different catalog")

        self.catalog = catalog
        self.rng = rng
        self.rules = rules
        self.max_height_delta = rules.max_height_delta
        self.tile_count = catalog.tile_count
        self.weights = catalog.weights()
        self.support = rules.support

        self._weight_cache: dict[DomainMask, float] = {}

    def domain_weight(self, mask: DomainMask) -> float:
        """Total rarity weight of the candidates in mask."""
        cached = self._weight_cache.get(mask)
        if cached is not None:
            return cached

        total = 0.0
        for tile_id in range(self.tile_count):
            if mask >> tile_id & 1:
                total += self.weights[tile_id]
        self._weight_cache[mask] = total
        return total

    # -------------------------------------------------------------------------
    # Solving
    # -------------------------------------------------------------------------

    def solve(self, grid: Grid, scope: Iterable[GridPos] | None = None) -> SolveStats:
        """Run collapse and propagation until every in-scope cell is resolved.

        Args:
            grid: Grid to solve in place. Cells outside scope are never
                modified and constrain the scope like fixed boundaries.
            scope: Cells to solve. None means the whole grid.

        Returns:
            Counters describing the work done.

        Raises:
            ContradictionError: If any in-scope domain becomes empty. The grid
                is left untouched in that case.
            ValueError: If the grid was built for a different tile count.
        """
        if grid.tile_count != self.tile_count:
            raise ValueError(
                f"Grid has {grid.tile_count} tile types, catalog has {self.tile_count}"
            )

        width = grid.width
        cell_count = grid.cell_count
        # domains is indexed [x, y]; transposing gives row-major (y * width + x).
        masks: list[int] = [int(m) for m in grid.domains.T.ravel().tolist()]
        neighbors = _neighbor_table(width, grid.height)

        if scope is None:
            scope_indices = list(range(cell_count))
        else:
            scope_indices = sorted({y * width + x for x, y in scope})
        in_scope = [False] * cell_count
        for index in scope_indices:
            in_scope[index] = True

        stats = SolveStats(cells=len(scope_indices))
        step_limit = max(
            1,
            len(scope_indices)
            * max(config.PROPAGATION_STEPS_PER_CELL, self.tile_count + 2),
        )
        versions = [0] * cell_count
        heap: list[tuple[int, float, int, int]] = []

        for index in scope_indices:
            if masks[index] == 0:
                raise ContradictionError(
                    "Cell has an empty domain before solving",
                    (index % width, index // width),
                )

        # Bring the starting state to arc consistency. Out-of-scope neighbors
        # seed the queue too so resolved boundaries constrain the scope.
        seeds: list[int] = []
        seen = [False] * cell_count
        for index in scope_indices:
            if not seen[index]:
                seen[index] = True
                seeds.append(index)
            for neighbor in neighbors[index]:
                if not in_scope[neighbor] and not seen[neighbor]:
                    seen[neighbor] = True
                    seeds.append(neighbor)
        self._propagate(
            masks, neighbors, in_scope, versions, heap, seeds, width, stats, step_limit
        )

        for index in scope_indices:
            mask = masks[index]
            if mask & (mask - 1):
                self._push(heap, versions, index, mask)

        while heap:
            _, _, index, version = heapq.heappop(heap)
            mask = masks[index]
            if version != versions[index] or not mask & (mask - 1):
                continue

            chosen = self._collapse(mask)
            masks[index] = 1 << chosen
            versions[index] += 1
            stats.collapses += 1
            self._propagate(
                masks,
                neighbors,
                in_scope,
                versions,
                heap,
                [index],
                width,
                stats,
                step_limit,
            )

        for index in scope_indices:
            grid.set_domain_mask(index % width, index // width, masks[index])

        logger.debug(
            f"Solved {stats.cells} cells: {stats.collapses} collapses, "
            f"{stats.propagation_steps} propagation steps"
        )
        return stats

    def _push(
        self,
        heap: list[tuple[int, float, int, int]],
        versions: list[int],
        index: int,
        mask: DomainMask,
    ) -> None:
        """Queue a cell for selection with a fresh tie-break key."""
        key = self.rng.next_float() * self.domain_weight(mask)
        heapq.heappush(heap, (mask.bit_count(), key, index, versions[index]))

    def _collapse(self, mask: DomainMask) -> TileID:
        """Choose one candidate from mask, weighted by rarity weight."""
        candidates: list[TileID] = []
        weights: list[float] = []
        for tile_id in range(self.tile_count):
            if mask >> tile_id & 1:
                candidates.append(tile_id)
                weights.append(self.weights[tile_id])
        return candidates[self.rng.weighted_index(weights)]

    def _propagate(
        self,
        masks: list[int],
        neighbors: list[tuple[int, ...]],
        in_scope: list[bool],
        versions: list[int],
        heap: list[tuple[int, float, int, int]],
        start: list[int],
        width: int,
        stats: SolveStats,
        step_limit: int,
    ) -> None:
        """Breadth-first propagation from the start cells to a fixed point.

        Only in-scope cells are narrowed. Each narrowed cell is queued again
        so its reduced support reaches its own neighbors.
        """
        queue = deque(start)
        queued = set(start)
        support = self.support

        while queue:
            stats.propagation_steps += 1
            if stats.propagation_steps > step_limit:
                raise ContradictionError("Propagation exceeded maximum iterations")

            index = queue.popleft()
            queued.discard(index)
            allowed = support(masks[index])

            for neighbor in neighbors[index]:
                if not in_scope[neighbor]:
                    continue
                old_mask = masks[neighbor]
                new_mask = old_mask & allowed
                if new_mask == old_mask:
                    continue
                if new_mask == 0:
                    raise ContradictionError(
                        f"No valid tiles at ({neighbor % width}, "
                        f"{neighbor // width}) after propagation",
                        (neighbor % width, neighbor // width),
                    )

                masks[neighbor] = new_mask
                versions[neighbor] += 1
                if new_mask & (new_mask - 1):
                    self._push(heap, versions, neighbor, new_mask)
                if neighbor not in queued:
                    queued.add(neighbor)
                    queue.append(neighbor)


_NEIGHBOR_TABLES: dict[tuple[int, int], list[tuple[int, ...]]] = {}


def _neighbor_table(width: int, height: int) -> list[tuple[int, ...]]:
    """Row-major neighbor indices for every cell, in N, E, S, W order."""
    table = _NEIGHBOR_TABLES.get((width, height))
    if table is not None:
        return table

    table = []
    for y in range(height):
        for x in range(width):
            cell_neighbors: list[int] = []
            if y > 0:
                cell_neighbors.append((y - 1) * width + x)
            if x < width - 1:
                cell_neighbors.append(y * width + x + 1)
            if y < height - 1:
                cell_neighbors.append((y + 1) * width + x)
            if x > 0:
                cell_neighbors.append(y * width + x - 1)
            table.append(tuple(cell_neighbors))
    _NEIGHBOR_TABLES[(width, height)] = table
    return table
