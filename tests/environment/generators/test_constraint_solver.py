"""Tests for the Wave Function Collapse constraint solver.

These tests verify the solver works with arbitrary catalogs, independent of
the default terrain gradient.
"""

from __future__ import annotations

import numpy as np
import pytest

from terraweave.environment.generators.constraint_solver import (
    AdjacencyRules,
    ConstraintSolver,
    ContradictionError,
)
from terraweave.environment.grid import Grid
from terraweave.environment.tile_catalog import TileCatalog
from terraweave.environment.tile_types import FOREST, GRASS, SAND, SNOW
from terraweave.util.rng import DeterministicRandom


def _solve(
    catalog: TileCatalog,
    width: int,
    height: int,
    seed: int,
    max_height_delta: float = 2.0,
) -> Grid:
    grid = Grid(width, height, catalog.tile_count)
    ConstraintSolver(catalog, DeterministicRandom(seed), max_height_delta).solve(grid)
    return grid


def _assert_adjacency_invariant(grid: Grid, rules: AdjacencyRules) -> None:
    tiles = grid.tiles()
    for x, y in grid.positions():
        for nx, ny in grid.neighbors(x, y):
            assert rules.pair_allowed(int(tiles[x, y]), int(tiles[nx, ny])), (
                f"({x}, {y})={tiles[x, y]} next to ({nx}, {ny})={tiles[nx, ny]}"
            )


# =============================================================================
# Adjacency Rules
# =============================================================================


class TestAdjacencyRules:
    """Compatibility masks combine adjacency and height limits."""

    def test_compatible_mask_follows_adjacency(self, chain_catalog: TileCatalog) -> None:
        rules = AdjacencyRules(chain_catalog, max_height_delta=10.0)
        assert rules.compatible_mask(0) == 0b011
        assert rules.compatible_mask(1) == 0b111
        assert rules.compatible_mask(2) == 0b110

    def test_height_limit_removes_steep_pairs(self, default_catalog: TileCatalog) -> None:
        """HILLS (3.0) to MOUNTAIN (4.5) is too steep with a 1.0 limit."""
        rules = AdjacencyRules(default_catalog, max_height_delta=1.0)
        assert not rules.pair_allowed(5, 6)
        assert not rules.pair_allowed(6, 5)
        assert rules.pair_allowed(GRASS, GRASS)

    def test_support_is_union_of_compatible_masks(
        self, chain_catalog: TileCatalog
    ) -> None:
        rules = AdjacencyRules(chain_catalog, max_height_delta=10.0)
        assert rules.support(0b001) == 0b011
        assert rules.support(0b101) == 0b111
        assert rules.support(0) == 0


# =============================================================================
# Basic Solver Functionality
# =============================================================================


class TestSolverBasicFunctionality:
    """Tests for full-grid solving."""

    def test_solver_resolves_every_cell(self, default_catalog: TileCatalog) -> None:
        grid = _solve(default_catalog, 12, 9, seed=42)
        assert grid.is_fully_resolved()
        assert grid.tiles().shape == (12, 9)

    @pytest.mark.parametrize("seed", [0, 1, 42, 12345, 2**64 - 1])
    def test_solver_respects_adjacency_rules(
        self, default_catalog: TileCatalog, seed: int
    ) -> None:
        """Every neighbor pair is allowed by the catalog and the height limit."""
        grid = _solve(default_catalog, 16, 16, seed)
        _assert_adjacency_invariant(grid, AdjacencyRules(default_catalog, 2.0))

    def test_chain_catalog_never_places_a_next_to_c(
        self, chain_catalog: TileCatalog
    ) -> None:
        for seed in range(5):
            grid = _solve(chain_catalog, 10, 10, seed, max_height_delta=1.0)
            _assert_adjacency_invariant(grid, AdjacencyRules(chain_catalog, 1.0))

    def test_same_seed_produces_identical_grid(self, default_catalog: TileCatalog) -> None:
        a = _solve(default_catalog, 20, 14, seed=777)
        b = _solve(default_catalog, 20, 14, seed=777)
        assert np.array_equal(a.tiles(), b.tiles())

    def test_different_seeds_usually_differ(self, default_catalog: TileCatalog) -> None:
        grids = [_solve(default_catalog, 16, 16, seed).tiles() for seed in range(4)]
        assert any(not np.array_equal(grids[0], other) for other in grids[1:])

    def test_single_cell_grid(self, default_catalog: TileCatalog) -> None:
        grid = _solve(default_catalog, 1, 1, seed=3)
        assert grid.resolved_tile(0, 0) is not None

    def test_stats_count_collapses(self, default_catalog: TileCatalog) -> None:
        grid = Grid(8, 8, default_catalog.tile_count)
        stats = ConstraintSolver(default_catalog, DeterministicRandom(5)).solve(grid)
        assert stats.cells == 64
        assert 1 <= stats.collapses <= 64
        assert stats.propagation_steps > 0

    def test_rules_for_other_catalog_rejected(
        self, default_catalog: TileCatalog, chain_catalog: TileCatalog
    ) -> None:
        with pytest.raises(ValueError, match="different catalog"):
            ConstraintSolver(
                default_catalog,
                DeterministicRandom(1),
                rules=AdjacencyRules(chain_catalog),
            )

    def test_grid_for_other_catalog_rejected(self, default_catalog: TileCatalog) -> None:
        solver = ConstraintSolver(default_catalog, DeterministicRandom(1))
        with pytest.raises(ValueError, match="tile types"):
            solver.solve(Grid(4, 4, tile_count=3))


# =============================================================================
# Contradictions
# =============================================================================


class TestSolverContradiction:
    """Contradictions are raised, never patched locally."""

    def test_incompatible_tiles_contradict(self, incompatible_catalog: TileCatalog) -> None:
        grid = Grid(3, 3, incompatible_catalog.tile_count)
        solver = ConstraintSolver(incompatible_catalog, DeterministicRandom(1))
        with pytest.raises(ContradictionError) as excinfo:
            solver.solve(grid)
        assert excinfo.value.position is not None

    def test_contradiction_leaves_grid_untouched(
        self, incompatible_catalog: TileCatalog
    ) -> None:
        grid = Grid(3, 3, incompatible_catalog.tile_count)
        before = grid.domains.copy()
        with pytest.raises(ContradictionError):
            ConstraintSolver(incompatible_catalog, DeterministicRandom(1)).solve(grid)
        assert np.array_equal(grid.domains, before)

    def test_incompatible_single_cell_still_solves(
        self, incompatible_catalog: TileCatalog
    ) -> None:
        """With no neighbors there is nothing to contradict."""
        grid = Grid(1, 1, incompatible_catalog.tile_count)
        ConstraintSolver(incompatible_catalog, DeterministicRandom(1)).solve(grid)
        assert grid.is_fully_resolved()

    def test_empty_domain_before_solving_contradicts(
        self, default_catalog: TileCatalog
    ) -> None:
        grid = Grid(3, 3, default_catalog.tile_count)
        grid.set_domain_mask(1, 1, 0)
        with pytest.raises(ContradictionError, match="empty domain"):
            ConstraintSolver(default_catalog, DeterministicRandom(1)).solve(grid)

    def test_pinned_conflicting_neighbors_contradict(
        self, default_catalog: TileCatalog
    ) -> None:
        """GRASS and SNOW pinned next to each other can never both hold."""
        grid = Grid(2, 1, default_catalog.tile_count)
        grid.pin(0, 0, 1 << GRASS)
        grid.pin(1, 0, 1 << SNOW)
        with pytest.raises(ContradictionError):
            ConstraintSolver(default_catalog, DeterministicRandom(1)).solve(grid)


# =============================================================================
# Localized Solving
# =============================================================================


class TestLocalizedSolve:
    """solve(grid, scope) re-solves a region against fixed surroundings."""

    def test_out_of_scope_cells_are_unchanged(self, default_catalog: TileCatalog) -> None:
        grid = _solve(default_catalog, 12, 12, seed=9)
        before = grid.tiles()
        region = grid.square(6, 6, 2)
        for x, y in region:
            grid.reopen(x, y)

        ConstraintSolver(default_catalog, DeterministicRandom(10)).solve(grid, region)

        after = grid.tiles()
        inside = np.zeros((12, 12), dtype=bool)
        for x, y in region:
            inside[x, y] = True
        assert np.array_equal(before[~inside], after[~inside])
        _assert_adjacency_invariant(grid, AdjacencyRules(default_catalog, 2.0))

    def test_pinned_region_resolves_inside_pin(self, default_catalog: TileCatalog) -> None:
        """SAND pinned in a FOREST field is bridged by GRASS neighbors."""
        grid = Grid(5, 5, default_catalog.tile_count)
        for x, y in grid.positions():
            grid.set_domain(x, y, [FOREST])
        region = grid.square(2, 2, 1)
        for x, y in region:
            grid.reopen(x, y)
        grid.pin(2, 2, 1 << SAND)

        ConstraintSolver(default_catalog, DeterministicRandom(12)).solve(grid, region)

        assert grid.resolved_tile(2, 2) == SAND
        for x, y in grid.neighbors(2, 2):
            assert grid.resolved_tile(x, y) == GRASS
        _assert_adjacency_invariant(grid, AdjacencyRules(default_catalog, 2.0))

    def test_boundary_conflict_contradicts(self, default_catalog: TileCatalog) -> None:
        """A scope cell between fixed GRASS and fixed SNOW cannot be filled."""
        grid = Grid(3, 1, default_catalog.tile_count)
        grid.set_domain(0, 0, [GRASS])
        grid.set_domain(2, 0, [SNOW])
        with pytest.raises(ContradictionError):
            ConstraintSolver(default_catalog, DeterministicRandom(1)).solve(
                grid, [(1, 0)]
            )
