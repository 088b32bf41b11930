"""Map generation algorithms for terraweave.

- ConstraintSolver: deterministic Wave Function Collapse over a Grid
- ZonePlacer: places designer zones on a solved grid and re-solves them locally

The orchestrator that ties both together with retry and serialization lives
in map_generator and is re-exported from the top-level package.
"""

from .constraint_solver import (
    AdjacencyRules,
    ConstraintSolver,
    ContradictionError,
    SolveStats,
)
from .zones import (
    PlacementReport,
    SkippedZone,
    SubPlacement,
    Zone,
    ZoneConstraints,
    ZonePlacer,
    ZoneRequest,
    ZoneStatus,
)

__all__ = [
    "AdjacencyRules",
    "ConstraintSolver",
    "ContradictionError",
    "PlacementReport",
    "SkippedZone",
    "SolveStats",
    "SubPlacement",
    "Zone",
    "ZoneConstraints",
    "ZonePlacer",
    "ZoneRequest",
    "ZoneStatus",
]
