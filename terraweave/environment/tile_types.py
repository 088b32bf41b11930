"""
Default terrain tile types.

The default catalog is a single elevation gradient running from deep water up
to snow. Every tile may only touch itself and its direct neighbors on the
gradient, so coastlines always pass through shallow water and sand, and
mountains always rise through hills:

    DEEP_WATER <-> SHALLOW_WATER <-> SAND <-> GRASS <-> FOREST
        <-> HILLS <-> MOUNTAIN <-> SNOW

Because each rule only allows a step of one along the gradient, arc-consistent
propagation never leaves the solver stuck on a fully open grid.
"""

from __future__ import annotations

from terraweave.environment.tile_catalog import TileCatalog, TileType
from terraweave.types import Color, TileID

# Order of registration is the TileID. Keep water first so the lowest IDs are
# the lowest elevations.
_GRADIENT: tuple[tuple[str, float, float, bool, bool, float, Color], ...] = (
    # name, elevation, variance, walkable, is_water, weight, color
    ("DEEP_WATER", 0.0, 0.0, False, True, 2.0, (20, 40, 120)),
    ("SHALLOW_WATER", 0.5, 0.0, False, True, 1.0, (50, 100, 180)),
    ("SAND", 1.0, 0.02, True, False, 1.0, (220, 200, 140)),
    ("GRASS", 1.5, 0.05, True, False, 5.0, (80, 160, 60)),
    ("FOREST", 2.0, 0.1, True, False, 3.0, (30, 100, 40)),
    ("HILLS", 3.0, 0.5, True, False, 1.5, (130, 120, 70)),
    ("MOUNTAIN", 4.5, 1.0, False, False, 1.0, (110, 105, 100)),
    ("SNOW", 5.5, 0.2, True, False, 0.5, (240, 240, 250)),
)

DEEP_WATER: TileID = 0
SHALLOW_WATER: TileID = 1
SAND: TileID = 2
GRASS: TileID = 3
FOREST: TileID = 4
HILLS: TileID = 5
MOUNTAIN: TileID = 6
SNOW: TileID = 7

# Land tiles that are comfortable to build on.
LOWLAND_TILES: frozenset[TileID] = frozenset({SAND, GRASS, FOREST})


def make_gradient_tile_types() -> list[TileType]:
    """Build the default tile definitions with +/-1 gradient adjacency."""
    last = len(_GRADIENT) - 1
    tile_types: list[TileType] = []
    for tile_id, (name, elevation, variance, walkable, is_water, weight, color) in (
        enumerate(_GRADIENT)
    ):
        adjacency = frozenset(
            neighbor
            for neighbor in (tile_id - 1, tile_id, tile_id + 1)
            if 0 <= neighbor <= last
        )
        tile_types.append(
            TileType(
                id=tile_id,
                name=name,
                elevation=elevation,
                elevation_variance=variance,
                walkable=walkable,
                is_water=is_water,
                adjacency=adjacency,
                weight=weight,
                color=color,
            )
        )
    return tile_types


def create_default_catalog() -> TileCatalog:
    """Create the default eight-tile terrain catalog."""
    return TileCatalog(make_gradient_tile_types())
