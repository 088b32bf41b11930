from __future__ import annotations

import pytest

from terraweave.environment.tile_catalog import TileCatalog, TileType
from terraweave.environment.tile_types import create_default_catalog


@pytest.fixture
def default_catalog() -> TileCatalog:
    """The eight-tile deep water .. snow gradient."""
    return create_default_catalog()


@pytest.fixture
def chain_catalog() -> TileCatalog:
    """A <-> B <-> C: A and C can never touch.

    Elevations are spread so the pair A/C would also break a height limit
    of 1.0.
    """
    return TileCatalog(
        [
            TileType(id=0, name="A", elevation=0.0, adjacency=frozenset({0, 1}), weight=3.0),
            TileType(id=1, name="B", elevation=0.75, adjacency=frozenset({0, 1, 2}), weight=2.0),
            TileType(id=2, name="C", elevation=1.5, adjacency=frozenset({1, 2}), weight=1.0),
        ]
    )


@pytest.fixture
def incompatible_catalog() -> TileCatalog:
    """Two tiles that may not sit next to anything, themselves included."""
    return TileCatalog(
        [
            TileType(id=0, name="LAVA", adjacency=frozenset()),
            TileType(id=1, name="ICE", adjacency=frozenset()),
        ]
    )
