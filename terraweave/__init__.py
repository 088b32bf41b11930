"""Deterministic Wave Function Collapse world-map generation.

The public entry points are re-exported here:
- generate / load: one-shot convenience wrappers around MapGenerator
- MapGenerator: seeded generation with retry and zone placement
- MapModel: the immutable result handed to renderers and persistence
"""

from terraweave.environment.generators.map_generator import (
    GenerationResult,
    LoadResult,
    MapGenerator,
    generate,
    load,
)
from terraweave.environment.grid import SizeConfig
from terraweave.environment.map_model import MapModel
from terraweave.environment.tile_catalog import TileCatalog, TileType
from terraweave.errors import (
    ConfigError,
    CorruptDataError,
    GenerationFailure,
    SizeExceededError,
    TerraweaveError,
)

__all__ = [
    "ConfigError",
    "CorruptDataError",
    "GenerationFailure",
    "GenerationResult",
    "LoadResult",
    "MapGenerator",
    "MapModel",
    "SizeConfig",
    "SizeExceededError",
    "TerraweaveError",
    "TileCatalog",
    "TileType",
    "generate",
    "load",
]
