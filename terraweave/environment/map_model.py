"""The immutable result of a successful generation.

A MapModel is what renderers, decoration scatter and persistence receive. It
is shared by reference, so its tile array is made read-only and every other
field is a frozen value.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from terraweave import config
from terraweave.environment.generators.zones import Zone
from terraweave.types import GridCoord, Seed, TileID


@dataclass(frozen=True, eq=False)
class MapModel:
    """A fully resolved map plus the zones committed on it.

    Attributes:
        seed: Master seed that reproduces this map.
        tiles: Read-only array of TileIDs, shape (width, height), indexed [x, y].
        zones: Committed zones with their final centers, in placement order.
        catalog_checksum: Checksum of the tile catalog the IDs refer to.
        format_version: Serialization format version this model corresponds to.
    """

    seed: Seed
    tiles: np.ndarray
    zones: tuple[Zone, ...]
    catalog_checksum: int
    format_version: int = config.FORMAT_VERSION

    def __post_init__(self) -> None:
        tiles = np.array(self.tiles, dtype=np.uint8, copy=True)
        if tiles.ndim != 2 or tiles.size == 0:
            raise ValueError(f"tiles must be a non-empty 2D array, got {tiles.shape}")
        tiles.flags.writeable = False
        object.__setattr__(self, "tiles", tiles)
        object.__setattr__(self, "zones", tuple(self.zones))

    @classmethod
    def create(
        cls,
        seed: Seed,
        tiles: np.ndarray,
        zones: Sequence[Zone],
        catalog_checksum: int,
    ) -> MapModel:
        return cls(
            seed=seed,
            tiles=tiles,
            zones=tuple(zones),
            catalog_checksum=catalog_checksum,
        )

    @property
    def width(self) -> int:
        return int(self.tiles.shape[0])

    @property
    def height(self) -> int:
        return int(self.tiles.shape[1])

    @property
    def dimensions(self) -> tuple[int, int]:
        return self.width, self.height

    def tile_at(self, x: GridCoord, y: GridCoord) -> TileID:
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"({x}, {y}) is outside the {self.width}x{self.height} map")
        return int(self.tiles[x, y])

    def zone(self, zone_id: str) -> Zone | None:
        for zone in self.zones:
            if zone.id == zone_id:
                return zone
        return None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MapModel):
            return NotImplemented
        return (
            self.seed == other.seed
            and self.catalog_checksum == other.catalog_checksum
            and self.format_version == other.format_version
            and self.zones == other.zones
            and np.array_equal(self.tiles, other.tiles)
        )

    def __hash__(self) -> int:
        return hash(
            (
                self.seed,
                self.catalog_checksum,
                self.format_version,
                self.zones,
                self.tiles.tobytes(),
            )
        )

    def __repr__(self) -> str:
        zone_ids = ", ".join(zone.id for zone in self.zones)
        return (
            f"MapModel(seed={self.seed}, size={self.width}x{self.height}, "
            f"zones=[{zone_ids}], catalog={self.catalog_checksum:#010x})"
        )
