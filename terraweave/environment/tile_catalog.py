"""
Tile catalog: the static, validated set of terrain tile types.

This module defines:
- `TileTypeData`: numpy structured dtype holding the intrinsic, per-type
  properties (elevation, walkability, water category, rarity weight). The
  catalog stores one row per tile type and `Grid`/`MapModel` store arrays of
  integer tile IDs that index into it, which keeps large maps cheap.
- `TileType`: the user-facing definition of a single tile type, including its
  symmetric adjacency set.
- `TileCatalog`: the read-only registry. It is validated once when built and
  raises ConfigError for any malformed definition, so solving never has to
  re-check the rules.
- Helper methods that turn an array of tile IDs into property maps (e.g. a
  boolean map of water tiles), used by zone validation and by consumers.
"""

from __future__ import annotations

import json
import struct
import zlib
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np

from terraweave import config
from terraweave.errors import ConfigError
from terraweave.types import Color, DomainMask, TileID

# Defines the intrinsic data for a *type* of tile (flyweight).
TileTypeData = np.dtype(
    [
        ("elevation", np.float64),  # Baseline height of the tile
        ("elevation_variance", np.float64),  # Height jitter consumers may apply
        ("walkable", bool),
        ("is_water", bool),  # Counts as water for zone no-water constraints
        ("weight", np.float64),  # Rarity prior: higher = more common
        ("name", "U32"),  # Human-readable name (Unicode string, max 32 chars)
    ]
)


@dataclass(frozen=True)
class TileType:
    """Definition of a single terrain tile type.

    Attributes:
        id: Index of this tile in its catalog. IDs must be 0..n-1.
        name: Unique symbolic name (e.g. "GRASS").
        elevation: Baseline elevation used for height transitions and flatness.
        elevation_variance: Variance of the height jitter around the baseline.
        walkable: Can actors walk on this tile?
        is_water: Does this tile count as water for zone constraints?
        adjacency: IDs of tiles allowed next to this one (in any direction).
            Must be symmetric across the catalog.
        weight: Relative probability weight for collapse (higher = more common).
        color: RGB used by debug previews only.
    """

    id: TileID
    name: str
    elevation: float = 0.0
    elevation_variance: float = 0.0
    walkable: bool = True
    is_water: bool = False
    adjacency: frozenset[TileID] = field(default_factory=frozenset)
    weight: float = 1.0
    color: Color = (128, 128, 128)


class TileCatalog:
    """Read-only registry of tile types with validated adjacency rules."""

    def __init__(self, tile_types: Iterable[TileType]) -> None:
        """Build and validate a catalog.

        Args:
            tile_types: The tile type definitions, in any order.

        Raises:
            ConfigError: If the definitions are malformed (asymmetric or
                dangling adjacency, non-contiguous IDs, bad weights, ...).
        """
        tiles = sorted(tile_types, key=lambda tile: tile.id)
        _validate(tiles)

        self._tiles: tuple[TileType, ...] = tuple(
            TileType(
                id=tile.id,
                name=tile.name,
                elevation=float(tile.elevation),
                elevation_variance=float(tile.elevation_variance),
                walkable=bool(tile.walkable),
                is_water=bool(tile.is_water),
                adjacency=frozenset(tile.adjacency),
                weight=float(tile.weight),
                color=tuple(tile.color),  # type: ignore[arg-type]
            )
            for tile in tiles
        )
        self._name_to_id = {tile.name.upper(): tile.id for tile in self._tiles}

        data = np.zeros(len(self._tiles), dtype=TileTypeData)
        for tile in self._tiles:
            data[tile.id] = (
                tile.elevation,
                tile.elevation_variance,
                tile.walkable,
                tile.is_water,
                tile.weight,
                tile.name,
            )
        data.flags.writeable = False
        self._data = data

        self._adjacency_masks: tuple[DomainMask, ...] = tuple(
            self.mask_for(tile.adjacency) for tile in self._tiles
        )
        self._checksum = self._compute_checksum()

    # -------------------------------------------------------------------------
    # Construction helpers
    # -------------------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> TileCatalog:
        """Build a catalog from JSON-style data.

        Expected shape::

            {"tiles": [{"id": 0, "name": "WATER", "elevation": 0.0,
                        "adjacency": [0, 1], "is_water": true, ...}, ...]}

        Adjacency entries may be tile IDs or tile names.

        Raises:
            ConfigError: If the data is missing fields or fails validation.
        """
        try:
            raw_tiles = list(data["tiles"])
        except (KeyError, TypeError) as exc:
            raise ConfigError("Tile catalog data must contain a 'tiles' list") from exc

        names: dict[str, int] = {}
        for raw in raw_tiles:
            if not isinstance(raw, Mapping):
                raise ConfigError(f"Tile definition must be a mapping: {raw!r}")
            if "id" in raw and "name" in raw:
                names[str(raw["name"]).upper()] = int(raw["id"])

        tile_types: list[TileType] = []
        for raw in raw_tiles:
            try:
                adjacency = frozenset(
                    _resolve_tile_ref(ref, names) for ref in raw.get("adjacency", ())
                )
                tile_types.append(
                    TileType(
                        id=int(raw["id"]),
                        name=str(raw["name"]),
                        elevation=float(raw.get("elevation", 0.0)),
                        elevation_variance=float(raw.get("elevation_variance", 0.0)),
                        walkable=bool(raw.get("walkable", True)),
                        is_water=bool(raw.get("is_water", False)),
                        adjacency=adjacency,
                        weight=float(raw.get("weight", 1.0)),
                        color=tuple(raw.get("color", (128, 128, 128))),  # type: ignore[arg-type]
                    )
                )
            except (KeyError, TypeError, ValueError) as exc:
                raise ConfigError(f"Malformed tile definition: {raw!r}") from exc

        return cls(tile_types)

    # -------------------------------------------------------------------------
    # Per-tile properties
    # -------------------------------------------------------------------------

    @property
    def tile_count(self) -> int:
        return len(self._tiles)

    @property
    def tiles(self) -> tuple[TileType, ...]:
        return self._tiles

    @property
    def data(self) -> np.ndarray:
        """Read-only structured array of TileTypeData, indexed by TileID."""
        return self._data

    @property
    def checksum(self) -> int:
        """CRC32 of the semantic tile definitions (colors excluded)."""
        return self._checksum

    @property
    def all_tiles_mask(self) -> DomainMask:
        return (1 << self.tile_count) - 1

    def tile(self, tile_id: TileID) -> TileType:
        if not 0 <= tile_id < self.tile_count:
            raise IndexError(f"Unknown tile id {tile_id}")
        return self._tiles[tile_id]

    def id_for_name(self, name: str) -> TileID:
        """Look up a tile ID by its (case-insensitive) name."""
        try:
            return self._name_to_id[name.upper()]
        except KeyError:
            raise KeyError(f"Unknown tile name {name!r}") from None

    def weights(self) -> list[float]:
        return [tile.weight for tile in self._tiles]

    # -------------------------------------------------------------------------
    # Adjacency & height rules
    # -------------------------------------------------------------------------

    def adjacency_allowed(self, a: TileID, b: TileID) -> bool:
        """Can tiles a and b sit next to each other? Symmetric by construction."""
        return bool(self._adjacency_masks[a] >> b & 1)

    def height_delta(self, a: TileID, b: TileID) -> float:
        """Elevation change when stepping from tile a onto tile b."""
        return self._tiles[b].elevation - self._tiles[a].elevation

    # -------------------------------------------------------------------------
    # Domain bitmask helpers
    # -------------------------------------------------------------------------

    def mask_for(self, tile_ids: Iterable[TileID]) -> DomainMask:
        """Convert a collection of tile IDs to a domain bitmask."""
        mask = 0
        for tile_id in tile_ids:
            if not 0 <= tile_id < self.tile_count:
                raise ConfigError(f"Unknown tile id {tile_id}")
            mask |= 1 << tile_id
        return mask

    def ids_from_mask(self, mask: DomainMask) -> frozenset[TileID]:
        return frozenset(
            tile_id for tile_id in range(self.tile_count) if mask >> tile_id & 1
        )

    # -------------------------------------------------------------------------
    # Vectorized property maps
    # -------------------------------------------------------------------------

    def elevation_map(self, tile_ids: np.ndarray) -> np.ndarray:
        """Return a float array of baseline elevations for tile_ids."""
        return self._data["elevation"][tile_ids]

    def elevation_variance_map(self, tile_ids: np.ndarray) -> np.ndarray:
        return self._data["elevation_variance"][tile_ids]

    def water_map(self, tile_ids: np.ndarray) -> np.ndarray:
        """Return a boolean array that is True where tile_ids are water."""
        return self._data["is_water"][tile_ids]

    def walkable_map(self, tile_ids: np.ndarray) -> np.ndarray:
        """Return a boolean array that is True where tile_ids are walkable."""
        return self._data["walkable"][tile_ids]

    # -------------------------------------------------------------------------

    def _compute_checksum(self) -> int:
        """CRC32 over a canonical little-endian encoding of every tile.

        Colors are presentation-only and are left out.
        """
        crc = 0
        for tile in self._tiles:
            name = tile.name.encode()
            record = struct.pack(
                "<HddBBdQ",
                tile.id,
                tile.elevation,
                tile.elevation_variance,
                tile.walkable,
                tile.is_water,
                tile.weight,
                self._adjacency_masks[tile.id],
            )
            crc = zlib.crc32(struct.pack("<B", len(name)) + name + record, crc)
        return crc

    def __len__(self) -> int:
        return self.tile_count

    def __repr__(self) -> str:
        names = ", ".join(tile.name for tile in self._tiles)
        return f"TileCatalog([{names}], checksum={self._checksum:#010x})"


def load_catalog(path: str | Path) -> TileCatalog:
    """Read and validate a tile catalog from a JSON file."""
    try:
        with Path(path).open() as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"Could not read tile catalog {path}: {exc}") from exc
    return TileCatalog.from_mapping(data)


def _resolve_tile_ref(ref: int | str, names: Mapping[str, int]) -> TileID:
    if isinstance(ref, str):
        try:
            return names[ref.upper()]
        except KeyError:
            raise ConfigError(f"Adjacency references undefined tile {ref!r}") from None
    return int(ref)


def _validate(tiles: Sequence[TileType]) -> None:
    """Verify tile definitions. Raises ConfigError on the first problem found."""
    if not tiles:
        raise ConfigError("Tile catalog is empty")
    if len(tiles) > config.MAX_TILE_TYPES:
        raise ConfigError(
            f"Tile catalog supports at most {config.MAX_TILE_TYPES} tile types, "
            f"got {len(tiles)}"
        )

    ids = [tile.id for tile in tiles]
    if ids != list(range(len(tiles))):
        raise ConfigError(f"Tile ids must be unique and contiguous from 0, got {ids}")

    seen_names: set[str] = set()
    for tile in tiles:
        normalized = tile.name.upper()
        if not normalized:
            raise ConfigError(f"Tile {tile.id} has an empty name")
        if len(tile.name) > 32:
            raise ConfigError(f"Tile name {tile.name!r} is longer than 32 characters")
        if normalized in seen_names:
            raise ConfigError(f"Tile name {tile.name!r} is defined more than once")
        seen_names.add(normalized)

        if not tile.weight > 0.0:
            raise ConfigError(f"Tile {tile.name} must have a positive weight")
        if tile.elevation_variance < 0.0:
            raise ConfigError(f"Tile {tile.name} has a negative elevation variance")

    by_id = {tile.id: tile for tile in tiles}
    for tile in tiles:
        for neighbor_id in tile.adjacency:
            neighbor = by_id.get(neighbor_id)
            if neighbor is None:
                raise ConfigError(
                    f"Tile {tile.name} allows undefined tile id {neighbor_id}"
                )
            if tile.id not in neighbor.adjacency:
                raise ConfigError(
                    f"Asymmetric adjacency: {tile.name} allows {neighbor.name}, "
                    f"but {neighbor.name} does not allow {tile.name}"
                )
