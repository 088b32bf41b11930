"""Addressable 2D cell container used during a single generation attempt.

Each cell's domain (the set of tile types it may still become) is stored as a
uint64 bitmask in a numpy array, one bit per TileID. Arrays are indexed
[x, y] with shape (width, height), the same layout the rest of the map code
uses. A Grid is owned by exactly one attempt and is never shared; callers
outside generation only ever see the MapModel snapshot built from it.

Coordinate systems:
    - Grid: integer (x, y), x to the east, y to the south, (0, 0) top-left.
    - World: float (wx, wy) in world units, y pointing north. A cell spans
      `cell_size` units and its center is at +0.5 cells.
    - Image pixels: integer (px, py), top-left origin, `pixels_per_cell`
      pixels per cell. This matches the debug preview images.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator
from dataclasses import dataclass

import numpy as np

from terraweave import config
from terraweave.errors import ConfigError
from terraweave.types import (
    DomainMask,
    GridCoord,
    GridPos,
    PixelPos,
    TileID,
    WorldPos,
)

# Direction utilities, fixed N/E/S/W order keeps neighbor walks deterministic.
DIRECTIONS = ("N", "E", "S", "W")
DIR_OFFSETS = {"N": (0, -1), "E": (1, 0), "S": (0, 1), "W": (-1, 0)}
_OFFSETS = tuple(DIR_OFFSETS[direction] for direction in DIRECTIONS)

UNRESOLVED = -1


@dataclass(frozen=True)
class SizeConfig:
    """Grid dimensions, solver limits and coordinate geometry.

    Attributes:
        width: Grid width in cells (1..MAX_GRID_WIDTH).
        height: Grid height in cells (1..MAX_GRID_HEIGHT).
        max_height_delta: Largest elevation change allowed between neighbors.
        byte_budget: Maximum size of the encoded map, in bytes.
        cell_size: World units spanned by one cell.
        origin: World position of the grid's south-west corner.
        pixels_per_cell: Image pixels per cell for previews.
    """

    width: int
    height: int
    max_height_delta: float = config.DEFAULT_MAX_HEIGHT_DELTA
    byte_budget: int = config.DEFAULT_BYTE_BUDGET
    cell_size: float = config.DEFAULT_CELL_SIZE
    origin: WorldPos = (0.0, 0.0)
    pixels_per_cell: int = config.DEFAULT_PIXELS_PER_CELL

    def __post_init__(self) -> None:
        if not 1 <= self.width <= config.MAX_GRID_WIDTH:
            raise ConfigError(
                f"Grid width must be 1..{config.MAX_GRID_WIDTH}, got {self.width}"
            )
        if not 1 <= self.height <= config.MAX_GRID_HEIGHT:
            raise ConfigError(
                f"Grid height must be 1..{config.MAX_GRID_HEIGHT}, got {self.height}"
            )
        if self.max_height_delta < 0:
            raise ConfigError("max_height_delta must not be negative")
        if self.byte_budget <= 0:
            raise ConfigError("byte_budget must be positive")
        if self.cell_size <= 0:
            raise ConfigError("cell_size must be positive")
        if self.pixels_per_cell <= 0:
            raise ConfigError("pixels_per_cell must be positive")


@dataclass(frozen=True)
class Cell:
    """Read-only snapshot of one grid cell."""

    x: GridCoord
    y: GridCoord
    domain: frozenset[TileID]
    resolved: TileID | None
    pinned: bool


class Grid:
    """2D container of cell domains with coordinate transforms."""

    def __init__(
        self,
        width: int,
        height: int,
        tile_count: int,
        *,
        cell_size: float = config.DEFAULT_CELL_SIZE,
        origin: WorldPos = (0.0, 0.0),
        pixels_per_cell: int = config.DEFAULT_PIXELS_PER_CELL,
    ) -> None:
        """Create a fully open grid where every cell may be any tile.

        Args:
            width: Grid width in cells.
            height: Grid height in cells.
            tile_count: Number of tile types in the catalog (1..64).
            cell_size: World units per cell.
            origin: World position of the south-west corner.
            pixels_per_cell: Image pixels per cell.
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Grid dimensions must be positive, got {width}x{height}")
        if not 1 <= tile_count <= config.MAX_TILE_TYPES:
            raise ValueError(f"tile_count must be 1..{config.MAX_TILE_TYPES}")

        self.width = width
        self.height = height
        self.tile_count = tile_count
        self.cell_size = cell_size
        self.origin = origin
        self.pixels_per_cell = pixels_per_cell
        self.full_mask: DomainMask = (1 << tile_count) - 1

        self.domains = np.full((width, height), self.full_mask, dtype=np.uint64)
        self.resolved = np.full((width, height), UNRESOLVED, dtype=np.int16)
        self.pinned = np.zeros((width, height), dtype=bool)
        # Allowed subset for pinned cells; full mask elsewhere.
        self.pin_masks = np.full((width, height), self.full_mask, dtype=np.uint64)

        if tile_count == 1:
            self.resolved[:, :] = 0

    @classmethod
    def from_size_config(cls, size: SizeConfig, tile_count: int) -> Grid:
        return cls(
            size.width,
            size.height,
            tile_count,
            cell_size=size.cell_size,
            origin=size.origin,
            pixels_per_cell=size.pixels_per_cell,
        )

    @property
    def cell_count(self) -> int:
        return self.width * self.height

    def in_bounds(self, x: GridCoord, y: GridCoord) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    # -------------------------------------------------------------------------
    # Domains
    # -------------------------------------------------------------------------

    def domain_mask(self, x: GridCoord, y: GridCoord) -> DomainMask:
        return int(self.domains[x, y])

    def set_domain_mask(self, x: GridCoord, y: GridCoord, mask: DomainMask) -> None:
        """Replace a cell's domain. An empty mask is stored as-is; detecting
        the resulting contradiction is the solver's job."""
        self.domains[x, y] = mask
        if mask and mask & (mask - 1) == 0:
            self.resolved[x, y] = mask.bit_length() - 1
        else:
            self.resolved[x, y] = UNRESOLVED

    def domain(self, x: GridCoord, y: GridCoord) -> frozenset[TileID]:
        mask = self.domain_mask(x, y)
        return frozenset(t for t in range(self.tile_count) if mask >> t & 1)

    def set_domain(self, x: GridCoord, y: GridCoord, tile_ids: Iterable[TileID]) -> None:
        mask = 0
        for tile_id in tile_ids:
            if not 0 <= tile_id < self.tile_count:
                raise ValueError(f"Unknown tile id {tile_id}")
            mask |= 1 << tile_id
        self.set_domain_mask(x, y, mask)

    def resolved_tile(self, x: GridCoord, y: GridCoord) -> TileID | None:
        tile = int(self.resolved[x, y])
        return None if tile == UNRESOLVED else tile

    def is_resolved(self, x: GridCoord, y: GridCoord) -> bool:
        return self.resolved[x, y] != UNRESOLVED

    def is_fully_resolved(self) -> bool:
        return bool(np.all(self.resolved != UNRESOLVED))

    def cell(self, x: GridCoord, y: GridCoord) -> Cell:
        return Cell(
            x=x,
            y=y,
            domain=self.domain(x, y),
            resolved=self.resolved_tile(x, y),
            pinned=bool(self.pinned[x, y]),
        )

    # -------------------------------------------------------------------------
    # Zone pinning
    # -------------------------------------------------------------------------

    def pin(self, x: GridCoord, y: GridCoord, allowed_mask: DomainMask) -> None:
        """Restrict a cell to a zone's allowed subset and mark it pinned.

        Pins from overlapping zones intersect. The cell's domain is reset to
        the pin mask, ready for a localized re-solve.
        """
        mask = int(self.pin_masks[x, y]) & allowed_mask
        self.pin_masks[x, y] = mask
        self.pinned[x, y] = True
        self.set_domain_mask(x, y, mask)

    def reopen(self, x: GridCoord, y: GridCoord) -> None:
        """Reset a cell to every tile its pin (if any) allows."""
        self.set_domain_mask(x, y, int(self.pin_masks[x, y]))

    # -------------------------------------------------------------------------
    # Neighbors
    # -------------------------------------------------------------------------

    def neighbors(self, x: GridCoord, y: GridCoord) -> list[GridPos]:
        """Return up to 4 in-bounds neighbors in N, E, S, W order."""
        result: list[GridPos] = []
        for dx, dy in _OFFSETS:
            nx, ny = x + dx, y + dy
            if 0 <= nx < self.width and 0 <= ny < self.height:
                result.append((nx, ny))
        return result

    def positions(self) -> Iterator[GridPos]:
        """Iterate every cell position in row-major (y, then x) order."""
        for y in range(self.height):
            for x in range(self.width):
                yield x, y

    def square(self, cx: GridCoord, cy: GridCoord, radius: int) -> list[GridPos]:
        """In-bounds positions within Chebyshev distance radius, row-major."""
        return [
            (x, y)
            for y in range(max(0, cy - radius), min(self.height, cy + radius + 1))
            for x in range(max(0, cx - radius), min(self.width, cx + radius + 1))
        ]

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def tiles(self) -> np.ndarray:
        """Return a copy of the resolved TileIDs, shape (width, height).

        Raises:
            ValueError: If any cell is still unresolved.
        """
        if not self.is_fully_resolved():
            raise ValueError("Grid has unresolved cells")
        return self.resolved.astype(np.uint8)

    def snapshot(self) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Copy all mutable state so it can be restored with restore()."""
        return (
            self.domains.copy(),
            self.resolved.copy(),
            self.pinned.copy(),
            self.pin_masks.copy(),
        )

    def restore(
        self, state: tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]
    ) -> None:
        domains, resolved, pinned, pin_masks = state
        self.domains[:, :] = domains
        self.resolved[:, :] = resolved
        self.pinned[:, :] = pinned
        self.pin_masks[:, :] = pin_masks

    # -------------------------------------------------------------------------
    # Coordinate conversion
    # -------------------------------------------------------------------------

    def grid_to_world(self, x: GridCoord, y: GridCoord) -> WorldPos:
        """World position of the center of cell (x, y)."""
        ox, oy = self.origin
        wx = ox + (x + 0.5) * self.cell_size
        wy = oy + (self.height - y - 0.5) * self.cell_size
        return wx, wy

    def world_to_grid(self, wx: float, wy: float) -> GridPos | None:
        """Cell containing world position (wx, wy), or None if off the grid."""
        ox, oy = self.origin
        x = math.floor((wx - ox) / self.cell_size)
        y = self.height - 1 - math.floor((wy - oy) / self.cell_size)
        if not self.in_bounds(x, y):
            return None
        return x, y

    def grid_to_pixel(self, x: GridCoord, y: GridCoord) -> PixelPos:
        """Top-left image pixel of cell (x, y)."""
        return x * self.pixels_per_cell, y * self.pixels_per_cell

    def pixel_to_grid(self, px: int, py: int) -> GridPos | None:
        """Cell under image pixel (px, py), or None if outside the image."""
        x = px // self.pixels_per_cell
        y = py // self.pixels_per_cell
        if px < 0 or py < 0 or not self.in_bounds(x, y):
            return None
        return x, y

    @property
    def image_size(self) -> tuple[int, int]:
        return self.width * self.pixels_per_cell, self.height * self.pixels_per_cell

    def __repr__(self) -> str:
        return f"Grid({self.width}x{self.height}, tiles={self.tile_count})"
