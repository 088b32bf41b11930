from __future__ import annotations

# =============================================================================
# GRID COORDINATE SYSTEMS (Always integers)
# =============================================================================

GridCoord = int  # Always integer cell position
GridPos = tuple[GridCoord, GridCoord]  # Example: (5, 3) = cell 5,3 on the grid

# =============================================================================
# WORLD COORDINATE SYSTEM (Floats, y axis points north)
# =============================================================================

WorldCoord = float
WorldPos = tuple[WorldCoord, WorldCoord]  # Example: (10.5, 3.5) = center of a cell

# =============================================================================
# IMAGE PIXEL COORDINATE SYSTEM (Integers, top-left origin)
# =============================================================================

PixelCoord = int
PixelPos = tuple[PixelCoord, PixelCoord]

# =============================================================================
# TILE DATA
# =============================================================================

TileID = int  # Index of a tile type in its catalog (0..tile_count-1)

# Bitmask of candidate TileIDs; bit N set means TileID N is still possible.
DomainMask = int

# RGB color used for debug previews
Color = tuple[int, int, int]

# Master seeds are unsigned 64-bit integers.
Seed = int
