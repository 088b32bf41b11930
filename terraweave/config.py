"""
Configuration constants.

Centralizes all magic numbers and default values used throughout the package.
Organized by functional area for easy maintenance.
"""

# =============================================================================
# GRID LIMITS
# =============================================================================

# Documented maximum grid. The serialized byte budget is guaranteed for this
# size with catalogs of up to 16 tile types.
MAX_GRID_WIDTH = 64
MAX_GRID_HEIGHT = 64

# Domains are stored as uint64 bitmasks, one bit per tile type.
MAX_TILE_TYPES = 64

# =============================================================================
# SOLVER
# =============================================================================

# Whole attempts the orchestrator will start before giving up.
DEFAULT_MAX_ATTEMPTS = 10

# Largest allowed elevation difference between neighboring tiles.
DEFAULT_MAX_HEIGHT_DELTA = 2.0

# Propagation steps allowed per cell before a solve is declared runaway.
PROPAGATION_STEPS_PER_CELL = 64

# =============================================================================
# ZONES
# =============================================================================

# Candidate centers drawn per zone before it is skipped or fails.
DEFAULT_ZONE_CANDIDATES = 64

# Footprint height variance allowed for zones that require flat ground.
DEFAULT_FLATNESS_THRESHOLD = 0.25

# =============================================================================
# SERIALIZATION
# =============================================================================

FORMAT_MAGIC = b"TWMP"
FORMAT_VERSION = 1

# Default maximum size of an encoded map, in bytes.
DEFAULT_BYTE_BUDGET = 4096

# =============================================================================
# GEOMETRY & PREVIEW
# =============================================================================

# World units spanned by one grid cell.
DEFAULT_CELL_SIZE = 1.0

# Pixels per cell when rendering debug previews.
DEFAULT_PIXELS_PER_CELL = 8
