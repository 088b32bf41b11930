"""Debug preview images of generated maps, rendered with Pillow.

Each cell becomes a `pixels_per_cell` square filled with its tile's color.
Pixel coordinates use a top-left origin, the same convention as
Grid.grid_to_pixel(). Committed zones are outlined and their sub-placements
marked so placement problems are visible at a glance.
"""

from __future__ import annotations

from pathlib import Path

import numpy as np
from PIL import Image as PILImage
from PIL import ImageDraw

from terraweave import config
from terraweave.environment.map_model import MapModel
from terraweave.environment.tile_catalog import TileCatalog
from terraweave.errors import ConfigError
from terraweave.types import Color

ZONE_OUTLINE: Color = (255, 0, 255)
SUB_PLACEMENT_MARK: Color = (255, 255, 0)


class PillowMapPreview:
    """Renders MapModels to RGB images using a catalog's tile colors."""

    def __init__(
        self,
        catalog: TileCatalog,
        pixels_per_cell: int = config.DEFAULT_PIXELS_PER_CELL,
        draw_zones: bool = True,
    ) -> None:
        if pixels_per_cell <= 0:
            raise ConfigError("pixels_per_cell must be positive")
        self.catalog = catalog
        self.pixels_per_cell = pixels_per_cell
        self.draw_zones = draw_zones
        self.palette = np.array([tile.color for tile in catalog.tiles], dtype=np.uint8)

    def render(self, model: MapModel) -> PILImage.Image:
        """Render a model to a new RGB image.

        Raises:
            ConfigError: If the model was generated with a different catalog.
        """
        if model.catalog_checksum != self.catalog.checksum:
            raise ConfigError("Model was generated with a different tile catalog")

        # tiles is [x, y]; images are [row, column].
        pixels = self.palette[model.tiles.T]
        scale = self.pixels_per_cell
        pixels = np.repeat(np.repeat(pixels, scale, axis=0), scale, axis=1)
        image = PILImage.fromarray(np.ascontiguousarray(pixels))

        if self.draw_zones and model.zones:
            self._draw_zones(ImageDraw.Draw(image), model)
        return image

    def _draw_zones(self, drawer: ImageDraw.ImageDraw, model: MapModel) -> None:
        scale = self.pixels_per_cell
        for zone in model.zones:
            cx, cy = zone.center
            left = (cx - zone.radius) * scale
            top = (cy - zone.radius) * scale
            right = (cx + zone.radius + 1) * scale - 1
            bottom = (cy + zone.radius + 1) * scale - 1
            drawer.rectangle((left, top, right, bottom), outline=ZONE_OUTLINE)

            for _, (x, y) in zone.sub_placement_positions():
                mid_x = x * scale + scale // 2
                mid_y = y * scale + scale // 2
                half = max(1, scale // 4)
                drawer.rectangle(
                    (mid_x - half, mid_y - half, mid_x + half, mid_y + half),
                    fill=SUB_PLACEMENT_MARK,
                )

    def save(self, model: MapModel, path: str | Path) -> Path:
        """Render a model and write it to path (format from the extension)."""
        path = Path(path)
        self.render(model).save(path)
        return path
