"""Reference tile generator drawing a labelled debug grid."""

from __future__ import annotations

import logging
import threading

from PIL import Image, ImageDraw, ImageFont

from domain.models import Tile
from shared.constants import (
    DEFAULT_TILE_IMAGE_FORMAT,
    TILE_BACKGROUND_COLOR,
    TILE_BORDER_WIDTH_PX,
    TILE_GRID_COLOR,
    TILE_IMAGE_FORMATS,
    TILE_SIZE,
)

logger = logging.getLogger(__name__)


class GridTileRenderer:
    """Render square tiles with a border and a ``z/x/y`` label.

    Output is deterministic for a given coordinate, so it can stand in
    for any expensive generator in front of CachedTileProvider.
    """

    def __init__(
        self,
        tile_size: int = TILE_SIZE,
        image_format: str = DEFAULT_TILE_IMAGE_FORMAT,
        background: tuple[int, int, int] = TILE_BACKGROUND_COLOR,
        color: tuple[int, int, int] = TILE_GRID_COLOR,
    ) -> None:
        if tile_size <= 0:
            msg = f'tile_size must be positive, got {tile_size}'
            raise ValueError(msg)
        image_format = image_format.upper()
        if image_format not in TILE_IMAGE_FORMATS:
            msg = f'Unsupported image format {image_format!r}'
            raise ValueError(msg)
        self.tile_size = tile_size
        self.image_format = image_format
        self.background = background
        self.color = color
        self._font = ImageFont.load_default()
        self._lock = threading.Lock()
        self.render_count = 0

    def render_image(self, x: int, y: int, zoom: int) -> Image.Image:
        img = Image.new('RGB', (self.tile_size, self.tile_size), self.background)
        draw = ImageDraw.Draw(img)
        last = self.tile_size - 1
        draw.rectangle((0, 0, last, last), outline=self.color, width=TILE_BORDER_WIDTH_PX)

        label = f'{zoom}/{x}/{y}'
        left, top, right, bottom = draw.textbbox((0, 0), label, font=self._font)
        tx = (self.tile_size - (right - left)) / 2 - left
        ty = (self.tile_size - (bottom - top)) / 2 - top
        draw.text((tx, ty), label, font=self._font, fill=self.color)
        return img

    def __call__(self, x: int, y: int, zoom: int) -> Tile:
        with self._lock:
            self.render_count += 1
        logger.debug('Rendering tile z%d/%d/%d', zoom, x, y)
        return Tile.from_image(self.render_image(x, y, zoom), self.image_format)
