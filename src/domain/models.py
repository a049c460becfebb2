"""Tile artifact model."""

from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image

from shared.constants import DEFAULT_TILE_IMAGE_FORMAT


@dataclass(frozen=True)
class Tile:
    """Generated tile: dimensions plus an opaque encoded payload.

    The cache never looks inside ``payload``; it is usually a compressed
    image produced by the generator.
    """

    width: int
    height: int
    payload: bytes

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            msg = f'Tile dimensions must be positive, got {self.width}x{self.height}'
            raise ValueError(msg)
        if not isinstance(self.payload, bytes):
            object.__setattr__(self, 'payload', bytes(self.payload))

    @property
    def size_bytes(self) -> int:
        return len(self.payload)

    @classmethod
    def from_image(
        cls,
        image: Image.Image,
        image_format: str = DEFAULT_TILE_IMAGE_FORMAT,
    ) -> Tile:
        """Encode a PIL image into a tile."""
        buf = io.BytesIO()
        if image_format.upper() == 'JPEG' and image.mode != 'RGB':
            image = image.convert('RGB')
        image.save(buf, format=image_format)
        return cls(width=image.width, height=image.height, payload=buf.getvalue())

    def to_image(self) -> Image.Image:
        """Decode payload back into a PIL image."""
        img = Image.open(io.BytesIO(self.payload))
        img.load()
        return img
