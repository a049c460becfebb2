"""Cache key derivation for tiles.

Keys look like ``'{x}_{y}_{zoom}_{tag}'``. Coordinates are rendered as
base-10 integers and never contain the separator, so the first three
fields are always recoverable and the rest of the key is the tag.
"""

from __future__ import annotations

from shared.constants import TILE_KEY_FORMAT, TILE_KEY_SEPARATOR, TILE_TAG_PATTERN


def validate_tag(tag: str) -> str:
    """Check that tag is usable as a key namespace.

    Raises:
        ValueError: if tag is empty, too long or has characters outside
            ``[A-Za-z0-9_-]``.
    """
    if not isinstance(tag, str) or TILE_TAG_PATTERN.fullmatch(tag) is None:
        msg = f'Invalid tile cache tag {tag!r}: expected {TILE_TAG_PATTERN.pattern}'
        raise ValueError(msg)
    return tag


def generate_key(x: int, y: int, zoom: int, tag: str) -> str:
    """Build the cache key for a tile coordinate within a namespace."""
    return TILE_KEY_FORMAT.format(x=int(x), y=int(y), zoom=int(zoom), tag=tag)


def parse_key(key: str) -> tuple[int, int, int, str]:
    """Split a key produced by :func:`generate_key` back into its parts."""
    parts = key.split(TILE_KEY_SEPARATOR, 3)
    if len(parts) != 4 or not parts[3]:
        msg = f'Not a tile cache key: {key!r}'
        raise ValueError(msg)
    try:
        x, y, zoom = (int(p) for p in parts[:3])
    except ValueError as e:
        msg = f'Not a tile cache key: {key!r}'
        raise ValueError(msg) from e
    return x, y, zoom, parts[3]
