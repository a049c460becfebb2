"""Encoding of a tile into the three sub-streams of a cache entry.

Layout per key:
    0 - raw payload bytes, read to end of stream
    1 - height, 4-byte big-endian signed int
    2 - width, 4-byte big-endian signed int
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, BinaryIO

from domain.models import Tile
from shared.constants import (
    INDEX_DATA,
    INDEX_HEIGHT,
    INDEX_WIDTH,
    TILE_INT_FORMAT,
    TILE_INT_SIZE,
)
from tiles.store import CacheStoreError, TileDecodeError

if TYPE_CHECKING:
    from tiles.store import Editor, Snapshot

_CHUNK_SIZE = 64 * 1024


class LookupStatus(str, Enum):
    HIT = 'hit'
    MISS = 'miss'
    ERROR = 'error'


@dataclass(frozen=True)
class CacheLookup:
    """Outcome of reading one key from the store.

    ``ERROR`` carries a description for logging only; callers outside the
    provider treat it exactly like ``MISS``.
    """

    status: LookupStatus
    tile: Tile | None = None
    detail: str | None = None

    @classmethod
    def hit(cls, tile: Tile) -> CacheLookup:
        return cls(LookupStatus.HIT, tile=tile)

    @classmethod
    def miss(cls) -> CacheLookup:
        return cls(LookupStatus.MISS)

    @classmethod
    def error(cls, detail: str) -> CacheLookup:
        return cls(LookupStatus.ERROR, detail=detail)

    @property
    def is_hit(self) -> bool:
        return self.status is LookupStatus.HIT


def write_bytes(data: bytes, stream: BinaryIO) -> None:
    try:
        stream.write(data)
    finally:
        stream.close()


def write_int(value: int, stream: BinaryIO) -> None:
    try:
        stream.write(struct.pack(TILE_INT_FORMAT, value))
    except struct.error as e:
        msg = f'Value {value} does not fit into {TILE_INT_SIZE} bytes'
        raise CacheStoreError(msg) from e
    finally:
        stream.close()


def read_bytes(stream: BinaryIO) -> bytes:
    chunks: list[bytes] = []
    try:
        while True:
            chunk = stream.read(_CHUNK_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
    finally:
        stream.close()
    return b''.join(chunks)


def read_int(stream: BinaryIO) -> int:
    try:
        raw = stream.read(TILE_INT_SIZE + 1)
    finally:
        stream.close()
    if raw is None or len(raw) != TILE_INT_SIZE:
        got = 0 if raw is None else len(raw)
        msg = f'Expected {TILE_INT_SIZE}-byte integer, got {got} bytes'
        raise TileDecodeError(msg)
    return struct.unpack(TILE_INT_FORMAT, raw)[0]


def write_tile(editor: Editor, tile: Tile) -> None:
    """Stage all three sub-streams of ``tile`` on ``editor``.

    Does not commit. Each stream is closed even if its write fails.
    """
    write_bytes(tile.payload, editor.new_output_stream(INDEX_DATA))
    write_int(tile.height, editor.new_output_stream(INDEX_HEIGHT))
    write_int(tile.width, editor.new_output_stream(INDEX_WIDTH))


def read_tile(snapshot: Snapshot) -> Tile:
    """Decode a tile from a snapshot, payload first, then height and width.

    Raises:
        TileDecodeError: if any sub-stream is missing or malformed.
    """
    data = read_bytes(snapshot.get_input_stream(INDEX_DATA))
    height = read_int(snapshot.get_input_stream(INDEX_HEIGHT))
    width = read_int(snapshot.get_input_stream(INDEX_WIDTH))
    try:
        return Tile(width=width, height=height, payload=data)
    except ValueError as e:
        raise TileDecodeError(str(e)) from e
