"""Tile caching system.

This module provides:
- CachedTileProvider: disk cache in front of a tile generator
- SqliteEntryStore: default transactional store with LRU eviction
- GridTileRenderer: reference tile generator
- generate_key / parse_key: cache key derivation
"""

from tiles.cache import CacheStats, EntryInfo, SqliteEntryStore
from tiles.codec import CacheLookup, LookupStatus
from tiles.keys import generate_key, parse_key, validate_tag
from tiles.provider import CachedTileProvider
from tiles.renderer import GridTileRenderer
from tiles.store import (
    CacheClosedError,
    CacheStoreError,
    Editor,
    EntryStore,
    Snapshot,
    TileDecodeError,
)

__all__ = [
    'CacheClosedError',
    'CacheLookup',
    'CacheStats',
    'CacheStoreError',
    'CachedTileProvider',
    'Editor',
    'EntryInfo',
    'EntryStore',
    'GridTileRenderer',
    'LookupStatus',
    'Snapshot',
    'SqliteEntryStore',
    'TileDecodeError',
    'generate_key',
    'parse_key',
    'validate_tag',
]
