"""Disk cache in front of a tile generator.

CachedTileProvider wraps any ``(x, y, zoom) -> Tile`` callable and keeps the
generated tiles in an EntryStore. The store may be shared by several
providers as long as each one uses its own tag.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from tiles.codec import CacheLookup, LookupStatus, read_tile, write_tile
from tiles.keys import generate_key, validate_tag

if TYPE_CHECKING:
    from collections.abc import Callable

    from domain.models import Tile
    from tiles.store import EntryStore

logger = logging.getLogger(__name__)


class CachedTileProvider:
    """Tile provider that caches every generated tile in an entry store.

    Cache problems never reach the caller: a closed store, an unavailable
    editor, a corrupt entry or a failed write all end with the generator's
    tile being returned. Errors raised by the generator propagate unchanged.

    The store is not owned by the provider. ``close_cache`` closes it for
    every provider sharing it; afterwards they all pass straight through to
    their generators.

    Usage:
        store = SqliteEntryStore(cache_dir)
        provider = CachedTileProvider('mapA', renderer, store)
        tile = provider.get_tile(3, 5, 10)
    """

    def __init__(
        self,
        tag: str,
        generator: Callable[[int, int, int], Tile],
        cache: EntryStore,
    ) -> None:
        """Initialize provider.

        Args:
            tag: Namespace for this provider's keys, ``[A-Za-z0-9_-]{1,64}``.
            generator: Produces a tile for (x, y, zoom).
            cache: Store shared by reference.

        Raises:
            ValueError: if tag does not match the allowed format.
        """
        self.tag = validate_tag(tag)
        self._generator = generator
        self._cache = cache
        self._stats_lock = threading.Lock()
        self._stats = {
            'hits': 0,
            'misses': 0,
            'errors': 0,
            'bypassed': 0,
            'writes': 0,
            'write_failures': 0,
        }

    @property
    def cache(self) -> EntryStore:
        return self._cache

    def key_for(self, x: int, y: int, zoom: int) -> str:
        return generate_key(x, y, zoom, self.tag)

    def get_tile(self, x: int, y: int, zoom: int) -> Tile:
        """Load a tile.

        Cached tiles are read from the store, otherwise the tile is
        generated and added to the store on a best-effort basis.
        """
        key = self.key_for(x, y, zoom)
        result = self._read(key)
        if result.is_hit:
            assert result.tile is not None
            return result.tile

        # Not cached: generate, then try to cache
        tile = self._generator(x, y, zoom)
        if self._write(key, tile):
            logger.debug('Added tile to cache %s', key)
        return tile

    __call__ = get_tile

    def lookup(self, x: int, y: int, zoom: int) -> CacheLookup:
        """Read a tile from the store without generating it."""
        return self._read(self.key_for(x, y, zoom))

    def persist_tile(self, x: int, y: int, zoom: int, tile: Tile) -> bool:
        """Store a tile produced elsewhere.

        Returns:
            True if the entry was committed.
        """
        return self._write(self.key_for(x, y, zoom), tile)

    def close_cache(self) -> None:
        """Close the underlying store.

        Raises:
            OSError: if the store fails to close.
        """
        self._cache.close()

    @property
    def stats(self) -> dict:
        """Get hit/miss/write counters.

        Lookups skipped because the store is closed count as bypassed,
        not as misses.
        """
        with self._stats_lock:
            return dict(self._stats)

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def _read(self, key: str) -> CacheLookup:
        # Closed store: pass-through, counted apart from misses
        if self._cache.is_closed():
            self._count('bypassed')
            return CacheLookup.miss()
        result = self._lookup(key)
        if result.status is LookupStatus.HIT:
            logger.debug('Cache hit for tile %s', key)
            self._count('hits')
        elif result.status is LookupStatus.ERROR:
            logger.debug('Cache entry %s unreadable, treating as miss: %s', key, result.detail)
            self._count('errors')
            self._count('misses')
        else:
            self._count('misses')
        return result

    def _lookup(self, key: str) -> CacheLookup:
        try:
            snapshot = self._cache.get(key)
            if snapshot is None:
                return CacheLookup.miss()
            with snapshot:
                tile = read_tile(snapshot)
        except OSError as e:
            return CacheLookup.error(f'{type(e).__name__}: {e}')
        return CacheLookup.hit(tile)

    def _write(self, key: str, tile: Tile) -> bool:
        if self._cache.is_closed():
            return False
        try:
            editor = self._cache.edit(key)
            if editor is None:
                logger.debug('Editor for %s not available, tile not cached', key)
                return False
            # Aborted on exit unless committed
            with editor:
                write_tile(editor, tile)
                editor.commit()
        except OSError as e:
            logger.warning('Tile %s could not be cached: %s', key, e)
            self._count('write_failures')
            return False
        self._count('writes')
        return True
