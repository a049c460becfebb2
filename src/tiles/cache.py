"""SQLite-backed entry store with LRU eviction.

This module provides SqliteEntryStore, the default store for
CachedTileProvider. Each entry is a fixed number of binary sub-streams
written through an editor and committed in a single transaction.
"""

from __future__ import annotations

import io
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from shared.constants import (
    TILE_CACHE_DB_NAME,
    TILE_CACHE_DIR,
    TILE_CACHE_MAX_SIZE_MB,
    TILE_VALUE_COUNT,
)
from tiles.keys import parse_key
from tiles.store import CacheClosedError, CacheStoreError, TileDecodeError

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)


@dataclass
class EntryInfo:
    """Information about a stored entry."""

    key: str
    size_bytes: int
    created_at: float
    last_used_at: float


@dataclass
class CacheStats:
    """Statistics about the entry store."""

    total_entries: int
    total_size_bytes: int
    max_size_bytes: int
    entries_by_tag: dict[str, int]
    entries_by_zoom: dict[int, int]
    oldest_entry: float | None
    newest_entry: float | None


class _StagedStream(io.BytesIO):
    """Output stream that hands its content to the editor on close."""

    def __init__(self, editor: SqliteEditor, index: int) -> None:
        super().__init__()
        self._editor = editor
        self._index = index

    def close(self) -> None:
        if not self.closed:
            self._editor._stage(self._index, self.getvalue())
        super().close()


class SqliteSnapshot:
    """Values of one entry as read at ``get`` time."""

    def __init__(self, key: str, values: list[bytes | None]) -> None:
        self.key = key
        self._values = values
        self._closed = False

    def get_input_stream(self, index: int) -> io.BytesIO:
        if self._closed:
            msg = f'Snapshot for {self.key} is closed'
            raise CacheStoreError(msg)
        value = self._values[index] if 0 <= index < len(self._values) else None
        if value is None:
            msg = f'Entry {self.key} has no value at index {index}'
            raise TileDecodeError(msg)
        return io.BytesIO(value)

    def get_length(self, index: int) -> int:
        value = self._values[index] if 0 <= index < len(self._values) else None
        return -1 if value is None else len(value)

    def close(self) -> None:
        self._closed = True

    def __enter__(self) -> SqliteSnapshot:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()


class SqliteEditor:
    """Pending write for one key.

    Values are staged in memory as their streams are closed; nothing
    reaches the database before ``commit``.
    """

    def __init__(self, store: SqliteEntryStore, key: str) -> None:
        self.key = key
        self._store = store
        self._staged: dict[int, bytes] = {}
        self._done = False

    def new_output_stream(self, index: int) -> _StagedStream:
        if self._done:
            msg = f'Edit of {self.key} already completed'
            raise CacheStoreError(msg)
        if not 0 <= index < self._store.value_count:
            msg = f'Expected index in [0, {self._store.value_count}), got {index}'
            raise CacheStoreError(msg)
        return _StagedStream(self, index)

    def _stage(self, index: int, data: bytes) -> None:
        if not self._done:
            self._staged[index] = data

    def commit(self) -> None:
        """Write all staged values atomically.

        Raises:
            CacheStoreError: if the edit is finished, the store is closed,
                a new entry lacks a value, or SQLite fails. The edit is
                aborted in every failing case.
        """
        if self._done:
            msg = f'Edit of {self.key} already completed'
            raise CacheStoreError(msg)
        self._done = True
        self._store._complete_edit(self.key, self._staged, success=True)

    def abort(self) -> None:
        if self._done:
            return
        self._done = True
        self._store._complete_edit(self.key, self._staged, success=False)

    def __enter__(self) -> SqliteEditor:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.abort()


class SqliteEntryStore:
    """SQLite-based entry store with bounded size.

    Features:
    - Single database file, WAL mode for concurrent reads
    - Fixed number of binary values per entry
    - At most one open editor per key
    - Atomic commit of all values of an entry
    - LRU eviction after each commit when over ``max_size_bytes``

    Usage:
        store = SqliteEntryStore('/tmp/tiles', max_size_bytes=32 * 1024 * 1024)
        editor = store.edit('3_5_10_mapA')
        ...
        snapshot = store.get('3_5_10_mapA')
        store.close()
    """

    def __init__(
        self,
        cache_dir: str | Path | None = None,
        max_size_bytes: int | None = None,
        value_count: int = TILE_VALUE_COUNT,
    ) -> None:
        """Open (or create) the store.

        Args:
            cache_dir: Directory for the database file. Defaults to TILE_CACHE_DIR.
            max_size_bytes: Size limit for all values. Defaults to
                TILE_CACHE_MAX_SIZE_MB.
            value_count: Number of values per entry.
        """
        if max_size_bytes is None:
            max_size_bytes = TILE_CACHE_MAX_SIZE_MB * 1024 * 1024
        if max_size_bytes < 0:
            msg = 'max_size_bytes must not be negative'
            raise ValueError(msg)
        if value_count <= 0:
            msg = 'value_count must be positive'
            raise ValueError(msg)

        self.cache_dir = Path(cache_dir or TILE_CACHE_DIR)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.max_size_bytes = max_size_bytes
        self.value_count = value_count
        self._lock = threading.RLock()
        self._editing: set[str] = set()
        self._last_stamp = 0.0
        self._closed = False
        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute('PRAGMA journal_mode=WAL')
            self._conn.execute('PRAGMA synchronous=NORMAL')
            self._init_schema()
        except sqlite3.Error as e:
            msg = f'Cannot open entry store at {self.db_path}: {e}'
            raise CacheStoreError(msg) from e
        logger.info('SqliteEntryStore opened at %s', self.db_path)

    @property
    def db_path(self) -> Path:
        return self.cache_dir / TILE_CACHE_DB_NAME

    def _init_schema(self) -> None:
        """Initialize database schema and check the stored value count."""
        self._conn.executescript('''
            CREATE TABLE IF NOT EXISTS metadata (
                name TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE TABLE IF NOT EXISTS entries (
                key TEXT PRIMARY KEY,
                size_bytes INTEGER NOT NULL,
                created_at REAL NOT NULL,
                last_used_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS streams (
                key TEXT NOT NULL,
                idx INTEGER NOT NULL,
                data BLOB NOT NULL,
                PRIMARY KEY (key, idx)
            );

            CREATE INDEX IF NOT EXISTS idx_entries_last_used ON entries(last_used_at);
        ''')
        row = self._conn.execute(
            "SELECT value FROM metadata WHERE name = 'value_count'"
        ).fetchone()
        with self._conn:
            if row is not None and int(row[0]) != self.value_count:
                logger.warning(
                    'Entry store value count changed (%s -> %d), dropping all entries',
                    row[0],
                    self.value_count,
                )
                self._conn.execute('DELETE FROM streams')
                self._conn.execute('DELETE FROM entries')
            self._conn.execute(
                "INSERT OR REPLACE INTO metadata (name, value) VALUES ('value_count', ?)",
                (str(self.value_count),),
            )

    def _now(self) -> float:
        # Strictly increasing so LRU order never ties
        now = max(time.time(), self._last_stamp + 1e-6)
        self._last_stamp = now
        return now

    def _check_not_closed(self) -> None:
        if self._closed:
            msg = 'Entry store is closed'
            raise CacheClosedError(msg)

    def is_closed(self) -> bool:
        return self._closed

    def get(self, key: str) -> SqliteSnapshot | None:
        """Get a snapshot of the entry for ``key``.

        Updates last_used_at for LRU tracking.

        Returns:
            Snapshot, or None if the entry does not exist.
        """
        with self._lock:
            self._check_not_closed()
            try:
                if not self._entry_exists(key):
                    return None
                rows = self._conn.execute(
                    'SELECT idx, data FROM streams WHERE key = ?', (key,)
                ).fetchall()
                with self._conn:
                    self._conn.execute(
                        'UPDATE entries SET last_used_at = ? WHERE key = ?',
                        (self._now(), key),
                    )
            except sqlite3.Error as e:
                msg = f'Cannot read entry {key}: {e}'
                raise CacheStoreError(msg) from e

        values: list[bytes | None] = [None] * self.value_count
        for idx, data in rows:
            if 0 <= idx < self.value_count:
                values[idx] = bytes(data)
        return SqliteSnapshot(key, values)

    def edit(self, key: str) -> SqliteEditor | None:
        """Open an editor for ``key``.

        Returns:
            Editor, or None if another edit of the same key is in progress.
        """
        with self._lock:
            self._check_not_closed()
            if key in self._editing:
                return None
            self._editing.add(key)
            return SqliteEditor(self, key)

    def _entry_exists(self, key: str) -> bool:
        cursor = self._conn.execute('SELECT 1 FROM entries WHERE key = ?', (key,))
        return cursor.fetchone() is not None

    def _complete_edit(self, key: str, staged: dict[int, bytes], success: bool) -> None:
        with self._lock:
            try:
                if not success:
                    logger.debug('Edit of %s aborted', key)
                    return
                self._check_not_closed()
                self._write_entry(key, staged)
            finally:
                self._editing.discard(key)
            # Entry is committed at this point, a failed trim only leaves the store oversized
            try:
                self.cleanup_lru(self.max_size_bytes)
            except CacheStoreError as e:
                logger.warning('LRU cleanup after committing %s failed: %s', key, e)

    def _write_entry(self, key: str, staged: dict[int, bytes]) -> None:
        try:
            existing = {
                row[0]
                for row in self._conn.execute(
                    'SELECT idx FROM streams WHERE key = ?', (key,)
                )
            }
            for idx in range(self.value_count):
                if idx not in staged and idx not in existing:
                    msg = f'Newly created entry {key} did not write value {idx}'
                    raise CacheStoreError(msg)

            now = self._now()
            with self._conn:
                self._conn.executemany(
                    'INSERT OR REPLACE INTO streams (key, idx, data) VALUES (?, ?, ?)',
                    [(key, idx, sqlite3.Binary(data)) for idx, data in staged.items()],
                )
                size = self._conn.execute(
                    'SELECT COALESCE(SUM(LENGTH(data)), 0) FROM streams WHERE key = ?',
                    (key,),
                ).fetchone()[0]
                self._conn.execute(
                    '''INSERT INTO entries (key, size_bytes, created_at, last_used_at)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET
                           size_bytes = excluded.size_bytes,
                           last_used_at = excluded.last_used_at''',
                    (key, size, now, now),
                )
        except sqlite3.Error as e:
            msg = f'Cannot commit entry {key}: {e}'
            raise CacheStoreError(msg) from e
        logger.debug('Committed entry %s (%d bytes)', key, size)

    def get_info(self, key: str) -> EntryInfo | None:
        """Get entry metadata without updating last_used_at."""
        with self._lock:
            self._check_not_closed()
            try:
                row = self._conn.execute(
                    '''SELECT key, size_bytes, created_at, last_used_at
                       FROM entries WHERE key = ?''',
                    (key,),
                ).fetchone()
            except sqlite3.Error as e:
                msg = f'Cannot read entry info {key}: {e}'
                raise CacheStoreError(msg) from e
        if row is None:
            return None
        return EntryInfo(
            key=row[0],
            size_bytes=row[1],
            created_at=row[2],
            last_used_at=row[3],
        )

    def contains(self, key: str) -> bool:
        with self._lock:
            self._check_not_closed()
            try:
                return self._entry_exists(key)
            except sqlite3.Error as e:
                msg = f'Cannot look up entry {key}: {e}'
                raise CacheStoreError(msg) from e

    def remove(self, key: str) -> bool:
        """Delete an entry.

        Returns:
            True if the entry was deleted.
        """
        with self._lock:
            self._check_not_closed()
            try:
                with self._conn:
                    self._conn.execute('DELETE FROM streams WHERE key = ?', (key,))
                    cursor = self._conn.execute(
                        'DELETE FROM entries WHERE key = ?', (key,)
                    )
            except sqlite3.Error as e:
                msg = f'Cannot remove entry {key}: {e}'
                raise CacheStoreError(msg) from e
            return cursor.rowcount > 0

    def size(self) -> int:
        """Total size of all committed values in bytes."""
        with self._lock:
            self._check_not_closed()
            try:
                return self._total_size()
            except sqlite3.Error as e:
                msg = f'Cannot compute entry store size: {e}'
                raise CacheStoreError(msg) from e

    def _total_size(self) -> int:
        return self._conn.execute(
            'SELECT COALESCE(SUM(size_bytes), 0) FROM entries'
        ).fetchone()[0]

    def get_stats(self) -> CacheStats:
        """Get store statistics.

        Tile keys are broken down by tag and zoom; other keys only count
        towards the totals.
        """
        entries_by_tag: dict[str, int] = {}
        entries_by_zoom: dict[int, int] = {}
        with self._lock:
            self._check_not_closed()
            try:
                total, size, oldest, newest = self._conn.execute(
                    '''SELECT COUNT(*), COALESCE(SUM(size_bytes), 0),
                              MIN(created_at), MAX(created_at) FROM entries'''
                ).fetchone()
                keys = [row[0] for row in self._conn.execute('SELECT key FROM entries')]
            except sqlite3.Error as e:
                msg = f'Cannot collect entry store stats: {e}'
                raise CacheStoreError(msg) from e

        for key in keys:
            try:
                _, _, zoom, tag = parse_key(key)
            except ValueError:
                continue
            entries_by_tag[tag] = entries_by_tag.get(tag, 0) + 1
            entries_by_zoom[zoom] = entries_by_zoom.get(zoom, 0) + 1

        return CacheStats(
            total_entries=total,
            total_size_bytes=size,
            max_size_bytes=self.max_size_bytes,
            entries_by_tag=entries_by_tag,
            entries_by_zoom=entries_by_zoom,
            oldest_entry=oldest,
            newest_entry=newest,
        )

    def cleanup_lru(self, max_size_bytes: int | None = None) -> int:
        """Remove least recently used entries to stay under size limit.

        Args:
            max_size_bytes: Size limit in bytes. Defaults to the store limit.

        Returns:
            Number of bytes freed.
        """
        if max_size_bytes is None:
            max_size_bytes = self.max_size_bytes

        with self._lock:
            self._check_not_closed()
            try:
                total = self._total_size()
                if total <= max_size_bytes:
                    return 0
                # Oldest first
                candidates = self._conn.execute(
                    'SELECT key, size_bytes FROM entries ORDER BY last_used_at'
                ).fetchall()
            except sqlite3.Error as e:
                msg = f'Cannot scan entry store for LRU cleanup: {e}'
                raise CacheStoreError(msg) from e

            bytes_to_free = total - max_size_bytes
            bytes_freed = 0
            for key, size in candidates:
                if bytes_freed >= bytes_to_free:
                    break
                if self.remove(key):
                    bytes_freed += size

        logger.info(
            'LRU cleanup: freed %.1f KB (target: %.1f KB)',
            bytes_freed / 1024,
            bytes_to_free / 1024,
        )
        return bytes_freed

    def clear(self) -> int:
        """Delete all entries.

        Returns:
            Number of entries deleted.
        """
        with self._lock:
            self._check_not_closed()
            try:
                with self._conn:
                    count = self._conn.execute('SELECT COUNT(*) FROM entries').fetchone()[0]
                    self._conn.execute('DELETE FROM streams')
                    self._conn.execute('DELETE FROM entries')
            except sqlite3.Error as e:
                msg = f'Cannot clear entry store: {e}'
                raise CacheStoreError(msg) from e
        logger.info('Entry store cleared: %d entries deleted', count)
        return count

    def close(self) -> None:
        """Close the database connection. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._editing.clear()
            try:
                self._conn.close()
            except sqlite3.Error as e:
                msg = f'Cannot close entry store: {e}'
                raise CacheStoreError(msg) from e
        logger.info('SqliteEntryStore closed')

    def __enter__(self) -> SqliteEntryStore:
        """Context manager entry."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Context manager exit."""
        self.close()
