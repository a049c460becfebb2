"""Tests for CachedTileProvider."""

from __future__ import annotations

import io
import sqlite3
import tempfile
import threading
from pathlib import Path

import pytest

from domain.models import Tile
from tiles.cache import SqliteEntryStore
from tiles.codec import LookupStatus
from tiles.keys import generate_key
from tiles.provider import CachedTileProvider
from tiles.store import CacheStoreError


class CountingGenerator:
    """Deterministic generator that records its calls."""

    def __init__(self, width=256, height=256, size=1000):
        self.width = width
        self.height = height
        self.size = size
        self.calls: list[tuple[int, int, int]] = []
        self._lock = threading.Lock()

    def __call__(self, x, y, zoom):
        with self._lock:
            self.calls.append((x, y, zoom))
        payload = bytes((x + y + zoom + i) % 256 for i in range(self.size))
        return Tile(width=self.width, height=self.height, payload=payload)


class _FailingStream(io.BytesIO):
    def write(self, data):
        raise OSError('disk full')


class FailingEditor:
    """Wraps a real editor, failing writes to one sub-stream."""

    def __init__(self, editor, fail_index):
        self.key = editor.key
        self._editor = editor
        self._fail_index = fail_index
        self.aborted = False
        self.committed = False
        self.failing_stream: _FailingStream | None = None

    def new_output_stream(self, index):
        if index == self._fail_index:
            self.failing_stream = _FailingStream()
            return self.failing_stream
        return self._editor.new_output_stream(index)

    def commit(self):
        self.committed = True
        self._editor.commit()

    def abort(self):
        self.aborted = True
        self._editor.abort()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if not self.committed:
            self.abort()


class FailingWriteStore:
    """Store wrapper whose editors fail on one sub-stream."""

    def __init__(self, store, fail_index):
        self._store = store
        self._fail_index = fail_index
        self.editors: list[FailingEditor] = []

    def get(self, key):
        return self._store.get(key)

    def edit(self, key):
        editor = self._store.edit(key)
        if editor is None:
            return None
        wrapped = FailingEditor(editor, self._fail_index)
        self.editors.append(wrapped)
        return wrapped

    def is_closed(self):
        return self._store.is_closed()

    def close(self):
        self._store.close()


class BrokenReadStore:
    """Store whose reads always fail with an I/O error."""

    def __init__(self, store):
        self._store = store

    def get(self, key):
        raise CacheStoreError('read failed')

    def edit(self, key):
        return self._store.edit(key)

    def is_closed(self):
        return False

    def close(self):
        self._store.close()


class CloseFailingStore:
    """Store whose close fails with an I/O error."""

    def __init__(self, store):
        self._store = store

    def get(self, key):
        return self._store.get(key)

    def edit(self, key):
        return self._store.edit(key)

    def is_closed(self):
        return self._store.is_closed()

    def close(self):
        raise CacheStoreError('flush failed')


class ClosingBeforeCommitStore:
    """Store wrapper closing the real store right before an editor commits."""

    def __init__(self, store):
        self._store = store

    def get(self, key):
        return self._store.get(key)

    def edit(self, key):
        editor = self._store.edit(key)
        if editor is None:
            return None
        store = self._store
        commit = editor.commit

        def commit_after_close():
            store.close()
            commit()

        editor.commit = commit_after_close
        return editor

    def is_closed(self):
        return self._store.is_closed()

    def close(self):
        self._store.close()


class LockedConnection:
    """Connection wrapper failing every statement that contains ``fragment``."""

    def __init__(self, conn, fragment):
        self._conn = conn
        self._fragment = fragment

    def execute(self, sql, *args):
        if self._fragment in sql:
            raise sqlite3.OperationalError('database is locked')
        return self._conn.execute(sql, *args)

    def __getattr__(self, name):
        return getattr(self._conn, name)

    def __enter__(self):
        return self._conn.__enter__()

    def __exit__(self, *exc_info):
        return self._conn.__exit__(*exc_info)


@pytest.fixture
def temp_cache_dir():
    """Create temporary directory for cache."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_cache_dir):
    s = SqliteEntryStore(cache_dir=temp_cache_dir)
    yield s
    s.close()


@pytest.fixture
def generator():
    return CountingGenerator()


@pytest.fixture
def provider(store, generator):
    return CachedTileProvider('mapA', generator, store)


class TestGetTile:
    """Tests for the lookup-or-generate flow."""

    def test_first_call_generates_and_persists(self, provider, generator, store):
        tile = provider.get_tile(3, 5, 10)
        assert generator.calls == [(3, 5, 10)]
        assert store.contains('3_5_10_mapA')
        assert tile.width == 256
        assert tile.height == 256

    def test_second_call_hits_cache(self, provider, generator):
        first = provider.get_tile(3, 5, 10)
        second = provider.get_tile(3, 5, 10)
        assert generator.calls == [(3, 5, 10)]
        assert second == first
        assert provider.stats['hits'] == 1
        assert provider.stats['misses'] == 1
        assert provider.stats['writes'] == 1

    def test_round_trip_preserves_fields(self, store):
        generator = CountingGenerator(width=512, height=128, size=70_000)
        provider = CachedTileProvider('mapA', generator, store)
        fresh = provider.get_tile(1, 2, 3)
        cached = provider.lookup(1, 2, 3)
        assert cached.is_hit
        assert cached.tile.width == 512
        assert cached.tile.height == 128
        assert cached.tile.payload == fresh.payload

    def test_survives_store_reopen(self, temp_cache_dir, generator):
        with SqliteEntryStore(cache_dir=temp_cache_dir) as store:
            expected = CachedTileProvider('mapA', generator, store).get_tile(4, 4, 4)
        with SqliteEntryStore(cache_dir=temp_cache_dir) as store:
            tile = CachedTileProvider('mapA', generator, store).get_tile(4, 4, 4)
        assert tile == expected
        assert len(generator.calls) == 1

    def test_lookup_before_fill_is_miss(self, provider, generator):
        assert provider.lookup(9, 9, 9).status is LookupStatus.MISS
        assert generator.calls == []

    def test_provider_is_callable(self, provider, generator):
        assert provider(1, 1, 1) == generator(1, 1, 1)

    def test_invalid_tag(self, store, generator):
        with pytest.raises(ValueError):
            CachedTileProvider('bad tag', generator, store)

    def test_generator_error_propagates(self, store):
        def failing(x, y, zoom):
            raise RuntimeError('render failed')

        provider = CachedTileProvider('mapA', failing, store)
        with pytest.raises(RuntimeError, match='render failed'):
            provider.get_tile(1, 2, 3)
        assert not store.contains(generate_key(1, 2, 3, 'mapA'))


class TestTagIsolation:
    """Providers sharing a store with different tags."""

    def test_tags_do_not_share_entries(self, store):
        gen_a = CountingGenerator(width=256, height=256)
        gen_b = CountingGenerator(width=512, height=512)
        provider_a = CachedTileProvider('mapA', gen_a, store)
        provider_b = CachedTileProvider('mapB', gen_b, store)

        tile_a = provider_a.get_tile(3, 5, 10)
        tile_b = provider_b.get_tile(3, 5, 10)

        assert gen_b.calls == [(3, 5, 10)]
        assert tile_a.width == 256
        assert tile_b.width == 512
        assert provider_a.get_tile(3, 5, 10).width == 256
        assert provider_b.get_tile(3, 5, 10).width == 512
        assert len(gen_a.calls) == 1
        assert len(gen_b.calls) == 1


class TestDegradation:
    """Cache failures never reach the caller."""

    def test_closed_store_passes_through(self, temp_cache_dir, generator):
        store = SqliteEntryStore(cache_dir=temp_cache_dir)
        provider = CachedTileProvider('mapA', generator, store)
        provider.get_tile(1, 1, 1)

        provider.close_cache()
        assert store.is_closed()

        tile = provider.get_tile(1, 1, 1)
        assert tile.width == 256
        assert len(generator.calls) == 2
        assert provider.persist_tile(2, 2, 2, tile) is False
        assert provider.stats['bypassed'] == 1
        assert provider.stats['misses'] == 1

    def test_close_is_shared(self, store):
        gen = CountingGenerator()
        provider_a = CachedTileProvider('mapA', gen, store)
        provider_b = CachedTileProvider('mapB', gen, store)
        provider_a.close_cache()
        provider_b.get_tile(1, 1, 1)
        provider_b.get_tile(1, 1, 1)
        assert len(gen.calls) == 2

    def test_corrupt_entry_is_miss(self, store, provider, generator):
        editor = store.edit('3_5_10_mapA')
        for idx, value in enumerate([b'payload', b'\x00\x01', b'\x00\x00\x01\x00']):
            stream = editor.new_output_stream(idx)
            stream.write(value)
            stream.close()
        editor.commit()

        result = provider.lookup(3, 5, 10)
        assert result.status is LookupStatus.ERROR

        tile = provider.get_tile(3, 5, 10)
        assert generator.calls == [(3, 5, 10)]
        assert tile.height == 256
        # Regenerated tile replaced the corrupt entry
        assert provider.lookup(3, 5, 10).is_hit

    def test_read_error_is_miss(self, store, generator):
        provider = CachedTileProvider('mapA', generator, BrokenReadStore(store))
        tile = provider.get_tile(1, 2, 3)
        assert tile.width == 256
        assert provider.stats['errors'] == 1

    @pytest.mark.parametrize('fail_index', [0, 1, 2])
    def test_write_failure_aborts_edit(self, store, generator, fail_index):
        failing_store = FailingWriteStore(store, fail_index)
        provider = CachedTileProvider('mapA', generator, failing_store)

        tile = provider.get_tile(3, 5, 10)

        assert tile.width == 256
        editor = failing_store.editors[0]
        assert editor.aborted
        assert not editor.committed
        assert editor.failing_stream.closed
        assert store.get('3_5_10_mapA') is None
        assert provider.stats['write_failures'] == 1
        # Key is free for the next attempt
        assert store.edit('3_5_10_mapA') is not None

    def test_editor_unavailable(self, store, provider, generator):
        held = store.edit('3_5_10_mapA')
        tile = provider.get_tile(3, 5, 10)
        assert tile.width == 256
        assert store.get('3_5_10_mapA') is None
        held.abort()

        provider.get_tile(3, 5, 10)
        assert len(generator.calls) == 2
        assert store.contains('3_5_10_mapA')

    def test_store_locked_during_trim(self, temp_cache_dir, generator):
        store = SqliteEntryStore(cache_dir=temp_cache_dir, max_size_bytes=0)
        store._conn = LockedConnection(store._conn, 'SUM(size_bytes)')
        provider = CachedTileProvider('mapA', generator, store)

        tile = provider.get_tile(1, 2, 3)

        assert tile.width == 256
        assert provider.stats['writes'] == 1
        store.close()

    def test_store_with_too_few_values(self, temp_cache_dir, generator):
        store = SqliteEntryStore(cache_dir=temp_cache_dir, value_count=2)
        provider = CachedTileProvider('mapA', generator, store)

        tile = provider.get_tile(1, 2, 3)

        assert tile.width == 256
        assert provider.stats['write_failures'] == 1
        assert store.get('1_2_3_mapA') is None
        store.close()

    def test_store_closed_before_commit(self, temp_cache_dir, generator):
        store = SqliteEntryStore(cache_dir=temp_cache_dir)
        provider = CachedTileProvider('mapA', generator, ClosingBeforeCommitStore(store))

        tile = provider.get_tile(3, 5, 10)

        assert tile.width == 256
        assert store.is_closed()
        assert provider.stats['write_failures'] == 1
        with SqliteEntryStore(cache_dir=temp_cache_dir) as reopened:
            assert reopened.get('3_5_10_mapA') is None

    def test_close_error_propagates(self, store, generator):
        provider = CachedTileProvider('mapA', generator, CloseFailingStore(store))
        with pytest.raises(OSError, match='flush failed'):
            provider.close_cache()


class TestConcurrency:
    """Concurrent callers on one provider."""

    def test_parallel_requests(self, provider, store):
        results: list[Tile] = []
        errors: list[BaseException] = []
        lock = threading.Lock()

        def worker(x):
            try:
                tile = provider.get_tile(x % 4, 0, 12)
            except BaseException as e:  # noqa: BLE001
                with lock:
                    errors.append(e)
                return
            with lock:
                results.append(tile)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(results) == 16
        for x in range(4):
            assert store.contains(generate_key(x, 0, 12, 'mapA'))
