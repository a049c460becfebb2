"""Contract for the transactional key-value store behind the tile cache.

A store keeps a fixed number of named sub-streams per key. Readers get a
snapshot of all of them; writers open an editor, fill the sub-streams and
commit. A committed entry becomes visible atomically; an aborted edit leaves
the previous state (or nothing) in place.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, BinaryIO, Protocol, runtime_checkable

if TYPE_CHECKING:
    from types import TracebackType


class CacheStoreError(OSError):
    """Store-side I/O failure (read, write, commit)."""


class CacheClosedError(CacheStoreError):
    """Operation attempted on a closed store."""


class TileDecodeError(CacheStoreError):
    """Stored entry is missing a sub-stream or holds malformed data."""


@runtime_checkable
class Snapshot(Protocol):
    """Read-only view of one committed entry."""

    key: str

    def get_input_stream(self, index: int) -> BinaryIO: ...

    def close(self) -> None: ...

    def __enter__(self) -> Snapshot: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None: ...


@runtime_checkable
class Editor(Protocol):
    """Pending write for one key.

    Used as a context manager, an editor that was not committed by the end
    of the block is aborted.
    """

    key: str

    def new_output_stream(self, index: int) -> BinaryIO: ...

    def commit(self) -> None: ...

    def abort(self) -> None: ...

    def __enter__(self) -> Editor: ...

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None: ...


@runtime_checkable
class EntryStore(Protocol):
    """Persistent bounded store the provider reads from and writes to."""

    def get(self, key: str) -> Snapshot | None: ...

    def edit(self, key: str) -> Editor | None: ...

    def is_closed(self) -> bool: ...

    def close(self) -> None: ...
