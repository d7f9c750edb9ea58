"""Read-only access to a browser's IndexedDB LevelDB directory.

The browser may hold the store open, and LevelDB writes to its directory
when opened (log recovery, LOCK, LOG files), so the directory is copied
to a private temporary location first and only the copy is opened.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from itertools import islice
from pathlib import Path
from typing import Any, AsyncGenerator, List, Optional, Protocol, Tuple, runtime_checkable

import plyvel  # type: ignore

from .exceptions import ComparatorMismatchError, SourceOpenError, SourceUnavailableError

logger = logging.getLogger(__name__)

RawRecord = Tuple[bytes, bytes]


class SourceHandle:
    """An open source store.

    Attributes:
        path: The original directory that was requested
        working_path: The private copy that is actually open
    """

    def __init__(self, path: Path, working_path: Path, db: Any) -> None:
        self.path = path
        self.working_path = working_path
        self.db: Optional[Any] = db
        self.iterated = False

    @property
    def closed(self) -> bool:
        return self.db is None


@runtime_checkable
class SourceStore(Protocol):
    """Contract for readers of a foreign key/value store."""

    async def open(self, path: Path) -> SourceHandle: ...

    def iterate(self, handle: SourceHandle) -> AsyncGenerator[RawRecord, None]: ...

    async def close(self, handle: SourceHandle) -> None: ...


def _is_comparator_error(error: Exception) -> bool:
    return "comparator" in str(error).lower()


class LevelDbSourceReader:
    """Reads raw key/value pairs from a LevelDB directory with plyvel.

    Example:
        reader = LevelDbSourceReader()
        handle = await reader.open(path)
        try:
            async for key, value in reader.iterate(handle):
                ...
        finally:
            await reader.close(handle)
    """

    def __init__(self, copy_source: bool = True, yield_every: int = 256) -> None:
        """Initialize the reader.

        Args:
            copy_source: Open a temporary copy instead of the directory itself
            yield_every: Records read per worker-thread step
        """
        self.copy_source = copy_source
        self.yield_every = max(1, yield_every)

    async def open(self, path: Path) -> SourceHandle:
        """Open a LevelDB directory for reading.

        Raises:
            SourceUnavailableError: If the path does not exist
            ComparatorMismatchError: If the store needs a custom comparator
            SourceOpenError: If the store cannot be copied or opened
        """
        path = Path(path)
        if not path.exists():
            raise SourceUnavailableError(f"Source not found: {path}")
        if not path.is_dir():
            raise SourceOpenError(f"Source is not a LevelDB directory: {path}")

        return await asyncio.to_thread(self._open_sync, path)

    def _copy_database(self, path: Path) -> Path:
        temp_dir = Path(tempfile.mkdtemp(prefix="edgeidb_"))
        target_path = temp_dir / path.name
        try:
            shutil.copytree(path, target_path, ignore=shutil.ignore_patterns("LOCK"))
        except (OSError, shutil.Error):
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise
        return target_path

    def _open_sync(self, path: Path) -> SourceHandle:
        working_path = path
        if self.copy_source:
            try:
                working_path = self._copy_database(path)
            except (OSError, shutil.Error) as e:
                raise SourceOpenError(f"Cannot copy source {path}: {e}") from e
            logger.debug("Copied %s to %s", path, working_path)

        try:
            db = plyvel.DB(str(working_path), create_if_missing=False)
        except plyvel.Error as e:
            self._discard_copy(path, working_path)
            if _is_comparator_error(e):
                raise ComparatorMismatchError(f"Cannot open {path}: {e}") from e
            raise SourceOpenError(f"Cannot open {path}: {e}") from e

        return SourceHandle(path=path, working_path=working_path, db=db)

    async def iterate(self, handle: SourceHandle) -> AsyncGenerator[RawRecord, None]:
        """Yield every (key, value) pair in the store's native key order.

        Records are read from LevelDB in a worker thread, ``yield_every`` at
        a time, so reads never block the event loop. A handle can only be
        iterated once.

        Raises:
            SourceOpenError: If the handle is closed or was already iterated
        """
        if handle.db is None:
            raise SourceOpenError(f"Source handle for {handle.path} is closed")
        if handle.iterated:
            raise SourceOpenError(f"Source {handle.path} was already iterated")
        handle.iterated = True

        iterator = handle.db.iterator()
        try:
            while True:
                chunk = await asyncio.to_thread(self._read_chunk, iterator)
                for record in chunk:
                    yield record
                if len(chunk) < self.yield_every:
                    return
        finally:
            iterator.close()

    def _read_chunk(self, iterator: Any) -> List[RawRecord]:
        return [(bytes(key), bytes(value)) for key, value in islice(iterator, self.yield_every)]

    async def close(self, handle: SourceHandle) -> None:
        """Close the store and delete its temporary copy. Safe to call twice."""
        db = handle.db
        handle.db = None
        if db is not None:
            db.close()
        self._discard_copy(handle.path, handle.working_path)

    def _discard_copy(self, path: Path, working_path: Path) -> None:
        if working_path != path and working_path.parent.exists():
            shutil.rmtree(working_path.parent, ignore_errors=True)
