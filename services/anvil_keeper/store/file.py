"""
Local file snapshot store.

Keeps the snapshot in one file (anvil_state.txt by default). Writes go to a
temporary file in the same directory which is then renamed over the slot,
so a crash mid-write leaves the previous snapshot intact. Both the file and
its directory are fsynced, so a completed write survives power loss.

Blocking file I/O runs in the default executor.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from .base import SnapshotNotFoundError, StoreError, WriteError

logger = logging.getLogger(__name__)


class FileSnapshotStore:
    """Single-file implementation of SnapshotStore.

    Attributes:
        path: Location of the snapshot file

    Example:
        >>> store = FileSnapshotStore("/var/lib/anvil-keeper/anvil_state.txt")
        >>> await store.write(state)
    """

    def __init__(self, path: str | Path, mode: int = 0o644) -> None:
        self.path = Path(path)
        self.mode = mode

    def describe(self) -> str:
        return str(self.path)

    async def exists(self) -> bool:
        return await asyncio.get_running_loop().run_in_executor(None, self._exists)

    async def read(self) -> bytes:
        """Read the snapshot file.

        Raises:
            SnapshotNotFoundError: If the file is missing or empty
            StoreError: If the file cannot be read
        """
        return await asyncio.get_running_loop().run_in_executor(None, self._read)

    async def write(self, data: bytes) -> None:
        """Atomically replace the snapshot file.

        Raises:
            WriteError: If the file cannot be written
        """
        await asyncio.get_running_loop().run_in_executor(None, self._write, data)
        logger.debug("Wrote snapshot file", extra={"path": str(self.path), "size_bytes": len(data)})

    def _exists(self) -> bool:
        try:
            return self.path.stat().st_size > 0
        except FileNotFoundError:
            return False

    def _read(self) -> bytes:
        try:
            data = self.path.read_bytes()
        except FileNotFoundError as e:
            raise SnapshotNotFoundError(f"No snapshot at {self.path}") from e
        except OSError as e:
            raise StoreError(f"Failed to read {self.path}: {e}") from e

        if not data:
            raise SnapshotNotFoundError(f"Snapshot file {self.path} is empty")
        return data

    def _write(self, data: bytes) -> None:
        directory = self.path.parent
        tmp_path: str | None = None
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=directory)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_path, self.mode)
            os.replace(tmp_path, self.path)
            tmp_path = None
            _fsync_directory(directory)
        except OSError as e:
            raise WriteError(f"Failed to write {self.path}: {e}") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)


def _fsync_directory(directory: Path) -> None:
    """Flush a directory entry so a rename inside it is durable."""
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
