"""Advisory lock shared by every runbox process writing the same log store.

The HTTP server and `runbox-run` each serialize their own runs with an
`asyncio.Lock`; this file lock serializes them against each other and keeps
a starting server from reconciling a run another process is still writing.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import IO


class RunLockFile:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._handle: IO[str] | None = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def try_acquire(self) -> bool:
        """Take the lock without blocking. False if another holder has it."""
        if self._handle is not None:
            raise RuntimeError(f"Run lock already held: {self.path}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+", encoding="utf-8")
        try:
            _lock_file(handle)
        except BlockingIOError:
            handle.close()
            return False
        except OSError:
            handle.close()
            raise
        self._handle = handle
        return True

    async def acquire(self, poll_interval: float = 0.1) -> None:
        while not self.try_acquire():
            await asyncio.sleep(poll_interval)

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            _unlock_file(handle)
        finally:
            handle.close()


def _lock_file(handle: IO[str]) -> None:
    if os.name == "nt":
        import msvcrt

        try:
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
        except PermissionError as e:
            raise BlockingIOError(str(e)) from e
        return
    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_file(handle: IO[str]) -> None:
    if os.name == "nt":
        import msvcrt

        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        return
    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
