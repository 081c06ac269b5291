from __future__ import annotations

import asyncio
import threading
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator


class PathLockRegistry:
    """
    Provides a stable lock per normalized file path, shared by every provider
    instance in the process that points at the same file.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, path: Path) -> threading.RLock:
        key = str(path.resolve())
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock


GLOBAL_PATH_LOCKS = PathLockRegistry()


class OperationQueue:
    """
    FIFO admission for one store's operations.

    asyncio.Lock wakes waiters in arrival order, so holding it for the whole
    of an operation totally orders read-modify-write sequences in-process.
    """

    def __init__(self) -> None:
        self._lock: asyncio.Lock | None = None

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            yield
