"""Shared pool of fixed-size copy buffers."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

BUFFER_SIZE = 1 << 15


class BufferPool:
    """Thread-safe free list of ``bytearray`` buffers.

    ``acquire`` hands out an idle buffer or allocates a new one. ``release``
    puts it back. The pool grows to the peak number of concurrent borrowers
    and never shrinks; there is no upper bound and no eviction.
    """

    def __init__(self, size: int = BUFFER_SIZE) -> None:
        if size <= 0:
            raise ValueError("buffer size must be positive")
        self.size = size
        self._lock = threading.Lock()
        self._free: list[bytearray] = []
        self._allocated = 0

    def acquire(self) -> bytearray:
        with self._lock:
            if self._free:
                return self._free.pop()
            self._allocated += 1
        return bytearray(self.size)

    def release(self, buf: bytearray) -> None:
        """Return ``buf`` to the pool. The caller must not touch it afterwards."""
        if len(buf) != self.size:
            raise ValueError(
                f"buffer of {len(buf)} bytes does not belong to a pool of {self.size}"
            )
        with self._lock:
            self._free.append(buf)

    @contextmanager
    def borrow(self) -> Iterator[bytearray]:
        buf = self.acquire()
        try:
            yield buf
        finally:
            self.release(buf)

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._free)

    @property
    def allocated_count(self) -> int:
        with self._lock:
            return self._allocated


_pool: "BufferPool | None" = None
_pool_lock = threading.Lock()


def get_buffer_pool() -> BufferPool:
    """Get the process-wide BufferPool instance."""
    global _pool
    with _pool_lock:
        if _pool is None:
            _pool = BufferPool()
        return _pool


def reset_buffer_pool() -> None:
    """Reset the process-wide pool (for testing)."""
    global _pool
    with _pool_lock:
        _pool = None
