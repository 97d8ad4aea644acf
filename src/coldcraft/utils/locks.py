"""Keyed asyncio locks.

Provides one lock per key (e.g. an (address, network) pair) so that
check-and-set operations on shared state cannot interleave.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Hashable, Optional

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """Raised when a lock cannot be acquired within the timeout period."""

    pass


class KeyedLocks:
    """Registry of asyncio locks created on first use."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}

    def get(self, key: Hashable) -> asyncio.Lock:
        """Get or create the lock for a key.

        Creation is synchronous, so no registry lock is needed inside
        a single event loop.
        """
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(
        self,
        key: Hashable,
        timeout: Optional[float] = 30.0,
        operation: str = "keyed_operation",
    ):
        """Hold the lock for ``key`` for the duration of the block.

        Args:
            key: Lock key
            timeout: Maximum time to wait for the lock (None = wait forever)
            operation: Description for logging

        Raises:
            LockTimeoutError: If the lock is not acquired in time
        """
        lock = self.get(key)

        try:
            if timeout:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            else:
                await lock.acquire()
        except asyncio.TimeoutError:
            logger.warning(f"Lock timeout for {key} after {timeout}s: {operation}")
            raise LockTimeoutError(f"Could not acquire lock for {key} within {timeout}s")

        logger.debug(f"Lock acquired for {key}: {operation}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Lock released for {key}: {operation}")

    def clear(self) -> None:
        """Drop all locks (useful for testing)."""
        self._locks.clear()

    def __len__(self) -> int:
        return len(self._locks)
