"""Shared utilities."""

from coldcraft.utils.locks import KeyedLocks, LockTimeoutError

__all__ = ["KeyedLocks", "LockTimeoutError"]
