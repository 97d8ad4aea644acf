"""External data providers."""

from coldcraft.providers.abi import AbiProvider

__all__ = ["AbiProvider"]
