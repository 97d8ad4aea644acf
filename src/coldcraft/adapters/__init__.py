"""Chain adapters: validation, assembly and serialization per chain family."""

from typing import Optional

from coldcraft.adapters.base import ChainAdapter
from coldcraft.adapters.evm import EvmAdapter
from coldcraft.adapters.solana import SolanaAdapter, SolanaChainContext
from coldcraft.chains import ChainFamily, NetworkConfig
from coldcraft.config import Settings


def get_adapter(network: NetworkConfig, settings: Optional[Settings] = None) -> ChainAdapter:
    """Create the adapter for a network's family."""
    if network.family == ChainFamily.EVM:
        return EvmAdapter(network, settings)
    return SolanaAdapter(network, settings)


__all__ = [
    "ChainAdapter",
    "EvmAdapter",
    "SolanaAdapter",
    "SolanaChainContext",
    "get_adapter",
]
