"""Transaction submission and confirmation tracking."""

from typing import Optional

from coldcraft.adapters.base import ChainAdapter
from coldcraft.broadcast.base import Broadcaster
from coldcraft.broadcast.evm import EvmBroadcaster
from coldcraft.broadcast.solana import SolanaBroadcaster
from coldcraft.chains import ChainFamily
from coldcraft.config import Settings
from coldcraft.rpc import JsonRpcClient
from coldcraft.sequencing import NonceRegistry


def get_broadcaster(
    adapter: ChainAdapter,
    rpc: JsonRpcClient,
    nonces: NonceRegistry,
    settings: Optional[Settings] = None,
    **kwargs,
) -> Broadcaster:
    """Create the broadcaster for an adapter's family."""
    if adapter.network.family == ChainFamily.EVM:
        return EvmBroadcaster(adapter, rpc, nonces, settings, **kwargs)
    return SolanaBroadcaster(adapter, rpc, settings, **kwargs)


__all__ = [
    "Broadcaster",
    "EvmBroadcaster",
    "SolanaBroadcaster",
    "get_broadcaster",
]
