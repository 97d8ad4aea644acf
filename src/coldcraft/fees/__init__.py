"""Fee estimation per chain family."""

import time
from typing import Callable, Optional

from coldcraft.chains import ChainFamily, NetworkConfig
from coldcraft.config import Settings
from coldcraft.fees.base import FeeEstimator
from coldcraft.fees.evm import EvmFeeEstimator
from coldcraft.fees.solana import SolanaFeeEstimator
from coldcraft.rpc import JsonRpcClient


def get_fee_estimator(
    network: NetworkConfig,
    rpc: JsonRpcClient,
    settings: Optional[Settings] = None,
    clock: Callable[[], float] = time.time,
) -> FeeEstimator:
    """Create the fee estimator for a network's family."""
    if network.family == ChainFamily.EVM:
        return EvmFeeEstimator(network, rpc, settings, clock)
    return SolanaFeeEstimator(network, rpc, settings, clock)


__all__ = [
    "FeeEstimator",
    "EvmFeeEstimator",
    "SolanaFeeEstimator",
    "get_fee_estimator",
]
