"""Base interface for fee estimation.

Estimates are recomputed per request. When live sampling fails the
estimator degrades instead of failing:

1. Last good price sample, if younger than FEE_MAX_STALENESS
2. Static per-network defaults

Both are flagged degraded so the caller can warn the user.
"""

import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from coldcraft.chains import NetworkConfig
from coldcraft.config import Settings, get_settings
from coldcraft.errors import FeeEstimationDegraded
from coldcraft.models import FeeEstimate, OperationShape, SpeedTier
from coldcraft.rpc import JsonRpcClient, RpcError, RpcTransportError

logger = logging.getLogger(__name__)

# Failures that mean "no usable sample": RPC errors and malformed responses
SAMPLING_ERRORS = (RpcError, RpcTransportError, KeyError, IndexError, TypeError, ValueError)

TIERS = (SpeedTier.SLOW, SpeedTier.STANDARD, SpeedTier.FAST)


def percentile(values: list, pct: float) -> int:
    """Nearest-rank percentile of a list of numbers (0 for an empty list)."""
    if not values:
        return 0
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100 * len(ordered)))
    return int(ordered[min(rank, len(ordered)) - 1])


class FeeEstimator(ABC):
    """Per-network fee estimator.

    Args:
        network: Network configuration
        rpc: JSON-RPC client for the network
        settings: Policy settings
        clock: Time source (overridable in tests)
    """

    def __init__(
        self,
        network: NetworkConfig,
        rpc: JsonRpcClient,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.network = network
        self.rpc = rpc
        self.settings = settings or get_settings()
        self._clock = clock
        self._last_sample: Optional[tuple[Any, float]] = None

    async def estimate(self, shape: Optional[OperationShape] = None) -> FeeEstimate:
        """Estimate slow / standard / fast fees for an operation.

        Never raises for network problems; see the module docstring.
        """
        shape = shape or OperationShape()
        now = self._clock()
        degraded = False
        stale_seconds: Optional[float] = 0.0
        sampled_at = now
        warning = None

        try:
            sample = await self._sample_prices(shape)
            self._last_sample = (sample, now)
        except SAMPLING_ERRORS as e:
            logger.warning(f"Fee sampling failed on {self.network.name}: {e}")
            degraded = True
            if self._last_sample is not None and now - self._last_sample[1] <= self.settings.fee_max_staleness:
                sample, sampled_at = self._last_sample
                stale_seconds = now - sampled_at
                warning = FeeEstimationDegraded(
                    f"Using fee sample from {stale_seconds:.0f}s ago on {self.network.name}",
                    network=self.network.name,
                    stale_seconds=round(stale_seconds, 1),
                    cause=str(e),
                )
            else:
                sample = self._static_sample()
                stale_seconds = None
                warning = FeeEstimationDegraded(
                    f"Using static default fees on {self.network.name}",
                    network=self.network.name,
                    cause=str(e),
                )

        limit = await self._resource_limit(shape)
        tiers = {tier: self._tier_fee(tier, sample, limit) for tier in TIERS}

        return FeeEstimate(
            network=self.network.name,
            tiers=tiers,
            degraded=degraded,
            sampled_at=sampled_at,
            stale_seconds=stale_seconds,
            warning=warning,
        )

    def tier_seconds(self, tier: SpeedTier, blocks: dict) -> int:
        """Expected inclusion time from a per-tier block count."""
        return max(1, round(blocks[tier] * self.network.block_time_seconds))

    @abstractmethod
    async def _sample_prices(self, shape: OperationShape) -> Any:
        """Sample live fee prices. Raises one of SAMPLING_ERRORS on failure."""
        pass

    @abstractmethod
    def _static_sample(self) -> Any:
        """Conservative price sample used when nothing fresher exists."""
        pass

    @abstractmethod
    async def _resource_limit(self, shape: OperationShape) -> int:
        """Gas limit or compute-unit limit for the operation."""
        pass

    @abstractmethod
    def _tier_fee(self, tier: SpeedTier, sample: Any, limit: int):
        pass
