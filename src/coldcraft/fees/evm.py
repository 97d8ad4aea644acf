"""EIP-1559 fee estimation from eth_feeHistory."""

import logging
import math
import statistics
from dataclasses import dataclass
from decimal import Decimal

from coldcraft.fees.base import FeeEstimator
from coldcraft.models import EvmTierFee, OperationKind, OperationShape, SpeedTier
from coldcraft.rpc import RpcError, RpcTransportError

logger = logging.getLogger(__name__)

GWEI = 10**9

REWARD_PERCENTILES = [10, 50, 90]

# Fallback gas per operation shape when eth_estimateGas fails
STATIC_GAS = {
    OperationKind.NATIVE_TRANSFER: 21_000,
    OperationKind.TOKEN_TRANSFER: 65_000,
    OperationKind.TOKEN_APPROVAL: 50_000,
    OperationKind.NFT_TRANSFER: 100_000,
    OperationKind.CONTRACT_CALL: 150_000,
}

# Used when fee history is unavailable and no recent sample exists
STATIC_BASE_FEE = 30 * GWEI
STATIC_PRIORITY = {
    SpeedTier.SLOW: 1 * GWEI,
    SpeedTier.STANDARD: 3 * GWEI // 2,
    SpeedTier.FAST: 2 * GWEI,
}

FAST_BASE_MULTIPLIER = Decimal("1.25")

# Expected inclusion, in blocks
TIER_BLOCKS = {
    SpeedTier.SLOW: 5,
    SpeedTier.STANDARD: 2,
    SpeedTier.FAST: 1,
}


@dataclass(frozen=True)
class EvmPriceSample:
    """Next-block base fee and per-tier priority fee (wei)."""
    base_fee: int
    priority: dict  # dict[SpeedTier, int]


class EvmFeeEstimator(FeeEstimator):
    """Fee estimator for EVM networks.

    slow = base + p10, standard = base + p50, fast = base * 1.25 + p90,
    where each priority is the median over sampled blocks of that
    percentile of included tips.
    """

    async def _sample_prices(self, shape: OperationShape) -> EvmPriceSample:
        history = await self.rpc.call(
            "eth_feeHistory",
            [hex(self.settings.fee_history_blocks), "latest", REWARD_PERCENTILES],
        )

        # The last entry is the base fee of the next block
        base_fee = int(history["baseFeePerGas"][-1], 16)

        rewards = [
            [int(value, 16) for value in block]
            for block in history.get("reward") or []
            if len(block) == len(REWARD_PERCENTILES)
        ]
        if rewards:
            columns = list(zip(*rewards))
            p10, p50, p90 = (int(statistics.median(column)) for column in columns)
        else:
            p10 = p50 = p90 = 0

        logger.debug(
            f"{self.network.name} fee sample: base={base_fee} p10={p10} p50={p50} p90={p90} "
            f"over {len(rewards)} blocks"
        )
        return EvmPriceSample(
            base_fee=base_fee,
            priority={SpeedTier.SLOW: p10, SpeedTier.STANDARD: p50, SpeedTier.FAST: p90},
        )

    def _static_sample(self) -> EvmPriceSample:
        return EvmPriceSample(base_fee=STATIC_BASE_FEE, priority=dict(STATIC_PRIORITY))

    async def _resource_limit(self, shape: OperationShape) -> int:
        multiplier = self.settings.gas_limit_multiplier

        if shape.to is not None:
            params = {"to": shape.to, "value": hex(shape.value), "data": "0x" + shape.data.hex()}
            if shape.sender:
                params["from"] = shape.sender
            try:
                result = await self.rpc.call("eth_estimateGas", [params])
                return math.ceil(int(result, 16) * multiplier)
            except (RpcError, RpcTransportError, TypeError, ValueError) as e:
                logger.warning(f"Gas estimation failed on {self.network.name}, using static limit: {e}")

        static = STATIC_GAS.get(shape.kind, STATIC_GAS[OperationKind.CONTRACT_CALL])
        return math.ceil(static * multiplier)

    def _tier_fee(self, tier: SpeedTier, sample: EvmPriceSample, limit: int) -> EvmTierFee:
        priority = sample.priority[tier]
        if tier == SpeedTier.FAST:
            base_component = int(Decimal(sample.base_fee) * FAST_BASE_MULTIPLIER)
        else:
            base_component = sample.base_fee
        max_fee = max(base_component + priority, 1)

        total_cost = Decimal(limit * max_fee) / Decimal(10**self.network.native_decimals)
        return EvmTierFee(
            tier=tier,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority,
            base_fee_per_gas=sample.base_fee,
            gas_limit=limit,
            total_cost=total_cost,
            estimated_seconds=self.tier_seconds(tier, TIER_BLOCKS),
        )
