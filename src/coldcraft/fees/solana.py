"""Solana priority-fee and compute-unit estimation."""

import base64
import logging
import math
from dataclasses import dataclass
from decimal import Decimal

from coldcraft.adapters.solana import MAX_COMPUTE_UNIT_LIMIT, SIGNATURE_FEE_LAMPORTS
from coldcraft.fees.base import FeeEstimator, percentile
from coldcraft.models import OperationShape, SolanaTierFee, SpeedTier
from coldcraft.rpc import RpcError, RpcTransportError

logger = logging.getLogger(__name__)

TIER_PERCENTILES = {
    SpeedTier.SLOW: 10,
    SpeedTier.STANDARD: 50,
    SpeedTier.FAST: 90,
}

# Micro-lamports per compute unit when nothing fresher exists
STATIC_PRICES = {
    SpeedTier.SLOW: 0,
    SpeedTier.STANDARD: 1_000,
    SpeedTier.FAST: 10_000,
}

# Expected inclusion, in slots
TIER_SLOTS = {
    SpeedTier.SLOW: 25,
    SpeedTier.STANDARD: 5,
    SpeedTier.FAST: 3,
}


@dataclass(frozen=True)
class SolanaPriceSample:
    """Compute-unit price per tier (micro-lamports)."""
    prices: dict  # dict[SpeedTier, int]


class SolanaFeeEstimator(FeeEstimator):
    """Fee estimator for Solana clusters.

    Prices are the p10 / p50 / p90 of recent prioritization fees, scoped to
    the operation's writable accounts when known. The compute-unit limit
    comes from simulating a draft transaction, or a fixed ceiling.
    """

    async def _sample_prices(self, shape: OperationShape) -> SolanaPriceSample:
        params = [list(shape.writable_accounts)] if shape.writable_accounts else []
        result = await self.rpc.call("getRecentPrioritizationFees", params)

        fees = [int(entry["prioritizationFee"]) for entry in result]
        prices = {tier: percentile(fees, pct) for tier, pct in TIER_PERCENTILES.items()}

        logger.debug(f"{self.network.name} priority fees over {len(fees)} slots: {prices}")
        return SolanaPriceSample(prices=prices)

    def _static_sample(self) -> SolanaPriceSample:
        return SolanaPriceSample(prices=dict(STATIC_PRICES))

    async def _resource_limit(self, shape: OperationShape) -> int:
        ceiling = self.settings.solana_compute_unit_ceiling
        if not shape.draft_transaction:
            return ceiling

        try:
            result = await self.rpc.call("simulateTransaction", [
                base64.b64encode(shape.draft_transaction).decode("ascii"),
                {
                    "encoding": "base64",
                    "sigVerify": False,
                    "replaceRecentBlockhash": True,
                    "commitment": "processed",
                },
            ])
        except (RpcError, RpcTransportError) as e:
            logger.warning(f"Simulation failed on {self.network.name}, using compute ceiling: {e}")
            return ceiling

        value = (result or {}).get("value") or {}
        if value.get("err"):
            logger.info(f"Draft transaction fails simulation on {self.network.name}: {value['err']}")
            return ceiling

        units = value.get("unitsConsumed")
        if not units:
            return ceiling
        return min(math.ceil(int(units) * self.settings.gas_limit_multiplier), MAX_COMPUTE_UNIT_LIMIT)

    def _tier_fee(self, tier: SpeedTier, sample: SolanaPriceSample, limit: int) -> SolanaTierFee:
        price = sample.prices[tier]
        priority_lamports = -(-price * limit // 1_000_000)
        total = SIGNATURE_FEE_LAMPORTS + priority_lamports

        return SolanaTierFee(
            tier=tier,
            compute_unit_price=price,
            compute_unit_limit=limit,
            base_fee_lamports=SIGNATURE_FEE_LAMPORTS,
            total_cost=Decimal(total) / Decimal(10**self.network.native_decimals),
            estimated_seconds=self.tier_seconds(tier, TIER_SLOTS),
        )
