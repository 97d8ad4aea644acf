"""EVM transaction crafter.

The nonce is reserved inside craft, so the nonce the user confirms on the
device is the nonce that gets broadcast. Any failure after the reservation
releases it as abandoned.
"""

import logging
import math
from dataclasses import replace
from decimal import Decimal
from typing import Optional

from coldcraft.adapters import abi
from coldcraft.adapters.evm import EvmAdapter
from coldcraft.config import Settings
from coldcraft.crafting.base import TransactionCrafter
from coldcraft.errors import ValidationError
from coldcraft.fees.base import FeeEstimator
from coldcraft.models import (
    EvmContractCall,
    EvmFeeOverride,
    EvmTierFee,
    EvmUnsignedTx,
    OperationRequest,
    OperationShape,
    SpeedTier,
    UnsignedTransaction,
)
from coldcraft.providers.abi import AbiProvider
from coldcraft.rpc import JsonRpcClient
from coldcraft.sequencing import NonceRegistry, ReleaseOutcome

logger = logging.getLogger(__name__)

MIN_REPLACEMENT_BUMP = 10.0  # percent, node mempool replacement rule


class EvmCrafter(TransactionCrafter):
    """Crafter for EVM networks."""

    adapter: EvmAdapter

    def __init__(
        self,
        adapter: EvmAdapter,
        fee_estimator: FeeEstimator,
        rpc: JsonRpcClient,
        nonces: NonceRegistry,
        settings: Optional[Settings] = None,
        abi_provider: Optional[AbiProvider] = None,
    ):
        super().__init__(adapter, fee_estimator, rpc, settings)
        self.nonces = nonces
        self.abi_provider = abi_provider

    async def pending_nonce(self, address: str) -> int:
        """Nonce the node would assign next, counting its mempool."""
        result = await self._rpc("eth_getTransactionCount", [address, "pending"])
        return int(result, 16)

    async def _craft(self, request: OperationRequest, sender: str, tier: SpeedTier) -> EvmUnsignedTx:
        to, value, data = self.adapter.call_parameters(request, sender)
        shape = OperationShape(kind=request.kind, sender=sender, to=to, value=value, data=data)

        reservation = await self.nonces.reserve(sender, self.network, lambda: self.pending_nonce(sender))
        try:
            estimate = await self.fee_estimator.estimate(shape)
            fee = apply_override(estimate.tier(tier), request.fee_override, self.adapter.network.native_decimals)
            description = await self._describe(request, to, data)
            return self.adapter.build_unsigned(
                request,
                sender,
                fee,
                reservation.nonce,
                description=description,
                fees_degraded=estimate.degraded,
            )
        except BaseException:
            await self.nonces.release(sender, self.network, reservation.nonce, ReleaseOutcome.ABANDONED)
            raise

    async def _describe(self, request: OperationRequest, to: str, data: bytes) -> Optional[str]:
        if not isinstance(request, EvmContractCall):
            return None
        if request.abi:
            return abi.describe_call(data, list(request.abi))
        if self.abi_provider is None:
            return None
        contract_abi = await self.abi_provider.get_abi(self.adapter.network, to)
        return abi.describe_call(data, contract_abi)

    async def abandon(self, unsigned: UnsignedTransaction) -> bool:
        """Release the nonce of a crafted transaction that will not be sent."""
        if not isinstance(unsigned, EvmUnsignedTx):
            return False
        released = await self.nonces.release(
            unsigned.sender, unsigned.network, unsigned.nonce, ReleaseOutcome.ABANDONED
        )
        if released:
            logger.info(f"Abandoned nonce {unsigned.nonce} for {unsigned.sender} on {unsigned.network}")
        return released

    async def craft_replacement(self, unsigned: EvmUnsignedTx, bump_percent: float = 12.5) -> EvmUnsignedTx:
        """Craft a same-nonce replacement with raised fees.

        Both fee caps rise by at least ``bump_percent`` and never fall below
        the current fast tier.

        Raises:
            ValidationError: Not an EVM transaction, bump below the node minimum,
                or the original was never broadcast
            SequencingConflict: The sender's nonce is held by another transaction
        """
        if not isinstance(unsigned, EvmUnsignedTx):
            raise ValidationError("Only EVM transactions can be replaced", field="transaction", rule="family_mismatch")
        if bump_percent < MIN_REPLACEMENT_BUMP:
            raise ValidationError(
                f"Replacement fees must rise by at least {MIN_REPLACEMENT_BUMP}%",
                field="bump_percent",
                rule="replacement_bump",
            )

        # Refused unless the original reached the node
        await self.nonces.reserve_existing(unsigned.sender, unsigned.network, unsigned.nonce)

        shape = OperationShape(
            kind=unsigned.operation,
            sender=unsigned.sender,
            to=unsigned.to,
            value=unsigned.value,
            data=unsigned.data,
        )
        estimate = await self.fee_estimator.estimate(shape)
        fast = estimate.tier(SpeedTier.FAST)

        factor = Decimal(1) + Decimal(str(bump_percent)) / Decimal(100)
        priority = max(math.ceil(unsigned.max_priority_fee_per_gas * factor), fast.max_priority_fee_per_gas)
        max_fee = max(math.ceil(unsigned.max_fee_per_gas * factor), fast.max_fee_per_gas, priority)

        draft = replace(
            unsigned,
            max_fee_per_gas=max_fee,
            max_priority_fee_per_gas=priority,
            fee_tier="replacement",
            fees_degraded=estimate.degraded,
        )
        replacement = replace(
            draft,
            signing_payload=self.adapter.signing_payload(draft),
            display_summary=self.adapter.display_summary(draft),
        )
        error = self.adapter.validate_unsigned(replacement)
        if error:
            raise error

        logger.info(
            f"Replacement for nonce {unsigned.nonce} on {unsigned.network}: "
            f"max_fee {unsigned.max_fee_per_gas} -> {max_fee}, priority "
            f"{unsigned.max_priority_fee_per_gas} -> {priority}"
        )
        return replacement


def apply_override(fee: EvmTierFee, override: Optional[EvmFeeOverride], decimals: int = 18) -> EvmTierFee:
    """Overlay user-supplied fee fields on a tier."""
    if override is None:
        return fee

    max_fee = override.max_fee_per_gas if override.max_fee_per_gas is not None else fee.max_fee_per_gas
    priority = (
        override.max_priority_fee_per_gas
        if override.max_priority_fee_per_gas is not None
        else min(fee.max_priority_fee_per_gas, max_fee)
    )
    gas_limit = override.gas_limit if override.gas_limit is not None else fee.gas_limit

    return replace(
        fee,
        max_fee_per_gas=max_fee,
        max_priority_fee_per_gas=priority,
        gas_limit=gas_limit,
        total_cost=Decimal(gas_limit * max_fee) / Decimal(10**decimals),
    )
