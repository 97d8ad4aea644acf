"""Solana transaction crafter.

Sequencing is a fresh blockhash plus the block height it stays valid
until; nothing is reserved. Account existence, mint decimals and rent are
read before any instruction is built.
"""

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Optional

from solders.pubkey import Pubkey
from spl.token.instructions import get_associated_token_address

from coldcraft.adapters.solana import MAX_COMPUTE_UNIT_LIMIT, SIGNATURE_FEE_LAMPORTS, SolanaAdapter, SolanaChainContext
from coldcraft.crafting.base import TransactionCrafter
from coldcraft.models import (
    OperationRequest,
    OperationShape,
    SolanaFeeOverride,
    SolanaNativeTransfer,
    SolanaTierFee,
    SolanaTokenApproval,
    SolanaTokenTransfer,
    SolanaUnsignedTx,
    SpeedTier,
)

logger = logging.getLogger(__name__)

MAX_FEE_ACCOUNTS = 128  # getRecentPrioritizationFees account limit


class SolanaCrafter(TransactionCrafter):
    """Crafter for Solana clusters."""

    adapter: SolanaAdapter

    async def latest_blockhash(self) -> tuple[str, int]:
        result = await self._rpc("getLatestBlockhash", [{"commitment": "finalized"}])
        value = result["value"]
        return value["blockhash"], int(value["lastValidBlockHeight"])

    async def account_exists(self, address: str) -> bool:
        result = await self._rpc("getAccountInfo", [address, {"encoding": "base64", "commitment": "confirmed"}])
        return bool(result and result.get("value"))

    async def mint_decimals(self, mint: str) -> int:
        result = await self._rpc("getTokenSupply", [mint])
        return int(result["value"]["decimals"])

    async def rent_exempt_minimum(self, data_size: int = 0) -> int:
        return int(await self._rpc("getMinimumBalanceForRentExemption", [data_size]))

    async def chain_context(self, request: OperationRequest) -> SolanaChainContext:
        """Read every chain fact the request's instructions depend on."""
        blockhash, last_valid = await self.latest_blockhash()
        context = SolanaChainContext(recent_blockhash=blockhash, last_valid_block_height=last_valid)

        if isinstance(request, (SolanaTokenTransfer, SolanaTokenApproval)):
            decimals = request.decimals
            if decimals is None:
                decimals = await self.mint_decimals(request.mint)
            context = replace(context, decimals=decimals)

        if isinstance(request, SolanaTokenTransfer):
            recipient_ata = get_associated_token_address(
                Pubkey.from_string(request.recipient), Pubkey.from_string(request.mint)
            )
            exists = await self.account_exists(str(recipient_ata))
            context = replace(context, recipient_token_account_exists=exists)

        if isinstance(request, SolanaNativeTransfer):
            exists = await self.account_exists(request.recipient)
            context = replace(
                context,
                recipient_exists=exists,
                rent_exempt_minimum=None if exists else await self.rent_exempt_minimum(0),
            )

        return context

    async def _craft(self, request: OperationRequest, sender: str, tier: SpeedTier) -> SolanaUnsignedTx:
        context = await self.chain_context(request)
        error = self.adapter.validate_chain_state(request, context)
        if error is not None:
            logger.info(f"Rejected {request.__class__.__name__} on {self.network}: {error.message}")
            raise error

        body = self.adapter.operation_instructions(request, sender, context)
        writable = []
        for ix in body:
            for meta in ix.accounts:
                key = str(meta.pubkey)
                if meta.is_writable and key not in writable:
                    writable.append(key)

        shape = OperationShape(
            kind=request.kind,
            sender=sender,
            draft_transaction=self.adapter.draft_transaction(request, sender, context, MAX_COMPUTE_UNIT_LIMIT),
            writable_accounts=tuple(writable[:MAX_FEE_ACCOUNTS]),
        )
        estimate = await self.fee_estimator.estimate(shape)
        fee = apply_override(estimate.tier(tier), request.fee_override, self.adapter.network.native_decimals)

        return self.adapter.build_unsigned(request, sender, fee, context, fees_degraded=estimate.degraded)


def apply_override(fee: SolanaTierFee, override: Optional[SolanaFeeOverride], decimals: int = 9) -> SolanaTierFee:
    """Overlay user-supplied compute budget fields on a tier."""
    if override is None:
        return fee

    price = override.compute_unit_price if override.compute_unit_price is not None else fee.compute_unit_price
    limit = override.compute_unit_limit if override.compute_unit_limit is not None else fee.compute_unit_limit
    total = SIGNATURE_FEE_LAMPORTS + -(-price * limit // 1_000_000)

    return replace(
        fee,
        compute_unit_price=price,
        compute_unit_limit=limit,
        total_cost=Decimal(total) / Decimal(10**decimals),
    )
