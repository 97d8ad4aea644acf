"""EVM broadcaster.

Maps node responses onto receipt states and keeps the nonce registry in
step:

- accepted / "already known" -> submitted (reservation marked submitted)
- "nonce too low"            -> failed, nonce released as consumed
- "replacement underpriced"  -> failed, reservation kept (bump and resend)
- other rejections           -> failed, nonce released unconsumed
- receipt status 1 / 0       -> confirmed / failed, nonce consumed
- unknown to the node        -> dropped, nonce released unconsumed
"""

import logging
from typing import Optional

from coldcraft.adapters.evm import EvmAdapter
from coldcraft.broadcast.base import Broadcaster, TrackedTransaction
from coldcraft.config import Settings
from coldcraft.errors import BroadcastRejected, TransactionDropped
from coldcraft.models import BroadcastReceipt, BroadcastStatus, EvmUnsignedTx, SignedTransaction
from coldcraft.rpc import JsonRpcClient, RpcError, RpcTransportError
from coldcraft.sequencing import NonceRegistry, ReleaseOutcome

logger = logging.getLogger(__name__)

# Consecutive polls that must miss the transaction before it is declared dropped
DROP_AFTER_MISSES = 2

ALREADY_KNOWN = ("already known", "known transaction", "already imported", "alreadyknown")
NONCE_TOO_LOW = ("nonce too low", "nonce is too low", "oldnonce")
REPLACEMENT_UNDERPRICED = ("replacement transaction underpriced", "replacement underpriced", "replacementunderpriced")
INSUFFICIENT_FUNDS = ("insufficient funds",)
UNDERPRICED = ("transaction underpriced", "max fee per gas less than block base fee", "feecap too low")


def _matches(text: str, needles: tuple) -> bool:
    return any(needle in text for needle in needles)


class EvmBroadcaster(Broadcaster):
    """Broadcaster for EVM networks."""

    adapter: EvmAdapter

    def __init__(
        self,
        adapter: EvmAdapter,
        rpc: JsonRpcClient,
        nonces: NonceRegistry,
        settings: Optional[Settings] = None,
        **kwargs,
    ):
        super().__init__(adapter, rpc, settings, **kwargs)
        self.nonces = nonces

    async def _submit(self, signed: SignedTransaction, receipt: BroadcastReceipt) -> None:
        unsigned: EvmUnsignedTx = signed.unsigned
        receipt.nonce = unsigned.nonce

        try:
            result = await self._send_with_retries("eth_sendRawTransaction", ["0x" + signed.wire_bytes.hex()])
        except RpcTransportError as e:
            # The transaction may have reached the node; keep the reservation
            self._mark_unknown(receipt, e, self.settings.broadcast_max_retries)
            return
        except RpcError as e:
            await self._classify_rejection(unsigned, receipt, e)
            return

        if isinstance(result, str) and result.lower() != signed.tx_id.lower():
            logger.warning(f"Node returned hash {result}, expected {signed.tx_id}")
        await self.nonces.mark_submitted(unsigned.sender, unsigned.network, unsigned.nonce)

    async def _classify_rejection(self, unsigned: EvmUnsignedTx, receipt: BroadcastReceipt, error: RpcError) -> None:
        text = error.text
        sender, network, nonce = unsigned.sender, unsigned.network, unsigned.nonce

        if _matches(text, ALREADY_KNOWN):
            logger.info(f"Node already has nonce {nonce} tx for {sender}; treating as submitted")
            await self.nonces.mark_submitted(sender, network, nonce)
            return

        receipt.status = BroadcastStatus.FAILED

        if _matches(text, NONCE_TOO_LOW):
            receipt.error = BroadcastRejected(
                f"Nonce {nonce} was already used on chain",
                reason="nonce_too_low",
                hint="re-craft the transaction to pick up the next nonce",
                node_message=error.message,
            )
            await self.nonces.release(sender, network, nonce, ReleaseOutcome.CONSUMED)
            return

        if _matches(text, REPLACEMENT_UNDERPRICED):
            receipt.error = BroadcastRejected(
                f"A transaction with nonce {nonce} is pending and this one does not pay enough to replace it",
                reason="replacement_underpriced",
                hint="raise max fee and priority fee by at least 10% and resend (speed_up)",
                node_message=error.message,
            )
            return

        if _matches(text, INSUFFICIENT_FUNDS):
            reason = "insufficient_funds"
            hint = "fund the sender to cover value plus gas_limit x max_fee_per_gas"
        elif _matches(text, UNDERPRICED):
            reason = "underpriced"
            hint = "re-craft with a faster fee tier"
        else:
            reason = "rejected"
            hint = None

        receipt.error = BroadcastRejected(
            f"Node rejected the transaction: {error.message}",
            reason=reason,
            hint=hint,
            node_message=error.message,
        )
        await self.nonces.release(sender, network, nonce, ReleaseOutcome.REJECTED)

    async def _poll(self, tracked: TrackedTransaction) -> bool:
        receipt = tracked.receipt
        try:
            result = await self.rpc.call("eth_getTransactionReceipt", [receipt.tx_id])
            if result is None:
                pending = await self.rpc.call("eth_getTransactionByHash", [receipt.tx_id])
            else:
                pending = None
        except (RpcError, RpcTransportError) as e:
            logger.warning(f"Status poll for {receipt.tx_id} on {self.network} failed: {e}")
            return False

        if result is not None:
            tracked.misses = 0
            receipt.block_number = int(result["blockNumber"], 16)
            receipt.error = None
            if int(result.get("status", "0x1"), 16) == 1:
                receipt.status = BroadcastStatus.CONFIRMED
            else:
                receipt.status = BroadcastStatus.FAILED
                receipt.error = BroadcastRejected(
                    f"Transaction reverted in block {receipt.block_number}",
                    reason="reverted",
                    hint="the nonce and gas were consumed; inspect the call before retrying",
                )
            await self._release(tracked, ReleaseOutcome.CONFIRMED)
            return True

        if pending is not None:
            tracked.misses = 0
            if receipt.status == BroadcastStatus.UNKNOWN:
                receipt.status = BroadcastStatus.SUBMITTED
                receipt.error = None
            return True

        tracked.misses += 1
        if tracked.misses >= DROP_AFTER_MISSES:
            receipt.status = BroadcastStatus.DROPPED
            receipt.error = TransactionDropped(
                f"{receipt.tx_id} is unknown to the node (evicted or replaced)",
                tx_id=receipt.tx_id,
            )
            await self._release(tracked, ReleaseOutcome.ABANDONED)
        return False

    async def _release(self, tracked: TrackedTransaction, outcome: ReleaseOutcome) -> None:
        if tracked.signed is None:
            return
        unsigned: EvmUnsignedTx = tracked.signed.unsigned
        await self.nonces.release(unsigned.sender, unsigned.network, unsigned.nonce, outcome)
