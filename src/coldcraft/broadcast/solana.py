"""Solana broadcaster.

A transaction is only valid until its blockhash expires. Once the cluster's
block height passes the transaction's last valid block height without a
signature status, it can never land and is reported as dropped; the caller
re-crafts with a fresh blockhash rather than re-signing.
"""

import base64
import logging

from coldcraft.adapters.solana import SolanaAdapter
from coldcraft.broadcast.base import Broadcaster, TrackedTransaction
from coldcraft.errors import BroadcastRejected, TransactionDropped
from coldcraft.models import BroadcastReceipt, BroadcastStatus, SignedTransaction, SolanaUnsignedTx
from coldcraft.rpc import RpcError, RpcTransportError

logger = logging.getLogger(__name__)

CONFIRMED_LEVELS = ("confirmed", "finalized")

BLOCKHASH_EXPIRED = ("blockhash not found", "blockhashnotfound")
ALREADY_PROCESSED = ("already been processed", "alreadyprocessed")
INSUFFICIENT_FUNDS = ("insufficient funds", "insufficientfunds", "insufficient lamports")


class SolanaBroadcaster(Broadcaster):
    """Broadcaster for Solana clusters."""

    adapter: SolanaAdapter

    async def _submit(self, signed: SignedTransaction, receipt: BroadcastReceipt) -> None:
        params = [
            base64.b64encode(signed.wire_bytes).decode("ascii"),
            {
                "encoding": "base64",
                "skipPreflight": False,
                "preflightCommitment": "confirmed",
            },
        ]

        try:
            result = await self._send_with_retries("sendTransaction", params)
        except RpcTransportError as e:
            self._mark_unknown(receipt, e, self.settings.broadcast_max_retries)
            return
        except RpcError as e:
            self._classify_rejection(signed, receipt, e)
            return

        if isinstance(result, str) and result != signed.tx_id:
            logger.warning(f"Cluster returned signature {result}, expected {signed.tx_id}")

    def _classify_rejection(self, signed: SignedTransaction, receipt: BroadcastReceipt, error: RpcError) -> None:
        text = error.text

        if any(needle in text for needle in ALREADY_PROCESSED):
            logger.info(f"{signed.tx_id} was already processed; treating as submitted")
            return

        if any(needle in text for needle in BLOCKHASH_EXPIRED):
            unsigned: SolanaUnsignedTx = signed.unsigned
            receipt.status = BroadcastStatus.DROPPED
            receipt.error = TransactionDropped(
                f"Blockhash {unsigned.recent_blockhash} expired before submission",
                tx_id=signed.tx_id,
                last_valid_block_height=unsigned.last_valid_block_height,
            )
            return

        receipt.status = BroadcastStatus.FAILED
        if any(needle in text for needle in INSUFFICIENT_FUNDS):
            reason = "insufficient_funds"
            hint = "fund the fee payer to cover the transfer, fees and any account rent"
        else:
            reason = "preflight_failed"
            hint = "inspect the simulation logs before retrying"

        logs = error.data.get("logs") if isinstance(error.data, dict) else None
        receipt.error = BroadcastRejected(
            f"Cluster rejected the transaction: {error.message}",
            reason=reason,
            hint=hint,
            node_message=error.message,
            logs=logs,
        )

    async def _poll(self, tracked: TrackedTransaction) -> bool:
        receipt = tracked.receipt
        try:
            result = await self.rpc.call(
                "getSignatureStatuses", [[receipt.tx_id], {"searchTransactionHistory": True}]
            )
            status = result["value"][0]
        except (RpcError, RpcTransportError, KeyError, IndexError, TypeError) as e:
            logger.warning(f"Status poll for {receipt.tx_id} on {self.network} failed: {e}")
            return False

        if status is not None:
            receipt.slot = status.get("slot")
            if status.get("err") is not None:
                receipt.status = BroadcastStatus.FAILED
                receipt.error = BroadcastRejected(
                    f"Transaction failed in slot {receipt.slot}: {status['err']}",
                    reason="execution_failed",
                    hint="the fee was charged; inspect the instruction error before retrying",
                    instruction_error=status["err"],
                )
            elif status.get("confirmationStatus") in CONFIRMED_LEVELS:
                receipt.status = BroadcastStatus.CONFIRMED
                receipt.error = None
            elif receipt.status == BroadcastStatus.UNKNOWN:
                receipt.status = BroadcastStatus.SUBMITTED
                receipt.error = None
            return True

        if tracked.signed is not None and await self._blockhash_expired(tracked.signed.unsigned):
            self._mark_dropped(receipt, tracked.signed.unsigned)
        return False

    async def _blockhash_expired(self, unsigned: SolanaUnsignedTx) -> bool:
        try:
            height = await self.rpc.call("getBlockHeight", [{"commitment": "confirmed"}])
        except (RpcError, RpcTransportError) as e:
            logger.warning(f"getBlockHeight on {self.network} failed: {e}")
            return False
        return int(height) > unsigned.last_valid_block_height

    @staticmethod
    def _mark_dropped(receipt: BroadcastReceipt, unsigned: SolanaUnsignedTx) -> None:
        receipt.status = BroadcastStatus.DROPPED
        receipt.error = TransactionDropped(
            f"{receipt.tx_id} did not land before block height {unsigned.last_valid_block_height}",
            tx_id=receipt.tx_id,
            last_valid_block_height=unsigned.last_valid_block_height,
        )

    async def _on_wait_timeout(self, tracked: TrackedTransaction, timeout: float) -> None:
        # Without a confirmed status the transaction is treated as expired
        logger.warning(f"{tracked.receipt.tx_id} not confirmed on {self.network} within {timeout:.0f}s")
        if tracked.signed is not None:
            self._mark_dropped(tracked.receipt, tracked.signed.unsigned)
        else:
            tracked.receipt.status = BroadcastStatus.DROPPED
            tracked.receipt.error = TransactionDropped(
                f"{tracked.receipt.tx_id} not confirmed within {timeout:.0f}s", tx_id=tracked.receipt.tx_id
            )
