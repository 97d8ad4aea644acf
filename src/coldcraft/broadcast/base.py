"""Base interface for broadcasters.

State machine per transaction:

    Built -> Submitted -> {Confirmed, Failed, Dropped}

Unknown is reported when the node could not be reached after all retries;
the transaction may or may not have landed, so polling continues from
there. Terminal receipts are never changed by polling.

Only in-flight transactions are tracked. Once terminal, a receipt moves to
a bounded list of recently settled receipts.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from coldcraft.adapters.base import ChainAdapter
from coldcraft.config import Settings, get_settings
from coldcraft.errors import BroadcastTransient, InvariantViolation
from coldcraft.models import BroadcastReceipt, BroadcastStatus, SignedTransaction
from coldcraft.rpc import JsonRpcClient, RpcTransportError

logger = logging.getLogger(__name__)

# Terminal receipts kept so repeated polls and resubmits return the same answer
SETTLED_RECEIPTS = 256


@dataclass
class TrackedTransaction:
    """In-flight transaction known to this broadcaster."""
    receipt: BroadcastReceipt
    signed: Optional[SignedTransaction] = None
    misses: int = 0


class Broadcaster(ABC):
    """Per-network transaction submission and status tracking.

    Args:
        adapter: Adapter of the network (serialization only)
        rpc: JSON-RPC client for the network
        settings: Retry and confirmation policy
        clock: Time source (overridable in tests)
        sleep: Sleep coroutine (overridable in tests)
    """

    def __init__(
        self,
        adapter: ChainAdapter,
        rpc: JsonRpcClient,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.adapter = adapter
        self.rpc = rpc
        self.settings = settings or get_settings()
        self._clock = clock
        self._sleep = sleep
        self._in_flight: dict[str, TrackedTransaction] = {}
        self._settled: OrderedDict[str, BroadcastReceipt] = OrderedDict()

    @property
    def network(self) -> str:
        return self.adapter.network.name

    def explorer_link(self, tx_id: str) -> str:
        base = self.adapter.network.explorer_url
        if "?" in base:
            path, query = base.split("?", 1)
            return f"{path.rstrip('/')}/tx/{tx_id}?{query}"
        return f"{base.rstrip('/')}/tx/{tx_id}"

    # ----------------------
    # Submission
    # ----------------------

    async def submit(self, signed: SignedTransaction) -> BroadcastReceipt:
        """Submit a signed transaction.

        Expected failures are reported in the receipt (status + error),
        not raised.
        """
        if signed.network != self.network:
            raise InvariantViolation(f"{signed.network} transaction routed to {self.network} broadcaster")
        if self.adapter.serialize(signed) != signed.wire_bytes:
            raise InvariantViolation("Wire bytes do not match the signed transaction")

        existing = self.get_receipt(signed.tx_id)
        if existing is not None and existing.status != BroadcastStatus.UNKNOWN:
            logger.info(f"{signed.tx_id} already submitted on {self.network}, returning existing receipt")
            return existing

        receipt = BroadcastReceipt(
            tx_id=signed.tx_id,
            network=self.network,
            status=BroadcastStatus.SUBMITTED,
            submitted_at=self._clock(),
            explorer_url=self.explorer_link(signed.tx_id),
        )
        tracked = TrackedTransaction(receipt=receipt, signed=signed)
        self._in_flight[signed.tx_id] = tracked

        await self._submit(signed, receipt)
        if receipt.status.is_terminal:
            self._settle(tracked)
        logger.info(
            f"Broadcast {signed.tx_id} on {self.network}: {receipt.status.value}"
            + (f" ({receipt.error.code})" if receipt.error else "")
        )
        return receipt

    @abstractmethod
    async def _submit(self, signed: SignedTransaction, receipt: BroadcastReceipt) -> None:
        """Send the transaction and classify the outcome into ``receipt``."""
        pass

    async def _send_with_retries(self, method: str, params: list) -> Any:
        """Call a submission method, retrying transport failures with backoff.

        Raises:
            RpcError: The node rejected the transaction (never retried)
            RpcTransportError: Still failing after broadcast_max_retries attempts
        """
        attempts = max(1, self.settings.broadcast_max_retries)
        for attempt in range(attempts):
            try:
                return await self.rpc.call(method, params)
            except RpcTransportError as e:
                if attempt == attempts - 1:
                    logger.error(f"{method} on {self.network} failed after {attempts} attempts: {e}")
                    raise
                delay = self.settings.broadcast_backoff_base * (2 ** attempt)
                logger.warning(
                    f"{method} on {self.network} failed ({e}), retry {attempt + 1}/{attempts - 1} in {delay:.1f}s"
                )
                await self._sleep(delay)

    @staticmethod
    def _mark_unknown(receipt: BroadcastReceipt, error: RpcTransportError, attempts: int) -> None:
        receipt.status = BroadcastStatus.UNKNOWN
        receipt.error = BroadcastTransient(
            f"Node unreachable after {attempts} attempts; the transaction may still land",
            reason=error.reason,
            attempts=attempts,
        )

    # ----------------------
    # Status
    # ----------------------

    def get_receipt(self, tx_id: str) -> Optional[BroadcastReceipt]:
        tracked = self._in_flight.get(tx_id)
        if tracked is not None:
            return tracked.receipt
        return self._settled.get(tx_id)

    def _lookup(self, tx_id: str) -> TrackedTransaction:
        tracked = self._in_flight.get(tx_id)
        if tracked is not None:
            return tracked
        return TrackedTransaction(
            receipt=BroadcastReceipt(
                tx_id=tx_id,
                network=self.network,
                status=BroadcastStatus.SUBMITTED,
                submitted_at=self._clock(),
                explorer_url=self.explorer_link(tx_id),
            )
        )

    def _settle(self, tracked: TrackedTransaction) -> None:
        """Stop tracking a terminal transaction and remember its receipt among the recently settled."""
        tx_id = tracked.receipt.tx_id
        self._in_flight.pop(tx_id, None)
        self._settled[tx_id] = tracked.receipt
        self._settled.move_to_end(tx_id)
        while len(self._settled) > SETTLED_RECEIPTS:
            self._settled.popitem(last=False)

    def _update_tracking(self, tracked: TrackedTransaction, owned: bool, seen: bool) -> None:
        """Settle terminal transactions; track foreign ids only while the chain reports them."""
        if tracked.receipt.status.is_terminal:
            if owned:
                self._settle(tracked)
        elif not owned and seen:
            self._in_flight[tracked.receipt.tx_id] = tracked

    async def _refresh(self, tracked: TrackedTransaction) -> None:
        tx_id = tracked.receipt.tx_id
        owned = tx_id in self._in_flight

        previous = tracked.receipt.status
        seen = await self._poll(tracked)
        if tracked.receipt.status != previous:
            logger.info(f"{tx_id} on {self.network}: {previous.value} -> {tracked.receipt.status.value}")
        self._update_tracking(tracked, owned, seen)

    async def poll_status(self, tx_id: str) -> BroadcastReceipt:
        """Refresh the status of a transaction.

        Terminal receipts are returned unchanged. Transactions this
        broadcaster did not submit are looked up by id and only tracked
        while the chain reports them pending.
        """
        settled = self._settled.get(tx_id)
        if settled is not None:
            return settled

        tracked = self._lookup(tx_id)
        await self._refresh(tracked)
        return tracked.receipt

    @abstractmethod
    async def _poll(self, tracked: TrackedTransaction) -> bool:
        """Query the chain and update ``tracked.receipt`` in place.

        Returns:
            True if the chain reported the transaction (pending or final)
        """
        pass

    async def wait_for_confirmation(
        self, receipt: BroadcastReceipt, timeout: Optional[float] = None
    ) -> BroadcastReceipt:
        """Poll until the transaction is terminal or the timeout passes."""
        if receipt.status.is_terminal:
            return receipt
        settled = self._settled.get(receipt.tx_id)
        if settled is not None:
            return settled

        timeout = self.settings.confirmation_timeout if timeout is None else timeout
        deadline = self._clock() + timeout
        tracked = self._lookup(receipt.tx_id)

        while True:
            await self._refresh(tracked)
            if tracked.receipt.status.is_terminal:
                break
            if self._clock() >= deadline:
                owned = receipt.tx_id in self._in_flight
                await self._on_wait_timeout(tracked, timeout)
                self._update_tracking(tracked, owned, seen=False)
                break
            await self._sleep(self.settings.confirmation_poll_interval)

        return tracked.receipt

    async def _on_wait_timeout(self, tracked: TrackedTransaction, timeout: float) -> None:
        """Called when a confirmation wait times out; default leaves the status as is."""
        logger.info(f"{tracked.receipt.tx_id} not confirmed on {self.network} within {timeout:.0f}s")
