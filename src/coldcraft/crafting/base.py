"""Base interface for transaction crafters.

Crafting turns a validated intent into an unsigned transaction:

1. Validate the request (adapter)
2. Resolve sequencing (EVM nonce reservation / Solana blockhash)
3. Resolve fees (override wins over tier)
4. Assemble (adapter)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Union

from coldcraft.adapters.base import ChainAdapter
from coldcraft.config import Settings, get_settings
from coldcraft.errors import RpcUnavailable, ValidationError
from coldcraft.fees.base import FeeEstimator
from coldcraft.models import OperationRequest, SpeedTier, UnsignedTransaction
from coldcraft.rpc import JsonRpcClient, RpcError, RpcTransportError

logger = logging.getLogger(__name__)


def parse_tier(tier: Union[SpeedTier, str]) -> SpeedTier:
    """Parse a speed tier name.

    Raises:
        ValidationError: If the tier is unknown
    """
    try:
        return SpeedTier(tier)
    except ValueError:
        raise ValidationError(
            f"Unknown fee tier {tier!r} (expected slow, standard or fast)",
            field="tier",
            rule="fee_tier",
        )


class TransactionCrafter(ABC):
    """Per-network transaction crafter."""

    def __init__(
        self,
        adapter: ChainAdapter,
        fee_estimator: FeeEstimator,
        rpc: JsonRpcClient,
        settings: Optional[Settings] = None,
    ):
        self.adapter = adapter
        self.fee_estimator = fee_estimator
        self.rpc = rpc
        self.settings = settings or get_settings()

    @property
    def network(self) -> str:
        return self.adapter.network.name

    async def craft(
        self,
        request: OperationRequest,
        sender: str,
        tier: Union[SpeedTier, str] = SpeedTier.STANDARD,
    ) -> UnsignedTransaction:
        """Craft an unsigned transaction.

        Args:
            request: Operation request
            sender: Address of the key at request.derivation_path
            tier: Fee tier used for fields the request does not override

        Raises:
            ValidationError: Request violates a chain rule
            SequencingConflict: Another transaction holds the sender's nonce
            RpcUnavailable: Chain state could not be read
        """
        speed = parse_tier(tier)
        error = self.adapter.validate(request)
        if error is not None:
            logger.info(f"Rejected {request.__class__.__name__} on {self.network}: {error.message}")
            raise error

        unsigned = await self._craft(request, sender, speed)
        logger.info(
            f"Crafted {unsigned.family.value} {request.kind.value} on {self.network} "
            f"from {sender} (tier={speed.value})"
        )
        return unsigned

    @abstractmethod
    async def _craft(self, request: OperationRequest, sender: str, tier: SpeedTier) -> UnsignedTransaction:
        pass

    async def abandon(self, unsigned: UnsignedTransaction) -> bool:
        """Release anything held for an unsigned transaction that won't be sent."""
        return False

    async def _rpc(self, method: str, params: Optional[list] = None) -> Any:
        """RPC call for chain state needed to craft."""
        try:
            return await self.rpc.call(method, params)
        except (RpcError, RpcTransportError) as e:
            logger.error(f"Failed to read chain state on {self.network}: {e}")
            raise RpcUnavailable(f"Could not read chain state from {self.network}: {e}", method=method)
