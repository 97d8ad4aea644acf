"""Top-level facade over the crafting, signing and broadcast pipeline.

Owns the hardware signer, the nonce registry and, per network, an RPC
client, adapter, fee estimator, crafter and broadcaster. Expected pipeline
errors are returned inside result objects; configuration errors and
invariant violations propagate.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from coldcraft.adapters import get_adapter
from coldcraft.adapters.base import ChainAdapter
from coldcraft.broadcast import get_broadcaster
from coldcraft.broadcast.base import Broadcaster
from coldcraft.chains import NETWORKS, ChainFamily, NetworkConfig, get_network
from coldcraft.config import Settings, get_settings
from coldcraft.crafting import EvmCrafter, SolanaCrafter
from coldcraft.crafting.base import TransactionCrafter
from coldcraft.errors import PipelineError, SignatureMismatch, UserRejected, ValidationError
from coldcraft.fees import get_fee_estimator
from coldcraft.fees.base import FeeEstimator
from coldcraft.models import (
    BroadcastReceipt,
    BroadcastStatus,
    CraftResult,
    EvmUnsignedTx,
    FeeEstimate,
    OperationRequest,
    OperationShape,
    SendResult,
    SignatureResult,
    SignedTransaction,
    SignResult,
    SpeedTier,
    UnsignedTransaction,
)
from coldcraft.providers import AbiProvider
from coldcraft.rpc import JsonRpcClient, RpcError, RpcTransportError
from coldcraft.sequencing import NonceRegistry
from coldcraft.signing import HardwareSigner, get_signer, parse_derivation_path
from coldcraft.signing.coordinator import SigningCoordinator

logger = logging.getLogger(__name__)


@dataclass
class NetworkServices:
    """Per-network components, created on first use."""
    network: NetworkConfig
    rpc: JsonRpcClient
    adapter: ChainAdapter
    fees: FeeEstimator
    crafter: TransactionCrafter
    broadcaster: Broadcaster


class Orchestrator:
    """Craft, sign and broadcast transactions on EVM and Solana networks.

    Args:
        signer: Hardware signer (defaults to the configured one)
        settings: Application settings
        transport: httpx transport for every outbound call (tests use MockTransport)
        clock: Time source for reservations, fee staleness and receipts
        sleep: Sleep coroutine for broadcast backoff and confirmation polling
    """

    def __init__(
        self,
        signer: Optional[HardwareSigner] = None,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self.signer = signer or get_signer(self.settings)
        self.coordinator = SigningCoordinator(self.signer)
        self.nonces = NonceRegistry(ttl=self.settings.nonce_reservation_ttl, clock=clock)
        self.abi_provider = (
            AbiProvider(self.settings, transport=transport) if self.settings.abi_lookup_enabled else None
        )

        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._clients: dict[str, JsonRpcClient] = {}
        self._services: dict[str, NetworkServices] = {}
        self._addresses: dict[tuple[ChainFamily, str], str] = {}

    # ----------------------
    # Registry
    # ----------------------

    def _resolve_network(self, name: str) -> NetworkConfig:
        if not isinstance(name, str) or name.lower() not in NETWORKS:
            raise ValidationError(f"Unsupported network: {name}", field="network", rule="unsupported_network")
        return get_network(name, self.settings)

    def _client(self, network: NetworkConfig) -> JsonRpcClient:
        client = self._clients.get(network.name)
        if client is None:
            client = JsonRpcClient(network.rpc_url, timeout=self.settings.rpc_timeout, transport=self._transport)
            self._clients[network.name] = client
        return client

    def services(self, name: str) -> NetworkServices:
        """Get the components for a network.

        Raises:
            ValidationError: Network is not supported
        """
        network = self._resolve_network(name)
        services = self._services.get(network.name)
        if services is not None:
            return services

        rpc = self._client(network)
        adapter = get_adapter(network, self.settings)
        fees = get_fee_estimator(network, rpc, self.settings, clock=self._clock)

        if network.family == ChainFamily.EVM:
            crafter = EvmCrafter(adapter, fees, rpc, self.nonces, self.settings, self.abi_provider)
        else:
            crafter = SolanaCrafter(adapter, fees, rpc, self.settings)

        broadcaster = get_broadcaster(adapter, rpc, self.nonces, self.settings, clock=self._clock, sleep=self._sleep)

        services = NetworkServices(
            network=network,
            rpc=rpc,
            adapter=adapter,
            fees=fees,
            crafter=crafter,
            broadcaster=broadcaster,
        )
        self._services[network.name] = services
        logger.debug(f"Initialized services for {network.name} ({network.rpc_url.split('/v2/')[0]})")
        return services

    def _family(self, target: Union[ChainFamily, str]) -> ChainFamily:
        if isinstance(target, ChainFamily):
            return target
        try:
            return ChainFamily(target.lower())
        except ValueError:
            return self._resolve_network(target).family

    def _default_path(self, family: ChainFamily) -> str:
        if family == ChainFamily.EVM:
            return self.settings.default_evm_path
        return self.settings.default_solana_path

    # ----------------------
    # Addresses and fees
    # ----------------------

    async def get_address(
        self,
        target: Union[ChainFamily, str],
        derivation_path: Optional[str] = None,
        display: bool = False,
    ) -> str:
        """Get the address for a derivation path from the signer.

        Args:
            target: Chain family or network name
            derivation_path: BIP32 path (defaults per family)
            display: Show the address on the device for verification

        Raises:
            ValidationError: Unknown network or malformed path
            SignerUnavailable: Device not ready
        """
        family = self._family(target)
        path = derivation_path or self._default_path(family)
        parse_derivation_path(path)

        key = (family, path)
        if not display and key in self._addresses:
            return self._addresses[key]

        address = await self.signer.get_address(family, path, display=display)
        self._addresses[key] = address
        return address

    async def estimate_fees(self, network: str, shape: Optional[OperationShape] = None) -> FeeEstimate:
        """Estimate slow / standard / fast fees (degrades instead of failing)."""
        return await self.services(network).fees.estimate(shape)

    # ----------------------
    # Pipeline
    # ----------------------

    async def craft(self, request: OperationRequest, tier: Union[SpeedTier, str] = SpeedTier.STANDARD) -> CraftResult:
        """Craft an unsigned transaction for a request."""
        try:
            services = self.services(request.network)
            error = services.adapter.validate(request)
            if error is not None:
                raise error
            sender = await self.get_address(services.network.family, request.derivation_path)
            unsigned = await services.crafter.craft(request, sender, tier)
            return CraftResult(success=True, transaction=unsigned)
        except PipelineError as e:
            logger.warning(f"Craft failed on {request.network}: [{e.code}] {e.message}")
            return CraftResult(success=False, error=e)

    async def sign(self, unsigned: UnsignedTransaction, derivation_path: Optional[str] = None) -> SignResult:
        """Sign a crafted transaction on the device.

        A rejection on the device is final; the transaction's nonce is
        released so the next craft can use it.
        """
        path = derivation_path or unsigned.derivation_path
        try:
            services = self.services(unsigned.network)
            signed = await self.coordinator.sign(services.adapter, unsigned, path)
            return SignResult(success=True, signed=signed)
        except (UserRejected, SignatureMismatch) as e:
            await self.abandon(unsigned)
            return SignResult(success=False, error=e)
        except PipelineError as e:
            logger.warning(f"Signing failed on {unsigned.network}: [{e.code}] {e.message}")
            return SignResult(success=False, error=e)

    async def broadcast(self, signed: SignedTransaction) -> BroadcastReceipt:
        """Submit a signed transaction; failures are reported in the receipt."""
        return await self.services(signed.network).broadcaster.submit(signed)

    async def poll_status(self, tx_id: str, network: str) -> BroadcastReceipt:
        """Refresh a transaction's status."""
        return await self.services(network).broadcaster.poll_status(tx_id)

    async def wait_for_confirmation(
        self, receipt: BroadcastReceipt, timeout: Optional[float] = None
    ) -> BroadcastReceipt:
        """Poll until the transaction is terminal or the timeout passes."""
        return await self.services(receipt.network).broadcaster.wait_for_confirmation(receipt, timeout)

    async def abandon(self, unsigned: UnsignedTransaction) -> bool:
        """Release whatever is held for a crafted transaction that will not be sent."""
        return await self.services(unsigned.network).crafter.abandon(unsigned)

    async def speed_up(self, unsigned: UnsignedTransaction, bump_percent: float = 12.5) -> CraftResult:
        """Craft a same-nonce EVM replacement with raised fees."""
        try:
            services = self.services(unsigned.network)
            if not isinstance(unsigned, EvmUnsignedTx) or not isinstance(services.crafter, EvmCrafter):
                raise ValidationError(
                    "Only EVM transactions can be sped up; re-craft Solana transactions instead",
                    field="transaction",
                    rule="unsupported_operation",
                )
            replacement = await services.crafter.craft_replacement(unsigned, bump_percent)
            return CraftResult(success=True, transaction=replacement)
        except PipelineError as e:
            logger.warning(f"Speed-up failed on {unsigned.network}: [{e.code}] {e.message}")
            return CraftResult(success=False, error=e)

    async def sign_message(
        self,
        target: Union[ChainFamily, str],
        message: Union[str, bytes],
        derivation_path: Optional[str] = None,
    ) -> SignatureResult:
        """Sign an off-chain message (EIP-191 personal_sign, or a Solana off-chain message).

        Raises:
            ValidationError: Malformed path or message
            UserRejected: User declined on the device
        """
        family = self._family(target)
        payload = message.encode("utf-8") if isinstance(message, str) else message
        return await self.coordinator.sign_message(family, derivation_path or self._default_path(family), payload)

    async def send(
        self,
        request: OperationRequest,
        tier: Union[SpeedTier, str] = SpeedTier.STANDARD,
        wait: bool = False,
        timeout: Optional[float] = None,
    ) -> SendResult:
        """Craft, sign and broadcast in one call.

        Args:
            request: Operation request
            tier: Fee tier
            wait: Wait for a terminal status after submission
            timeout: Confirmation timeout when waiting

        Returns:
            SendResult naming the stage that finished or failed
        """
        crafted = await self.craft(request, tier)
        if not crafted.success:
            return SendResult(success=False, stage="craft", error=crafted.error)

        signed = await self.sign(crafted.transaction)
        if not signed.success:
            if not isinstance(signed.error, (UserRejected, SignatureMismatch)):
                await self.abandon(crafted.transaction)
            return SendResult(success=False, stage="sign", transaction=crafted.transaction, error=signed.error)

        receipt = await self.broadcast(signed.signed)
        stage = "broadcast"
        if wait and receipt.status == BroadcastStatus.SUBMITTED:
            receipt = await self.wait_for_confirmation(receipt, timeout)
            stage = "confirm"

        ok = receipt.status == BroadcastStatus.CONFIRMED or (
            not wait and receipt.status == BroadcastStatus.SUBMITTED
        )
        return SendResult(
            success=ok,
            stage=stage,
            transaction=crafted.transaction,
            signed=signed.signed,
            receipt=receipt,
            error=receipt.error,
        )

    # ----------------------
    # Lifecycle
    # ----------------------

    async def _network_health(self, network: NetworkConfig) -> str:
        rpc = self._client(network)
        try:
            if network.family == ChainFamily.EVM:
                chain_id = int(await rpc.call("eth_chainId"), 16)
                if chain_id != network.chain_id:
                    logger.error(f"{network.name} endpoint reports chain id {chain_id}, expected {network.chain_id}")
                    return "chain_id_mismatch"
            else:
                await rpc.call("getHealth")
        except (RpcError, RpcTransportError, TypeError, ValueError) as e:
            logger.warning(f"Health check failed for {network.name}: {e}")
            return "unreachable"
        return "ok"

    async def health_check(self, networks: Optional[list[str]] = None) -> dict:
        """Check the signer and network endpoints without side effects.

        Returns:
            {"signer": "ok"|"unreachable", "networks": {name: "ok"|"unreachable"|"chain_id_mismatch"}}
        """
        configs = [self._resolve_network(name) for name in (networks or list(NETWORKS))]
        signer_ok, *statuses = await asyncio.gather(
            self.signer.health_check(),
            *(self._network_health(config) for config in configs),
        )
        return {
            "signer": "ok" if signer_ok else "unreachable",
            "networks": {config.name: status for config, status in zip(configs, statuses)},
        }

    async def close(self) -> None:
        """Release the device."""
        await self.signer.close()
        logger.info("Orchestrator closed")
