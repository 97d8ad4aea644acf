"""Pytest configuration and fixtures."""

import json
import os
from typing import Any, Callable, Optional, Union

import httpx
import pytest
from eth_utils import to_checksum_address
from solders.hash import Hash
from solders.pubkey import Pubkey

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "true"
os.environ["SIGNER_BACKEND"] = "simulated"

from coldcraft.adapters import EvmAdapter, SolanaAdapter
from coldcraft.chains import get_network
from coldcraft.config import Settings
from coldcraft.rpc import JsonRpcClient
from coldcraft.signing import SimulatedSigner, reset_signer

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
EVM_PATH = "44'/60'/0'/0/0"
SOLANA_PATH = "44'/501'/0'/0'"

# First account of the test mnemonic
EVM_ADDRESS = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"

EVM_RECIPIENT = to_checksum_address("0x" + "11" * 20)
EVM_TOKEN = to_checksum_address("0x" + "22" * 20)
EVM_SPENDER = to_checksum_address("0x" + "33" * 20)

SOLANA_RECIPIENT = str(Pubkey.from_bytes(bytes([7] * 32)))
SOLANA_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
BLOCKHASH = str(Hash(bytes(range(32))))

GWEI = 10**9


def ok(result: Any) -> dict:
    """Scripted JSON-RPC result."""
    return {"result": result}


def fail(message: str, code: int = -32000, data: Any = None) -> dict:
    """Scripted JSON-RPC error object."""
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"error": error}


def http(status: int) -> dict:
    """Scripted HTTP-level failure."""
    return {"status": status}


Response = Union[dict, Callable[[list], dict]]


class RpcStub:
    """Scripted JSON-RPC node served through httpx.MockTransport.

    Each method gets a queue of responses; the last one repeats. Methods
    without a script answer with "method not found".
    """

    def __init__(self):
        self.scripts: dict[str, list[Response]] = {}
        self.calls: list[tuple[str, list]] = []
        self.explorer_status = 404
        self.explorer_body: object = {"message": "Not found"}
        self.explorer_requests: list[httpx.Request] = []

    def on(self, method: str, *responses: Response) -> "RpcStub":
        self.scripts[method] = list(responses)
        return self

    def count(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)

    def params(self, method: str) -> list:
        return [params for name, params in self.calls if name == method]

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        if request.method != "POST":
            # Contract ABI lookups
            self.explorer_requests.append(request)
            return httpx.Response(self.explorer_status, json=self.explorer_body)

        payload = json.loads(request.content)
        method, params = payload["method"], payload.get("params", [])
        self.calls.append((method, params))

        script = self.scripts.get(method)
        if not script:
            return httpx.Response(
                200,
                json={"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32601, "message": f"{method} not found"}},
            )

        response = script.pop(0) if len(script) > 1 else script[0]
        if callable(response):
            response = response(params)
        if "status" in response:
            return httpx.Response(response["status"], text="unavailable")
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], **response})


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Sleep replacement that records delays and advances a FakeClock."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.delays: list[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


def fee_history(base_fee: int = 10 * GWEI, rewards: tuple = (1 * GWEI, 2 * GWEI, 3 * GWEI), blocks: int = 4) -> dict:
    """eth_feeHistory result with constant per-block rewards."""
    return {
        "oldestBlock": "0x100",
        "baseFeePerGas": [hex(base_fee)] * (blocks + 1),
        "gasUsedRatio": [0.5] * blocks,
        "reward": [[hex(value) for value in rewards] for _ in range(blocks)],
    }


def evm_node(stub: RpcStub, nonce: int = 0, gas: int = 21_000) -> RpcStub:
    """Script a healthy EVM node."""
    return (
        stub.on("eth_getTransactionCount", ok(hex(nonce)))
        .on("eth_feeHistory", ok(fee_history()))
        .on("eth_estimateGas", ok(hex(gas)))
        .on("eth_chainId", ok(hex(11155111)))
    )


def solana_node(stub: RpcStub, recipient_exists: bool = True, ata_exists: bool = True) -> RpcStub:
    """Script a healthy Solana cluster."""

    def account_info(params: list) -> dict:
        address = params[0]
        if address == SOLANA_RECIPIENT:
            return ok({"context": {"slot": 1}, "value": {"lamports": 1} if recipient_exists else None})
        return ok({"context": {"slot": 1}, "value": {"lamports": 2_039_280} if ata_exists else None})

    return (
        stub.on("getLatestBlockhash", ok({"context": {"slot": 1}, "value": {"blockhash": BLOCKHASH, "lastValidBlockHeight": 1_000}}))
        .on("getAccountInfo", account_info)
        .on("getTokenSupply", ok({"context": {"slot": 1}, "value": {"amount": "1", "decimals": 6, "uiAmountString": "0.000001"}}))
        .on("getMinimumBalanceForRentExemption", ok(890_880))
        .on("getRecentPrioritizationFees", ok([{"slot": i, "prioritizationFee": fee} for i, fee in enumerate([0, 100, 200, 500, 1000, 5000])]))
        .on("simulateTransaction", ok({"context": {"slot": 1}, "value": {"err": None, "logs": [], "unitsConsumed": 1_000}}))
        .on("getHealth", ok("ok"))
    )


@pytest.fixture
def settings() -> Settings:
    """Settings for tests: simulated signer, no ABI lookups, fast retries."""
    return Settings(
        _env_file=None,
        environment="test",
        signer_backend="simulated",
        simulated_signer_mnemonic=TEST_MNEMONIC,
        abi_lookup_enabled=False,
        broadcast_max_retries=3,
        broadcast_backoff_base=0.5,
        confirmation_timeout=10.0,
        confirmation_poll_interval=1.0,
    )


@pytest.fixture
def signer() -> SimulatedSigner:
    """Simulated device, connected and approving."""
    yield SimulatedSigner(TEST_MNEMONIC)
    reset_signer()


@pytest.fixture
def rpc_stub() -> RpcStub:
    return RpcStub()


@pytest.fixture
def rpc(rpc_stub: RpcStub) -> JsonRpcClient:
    return JsonRpcClient("https://rpc.test", timeout=5.0, transport=rpc_stub.transport())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def evm_adapter(settings: Settings) -> EvmAdapter:
    return EvmAdapter(get_network("sepolia", settings), settings)


@pytest.fixture
def solana_adapter(settings: Settings) -> SolanaAdapter:
    return SolanaAdapter(get_network("solana-devnet", settings), settings)
