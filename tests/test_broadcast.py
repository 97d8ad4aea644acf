"""Tests for transaction submission and status tracking."""

from dataclasses import replace
from decimal import Decimal

import pytest
import pytest_asyncio

from coldcraft.adapters.solana import SolanaChainContext
from coldcraft.broadcast import EvmBroadcaster, SolanaBroadcaster, get_broadcaster
from coldcraft.broadcast import base as broadcast_base
from coldcraft.broadcast.base import TrackedTransaction
from coldcraft.chains import ChainFamily
from coldcraft.errors import BroadcastRejected, BroadcastTransient, InvariantViolation, TransactionDropped
from coldcraft.models import (
    BroadcastReceipt,
    BroadcastStatus,
    EvmNativeTransfer,
    EvmTierFee,
    SolanaNativeTransfer,
    SolanaTierFee,
    SpeedTier,
)
from coldcraft.sequencing import NonceRegistry, ReservationState

from conftest import (
    BLOCKHASH,
    EVM_ADDRESS,
    EVM_PATH,
    EVM_RECIPIENT,
    GWEI,
    SOLANA_PATH,
    SOLANA_RECIPIENT,
    SleepRecorder,
    fail,
    http,
    ok,
)

NETWORK = "sepolia"


async def chain_nonce_zero() -> int:
    return 0


@pytest.fixture
def nonces(clock) -> NonceRegistry:
    return NonceRegistry(ttl=300.0, clock=clock)


@pytest.fixture
def sleeper(clock) -> SleepRecorder:
    return SleepRecorder(clock)


async def sign_evm(evm_adapter, signer, nonce: int = 0):
    fee = EvmTierFee(
        tier=SpeedTier.STANDARD,
        max_fee_per_gas=12 * GWEI,
        max_priority_fee_per_gas=2 * GWEI,
        base_fee_per_gas=10 * GWEI,
        gas_limit=21_000,
        total_cost=Decimal(21_000 * 12) / Decimal(10**9),
        estimated_seconds=24,
    )
    request = EvmNativeTransfer(network=NETWORK, derivation_path=EVM_PATH, recipient=EVM_RECIPIENT, amount=10**15)
    unsigned = evm_adapter.build_unsigned(request, EVM_ADDRESS, fee, nonce)
    signature = await signer.sign_transaction(evm_adapter.signature_request(unsigned))
    return evm_adapter.attach_signature(unsigned, signature)


async def sign_solana(solana_adapter, signer):
    sender = await signer.get_address(ChainFamily.SOLANA, SOLANA_PATH)
    fee = SolanaTierFee(
        tier=SpeedTier.STANDARD,
        compute_unit_price=1_000,
        compute_unit_limit=200_000,
        base_fee_lamports=5000,
        total_cost=Decimal(5200) / Decimal(10**9),
        estimated_seconds=2,
    )
    request = SolanaNativeTransfer(
        network="solana-devnet", derivation_path=SOLANA_PATH, recipient=SOLANA_RECIPIENT, amount=1_000_000
    )
    context = SolanaChainContext(recent_blockhash=BLOCKHASH, last_valid_block_height=1_000)
    unsigned = solana_adapter.build_unsigned(request, sender, fee, context)
    signature = await signer.sign_transaction(solana_adapter.signature_request(unsigned))
    return solana_adapter.attach_signature(unsigned, signature)


def evm_receipt(status: str = "0x1", block: str = "0x10") -> dict:
    return ok({"blockNumber": block, "status": status, "gasUsed": "0x5208"})


def signature_status(slot: int = 5, err=None, level: str = "confirmed") -> dict:
    return ok({
        "context": {"slot": slot},
        "value": [{"slot": slot, "confirmations": None, "err": err, "confirmationStatus": level}],
    })


class TestEvmSubmission:
    """Tests for EVM submission outcomes and nonce bookkeeping."""

    @pytest.fixture
    def broadcaster(self, evm_adapter, rpc, nonces, settings, clock, sleeper):
        return EvmBroadcaster(evm_adapter, rpc, nonces, settings, clock=clock, sleep=sleeper)

    @pytest_asyncio.fixture
    async def signed(self, evm_adapter, signer, nonces):
        await nonces.reserve(EVM_ADDRESS, NETWORK, chain_nonce_zero)
        return await sign_evm(evm_adapter, signer)

    @pytest.mark.asyncio
    async def test_accepted(self, broadcaster, signed, rpc_stub, nonces):
        """Test a clean submission marks the reservation submitted."""
        rpc_stub.on("eth_sendRawTransaction", ok(signed.tx_id))
        receipt = await broadcaster.submit(signed)

        assert receipt.status == BroadcastStatus.SUBMITTED
        assert receipt.nonce == 0
        assert receipt.explorer_url == f"https://sepolia.etherscan.io/tx/{signed.tx_id}"
        assert rpc_stub.params("eth_sendRawTransaction")[0] == ["0x" + signed.wire_bytes.hex()]
        assert nonces.get(EVM_ADDRESS, NETWORK).state == ReservationState.SUBMITTED

    @pytest.mark.asyncio
    async def test_already_known_is_submitted(self, broadcaster, signed, rpc_stub):
        """Test that a duplicate the node already holds counts as submitted."""
        rpc_stub.on("eth_sendRawTransaction", fail("already known"))
        receipt = await broadcaster.submit(signed)

        assert receipt.status == BroadcastStatus.SUBMITTED
        assert receipt.error is None

    @pytest.mark.asyncio
    async def test_resubmit_returns_existing_receipt(self, broadcaster, signed, rpc_stub):
        """Test that submitting the same transaction twice sends it once."""
        rpc_stub.on("eth_sendRawTransaction", ok(signed.tx_id))
        first = await broadcaster.submit(signed)
        second = await broadcaster.submit(signed)

        assert second is first
        assert rpc_stub.count("eth_sendRawTransaction") == 1

    @pytest.mark.asyncio
    async def test_nonce_too_low(self, broadcaster, signed, rpc_stub, nonces):
        """Test that a used nonce fails and the next craft moves past it."""
        rpc_stub.on("eth_sendRawTransaction", fail("nonce too low: next nonce 1, tx nonce 0"))
        receipt = await broadcaster.submit(signed)

        assert receipt.status == BroadcastStatus.FAILED
        assert isinstance(receipt.error, BroadcastRejected)
        assert receipt.error.reason == "nonce_too_low"
        assert nonces.get(EVM_ADDRESS, NETWORK) is None

        # The node's pending count can lag; the registry still skips nonce 0
        reservation = await nonces.reserve(EVM_ADDRESS, NETWORK, chain_nonce_zero)
        assert reservation.nonce == 1

    @pytest.mark.asyncio
    async def test_replacement_underpriced_keeps_reservation(self, broadcaster, signed, rpc_stub, nonces):
        """Test that an underpriced replacement keeps the nonce for a bumped resend."""
        rpc_stub.on("eth_sendRawTransaction", fail("replacement transaction underpriced"))
        receipt = await broadcaster.submit(signed)

        assert receipt.status == BroadcastStatus.FAILED
        assert receipt.error.reason == "replacement_underpriced"
        assert "speed_up" in receipt.error.hint
        assert nonces.get(EVM_ADDRESS, NETWORK).nonce == 0

    @pytest.mark.asyncio
    async def test_insufficient_funds_releases_nonce(self, broadcaster, signed, rpc_stub, nonces):
        """Test that a rejection leaves the nonce free for the next craft."""
        rpc_stub.on("eth_sendRawTransaction", fail("insufficient funds for gas * price + value"))
        receipt = await broadcaster.submit(signed)

        assert receipt.error.reason == "insufficient_funds"
        assert receipt.error.details["node_message"].startswith("insufficient funds")
        reservation = await nonces.reserve(EVM_ADDRESS, NETWORK, chain_nonce_zero)
        assert reservation.nonce == 0

    @pytest.mark.asyncio
    async def test_transient_failures_exhaust_retries(self, broadcaster, signed, rpc_stub, sleeper, nonces):
        """Test bounded exponential backoff ending in unknown status."""
        rpc_stub.on("eth_sendRawTransaction", http(503))
        receipt = await broadcaster.submit(signed)

        assert receipt.status == BroadcastStatus.UNKNOWN
        assert isinstance(receipt.error, BroadcastTransient)
        assert receipt.error.details["attempts"] == 3
        assert rpc_stub.count("eth_sendRawTransaction") == 3
        assert sleeper.delays == [0.5, 1.0]
        # The transaction may have landed, so the nonce stays held
        assert nonces.get(EVM_ADDRESS, NETWORK) is not None

    @pytest.mark.asyncio
    async def test_transient_then_accepted(self, broadcaster, signed, rpc_stub, sleeper):
        """Test that a retry after a 503 succeeds."""
        rpc_stub.on("eth_sendRawTransaction", http(503), ok(signed.tx_id))
        receipt = await broadcaster.submit(signed)

        assert receipt.status == BroadcastStatus.SUBMITTED
        assert sleeper.delays == [0.5]

    @pytest.mark.asyncio
    async def test_unknown_can_be_resubmitted(self, broadcaster, signed, rpc_stub):
        """Test that an unknown outcome allows sending the same bytes again."""
        rpc_stub.on("eth_sendRawTransaction", http(503), http(503), http(503), ok(signed.tx_id))
        first = await broadcaster.submit(signed)
        second = await broadcaster.submit(signed)

        assert first.status == BroadcastStatus.UNKNOWN
        assert second.status == BroadcastStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_wire_bytes_must_match(self, broadcaster, signed):
        """Test that altered wire bytes are fatal."""
        with pytest.raises(InvariantViolation):
            await broadcaster.submit(replace(signed, wire_bytes=signed.wire_bytes + b"\x00"))


class TestEvmStatus:
    """Tests for EVM status polling."""

    @pytest.fixture
    def broadcaster(self, evm_adapter, rpc, nonces, settings, clock, sleeper):
        return EvmBroadcaster(evm_adapter, rpc, nonces, settings, clock=clock, sleep=sleeper)

    @pytest_asyncio.fixture
    async def submitted(self, broadcaster, evm_adapter, signer, nonces, rpc_stub):
        await nonces.reserve(EVM_ADDRESS, NETWORK, chain_nonce_zero)
        signed = await sign_evm(evm_adapter, signer)
        rpc_stub.on("eth_sendRawTransaction", ok(signed.tx_id))
        return await broadcaster.submit(signed)

    @pytest.mark.asyncio
    async def test_confirmed(self, broadcaster, submitted, rpc_stub, nonces):
        """Test a successful receipt confirms and consumes the nonce."""
        rpc_stub.on("eth_getTransactionReceipt", evm_receipt())
        receipt = await broadcaster.poll_status(submitted.tx_id)

        assert receipt.status == BroadcastStatus.CONFIRMED
        assert receipt.block_number == 16
        assert nonces.get(EVM_ADDRESS, NETWORK) is None
        assert (await nonces.reserve(EVM_ADDRESS, NETWORK, chain_nonce_zero)).nonce == 1

    @pytest.mark.asyncio
    async def test_reverted(self, broadcaster, submitted, rpc_stub):
        """Test that a status 0 receipt is a failure that still used the nonce."""
        rpc_stub.on("eth_getTransactionReceipt", evm_receipt(status="0x0"))
        receipt = await broadcaster.poll_status(submitted.tx_id)

        assert receipt.status == BroadcastStatus.FAILED
        assert receipt.error.reason == "reverted"

    @pytest.mark.asyncio
    async def test_terminal_receipt_unchanged(self, broadcaster, submitted, rpc_stub):
        """Test that polling a confirmed transaction does not query the node."""
        rpc_stub.on("eth_getTransactionReceipt", evm_receipt())
        await broadcaster.poll_status(submitted.tx_id)
        receipt = await broadcaster.poll_status(submitted.tx_id)

        assert receipt.status == BroadcastStatus.CONFIRMED
        assert rpc_stub.count("eth_getTransactionReceipt") == 1

    @pytest.mark.asyncio
    async def test_pending_stays_submitted(self, broadcaster, submitted, rpc_stub):
        """Test that a mempool transaction is still submitted."""
        rpc_stub.on("eth_getTransactionReceipt", ok(None))
        rpc_stub.on("eth_getTransactionByHash", ok({"hash": submitted.tx_id, "blockNumber": None}))

        for _ in range(3):
            receipt = await broadcaster.poll_status(submitted.tx_id)
        assert receipt.status == BroadcastStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_dropped_after_consecutive_misses(self, broadcaster, submitted, rpc_stub, nonces):
        """Test that a transaction unknown to the node twice in a row is dropped."""
        rpc_stub.on("eth_getTransactionReceipt", ok(None))
        rpc_stub.on("eth_getTransactionByHash", ok(None))

        first = await broadcaster.poll_status(submitted.tx_id)
        assert first.status == BroadcastStatus.SUBMITTED

        second = await broadcaster.poll_status(submitted.tx_id)
        assert second.status == BroadcastStatus.DROPPED
        assert isinstance(second.error, TransactionDropped)
        assert "re-craft" in second.error.hint
        assert (await nonces.reserve(EVM_ADDRESS, NETWORK, chain_nonce_zero)).nonce == 0

    @pytest.mark.asyncio
    async def test_poll_error_leaves_status(self, broadcaster, submitted, rpc_stub):
        """Test that an unreachable node does not change the status."""
        rpc_stub.on("eth_getTransactionReceipt", http(502))
        receipt = await broadcaster.poll_status(submitted.tx_id)

        assert receipt.status == BroadcastStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_wait_for_confirmation(self, broadcaster, submitted, rpc_stub, sleeper):
        """Test polling until the receipt appears."""
        rpc_stub.on("eth_getTransactionReceipt", ok(None), ok(None), evm_receipt())
        rpc_stub.on("eth_getTransactionByHash", ok({"hash": submitted.tx_id}))

        receipt = await broadcaster.wait_for_confirmation(submitted)

        assert receipt.status == BroadcastStatus.CONFIRMED
        assert sleeper.delays == [1.0, 1.0]

    @pytest.mark.asyncio
    async def test_untracked_transaction_lookup(self, broadcaster, rpc_stub):
        """Test polling a hash this process did not submit."""
        rpc_stub.on("eth_getTransactionReceipt", evm_receipt(block="0x20"))
        receipt = await broadcaster.poll_status("0x" + "ab" * 32)

        assert receipt.status == BroadcastStatus.CONFIRMED
        assert receipt.block_number == 32
        assert broadcaster._in_flight == {}

    @pytest.mark.asyncio
    async def test_unknown_lookups_are_not_retained(self, broadcaster, rpc_stub):
        """Test that polling ids the node does not know leaves nothing tracked."""
        rpc_stub.on("eth_getTransactionReceipt", ok(None))
        rpc_stub.on("eth_getTransactionByHash", ok(None))

        for i in range(500):
            await broadcaster.poll_status("0x%064x" % i)

        assert broadcaster._in_flight == {}
        assert len(broadcaster._settled) == 0

    @pytest.mark.asyncio
    async def test_pending_lookup_tracked_until_final(self, broadcaster, rpc_stub):
        """Test that a foreign pending transaction is tracked only until it lands."""
        tx_id = "0x" + "cd" * 32
        rpc_stub.on("eth_getTransactionReceipt", ok(None), evm_receipt())
        rpc_stub.on("eth_getTransactionByHash", ok({"hash": tx_id, "blockNumber": None}))

        first = await broadcaster.poll_status(tx_id)
        assert first.status == BroadcastStatus.SUBMITTED
        assert tx_id in broadcaster._in_flight

        second = await broadcaster.poll_status(tx_id)
        assert second.status == BroadcastStatus.CONFIRMED
        assert tx_id not in broadcaster._in_flight

    @pytest.mark.asyncio
    async def test_terminal_receipt_leaves_in_flight(self, broadcaster, submitted, rpc_stub):
        """Test that a confirmed transaction stops being tracked but its receipt is still served."""
        rpc_stub.on("eth_getTransactionReceipt", evm_receipt())
        await broadcaster.poll_status(submitted.tx_id)

        assert broadcaster._in_flight == {}
        assert broadcaster.get_receipt(submitted.tx_id) is submitted
        assert submitted.status == BroadcastStatus.CONFIRMED

    def test_settled_receipts_are_bounded(self, broadcaster, monkeypatch):
        """Test that only the most recent terminal receipts are remembered."""
        monkeypatch.setattr(broadcast_base, "SETTLED_RECEIPTS", 2)

        for i in range(5):
            receipt = BroadcastReceipt(tx_id=f"0x{i:064x}", network=NETWORK, status=BroadcastStatus.CONFIRMED)
            broadcaster._settle(TrackedTransaction(receipt=receipt))

        assert list(broadcaster._settled) == [f"0x{3:064x}", f"0x{4:064x}"]

    @pytest.mark.asyncio
    async def test_rejected_submission_not_in_flight(self, broadcaster, evm_adapter, signer, nonces, rpc_stub):
        """Test that a rejected submission is settled immediately."""
        await nonces.reserve(EVM_ADDRESS, NETWORK, chain_nonce_zero)
        signed = await sign_evm(evm_adapter, signer)
        rpc_stub.on("eth_sendRawTransaction", fail("insufficient funds for gas * price + value"))

        receipt = await broadcaster.submit(signed)

        assert receipt.status == BroadcastStatus.FAILED
        assert broadcaster._in_flight == {}
        assert await broadcaster.submit(signed) is receipt
        assert rpc_stub.count("eth_sendRawTransaction") == 1


class TestSolanaBroadcaster:
    """Tests for Solana submission and expiry."""

    @pytest.fixture
    def broadcaster(self, solana_adapter, rpc, settings, clock, sleeper):
        return SolanaBroadcaster(solana_adapter, rpc, settings, clock=clock, sleep=sleeper)

    @pytest_asyncio.fixture
    async def signed(self, solana_adapter, signer):
        return await sign_solana(solana_adapter, signer)

    @pytest.mark.asyncio
    async def test_accepted(self, broadcaster, signed, rpc_stub):
        """Test base64 submission with preflight enabled."""
        rpc_stub.on("sendTransaction", ok(signed.tx_id))
        receipt = await broadcaster.submit(signed)

        assert receipt.status == BroadcastStatus.SUBMITTED
        assert receipt.explorer_url == f"https://solscan.io/tx/{signed.tx_id}?cluster=devnet"
        options = rpc_stub.params("sendTransaction")[0][1]
        assert options["encoding"] == "base64"
        assert options["skipPreflight"] is False

    @pytest.mark.asyncio
    async def test_expired_blockhash_is_dropped(self, broadcaster, signed, rpc_stub):
        """Test that an expired blockhash is reported as dropped, not failed."""
        rpc_stub.on("sendTransaction", fail("Transaction simulation failed: Blockhash not found"))
        receipt = await broadcaster.submit(signed)

        assert receipt.status == BroadcastStatus.DROPPED
        assert receipt.error.code == "dropped"
        assert receipt.error.details["last_valid_block_height"] == 1_000

    @pytest.mark.asyncio
    async def test_preflight_failure_carries_logs(self, broadcaster, signed, rpc_stub):
        """Test that simulation logs are attached to the rejection."""
        logs = ["Program 11111111111111111111111111111111 failed: custom program error: 0x1"]
        rpc_stub.on(
            "sendTransaction",
            fail("Transaction simulation failed: Error processing Instruction 2", data={"logs": logs}),
        )
        receipt = await broadcaster.submit(signed)

        assert receipt.status == BroadcastStatus.FAILED
        assert receipt.error.reason == "preflight_failed"
        assert receipt.error.details["logs"] == logs

    @pytest.mark.asyncio
    async def test_confirmed(self, broadcaster, signed, rpc_stub):
        """Test a confirmed signature status."""
        rpc_stub.on("sendTransaction", ok(signed.tx_id))
        rpc_stub.on("getSignatureStatuses", signature_status(slot=42))
        await broadcaster.submit(signed)
        receipt = await broadcaster.poll_status(signed.tx_id)

        assert receipt.status == BroadcastStatus.CONFIRMED
        assert receipt.slot == 42
        assert rpc_stub.params("getSignatureStatuses")[0] == [[signed.tx_id], {"searchTransactionHistory": True}]

    @pytest.mark.asyncio
    async def test_execution_error(self, broadcaster, signed, rpc_stub):
        """Test that an on-chain instruction error fails the transaction."""
        rpc_stub.on("sendTransaction", ok(signed.tx_id))
        rpc_stub.on("getSignatureStatuses", signature_status(err={"InstructionError": [2, {"Custom": 1}]}))
        await broadcaster.submit(signed)
        receipt = await broadcaster.poll_status(signed.tx_id)

        assert receipt.status == BroadcastStatus.FAILED
        assert receipt.error.reason == "execution_failed"

    @pytest.mark.asyncio
    async def test_block_height_expiry(self, broadcaster, signed, rpc_stub):
        """Test that passing the last valid block height drops the transaction."""
        rpc_stub.on("sendTransaction", ok(signed.tx_id))
        rpc_stub.on("getSignatureStatuses", ok({"context": {"slot": 1}, "value": [None]}))
        rpc_stub.on("getBlockHeight", ok(999), ok(1_001))
        await broadcaster.submit(signed)

        assert (await broadcaster.poll_status(signed.tx_id)).status == BroadcastStatus.SUBMITTED
        receipt = await broadcaster.poll_status(signed.tx_id)
        assert receipt.status == BroadcastStatus.DROPPED
        assert isinstance(receipt.error, TransactionDropped)

    @pytest.mark.asyncio
    async def test_wait_timeout_drops(self, broadcaster, signed, rpc_stub, sleeper):
        """Test that a confirmation timeout reports the transaction dropped."""
        rpc_stub.on("sendTransaction", ok(signed.tx_id))
        rpc_stub.on("getSignatureStatuses", ok({"context": {"slot": 1}, "value": [None]}))
        rpc_stub.on("getBlockHeight", ok(10))
        receipt = await broadcaster.submit(signed)

        receipt = await broadcaster.wait_for_confirmation(receipt, timeout=3.0)

        assert receipt.status == BroadcastStatus.DROPPED
        assert sleeper.delays == [1.0, 1.0, 1.0]


def test_factory_selects_family(evm_adapter, solana_adapter, rpc, nonces, settings):
    """Test that the factory picks the broadcaster by chain family."""
    assert isinstance(get_broadcaster(evm_adapter, rpc, nonces, settings), EvmBroadcaster)
    assert isinstance(get_broadcaster(solana_adapter, rpc, nonces, settings), SolanaBroadcaster)
