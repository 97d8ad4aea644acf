"""Tests for the Solana adapter."""

from decimal import Decimal

import pytest
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import get_associated_token_address

from coldcraft.adapters.solana import COMPUTE_BUDGET_PROGRAM_ID, MEMO_PROGRAM_ID, SolanaChainContext
from coldcraft.chains import ChainFamily
from coldcraft.errors import ValidationError
from coldcraft.models import (
    AccountSpec,
    RawInstruction,
    SolanaNativeTransfer,
    SolanaRawInstructionSet,
    SolanaTierFee,
    SolanaTokenApproval,
    SolanaTokenRevoke,
    SolanaTokenTransfer,
    SpeedTier,
)

from conftest import BLOCKHASH, SOLANA_MINT, SOLANA_PATH, SOLANA_RECIPIENT

SENDER = str(Pubkey.from_bytes(bytes([9] * 32)))
OTHER_SIGNER = str(Pubkey.from_bytes(bytes([5] * 32)))
DELEGATE = str(Pubkey.from_bytes(bytes([6] * 32)))


def tier_fee(price: int = 1_000, limit: int = 200_000) -> SolanaTierFee:
    return SolanaTierFee(
        tier=SpeedTier.STANDARD,
        compute_unit_price=price,
        compute_unit_limit=limit,
        base_fee_lamports=5000,
        total_cost=Decimal(5200) / Decimal(10**9),
        estimated_seconds=2,
    )


def context(**kwargs) -> SolanaChainContext:
    fields = dict(recent_blockhash=BLOCKHASH, last_valid_block_height=1_000)
    fields.update(kwargs)
    return SolanaChainContext(**fields)


def native_transfer(**kwargs) -> SolanaNativeTransfer:
    fields = dict(network="solana-devnet", derivation_path=SOLANA_PATH, recipient=SOLANA_RECIPIENT, amount=1_000_000)
    fields.update(kwargs)
    return SolanaNativeTransfer(**fields)


def token_transfer(**kwargs) -> SolanaTokenTransfer:
    fields = dict(network="solana-devnet", derivation_path=SOLANA_PATH, mint=SOLANA_MINT, recipient=SOLANA_RECIPIENT, amount=5_000_000)
    fields.update(kwargs)
    return SolanaTokenTransfer(**fields)


def token_approval(**kwargs) -> SolanaTokenApproval:
    fields = dict(network="solana-devnet", derivation_path=SOLANA_PATH, mint=SOLANA_MINT, delegate=DELEGATE, amount=2_500_000)
    fields.update(kwargs)
    return SolanaTokenApproval(**fields)


def token_revoke(**kwargs) -> SolanaTokenRevoke:
    fields = dict(network="solana-devnet", derivation_path=SOLANA_PATH, mint=SOLANA_MINT)
    fields.update(kwargs)
    return SolanaTokenRevoke(**fields)


class TestSolanaValidation:
    """Tests for Solana request validation."""

    def test_valid_native_transfer(self, solana_adapter):
        """Test that a well-formed transfer passes."""
        assert solana_adapter.validate(native_transfer()) is None

    def test_path_must_be_hardened(self, solana_adapter):
        """Test that ed25519 paths with unhardened components are refused."""
        error = solana_adapter.validate(native_transfer(derivation_path="44'/501'/0'/0"))
        assert error.rule == "hardened_path"

    def test_invalid_pubkey(self, solana_adapter):
        """Test that a malformed recipient is refused."""
        error = solana_adapter.validate(native_transfer(recipient="not-a-key"))
        assert error.field == "recipient"
        assert error.rule == "pubkey_format"

    def test_zero_amount(self, solana_adapter):
        """Test that a zero lamport transfer is refused."""
        assert solana_adapter.validate(native_transfer(amount=0)).rule == "positive_amount"

    def test_compute_budget_is_reserved(self, solana_adapter):
        """Test that callers cannot supply their own compute budget instructions."""
        request = SolanaRawInstructionSet(
            network="solana-devnet",
            derivation_path=SOLANA_PATH,
            instructions=(RawInstruction(program_id=str(COMPUTE_BUDGET_PROGRAM_ID), data=b"\x02"),),
        )
        assert solana_adapter.validate(request).rule == "compute_budget_reserved"

    def test_memo_must_be_last(self, solana_adapter):
        """Test that a memo in the middle of a raw set is refused."""
        request = SolanaRawInstructionSet(
            network="solana-devnet",
            derivation_path=SOLANA_PATH,
            instructions=(
                RawInstruction(program_id=str(MEMO_PROGRAM_ID), data=b"hi"),
                RawInstruction(program_id=str(SYSTEM_PROGRAM_ID), data=b"\x00"),
            ),
        )
        assert solana_adapter.validate(request).rule == "memo_position"

    def test_missing_token_account(self, solana_adapter):
        """Test that a transfer to a wallet without a token account is refused by default."""
        error = solana_adapter.validate_chain_state(
            token_transfer(), context(decimals=6, recipient_token_account_exists=False)
        )
        assert error.field == "recipient"
        assert error.rule == "missing_token_account"

    def test_rent_exempt_minimum(self, solana_adapter):
        """Test that funding a new account below the rent minimum is refused."""
        error = solana_adapter.validate_chain_state(
            native_transfer(amount=1_000), context(recipient_exists=False, rent_exempt_minimum=890_880)
        )
        assert error.rule == "rent_exempt_minimum"
        assert error.details["minimum"] == 890_880


class TestSolanaAssembly:
    """Tests for message assembly and signing round trips."""

    def test_compute_budget_first_memo_last(self, solana_adapter):
        """Test the fixed instruction order."""
        unsigned = solana_adapter.build_unsigned(native_transfer(memo="invoice 7"), SENDER, tier_fee(), context())
        programs = [ix.program_id for ix in unsigned.instructions]

        assert programs == [COMPUTE_BUDGET_PROGRAM_ID, COMPUTE_BUDGET_PROGRAM_ID, SYSTEM_PROGRAM_ID, MEMO_PROGRAM_ID]
        assert unsigned.instructions[-1].accounts == []
        assert "Memo: invoice 7" in unsigned.display_summary
        assert f"Send 0.001 SOL to {SOLANA_RECIPIENT}" in unsigned.display_summary

    def test_payload_is_deterministic(self, solana_adapter):
        """Test that equal inputs give byte-identical messages."""
        a = solana_adapter.build_unsigned(native_transfer(), SENDER, tier_fee(), context())
        b = solana_adapter.build_unsigned(native_transfer(), SENDER, tier_fee(), context())

        assert a.signing_payload == b.signing_payload
        assert a.display_summary == b.display_summary
        assert solana_adapter.signing_payload(a) == a.signing_payload

    def test_missing_token_account_blocks_build(self, solana_adapter):
        """Test that assembly refuses an implicit token account creation."""
        with pytest.raises(ValidationError) as exc_info:
            solana_adapter.build_unsigned(
                token_transfer(), SENDER, tier_fee(), context(decimals=6, recipient_token_account_exists=False)
            )
        assert exc_info.value.rule == "missing_token_account"

    def test_token_account_created_when_requested(self, solana_adapter):
        """Test that an opted-in transfer creates the token account first and warns."""
        unsigned = solana_adapter.build_unsigned(
            token_transfer(create_recipient_account=True),
            SENDER,
            tier_fee(),
            context(decimals=6, recipient_token_account_exists=False),
        )
        programs = [ix.program_id for ix in unsigned.instructions]

        assert programs[2:] == [ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID]
        assert unsigned.creates_account
        assert any("rent" in w for w in unsigned.warnings)
        assert "Transfer 5 of mint" in unsigned.display_summary

    def test_token_approval(self, solana_adapter):
        """Test approve_checked on the owner's token account and its display line."""
        unsigned = solana_adapter.build_unsigned(
            token_approval(memo="allowance"), SENDER, tier_fee(), context(decimals=6)
        )
        approve = unsigned.instructions[2]
        source = get_associated_token_address(Pubkey.from_string(SENDER), Pubkey.from_string(SOLANA_MINT))

        assert approve.program_id == TOKEN_PROGRAM_ID
        assert bytes(approve.data)[0] == 13
        assert bytes(approve.data)[9] == 6
        assert [str(meta.pubkey) for meta in approve.accounts][:4] == [str(source), SOLANA_MINT, DELEGATE, SENDER]
        assert unsigned.instructions[-1].program_id == MEMO_PROGRAM_ID
        assert f"Approve {DELEGATE} to spend 2.5 of mint {SOLANA_MINT}" in unsigned.display_summary

    def test_token_approval_needs_decimals(self, solana_adapter):
        """Test that an approval without known mint decimals is refused."""
        with pytest.raises(ValidationError) as exc_info:
            solana_adapter.build_unsigned(token_approval(), SENDER, tier_fee(), context())
        assert exc_info.value.rule == "decimals_unknown"

    def test_token_revoke(self, solana_adapter):
        """Test revoke on the owner's token account and its display line."""
        unsigned = solana_adapter.build_unsigned(token_revoke(), SENDER, tier_fee(), context())
        programs = [ix.program_id for ix in unsigned.instructions]
        revoke_ix = unsigned.instructions[2]
        source = get_associated_token_address(Pubkey.from_string(SENDER), Pubkey.from_string(SOLANA_MINT))

        assert programs == [COMPUTE_BUDGET_PROGRAM_ID, COMPUTE_BUDGET_PROGRAM_ID, TOKEN_PROGRAM_ID]
        assert bytes(revoke_ix.data) == bytes([5])
        assert [str(meta.pubkey) for meta in revoke_ix.accounts] == [str(source), SENDER]
        assert revoke_ix.accounts[0].is_writable
        assert revoke_ix.accounts[1].is_signer
        assert f"Revoke all delegates on token account {source}" in unsigned.display_summary
        assert unsigned.operation.value == "token_revoke"

    def test_token_revoke_validation(self, solana_adapter):
        """Test that a malformed mint is refused."""
        error = solana_adapter.validate(token_revoke(mint="nope"))
        assert error.field == "mint"
        assert error.rule == "pubkey_format"

    def test_extra_signer_refused(self, solana_adapter):
        """Test that instructions needing another signature are refused."""
        request = SolanaRawInstructionSet(
            network="solana-devnet",
            derivation_path=SOLANA_PATH,
            instructions=(
                RawInstruction(
                    program_id=str(SYSTEM_PROGRAM_ID),
                    accounts=(AccountSpec(pubkey=OTHER_SIGNER, is_signer=True, is_writable=True),),
                    data=b"\x00",
                ),
            ),
        )
        with pytest.raises(ValidationError) as exc_info:
            solana_adapter.build_unsigned(request, SENDER, tier_fee(), context())
        assert exc_info.value.rule == "extra_signer"

    def test_oversized_transaction_refused(self, solana_adapter):
        """Test the 1232 byte packet limit."""
        request = SolanaRawInstructionSet(
            network="solana-devnet",
            derivation_path=SOLANA_PATH,
            instructions=(RawInstruction(program_id=str(SYSTEM_PROGRAM_ID), data=bytes(1_300)),),
        )
        with pytest.raises(ValidationError) as exc_info:
            solana_adapter.build_unsigned(request, SENDER, tier_fee(), context())
        assert exc_info.value.rule == "transaction_size"

    @pytest.mark.asyncio
    async def test_signature_round_trip(self, solana_adapter, signer):
        """Test that the wire transaction parses and its signature verifies."""
        sender = await signer.get_address(ChainFamily.SOLANA, SOLANA_PATH)
        unsigned = solana_adapter.build_unsigned(native_transfer(), sender, tier_fee(), context())

        signature = await signer.sign_transaction(solana_adapter.signature_request(unsigned))
        signed = solana_adapter.attach_signature(unsigned, signature)

        assert solana_adapter.verify_signature(signed)
        transaction = Transaction.from_bytes(signed.wire_bytes)
        transaction.verify()
        assert transaction.signatures[0] == Signature.from_string(signed.tx_id)
        assert bytes(transaction.message) == unsigned.signing_payload

    @pytest.mark.asyncio
    async def test_foreign_signature_fails_verification(self, solana_adapter, signer):
        """Test that a signature from another key does not verify."""
        unsigned = solana_adapter.build_unsigned(native_transfer(), SENDER, tier_fee(), context())
        signature = await signer.sign_transaction(solana_adapter.signature_request(unsigned))
        signed = solana_adapter.attach_signature(unsigned, signature)

        assert not solana_adapter.verify_signature(signed)
