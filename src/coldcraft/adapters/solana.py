"""Solana chain adapter.

Builds legacy transaction messages with a single signer (the fee payer).
Instruction order is fixed:

1. Compute budget (unit limit, unit price)
2. Create associated token account, when requested
3. Transfer / approve / revoke / caller-supplied instructions
4. Memo

The device signs the serialized message; the wire transaction is the
signature list followed by the same message bytes.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Any, Optional

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from spl.token.constants import ASSOCIATED_TOKEN_PROGRAM_ID, TOKEN_PROGRAM_ID
from spl.token.instructions import (
    approve_checked,
    create_associated_token_account,
    get_associated_token_address,
    revoke,
    transfer_checked,
)
from spl.token.models import ApproveCheckedParams, RevokeParams, TransferCheckedParams

from coldcraft.adapters.base import ChainAdapter, format_units
from coldcraft.chains import ChainFamily
from coldcraft.errors import ValidationError
from coldcraft.models import (
    OperationRequest,
    SignatureResult,
    SignedTransaction,
    SolanaFeeOverride,
    SolanaNativeTransfer,
    SolanaRawInstructionSet,
    SolanaTierFee,
    SolanaTokenApproval,
    SolanaTokenRevoke,
    SolanaTokenTransfer,
    SolanaUnsignedTx,
    UnsignedTransaction,
)
from coldcraft.signing.base import is_fully_hardened

logger = logging.getLogger(__name__)

COMPUTE_BUDGET_PROGRAM_ID = Pubkey.from_string("ComputeBudget111111111111111111111111111111")
MEMO_PROGRAM_ID = Pubkey.from_string("MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr")

MAX_TRANSACTION_SIZE = 1232
MAX_COMPUTE_UNIT_LIMIT = 1_400_000
SIGNATURE_FEE_LAMPORTS = 5000

# SPL token instruction tags
TOKEN_IX_REVOKE = 5
TOKEN_IX_TRANSFER_CHECKED = 12
TOKEN_IX_APPROVE_CHECKED = 13


@dataclass(frozen=True)
class SolanaChainContext:
    """Chain state a Solana transaction depends on.

    Attributes:
        recent_blockhash: Blockhash the transaction is anchored to
        last_valid_block_height: Block height after which it expires
        decimals: Mint decimals (token operations)
        recipient_token_account_exists: Whether the recipient ATA exists
        recipient_exists: Whether the recipient system account exists
        rent_exempt_minimum: Minimum balance for a new zero-data account
    """
    recent_blockhash: str
    last_valid_block_height: int
    decimals: Optional[int] = None
    recipient_token_account_exists: Optional[bool] = None
    recipient_exists: Optional[bool] = None
    rent_exempt_minimum: Optional[int] = None


def check_pubkey(value: Any, field: str) -> Optional[ValidationError]:
    """Check that a value is a base58-encoded 32-byte public key."""
    if not isinstance(value, str):
        return ValidationError(f"{field} must be a base58 string", field=field, rule="pubkey_format")
    try:
        Pubkey.from_string(value)
    except ValueError:
        return ValidationError(f"{field} is not a valid public key: {value!r}", field=field, rule="pubkey_format")
    return None


def check_amount(value: Any, field: str = "amount") -> Optional[ValidationError]:
    if isinstance(value, bool) or not isinstance(value, int):
        return ValidationError(f"{field} must be an integer in base units", field=field, rule="integer")
    if value <= 0:
        return ValidationError(f"{field} must be greater than zero", field=field, rule="positive_amount")
    if value >= 2**64:
        return ValidationError(f"{field} exceeds u64", field=field, rule="u64_range")
    return None


def _first_error(*errors: Optional[ValidationError]) -> Optional[ValidationError]:
    for error in errors:
        if error is not None:
            return error
    return None


class SolanaAdapter(ChainAdapter):
    """Adapter for Solana clusters (legacy messages, single signer)."""

    family = ChainFamily.SOLANA

    # ----------------------
    # Request validation
    # ----------------------

    def _validate_request(self, request: OperationRequest) -> Optional[ValidationError]:
        if not is_fully_hardened(request.derivation_path):
            return ValidationError(
                f"Solana derivation path must be fully hardened: {request.derivation_path}",
                field="derivation_path",
                rule="hardened_path",
            )

        if isinstance(request, SolanaNativeTransfer):
            error = _first_error(
                check_pubkey(request.recipient, "recipient"),
                check_amount(request.amount),
            )
        elif isinstance(request, SolanaTokenTransfer):
            error = _first_error(
                check_pubkey(request.mint, "mint"),
                check_pubkey(request.recipient, "recipient"),
                check_amount(request.amount),
                self._check_decimals(request.decimals),
            )
        elif isinstance(request, SolanaTokenApproval):
            error = _first_error(
                check_pubkey(request.mint, "mint"),
                check_pubkey(request.delegate, "delegate"),
                check_amount(request.amount),
                self._check_decimals(request.decimals),
            )
        elif isinstance(request, SolanaTokenRevoke):
            error = check_pubkey(request.mint, "mint")
        elif isinstance(request, SolanaRawInstructionSet):
            error = self._validate_raw(request)
        else:
            return ValidationError(
                f"Unsupported request type {request.__class__.__name__}",
                field="request",
                rule="unsupported_operation",
            )

        return error or self._validate_fee_override(request.fee_override)

    @staticmethod
    def _check_decimals(decimals: Optional[int]) -> Optional[ValidationError]:
        if decimals is None:
            return None
        if isinstance(decimals, bool) or not isinstance(decimals, int) or not 0 <= decimals <= 255:
            return ValidationError("decimals must be an integer in [0, 255]", field="decimals", rule="decimals_range")
        return None

    def _validate_raw(self, request: SolanaRawInstructionSet) -> Optional[ValidationError]:
        if not request.instructions:
            return ValidationError("Instruction set is empty", field="instructions", rule="empty_instructions")

        last = len(request.instructions) - 1
        for i, ix in enumerate(request.instructions):
            field = f"instructions[{i}]"
            error = check_pubkey(ix.program_id, f"{field}.program_id")
            if error:
                return error

            program = Pubkey.from_string(ix.program_id)
            if program == COMPUTE_BUDGET_PROGRAM_ID:
                return ValidationError(
                    "Compute budget instructions are set from the fee tier, not supplied",
                    field=field,
                    rule="compute_budget_reserved",
                )
            if program == MEMO_PROGRAM_ID and (i != last or request.memo is not None):
                return ValidationError(
                    "A memo may only be the last instruction",
                    field=field,
                    rule="memo_position",
                )
            if not isinstance(ix.data, bytes):
                return ValidationError(f"{field}.data must be bytes", field=f"{field}.data", rule="data_format")

            for j, account in enumerate(ix.accounts):
                error = check_pubkey(account.pubkey, f"{field}.accounts[{j}]")
                if error:
                    return error
        return None

    def _validate_fee_override(self, override: Optional[SolanaFeeOverride]) -> Optional[ValidationError]:
        if override is None:
            return None
        if not isinstance(override, SolanaFeeOverride):
            return ValidationError(
                "Solana requests take a SolanaFeeOverride", field="fee_override", rule="override_type"
            )
        price = override.compute_unit_price
        if price is not None and (not isinstance(price, int) or price < 0 or price >= 2**64):
            return ValidationError(
                "compute_unit_price must be a non-negative u64",
                field="fee_override.compute_unit_price",
                rule="u64_range",
            )
        limit = override.compute_unit_limit
        if limit is not None and (not isinstance(limit, int) or not 0 < limit <= MAX_COMPUTE_UNIT_LIMIT):
            return ValidationError(
                f"compute_unit_limit must be in (0, {MAX_COMPUTE_UNIT_LIMIT}]",
                field="fee_override.compute_unit_limit",
                rule="compute_unit_limit",
            )
        return None

    def validate_chain_state(
        self, request: OperationRequest, context: SolanaChainContext
    ) -> Optional[ValidationError]:
        """Checks that need on-chain facts (account existence, rent).

        Returns:
            The violation, or None if instructions can be built
        """
        if isinstance(request, SolanaTokenTransfer):
            if context.recipient_token_account_exists is False and not request.create_recipient_account:
                return ValidationError(
                    f"Recipient {request.recipient} has no token account for mint {request.mint}; "
                    f"set create_recipient_account to create it (sender pays rent)",
                    field="recipient",
                    rule="missing_token_account",
                )
            if context.decimals is None and request.decimals is None:
                return ValidationError("Mint decimals are unknown", field="decimals", rule="decimals_unknown")

        if isinstance(request, SolanaTokenApproval):
            if context.decimals is None and request.decimals is None:
                return ValidationError("Mint decimals are unknown", field="decimals", rule="decimals_unknown")

        if isinstance(request, SolanaNativeTransfer):
            if (
                context.recipient_exists is False
                and context.rent_exempt_minimum is not None
                and request.amount < context.rent_exempt_minimum
            ):
                return ValidationError(
                    f"Recipient account does not exist; transfer at least "
                    f"{context.rent_exempt_minimum} lamports to make it rent exempt",
                    field="amount",
                    rule="rent_exempt_minimum",
                    minimum=context.rent_exempt_minimum,
                )
        return None

    # ----------------------
    # Assembly
    # ----------------------

    def operation_instructions(
        self, request: OperationRequest, sender: str, context: Optional[SolanaChainContext] = None
    ) -> list[Instruction]:
        """Instructions for the operation itself, without compute budget."""
        owner = Pubkey.from_string(sender)
        instructions: list[Instruction] = []

        if isinstance(request, SolanaNativeTransfer):
            instructions.append(transfer(TransferParams(
                from_pubkey=owner,
                to_pubkey=Pubkey.from_string(request.recipient),
                lamports=request.amount,
            )))

        elif isinstance(request, SolanaTokenTransfer):
            mint = Pubkey.from_string(request.mint)
            recipient = Pubkey.from_string(request.recipient)
            decimals = request.decimals if request.decimals is not None else context.decimals
            if request.create_recipient_account and not (context and context.recipient_token_account_exists):
                instructions.append(create_associated_token_account(payer=owner, owner=recipient, mint=mint))
            instructions.append(transfer_checked(TransferCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=get_associated_token_address(owner, mint),
                mint=mint,
                dest=get_associated_token_address(recipient, mint),
                owner=owner,
                amount=request.amount,
                decimals=decimals,
                signers=[],
            )))

        elif isinstance(request, SolanaTokenApproval):
            mint = Pubkey.from_string(request.mint)
            decimals = request.decimals if request.decimals is not None else context.decimals
            instructions.append(approve_checked(ApproveCheckedParams(
                program_id=TOKEN_PROGRAM_ID,
                source=get_associated_token_address(owner, mint),
                mint=mint,
                delegate=Pubkey.from_string(request.delegate),
                owner=owner,
                amount=request.amount,
                decimals=decimals,
                signers=[],
            )))

        elif isinstance(request, SolanaTokenRevoke):
            instructions.append(revoke(RevokeParams(
                program_id=TOKEN_PROGRAM_ID,
                account=get_associated_token_address(owner, Pubkey.from_string(request.mint)),
                owner=owner,
                signers=[],
            )))

        elif isinstance(request, SolanaRawInstructionSet):
            for ix in request.instructions:
                accounts = [
                    AccountMeta(Pubkey.from_string(a.pubkey), a.is_signer, a.is_writable)
                    for a in ix.accounts
                ]
                instructions.append(Instruction(Pubkey.from_string(ix.program_id), bytes(ix.data), accounts))

        memo = getattr(request, "memo", None)
        if memo:
            instructions.append(Instruction(MEMO_PROGRAM_ID, memo.encode("utf-8"), []))
        return instructions

    def build_unsigned(
        self,
        request: OperationRequest,
        sender: str,
        fee: SolanaTierFee,
        sequencing: SolanaChainContext,
        description: Optional[str] = None,
        fees_degraded: bool = False,
    ) -> SolanaUnsignedTx:
        error = check_pubkey(sender, "sender")
        if error:
            raise error
        error = self.validate_chain_state(request, sequencing)
        if error:
            raise error

        body = self.operation_instructions(request, sender, sequencing)
        instructions = (
            set_compute_unit_limit(fee.compute_unit_limit),
            set_compute_unit_price(fee.compute_unit_price),
            *body,
        )
        creates_account = any(ix.program_id == ASSOCIATED_TOKEN_PROGRAM_ID for ix in body)

        warnings = []
        if creates_account:
            warnings.append("Creates the recipient's token account; rent is paid by the sender")

        fields = dict(
            family=ChainFamily.SOLANA,
            network=self.network.name,
            sender=sender,
            derivation_path=request.derivation_path,
            fee_payer=sender,
            recent_blockhash=sequencing.recent_blockhash,
            last_valid_block_height=sequencing.last_valid_block_height,
            instructions=instructions,
            compute_unit_limit=fee.compute_unit_limit,
            compute_unit_price=fee.compute_unit_price,
            operation=request.kind,
            fee_tier=fee.tier.value,
            fees_degraded=fees_degraded,
            warnings=tuple(warnings),
            creates_account=creates_account,
        )
        draft = SolanaUnsignedTx(signing_payload=b"", display_summary="", **fields)
        unsigned = SolanaUnsignedTx(
            signing_payload=self.signing_payload(draft),
            display_summary=self.display_summary(draft),
            **fields,
        )

        error = self.validate_unsigned(unsigned)
        if error:
            raise error

        logger.debug(
            f"Built Solana tx on {self.network.name}: {len(instructions)} instructions, "
            f"{self.transaction_size(unsigned)} bytes"
        )
        return unsigned

    def compile_message(self, unsigned: SolanaUnsignedTx) -> Message:
        return Message.new_with_blockhash(
            list(unsigned.instructions),
            Pubkey.from_string(unsigned.fee_payer),
            Hash.from_string(unsigned.recent_blockhash),
        )

    def draft_transaction(self, request: OperationRequest, sender: str, context: SolanaChainContext,
                          compute_unit_limit: int) -> bytes:
        """Unsigned wire transaction for simulation (zeroed signature)."""
        body = self.operation_instructions(request, sender, context)
        instructions = [set_compute_unit_limit(compute_unit_limit), set_compute_unit_price(0), *body]
        message = Message.new_with_blockhash(
            instructions, Pubkey.from_string(sender), Hash.from_string(context.recent_blockhash)
        )
        return bytes(Transaction.populate(message, [Signature.default()]))

    def signing_payload(self, unsigned: UnsignedTransaction) -> bytes:
        return bytes(self.compile_message(unsigned))

    def transaction_size(self, unsigned: SolanaUnsignedTx) -> int:
        """Wire size once signed: signature count, signatures, message."""
        message = self.compile_message(unsigned)
        num_signatures = message.header.num_required_signatures
        return 1 + 64 * num_signatures + len(bytes(message))

    def display_summary(self, unsigned: UnsignedTransaction) -> str:
        symbol = self.network.native_symbol
        decimals = self.network.native_decimals
        lines = [self.network.display_name, f"Fee payer: {unsigned.fee_payer}"]

        for ix in unsigned.instructions:
            if ix.program_id == COMPUTE_BUDGET_PROGRAM_ID:
                continue
            lines.append(self._describe_instruction(ix))

        priority = -(-unsigned.compute_unit_price * unsigned.compute_unit_limit // 1_000_000)
        max_fee = SIGNATURE_FEE_LAMPORTS + priority
        lines.extend([
            f"Compute: limit {unsigned.compute_unit_limit} units, price {unsigned.compute_unit_price} micro-lamports",
            f"Max network fee: {format_units(max_fee, decimals)} {symbol}",
            f"Valid until block height {unsigned.last_valid_block_height}",
        ])
        if unsigned.fees_degraded:
            lines.append("WARNING: fees are fallback values, live fee sampling failed")
        for warning in unsigned.warnings:
            lines.append(f"WARNING: {warning}")
        return "\n".join(lines)

    def _describe_instruction(self, ix: Instruction) -> str:
        accounts = [str(meta.pubkey) for meta in ix.accounts]
        data = bytes(ix.data)

        if ix.program_id == SYSTEM_PROGRAM_ID and len(data) == 12 and data[:4] == b"\x02\x00\x00\x00":
            lamports = struct.unpack("<Q", data[4:12])[0]
            amount = format_units(lamports, self.network.native_decimals)
            return f"Send {amount} {self.network.native_symbol} to {accounts[1]}"

        if ix.program_id == TOKEN_PROGRAM_ID and len(data) == 10 and data[0] == TOKEN_IX_TRANSFER_CHECKED:
            amount = struct.unpack("<Q", data[1:9])[0]
            return (
                f"Transfer {format_units(amount, data[9])} of mint {accounts[1]} "
                f"to token account {accounts[2]}"
            )

        if ix.program_id == TOKEN_PROGRAM_ID and len(data) == 10 and data[0] == TOKEN_IX_APPROVE_CHECKED:
            amount = struct.unpack("<Q", data[1:9])[0]
            return (
                f"Approve {accounts[2]} to spend {format_units(amount, data[9])} of mint {accounts[1]}"
            )

        if ix.program_id == TOKEN_PROGRAM_ID and data == bytes([TOKEN_IX_REVOKE]):
            return f"Revoke all delegates on token account {accounts[0]}"

        if ix.program_id == ASSOCIATED_TOKEN_PROGRAM_ID:
            return f"Create token account for {accounts[2]} (mint {accounts[3]})"

        if ix.program_id == MEMO_PROGRAM_ID:
            return f"Memo: {data.decode('utf-8', errors='replace')}"

        return f"Program {ix.program_id}: {len(accounts)} accounts, {len(data)} bytes of data"

    def validate_unsigned(self, unsigned: UnsignedTransaction) -> Optional[ValidationError]:
        if not isinstance(unsigned, SolanaUnsignedTx):
            return ValidationError("Not a Solana transaction", field="transaction", rule="family_mismatch")
        if unsigned.network != self.network.name:
            return ValidationError(
                f"Transaction was built for {unsigned.network}, not {self.network.name}",
                field="network",
                rule="network_mismatch",
            )
        if unsigned.fee_payer != unsigned.sender:
            return ValidationError("Fee payer must be the signing key", field="fee_payer", rule="fee_payer")

        error = check_pubkey(unsigned.fee_payer, "fee_payer")
        if error:
            return error
        try:
            Hash.from_string(unsigned.recent_blockhash)
        except ValueError:
            return ValidationError(
                f"Invalid recent blockhash: {unsigned.recent_blockhash!r}",
                field="recent_blockhash",
                rule="blockhash_format",
            )

        instructions = unsigned.instructions
        if (
            len(instructions) < 3
            or instructions[0].program_id != COMPUTE_BUDGET_PROGRAM_ID
            or instructions[1].program_id != COMPUTE_BUDGET_PROGRAM_ID
            or any(ix.program_id == COMPUTE_BUDGET_PROGRAM_ID for ix in instructions[2:])
        ):
            return ValidationError(
                "Compute budget instructions must come first",
                field="instructions",
                rule="instruction_order",
            )
        if any(ix.program_id == MEMO_PROGRAM_ID for ix in instructions[:-1]):
            return ValidationError("A memo may only be the last instruction", field="instructions", rule="memo_position")

        message = self.compile_message(unsigned)
        if message.header.num_required_signatures != 1:
            return ValidationError(
                "Transaction requires signatures from keys other than the fee payer",
                field="instructions",
                rule="extra_signer",
            )

        size = self.transaction_size(unsigned)
        if size > MAX_TRANSACTION_SIZE:
            return ValidationError(
                f"Transaction is {size} bytes; the limit is {MAX_TRANSACTION_SIZE}",
                field="instructions",
                rule="transaction_size",
                size=size,
            )
        return None

    # ----------------------
    # Signatures
    # ----------------------

    def attach_signature(self, unsigned: UnsignedTransaction, signature: SignatureResult) -> SignedTransaction:
        if len(signature.signature) != 64:
            raise ValidationError("Solana signature must be 64 bytes", field="signature", rule="signature_format")
        wire = self._encode_signed(unsigned, signature)
        return SignedTransaction(
            unsigned=unsigned,
            signature=signature,
            wire_bytes=wire,
            tx_id=str(Signature.from_bytes(signature.signature)),
        )

    def _encode_signed(self, unsigned: SolanaUnsignedTx, signature: SignatureResult) -> bytes:
        message = self.compile_message(unsigned)
        transaction = Transaction.populate(message, [Signature.from_bytes(signature.signature)])
        return bytes(transaction)

    def serialize(self, signed: SignedTransaction) -> bytes:
        return self._encode_signed(signed.unsigned, signed.signature)

    def verify_signature(self, signed: SignedTransaction) -> bool:
        signature = Signature.from_bytes(signed.signature.signature)
        return signature.verify(Pubkey.from_string(signed.unsigned.sender), signed.unsigned.signing_payload)
