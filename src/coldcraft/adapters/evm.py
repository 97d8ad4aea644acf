"""EVM chain adapter.

Builds EIP-1559 (type 2) transactions only. The device signs
keccak256(0x02 || rlp([chainId, nonce, maxPriorityFeePerGas, maxFeePerGas,
gas, to, value, data, accessList])), and the signed transaction appends
[yParity, r, s] to the same list.
"""

import logging
from typing import Any, Optional

import rlp
from eth_keys import keys
from eth_keys.exceptions import BadSignature
from eth_keys.exceptions import ValidationError as EthKeysValidationError
from eth_utils import is_checksum_address, is_hex_address, keccak, to_bytes, to_checksum_address

from coldcraft.adapters import abi
from coldcraft.adapters.base import ChainAdapter, format_units
from coldcraft.chains import ChainFamily
from coldcraft.errors import ValidationError
from coldcraft.models import (
    MAX_UINT256,
    EvmContractCall,
    EvmFeeOverride,
    EvmNativeTransfer,
    EvmNftTransfer,
    EvmTierFee,
    EvmTokenApproval,
    EvmTokenTransfer,
    EvmUnsignedTx,
    OperationKind,
    OperationRequest,
    SignatureResult,
    SignedTransaction,
    UnsignedTransaction,
)

logger = logging.getLogger(__name__)

TX_TYPE_EIP1559 = b"\x02"


def check_address(value: Any, field: str) -> Optional[ValidationError]:
    """Check hex format and EIP-55 checksum of an address.

    All-lowercase and all-uppercase addresses carry no checksum and are
    accepted; mixed case must be a valid checksum.
    """
    if not isinstance(value, str) or not is_hex_address(value):
        return ValidationError(f"{field} is not a valid address: {value!r}", field=field, rule="address_format")

    body = value[2:]
    if body != body.lower() and body != body.upper() and not is_checksum_address(value):
        return ValidationError(
            f"{field} has an invalid EIP-55 checksum: {value}",
            field=field,
            rule="eip55_checksum",
        )
    return None


def check_uint256(value: Any, field: str, positive: bool = False) -> Optional[ValidationError]:
    if isinstance(value, bool) or not isinstance(value, int):
        return ValidationError(f"{field} must be an integer in base units", field=field, rule="integer")
    if value < 0 or value > MAX_UINT256:
        return ValidationError(f"{field} must be within [0, 2^256)", field=field, rule="uint256_range")
    if positive and value == 0:
        return ValidationError(f"{field} must be greater than zero", field=field, rule="positive_amount")
    return None


def _first_error(*errors: Optional[ValidationError]) -> Optional[ValidationError]:
    for error in errors:
        if error is not None:
            return error
    return None


class EvmAdapter(ChainAdapter):
    """Adapter for EVM networks (EIP-1559 transactions)."""

    family = ChainFamily.EVM

    @property
    def chain_id(self) -> int:
        return self.network.chain_id

    # ----------------------
    # Request validation
    # ----------------------

    def _validate_request(self, request: OperationRequest) -> Optional[ValidationError]:
        if self.network.chain_id is None:
            return ValidationError(
                f"Network {self.network.name} has no chain id configured",
                field="network",
                rule="chain_id_missing",
            )

        if isinstance(request, EvmNativeTransfer):
            error = _first_error(
                check_address(request.recipient, "recipient"),
                check_uint256(request.amount, "amount"),
            )
        elif isinstance(request, EvmTokenTransfer):
            error = _first_error(
                check_address(request.token, "token"),
                check_address(request.recipient, "recipient"),
                check_uint256(request.amount, "amount", positive=True),
            )
        elif isinstance(request, EvmTokenApproval):
            error = _first_error(
                check_address(request.token, "token"),
                check_address(request.spender, "spender"),
                check_uint256(request.amount, "amount"),
            )
        elif isinstance(request, EvmNftTransfer):
            error = _first_error(
                check_address(request.contract, "contract"),
                check_address(request.recipient, "recipient"),
                check_uint256(request.token_id, "token_id"),
            )
        elif isinstance(request, EvmContractCall):
            error = self._validate_contract_call(request)
        else:
            return ValidationError(
                f"Unsupported request type {request.__class__.__name__}",
                field="request",
                rule="unsupported_operation",
            )

        return error or self._validate_fee_override(request.fee_override)

    def _validate_contract_call(self, request: EvmContractCall) -> Optional[ValidationError]:
        error = _first_error(
            check_address(request.contract, "contract"),
            check_uint256(request.value, "value"),
        )
        if error:
            return error

        if request.data is not None and request.function_signature is not None:
            return ValidationError(
                "Give either pre-encoded data or a function signature, not both",
                field="data",
                rule="ambiguous_calldata",
            )
        if request.data is None and request.function_signature is None:
            return ValidationError(
                "Contract call needs data or a function signature",
                field="function_signature",
                rule="missing_calldata",
            )
        if request.data is not None:
            if not isinstance(request.data, bytes):
                return ValidationError("data must be bytes", field="data", rule="calldata_format")
            return None

        try:
            abi.encode_call(request.function_signature, request.args)
        except abi.AbiError as e:
            return ValidationError(str(e), field="args", rule="abi_encoding")
        return None

    def _validate_fee_override(self, override: Optional[EvmFeeOverride]) -> Optional[ValidationError]:
        if override is None:
            return None
        if not isinstance(override, EvmFeeOverride):
            return ValidationError("EVM requests take an EvmFeeOverride", field="fee_override", rule="override_type")

        for name in ("max_fee_per_gas", "max_priority_fee_per_gas", "gas_limit"):
            value = getattr(override, name)
            if value is not None:
                error = check_uint256(value, f"fee_override.{name}", positive=(name != "max_priority_fee_per_gas"))
                if error:
                    return error

        if override.gas_limit is not None and override.gas_limit > self.settings.max_gas_limit:
            return ValidationError(
                f"Gas limit {override.gas_limit} exceeds maximum {self.settings.max_gas_limit}",
                field="fee_override.gas_limit",
                rule="max_gas_limit",
            )
        if (
            override.max_fee_per_gas is not None
            and override.max_priority_fee_per_gas is not None
            and override.max_priority_fee_per_gas > override.max_fee_per_gas
        ):
            return ValidationError(
                "max_priority_fee_per_gas cannot exceed max_fee_per_gas",
                field="fee_override.max_priority_fee_per_gas",
                rule="priority_above_max_fee",
            )
        return None

    # ----------------------
    # Assembly
    # ----------------------

    def call_parameters(self, request: OperationRequest, sender: str) -> tuple[str, int, bytes]:
        """Resolve (to, value, data) for a validated request."""
        if isinstance(request, EvmNativeTransfer):
            return to_checksum_address(request.recipient), request.amount, b""
        if isinstance(request, EvmTokenTransfer):
            return to_checksum_address(request.token), 0, abi.erc20_transfer(request.recipient, request.amount)
        if isinstance(request, EvmTokenApproval):
            return to_checksum_address(request.token), 0, abi.erc20_approve(request.spender, request.amount)
        if isinstance(request, EvmNftTransfer):
            data = abi.erc721_transfer(sender, request.recipient, request.token_id, safe=request.safe)
            return to_checksum_address(request.contract), 0, data
        if isinstance(request, EvmContractCall):
            if request.data is not None:
                data = request.data
            else:
                data = abi.encode_call(request.function_signature, request.args)
            return to_checksum_address(request.contract), request.value, data
        raise ValidationError(
            f"Unsupported request type {request.__class__.__name__}",
            field="request",
            rule="unsupported_operation",
        )

    def request_warnings(self, request: OperationRequest) -> tuple:
        warnings = []
        if isinstance(request, EvmTokenApproval) and request.amount == MAX_UINT256:
            warnings.append(
                f"Unlimited approval: {to_checksum_address(request.spender)} "
                f"can transfer your entire balance of {to_checksum_address(request.token)}"
            )
        if isinstance(request, EvmNftTransfer) and not request.safe:
            warnings.append("transferFrom does not check that the recipient can receive NFTs")
        return tuple(warnings)

    def build_unsigned(
        self,
        request: OperationRequest,
        sender: str,
        fee: EvmTierFee,
        sequencing: int,
        description: Optional[str] = None,
        fees_degraded: bool = False,
    ) -> EvmUnsignedTx:
        error = check_address(sender, "sender")
        if error:
            raise error

        to, value, data = self.call_parameters(request, sender)
        warnings = self.request_warnings(request)
        if description is None and isinstance(request, EvmContractCall) and request.abi:
            description = abi.describe_call(data, list(request.abi))

        fields = dict(
            family=ChainFamily.EVM,
            network=self.network.name,
            sender=to_checksum_address(sender),
            derivation_path=request.derivation_path,
            chain_id=self.chain_id,
            to=to,
            value=value,
            data=data,
            nonce=sequencing,
            gas_limit=fee.gas_limit,
            max_fee_per_gas=fee.max_fee_per_gas,
            max_priority_fee_per_gas=fee.max_priority_fee_per_gas,
            operation=request.kind,
            fee_tier=fee.tier.value,
            fees_degraded=fees_degraded,
            warnings=warnings,
            call_description=description,
        )
        draft = EvmUnsignedTx(signing_payload=b"", display_summary="", **fields)
        unsigned = EvmUnsignedTx(
            signing_payload=self.signing_payload(draft),
            display_summary=self.display_summary(draft),
            **fields,
        )

        error = self.validate_unsigned(unsigned)
        if error:
            raise error

        logger.debug(f"Built EVM tx on {self.network.name}: nonce={unsigned.nonce} to={unsigned.to}")
        return unsigned

    def _rlp_fields(self, unsigned: EvmUnsignedTx) -> list:
        return [
            unsigned.chain_id,
            unsigned.nonce,
            unsigned.max_priority_fee_per_gas,
            unsigned.max_fee_per_gas,
            unsigned.gas_limit,
            to_bytes(hexstr=unsigned.to),
            unsigned.value,
            unsigned.data,
            [],
        ]

    def signing_payload(self, unsigned: UnsignedTransaction) -> bytes:
        return TX_TYPE_EIP1559 + rlp.encode(self._rlp_fields(unsigned))

    def display_summary(self, unsigned: UnsignedTransaction) -> str:
        symbol = self.network.native_symbol
        decimals = self.network.native_decimals
        lines = [
            f"{self.network.display_name} (chain {unsigned.chain_id})",
            f"From: {unsigned.sender}",
            self._describe_operation(unsigned),
        ]
        if unsigned.value and unsigned.operation != OperationKind.NATIVE_TRANSFER:
            lines.append(f"Value: {format_units(unsigned.value, decimals)} {symbol}")

        max_cost = unsigned.gas_limit * unsigned.max_fee_per_gas
        lines.extend([
            f"Nonce: {unsigned.nonce}",
            f"Gas limit: {unsigned.gas_limit}",
            f"Max fee: {format_units(unsigned.max_fee_per_gas, 9)} gwei "
            f"(priority {format_units(unsigned.max_priority_fee_per_gas, 9)} gwei)",
            f"Max network cost: {format_units(max_cost, decimals)} {symbol}",
        ])
        if unsigned.fees_degraded:
            lines.append("WARNING: fees are fallback values, live fee sampling failed")
        for warning in unsigned.warnings:
            lines.append(f"WARNING: {warning}")
        return "\n".join(lines)

    def _describe_operation(self, unsigned: EvmUnsignedTx) -> str:
        if unsigned.operation == OperationKind.NATIVE_TRANSFER:
            amount = format_units(unsigned.value, self.network.native_decimals)
            return f"Send {amount} {self.network.native_symbol} to {unsigned.to}"

        known = abi.decode_known_call(unsigned.data)
        if known is not None:
            signature, args = known
            if signature == abi.ERC20_TRANSFER:
                return f"Transfer {args[1]} base units of token {unsigned.to} to {args[0]}"
            if signature == abi.ERC20_APPROVE:
                amount = "UNLIMITED" if args[1] == MAX_UINT256 else f"{args[1]} base units"
                return f"Approve {args[0]} to spend {amount} of token {unsigned.to}"
            method = "safeTransferFrom" if signature == abi.ERC721_SAFE_TRANSFER_FROM else "transferFrom"
            return f"Transfer NFT #{args[2]} of {unsigned.to} to {args[1]} ({method})"

        if unsigned.call_description:
            return f"Call {unsigned.to}: {unsigned.call_description}"
        if unsigned.data:
            return f"Call {unsigned.to}: selector 0x{unsigned.data[:4].hex()} ({len(unsigned.data)} bytes)"
        return f"Call {unsigned.to} (no data)"

    def validate_unsigned(self, unsigned: UnsignedTransaction) -> Optional[ValidationError]:
        if not isinstance(unsigned, EvmUnsignedTx):
            return ValidationError("Not an EVM transaction", field="transaction", rule="family_mismatch")
        if unsigned.network != self.network.name:
            return ValidationError(
                f"Transaction was built for {unsigned.network}, not {self.network.name}",
                field="network",
                rule="network_mismatch",
            )
        if unsigned.chain_id != self.network.chain_id:
            return ValidationError(
                f"Chain id {unsigned.chain_id} does not match {self.network.name} ({self.network.chain_id})",
                field="chain_id",
                rule="chain_id_mismatch",
            )

        error = _first_error(
            check_address(unsigned.sender, "sender"),
            check_address(unsigned.to, "to"),
            check_uint256(unsigned.value, "value"),
            check_uint256(unsigned.nonce, "nonce"),
            check_uint256(unsigned.gas_limit, "gas_limit", positive=True),
            check_uint256(unsigned.max_fee_per_gas, "max_fee_per_gas", positive=True),
            check_uint256(unsigned.max_priority_fee_per_gas, "max_priority_fee_per_gas"),
        )
        if error:
            return error

        if unsigned.gas_limit > self.settings.max_gas_limit:
            return ValidationError(
                f"Gas limit {unsigned.gas_limit} exceeds maximum {self.settings.max_gas_limit}",
                field="gas_limit",
                rule="max_gas_limit",
            )
        if unsigned.max_priority_fee_per_gas > unsigned.max_fee_per_gas:
            return ValidationError(
                "max_priority_fee_per_gas cannot exceed max_fee_per_gas",
                field="max_priority_fee_per_gas",
                rule="priority_above_max_fee",
            )
        return None

    # ----------------------
    # Signatures
    # ----------------------

    def attach_signature(self, unsigned: UnsignedTransaction, signature: SignatureResult) -> SignedTransaction:
        if len(signature.signature) != 64 or signature.recovery_id not in (0, 1):
            raise ValidationError(
                "EVM signature must be 64 bytes with recovery id 0 or 1",
                field="signature",
                rule="signature_format",
            )
        wire = self._encode_signed(unsigned, signature)
        return SignedTransaction(
            unsigned=unsigned,
            signature=signature,
            wire_bytes=wire,
            tx_id="0x" + keccak(wire).hex(),
        )

    def _encode_signed(self, unsigned: EvmUnsignedTx, signature: SignatureResult) -> bytes:
        fields = self._rlp_fields(unsigned) + [signature.recovery_id, signature.r, signature.s]
        return TX_TYPE_EIP1559 + rlp.encode(fields)

    def serialize(self, signed: SignedTransaction) -> bytes:
        return self._encode_signed(signed.unsigned, signed.signature)

    def recover_sender(self, payload: bytes, signature: SignatureResult) -> Optional[str]:
        try:
            sig = keys.Signature(vrs=(signature.recovery_id, signature.r, signature.s))
            return sig.recover_public_key_from_msg_hash(keccak(payload)).to_checksum_address()
        except (BadSignature, EthKeysValidationError, ValueError) as e:
            logger.warning(f"Signature recovery failed: {e}")
            return None

    def verify_signature(self, signed: SignedTransaction) -> bool:
        recovered = self.recover_sender(signed.unsigned.signing_payload, signed.signature)
        return recovered is not None and recovered == to_checksum_address(signed.unsigned.sender)
