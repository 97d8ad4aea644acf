"""Data model for the transaction pipeline.

Lifecycle:
1. OperationRequest - created and consumed within one craft call
2. UnsignedTransaction - chain-native fields + signing payload + display summary
3. SignedTransaction - unsigned tx + device signature + wire bytes
4. BroadcastReceipt - the only entity that outlives the call that created it

Requests and transactions are frozen: the payload the user confirms on the
device must be the payload that gets broadcast.
"""

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Union

from coldcraft.chains import ChainFamily
from coldcraft.errors import PipelineError

MAX_UINT256 = 2**256 - 1


class SpeedTier(str, Enum):
    """Fee aggressiveness bucket."""
    SLOW = "slow"
    STANDARD = "standard"
    FAST = "fast"


class OperationKind(str, Enum):
    """Shape of an operation, used for fee and gas estimation."""
    NATIVE_TRANSFER = "native_transfer"
    TOKEN_TRANSFER = "token_transfer"
    TOKEN_APPROVAL = "token_approval"
    TOKEN_REVOKE = "token_revoke"
    NFT_TRANSFER = "nft_transfer"
    CONTRACT_CALL = "contract_call"
    RAW_INSTRUCTIONS = "raw_instructions"


# ======================
# Fee overrides
# ======================

@dataclass(frozen=True)
class EvmFeeOverride:
    """User-supplied EIP-1559 parameters. Unset fields fall back to the tier."""
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    gas_limit: Optional[int] = None


@dataclass(frozen=True)
class SolanaFeeOverride:
    """User-supplied compute budget. Unset fields fall back to the tier."""
    compute_unit_price: Optional[int] = None  # micro-lamports per CU
    compute_unit_limit: Optional[int] = None


FeeOverride = Union[EvmFeeOverride, SolanaFeeOverride]


# ======================
# Operation requests
# ======================

@dataclass(frozen=True)
class OperationRequest:
    """Base for all intents.

    Attributes:
        network: Network identifier (mainnet, solana-devnet, ...)
        derivation_path: Device path of the sending key
    """
    network: str
    derivation_path: str

    family = ChainFamily.EVM
    kind = OperationKind.NATIVE_TRANSFER


@dataclass(frozen=True)
class EvmNativeTransfer(OperationRequest):
    """Send native currency (wei)."""
    recipient: str
    amount: int
    fee_override: Optional[EvmFeeOverride] = None

    kind = OperationKind.NATIVE_TRANSFER


@dataclass(frozen=True)
class EvmTokenTransfer(OperationRequest):
    """ERC-20 transfer(recipient, amount) in token base units."""
    token: str
    recipient: str
    amount: int
    fee_override: Optional[EvmFeeOverride] = None

    kind = OperationKind.TOKEN_TRANSFER


@dataclass(frozen=True)
class EvmTokenApproval(OperationRequest):
    """ERC-20 approve(spender, amount). MAX_UINT256 means unlimited."""
    token: str
    spender: str
    amount: int
    fee_override: Optional[EvmFeeOverride] = None

    kind = OperationKind.TOKEN_APPROVAL


@dataclass(frozen=True)
class EvmNftTransfer(OperationRequest):
    """ERC-721 transfer of a single token id."""
    contract: str
    recipient: str
    token_id: int
    safe: bool = True
    fee_override: Optional[EvmFeeOverride] = None

    kind = OperationKind.NFT_TRANSFER


@dataclass(frozen=True)
class EvmContractCall(OperationRequest):
    """Arbitrary contract call.

    Either ``data`` (pre-encoded calldata) or ``function_signature`` plus
    ``args`` must be given. ``abi`` is only used to describe the call.
    """
    contract: str
    function_signature: Optional[str] = None
    args: tuple = ()
    data: Optional[bytes] = None
    value: int = 0
    abi: Optional[tuple] = None
    fee_override: Optional[EvmFeeOverride] = None

    kind = OperationKind.CONTRACT_CALL


@dataclass(frozen=True)
class AccountSpec:
    """Account reference inside a raw Solana instruction."""
    pubkey: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class RawInstruction:
    """Caller-built Solana instruction."""
    program_id: str
    accounts: tuple = ()  # tuple[AccountSpec, ...]
    data: bytes = b""


@dataclass(frozen=True)
class SolanaNativeTransfer(OperationRequest):
    """Send lamports."""
    recipient: str
    amount: int
    memo: Optional[str] = None
    fee_override: Optional[SolanaFeeOverride] = None

    family = ChainFamily.SOLANA
    kind = OperationKind.NATIVE_TRANSFER


@dataclass(frozen=True)
class SolanaTokenTransfer(OperationRequest):
    """SPL transfer between associated token accounts.

    The recipient's associated token account is only created when
    ``create_recipient_account`` is set, since creation debits rent.
    """
    mint: str
    recipient: str
    amount: int
    decimals: Optional[int] = None
    create_recipient_account: bool = False
    memo: Optional[str] = None
    fee_override: Optional[SolanaFeeOverride] = None

    family = ChainFamily.SOLANA
    kind = OperationKind.TOKEN_TRANSFER


@dataclass(frozen=True)
class SolanaTokenApproval(OperationRequest):
    """SPL approve of a delegate on the owner's associated token account."""
    mint: str
    delegate: str
    amount: int
    decimals: Optional[int] = None
    memo: Optional[str] = None
    fee_override: Optional[SolanaFeeOverride] = None

    family = ChainFamily.SOLANA
    kind = OperationKind.TOKEN_APPROVAL


@dataclass(frozen=True)
class SolanaTokenRevoke(OperationRequest):
    """SPL revoke of any delegate on the owner's associated token account."""
    mint: str
    memo: Optional[str] = None
    fee_override: Optional[SolanaFeeOverride] = None

    family = ChainFamily.SOLANA
    kind = OperationKind.TOKEN_REVOKE


@dataclass(frozen=True)
class SolanaRawInstructionSet(OperationRequest):
    """Caller-supplied instructions, wrapped with compute budget and memo."""
    instructions: tuple = ()  # tuple[RawInstruction, ...]
    memo: Optional[str] = None
    fee_override: Optional[SolanaFeeOverride] = None

    family = ChainFamily.SOLANA
    kind = OperationKind.RAW_INSTRUCTIONS


# ======================
# Fee estimates
# ======================

@dataclass(frozen=True)
class OperationShape:
    """What the fee estimator needs to know about an operation.

    EVM estimators simulate ``sender -> to`` with ``value``/``data``;
    Solana estimators simulate ``draft_transaction`` when present.
    """
    kind: OperationKind = OperationKind.NATIVE_TRANSFER
    sender: Optional[str] = None
    to: Optional[str] = None
    value: int = 0
    data: bytes = b""
    draft_transaction: Optional[bytes] = None
    writable_accounts: tuple = ()


@dataclass(frozen=True)
class EvmTierFee:
    """EIP-1559 parameters for one speed tier."""
    tier: SpeedTier
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    base_fee_per_gas: int
    gas_limit: int
    total_cost: Decimal
    estimated_seconds: int


@dataclass(frozen=True)
class SolanaTierFee:
    """Compute budget parameters for one speed tier."""
    tier: SpeedTier
    compute_unit_price: int
    compute_unit_limit: int
    base_fee_lamports: int
    total_cost: Decimal
    estimated_seconds: int

    @property
    def priority_fee_lamports(self) -> int:
        return -(-self.compute_unit_price * self.compute_unit_limit // 1_000_000)


TierFee = Union[EvmTierFee, SolanaTierFee]


@dataclass(frozen=True)
class FeeEstimate:
    """Three-tier fee estimate for a network snapshot.

    ``degraded`` is set when live sampling failed and the tiers come from the
    last good estimate or from static defaults.
    """
    network: str
    tiers: dict  # dict[SpeedTier, TierFee]
    degraded: bool = False
    sampled_at: float = field(default_factory=time.time)
    stale_seconds: Optional[float] = 0.0  # None: static defaults, no sample
    warning: Optional[PipelineError] = None

    def tier(self, tier: Union[SpeedTier, str]) -> TierFee:
        return self.tiers[SpeedTier(tier)]

    def to_dict(self) -> dict:
        tiers = {}
        for name, fee in self.tiers.items():
            entry = {
                "total_cost": str(fee.total_cost),
                "estimated_seconds": fee.estimated_seconds,
            }
            if isinstance(fee, EvmTierFee):
                entry.update(
                    max_fee_per_gas=str(fee.max_fee_per_gas),
                    max_priority_fee_per_gas=str(fee.max_priority_fee_per_gas),
                    base_fee_per_gas=str(fee.base_fee_per_gas),
                    gas_limit=str(fee.gas_limit),
                )
            else:
                entry.update(
                    compute_unit_price=fee.compute_unit_price,
                    compute_unit_limit=fee.compute_unit_limit,
                    base_fee_lamports=fee.base_fee_lamports,
                )
            tiers[SpeedTier(name).value] = entry
        return {
            "network": self.network,
            "degraded": self.degraded,
            "stale_seconds": None if self.stale_seconds is None else round(self.stale_seconds, 1),
            "tiers": tiers,
        }


# ======================
# Signatures
# ======================

@dataclass(frozen=True)
class SignatureRequest:
    """Request for a device signature.

    Attributes:
        family: Chain family (selects the device app)
        derivation_path: BIP32 path of the signing key
        payload: Exact bytes the device signs (unsigned EVM tx / Solana message)
        chain_id: EVM chain id, for devices that display it
    """
    family: ChainFamily
    derivation_path: str
    payload: bytes
    chain_id: Optional[int] = None


@dataclass(frozen=True)
class SignatureResult:
    """Raw signature returned by the device.

    Attributes:
        signature: 64 bytes (r || s for secp256k1, ed25519 signature for Solana)
        recovery_id: 0 or 1 for secp256k1, None for ed25519
        public_key: Signing public key, when the device reports it
    """
    signature: bytes
    recovery_id: Optional[int] = None
    public_key: Optional[bytes] = None

    @property
    def r(self) -> int:
        return int.from_bytes(self.signature[:32], "big")

    @property
    def s(self) -> int:
        return int.from_bytes(self.signature[32:64], "big")


# ======================
# Transactions
# ======================

@dataclass(frozen=True)
class UnsignedTransaction:
    """Chain-tagged unsigned transaction.

    ``signing_payload`` and ``display_summary`` are pure functions of the
    chain-native fields; the owning adapter re-derives both before signing.
    """
    family: ChainFamily
    network: str
    sender: str
    derivation_path: str
    signing_payload: bytes
    display_summary: str

    def to_dict(self) -> dict:
        return {
            "family": self.family.value,
            "network": self.network,
            "sender": self.sender,
            "derivation_path": self.derivation_path,
            "signing_payload": "0x" + self.signing_payload.hex(),
            "display_summary": self.display_summary,
        }


@dataclass(frozen=True)
class EvmUnsignedTx(UnsignedTransaction):
    """EIP-1559 (type 2) transaction."""
    chain_id: int
    to: str
    value: int
    data: bytes
    nonce: int
    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    operation: OperationKind
    fee_tier: str = SpeedTier.STANDARD.value
    fees_degraded: bool = False
    warnings: tuple = ()
    call_description: Optional[str] = None

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            chain_id=self.chain_id,
            to=self.to,
            value=str(self.value),
            data="0x" + self.data.hex(),
            nonce=self.nonce,
            gas_limit=str(self.gas_limit),
            max_fee_per_gas=str(self.max_fee_per_gas),
            max_priority_fee_per_gas=str(self.max_priority_fee_per_gas),
            operation=self.operation.value,
            fee_tier=self.fee_tier,
            fees_degraded=self.fees_degraded,
            warnings=list(self.warnings),
            call_description=self.call_description,
        )
        return data


@dataclass(frozen=True)
class SolanaUnsignedTx(UnsignedTransaction):
    """Legacy Solana transaction message awaiting the fee payer's signature."""
    fee_payer: str
    recent_blockhash: str
    last_valid_block_height: int
    instructions: tuple  # tuple[solders.instruction.Instruction, ...]
    compute_unit_limit: int
    compute_unit_price: int
    operation: OperationKind
    fee_tier: str = SpeedTier.STANDARD.value
    fees_degraded: bool = False
    warnings: tuple = ()
    creates_account: bool = False

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(
            fee_payer=self.fee_payer,
            recent_blockhash=self.recent_blockhash,
            last_valid_block_height=self.last_valid_block_height,
            instruction_count=len(self.instructions),
            programs=[str(ix.program_id) for ix in self.instructions],
            compute_unit_limit=self.compute_unit_limit,
            compute_unit_price=self.compute_unit_price,
            operation=self.operation.value,
            fee_tier=self.fee_tier,
            fees_degraded=self.fees_degraded,
            warnings=list(self.warnings),
            creates_account=self.creates_account,
        )
        return data


@dataclass(frozen=True)
class SignedTransaction:
    """Unsigned transaction plus device signature and final wire bytes."""
    unsigned: UnsignedTransaction
    signature: SignatureResult
    wire_bytes: bytes
    tx_id: str

    @property
    def network(self) -> str:
        return self.unsigned.network

    @property
    def family(self) -> ChainFamily:
        return self.unsigned.family

    def to_dict(self) -> dict:
        return {
            "tx_id": self.tx_id,
            "network": self.network,
            "raw": "0x" + self.wire_bytes.hex(),
            "transaction": self.unsigned.to_dict(),
        }


# ======================
# Broadcast
# ======================

class BroadcastStatus(str, Enum):
    """Built -> Submitted -> {Confirmed, Failed, Dropped}."""
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    DROPPED = "dropped"
    UNKNOWN = "unknown"

    @property
    def is_terminal(self) -> bool:
        return self in (BroadcastStatus.CONFIRMED, BroadcastStatus.FAILED, BroadcastStatus.DROPPED)


@dataclass
class BroadcastReceipt:
    """Outcome of a submission, updated by status polling."""
    tx_id: str
    network: str
    status: BroadcastStatus
    submitted_at: float = field(default_factory=time.time)
    error: Optional[PipelineError] = None
    nonce: Optional[int] = None
    block_number: Optional[int] = None
    slot: Optional[int] = None
    explorer_url: Optional[str] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "tx_id": self.tx_id,
            "network": self.network,
            "status": self.status.value,
            "submitted_at": self.submitted_at,
        }
        if self.nonce is not None:
            data["nonce"] = self.nonce
        if self.block_number is not None:
            data["block_number"] = self.block_number
        if self.slot is not None:
            data["slot"] = self.slot
        if self.explorer_url:
            data["explorer_url"] = self.explorer_url
        if self.error is not None:
            data["error"] = self.error.to_dict()
        return data


# ======================
# Facade results
# ======================

@dataclass
class CraftResult:
    """Result of a craft operation."""
    success: bool
    transaction: Optional[UnsignedTransaction] = None
    error: Optional[PipelineError] = None


@dataclass
class SignResult:
    """Result of a sign operation."""
    success: bool
    signed: Optional[SignedTransaction] = None
    error: Optional[PipelineError] = None


@dataclass
class SendResult:
    """Result of the fused craft + sign + broadcast flow."""
    success: bool
    stage: str
    transaction: Optional[UnsignedTransaction] = None
    signed: Optional[SignedTransaction] = None
    receipt: Optional[BroadcastReceipt] = None
    error: Optional[PipelineError] = None
