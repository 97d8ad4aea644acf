"""Base interface for chain adapters.

An adapter owns everything that is chain-specific but free of I/O:
request validation, transaction assembly, signing payloads, display
summaries, signature attachment and wire serialization. It never talks to
the network or the device, so every method is deterministic.
"""

import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Optional

from coldcraft.chains import ChainFamily, NetworkConfig
from coldcraft.config import Settings, get_settings
from coldcraft.errors import ValidationError
from coldcraft.models import (
    OperationRequest,
    SignatureRequest,
    SignatureResult,
    SignedTransaction,
    TierFee,
    UnsignedTransaction,
)
from coldcraft.signing.base import parse_derivation_path

logger = logging.getLogger(__name__)


def format_units(value: int, decimals: int) -> str:
    """Render base units as a decimal string without exponent notation."""
    amount = Decimal(value) / (Decimal(10) ** decimals)
    text = format(amount, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


class ChainAdapter(ABC):
    """Chain-specific transaction logic for one network."""

    family: ChainFamily

    def __init__(self, network: NetworkConfig, settings: Optional[Settings] = None):
        if network.family != self.family:
            raise ValueError(f"{self.__class__.__name__} cannot serve {network.family.value} network {network.name}")
        self.network = network
        self.settings = settings or get_settings()

    # ----------------------
    # Request validation
    # ----------------------

    def validate(self, request: OperationRequest) -> Optional[ValidationError]:
        """Validate a request against chain rules.

        Returns:
            The first rule violation, or None if the request is valid
        """
        error = self._validate_common(request)
        if error is not None:
            return error
        try:
            return self._validate_request(request)
        except ValidationError as e:
            return e

    def _validate_common(self, request: OperationRequest) -> Optional[ValidationError]:
        if request.family != self.family:
            return ValidationError(
                f"{request.__class__.__name__} is a {request.family.value} request, "
                f"but {self.network.name} is a {self.family.value} network",
                field="network",
                rule="family_mismatch",
            )
        if request.network != self.network.name:
            return ValidationError(
                f"Request targets {request.network}, adapter serves {self.network.name}",
                field="network",
                rule="network_mismatch",
            )
        try:
            parse_derivation_path(request.derivation_path)
        except ValidationError as e:
            return e
        return None

    @abstractmethod
    def _validate_request(self, request: OperationRequest) -> Optional[ValidationError]:
        """Family-specific checks; may return or raise a ValidationError."""
        pass

    # ----------------------
    # Assembly
    # ----------------------

    @abstractmethod
    def build_unsigned(
        self,
        request: OperationRequest,
        sender: str,
        fee: TierFee,
        sequencing: Any,
        description: Optional[str] = None,
        fees_degraded: bool = False,
    ) -> UnsignedTransaction:
        """Assemble the unsigned transaction.

        Args:
            request: Validated operation request
            sender: Address of the signing key
            fee: Final fee parameters (overrides already applied)
            sequencing: Nonce (EVM) or blockhash context (Solana)
            description: Optional human-readable call description
            fees_degraded: Fee parameters come from a fallback estimate

        Raises:
            ValidationError: If the assembled transaction breaks a chain rule
        """
        pass

    @abstractmethod
    def signing_payload(self, unsigned: UnsignedTransaction) -> bytes:
        """Recompute the exact bytes the device signs."""
        pass

    @abstractmethod
    def display_summary(self, unsigned: UnsignedTransaction) -> str:
        """Recompute the human-readable summary shown before signing."""
        pass

    @abstractmethod
    def validate_unsigned(self, unsigned: UnsignedTransaction) -> Optional[ValidationError]:
        """Pre-sign checks on an assembled transaction."""
        pass

    def signature_request(self, unsigned: UnsignedTransaction) -> SignatureRequest:
        return SignatureRequest(
            family=self.family,
            derivation_path=unsigned.derivation_path,
            payload=unsigned.signing_payload,
            chain_id=self.network.chain_id,
        )

    # ----------------------
    # Signatures
    # ----------------------

    @abstractmethod
    def attach_signature(self, unsigned: UnsignedTransaction, signature: SignatureResult) -> SignedTransaction:
        """Combine an unsigned transaction and a device signature."""
        pass

    @abstractmethod
    def serialize(self, signed: SignedTransaction) -> bytes:
        """Recompute wire bytes from the unsigned transaction and signature."""
        pass

    @abstractmethod
    def verify_signature(self, signed: SignedTransaction) -> bool:
        """Check that the signature belongs to the transaction's sender."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(network={self.network.name})"
