"""Signing coordination.

Sits between crafted transactions and the hardware signer:

1. Pre-sign validation by the owning adapter
2. Payload and summary re-derived and compared with what was crafted
3. Derivation path checked against the one the transaction was crafted for
4. Exactly one device call (a rejection is final and never retried)
5. Signature attached and verified against the sender
"""

import logging

from coldcraft.adapters.base import ChainAdapter
from coldcraft.chains import ChainFamily
from coldcraft.errors import InvariantViolation, SignatureMismatch, UserRejected, ValidationError
from coldcraft.models import SignatureResult, SignedTransaction, UnsignedTransaction
from coldcraft.signing.base import HardwareSigner, is_fully_hardened, normalize_path, parse_derivation_path

logger = logging.getLogger(__name__)


class SigningCoordinator:
    """Runs the pre-sign checks and the single device call."""

    def __init__(self, signer: HardwareSigner):
        self.signer = signer

    async def sign(
        self,
        adapter: ChainAdapter,
        unsigned: UnsignedTransaction,
        derivation_path: str,
    ) -> SignedTransaction:
        """Sign an unsigned transaction on the device.

        Args:
            adapter: Adapter of the transaction's network
            unsigned: Crafted transaction
            derivation_path: Path the caller expects to sign with

        Returns:
            Signed transaction with wire bytes

        Raises:
            ValidationError: Pre-sign checks failed or the path differs
            SignerUnavailable: Device not ready
            UserRejected: User declined on the device
            SignatureMismatch: Signature does not belong to the sender
            InvariantViolation: Carried payload or summary was altered
        """
        error = adapter.validate_unsigned(unsigned)
        if error is not None:
            logger.warning(f"Pre-sign validation failed on {unsigned.network}: {error.message}")
            raise error

        payload = adapter.signing_payload(unsigned)
        if payload != unsigned.signing_payload:
            logger.critical(f"Signing payload mismatch on {unsigned.network} for {unsigned.sender}")
            raise InvariantViolation("Signing payload does not match the transaction fields")
        if adapter.display_summary(unsigned) != unsigned.display_summary:
            logger.critical(f"Display summary mismatch on {unsigned.network} for {unsigned.sender}")
            raise InvariantViolation("Display summary does not match the transaction fields")

        parse_derivation_path(derivation_path)
        if normalize_path(derivation_path) != normalize_path(unsigned.derivation_path):
            raise ValidationError(
                f"Transaction was crafted for {unsigned.derivation_path}, not {derivation_path}",
                field="derivation_path",
                rule="path_mismatch",
            )

        try:
            signature = await self.signer.sign_transaction(adapter.signature_request(unsigned))
        except UserRejected:
            logger.info(f"User rejected {unsigned.family.value} transaction on {unsigned.network}")
            raise

        signed = adapter.attach_signature(unsigned, signature)
        if not adapter.verify_signature(signed):
            logger.error(f"Device signature does not match sender {unsigned.sender} on {unsigned.network}")
            raise SignatureMismatch(
                "Device signature does not belong to the transaction sender",
                sender=unsigned.sender,
                derivation_path=derivation_path,
            )

        logger.info(f"Signed {unsigned.family.value} transaction {signed.tx_id} on {unsigned.network}")
        return signed

    async def sign_message(self, family: ChainFamily, derivation_path: str, message: bytes) -> SignatureResult:
        """Sign an off-chain message through the same device lock.

        EVM messages use EIP-191 personal_sign. Solana messages are signed as
        off-chain messages and need a fully hardened path.

        Raises:
            ValidationError: Malformed path or message
            SignerUnavailable: Device not ready
            UserRejected: User declined on the device
        """
        parse_derivation_path(derivation_path)
        if family == ChainFamily.SOLANA and not is_fully_hardened(derivation_path):
            raise ValidationError(
                f"Solana derivation path must be fully hardened: {derivation_path}",
                field="derivation_path",
                rule="hardened_path",
            )
        try:
            result = await self.signer.sign_message(family, derivation_path, message)
        except UserRejected:
            logger.info(f"User rejected {family.value} message signature")
            raise
        logger.info(f"Signed {len(message)} byte {family.value} message with {derivation_path}")
        return result
