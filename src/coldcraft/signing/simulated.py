"""Simulated hardware signer.

Derives keys from a BIP39 mnemonic the same way a Ledger does
(BIP32 secp256k1 for EVM, SLIP-10 ed25519 for Solana), so addresses and
signatures match a device initialised with the same seed. Suitable for:
- Development against testnets
- Tests (user rejection and disconnects can be simulated)

WARNING: Keys are held in memory. Never use a funded mnemonic.
"""

import logging
from typing import Optional

from bip_utils import Bip32Secp256k1, Bip32Slip10Ed25519, Bip39SeedGenerator
from eth_keys import keys
from eth_utils import keccak
from solders.keypair import Keypair

from coldcraft.chains import ChainFamily
from coldcraft.errors import ConfigurationError, SignerUnavailable, UserRejected, ValidationError
from coldcraft.models import SignatureRequest, SignatureResult
from coldcraft.signing.base import (
    HardwareSigner,
    SignerType,
    is_fully_hardened,
    normalize_path,
    personal_message_digest,
    solana_offchain_message,
)

logger = logging.getLogger(__name__)


class SimulatedSigner(HardwareSigner):
    """Mnemonic-backed signer that behaves like a connected device.

    Attributes:
        available: When False every call raises SignerUnavailable
        rejecting: When True every signing call raises UserRejected
        sign_calls: Number of signing prompts shown so far
    """

    def __init__(self, mnemonic: str, passphrase: str = ""):
        super().__init__(SignerType.SIMULATED)
        self._seed = Bip39SeedGenerator(mnemonic).Generate(passphrase)
        self._evm_keys: dict[str, keys.PrivateKey] = {}
        self._solana_keys: dict[str, Keypair] = {}
        self.available = True
        self.rejecting = False
        self.sign_calls = 0

    def _check_available(self) -> None:
        if not self.available:
            raise SignerUnavailable("Simulated device is disconnected")

    def _evm_key(self, derivation_path: str) -> keys.PrivateKey:
        key = self._evm_keys.get(derivation_path)
        if key is None:
            node = Bip32Secp256k1.FromSeed(self._seed).DerivePath("m/" + derivation_path)
            key = keys.PrivateKey(node.PrivateKey().Raw().ToBytes())
            self._evm_keys[derivation_path] = key
        return key

    def _solana_key(self, derivation_path: str) -> Keypair:
        keypair = self._solana_keys.get(derivation_path)
        if keypair is None:
            if not is_fully_hardened(derivation_path):
                raise ValidationError(
                    f"Solana derivation path must be fully hardened: {derivation_path}",
                    field="derivation_path",
                    rule="hardened_path",
                )
            node = Bip32Slip10Ed25519.FromSeed(self._seed).DerivePath("m/" + derivation_path)
            keypair = Keypair.from_seed(node.PrivateKey().Raw().ToBytes())
            self._solana_keys[derivation_path] = keypair
        return keypair

    def _prompt(self, what: str) -> None:
        self.sign_calls += 1
        if self.rejecting:
            logger.info(f"Simulated user rejected {what}")
            raise UserRejected(f"User rejected {what} on device")

    async def _get_address(self, family: ChainFamily, derivation_path: str, display: bool) -> str:
        self._check_available()
        if family == ChainFamily.EVM:
            return self._evm_key(derivation_path).public_key.to_checksum_address()
        return str(self._solana_key(derivation_path).pubkey())

    async def _sign_transaction(self, request: SignatureRequest) -> SignatureResult:
        self._check_available()
        path = normalize_path(request.derivation_path)

        if request.family == ChainFamily.EVM:
            key = self._evm_key(path)
            self._prompt("transaction")
            signature = key.sign_msg_hash(keccak(request.payload))
            return SignatureResult(
                signature=signature.to_bytes()[:64],
                recovery_id=signature.v,
                public_key=key.public_key.to_bytes(),
            )

        keypair = self._solana_key(path)
        self._prompt("transaction")
        signature = keypair.sign_message(request.payload)
        return SignatureResult(signature=bytes(signature), public_key=bytes(keypair.pubkey()))

    async def _sign_message(self, family: ChainFamily, derivation_path: str, message: bytes) -> SignatureResult:
        self._check_available()
        if family == ChainFamily.SOLANA:
            envelope = solana_offchain_message(message)
            keypair = self._solana_key(derivation_path)
            self._prompt("message")
            signature = keypair.sign_message(envelope)
            return SignatureResult(signature=bytes(signature), public_key=bytes(keypair.pubkey()))

        key = self._evm_key(derivation_path)
        self._prompt("message")
        signature = key.sign_msg_hash(personal_message_digest(message))
        return SignatureResult(
            signature=signature.to_bytes()[:64],
            recovery_id=signature.v,
            public_key=key.public_key.to_bytes(),
        )

    async def health_check(self) -> bool:
        return self.available


def build_simulated_signer(mnemonic: Optional[str]) -> SimulatedSigner:
    """Create a simulated signer, requiring an explicit mnemonic."""
    if not mnemonic:
        raise ConfigurationError("SIMULATED_SIGNER_MNEMONIC must be set for the simulated signer")
    logger.warning("Using simulated signer - keys are held in memory")
    return SimulatedSigner(mnemonic)
