"""Base interface for hardware signers.

Signing flow:
1. Adapter builds the unsigned transaction and its signing payload
2. Coordinator submits the payload with a derivation path
3. Device shows the transaction, the user confirms or rejects
4. Device returns a raw signature (keys never leave the device)
5. Adapter attaches the signature and produces wire bytes

The device is a single physical resource: every call goes through one
lock, so a second request waits while the user is looking at the first.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum

from bip_utils import Bip32PathError, Bip32PathParser
from eth_utils import keccak

from coldcraft.chains import ChainFamily
from coldcraft.errors import ValidationError
from coldcraft.models import SignatureRequest, SignatureResult

logger = logging.getLogger(__name__)

HARDENED_OFFSET = 0x80000000


class SignerType(str, Enum):
    """Type of signing backend."""
    LEDGER = "ledger"        # Ledger device over USB
    SIMULATED = "simulated"  # Mnemonic-derived keys (development/tests)


def parse_derivation_path(path: str) -> list[int]:
    """Parse a BIP32 path ("44'/60'/0'/0/0" or "m/44'/...") into indexes.

    Raises:
        ValidationError: If the path is malformed
    """
    text = path.strip()
    if not text.startswith("m"):
        text = "m/" + text
    try:
        indexes = Bip32PathParser.Parse(text).ToList()
    except Bip32PathError as e:
        raise ValidationError(
            f"Invalid derivation path {path!r}: {e}",
            field="derivation_path",
            rule="bip32_path",
        )
    if not indexes:
        raise ValidationError(
            f"Derivation path {path!r} has no components",
            field="derivation_path",
            rule="bip32_path",
        )
    return indexes


def is_fully_hardened(path: str) -> bool:
    """Check that every path component is hardened (required for ed25519)."""
    return all(index >= HARDENED_OFFSET for index in parse_derivation_path(path))


def normalize_path(path: str) -> str:
    """Canonical path form without the leading "m/"."""
    text = path.strip()
    if text.startswith("m/"):
        text = text[2:]
    return text.replace("h", "'").replace("H", "'")


class HardwareSigner(ABC):
    """Abstract base class for hardware signers.

    Public methods serialize access to the device; subclasses implement the
    underscore methods and may block for as long as the user takes.
    """

    def __init__(self, signer_type: SignerType):
        self.signer_type = signer_type
        self._device_lock = asyncio.Lock()

    async def get_address(self, family: ChainFamily, derivation_path: str, display: bool = False) -> str:
        """Get the address for a derivation path.

        Args:
            family: Chain family (selects the device app)
            derivation_path: BIP32 path
            display: Show the address on the device for verification

        Returns:
            Checksummed EVM address or base58 Solana public key
        """
        async with self._device_lock:
            address = await self._get_address(family, normalize_path(derivation_path), display)
        logger.debug(f"Address for {family.value} {derivation_path}: {address}")
        return address

    async def sign_transaction(self, request: SignatureRequest) -> SignatureResult:
        """Sign a transaction payload on the device.

        Raises:
            SignerUnavailable: Device not connected, locked or wrong app
            UserRejected: User declined on the device
        """
        async with self._device_lock:
            logger.info(
                f"Requesting {request.family.value} signature for {request.derivation_path} "
                f"({len(request.payload)} bytes)"
            )
            result = await self._sign_transaction(request)
        logger.info(f"Device signed {request.family.value} payload for {request.derivation_path}")
        return result

    async def sign_message(self, family: ChainFamily, derivation_path: str, message: bytes) -> SignatureResult:
        """Sign an off-chain message.

        EVM messages are signed as EIP-191 personal_sign; Solana messages are
        wrapped in the off-chain message envelope first.
        """
        async with self._device_lock:
            logger.info(f"Requesting {family.value} message signature for {derivation_path}")
            return await self._sign_message(family, normalize_path(derivation_path), message)

    @abstractmethod
    async def _get_address(self, family: ChainFamily, derivation_path: str, display: bool) -> str:
        pass

    @abstractmethod
    async def _sign_transaction(self, request: SignatureRequest) -> SignatureResult:
        pass

    @abstractmethod
    async def _sign_message(self, family: ChainFamily, derivation_path: str, message: bytes) -> SignatureResult:
        pass

    async def health_check(self) -> bool:
        """Check if the signer is reachable without prompting the user.

        Returns:
            True if the device is ready to sign
        """
        return True

    async def close(self) -> None:
        """Release the device connection."""
        return None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(type={self.signer_type.value})"


def personal_message_digest(message: bytes) -> bytes:
    """EIP-191 version 0x45 digest signed by personal_sign."""
    prefix = b"\x19Ethereum Signed Message:\n" + str(len(message)).encode()
    return keccak(prefix + message)


SOLANA_OFFCHAIN_DOMAIN = b"\xffsolana offchain"
SOLANA_OFFCHAIN_MAX_LENGTH = 1212


class OffchainMessageFormat(int, Enum):
    RESTRICTED_ASCII = 0
    LIMITED_UTF8 = 1


def solana_offchain_message(message: bytes) -> bytes:
    """Solana off-chain message envelope (header version 0).

    Layout: signing domain, version, format, little-endian u16 length, body.
    Printable ASCII is sent as restricted ASCII so the device can show it.

    Raises:
        ValidationError: Empty, too long or not UTF-8
    """
    if not message or len(message) > SOLANA_OFFCHAIN_MAX_LENGTH:
        raise ValidationError(
            f"Solana off-chain messages must be 1-{SOLANA_OFFCHAIN_MAX_LENGTH} bytes, got {len(message)}",
            field="message",
            rule="message_length",
        )

    if all(0x20 <= byte <= 0x7E for byte in message):
        message_format = OffchainMessageFormat.RESTRICTED_ASCII
    else:
        try:
            message.decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationError(
                "Solana off-chain messages must be valid UTF-8",
                field="message",
                rule="message_format",
            )
        message_format = OffchainMessageFormat.LIMITED_UTF8

    header = SOLANA_OFFCHAIN_DOMAIN + bytes([0, message_format]) + len(message).to_bytes(2, "little")
    return header + message
