"""Ledger hardware wallet signing backend.

Talks to the Ethereum and Solana device apps through ledgerblue's APDU
transport. The USB exchange blocks until the user acts, so every exchange
runs in the default executor.

Setup:
1. Install the transport: pip install coldcraft[ledger]
2. Connect and unlock the device
3. Open the app for the chain being signed (Ethereum or Solana)

Reference:
- https://github.com/LedgerHQ/app-ethereum/blob/develop/doc/ethapp.adoc
- https://github.com/LedgerHQ/app-solana
"""

import asyncio
import logging
import struct

from eth_utils import to_checksum_address
from solders.pubkey import Pubkey

from coldcraft.chains import ChainFamily
from coldcraft.errors import SignerError, SignerUnavailable, UserRejected, ValidationError
from coldcraft.models import SignatureRequest, SignatureResult
from coldcraft.signing.base import (
    HardwareSigner,
    SignerType,
    is_fully_hardened,
    parse_derivation_path,
    solana_offchain_message,
)

logger = logging.getLogger(__name__)

CLA = 0xE0
MAX_CHUNK = 255

# Ethereum app
ETH_INS_GET_ADDRESS = 0x02
ETH_INS_SIGN_TX = 0x04
ETH_INS_SIGN_PERSONAL = 0x08
ETH_P1_FIRST = 0x00
ETH_P1_MORE = 0x80

# Solana app
SOL_INS_GET_PUBKEY = 0x05
SOL_INS_SIGN_MESSAGE = 0x06
SOL_INS_SIGN_OFFCHAIN_MESSAGE = 0x07
SOL_P1_CONFIRM = 0x01
SOL_P2_EXTEND = 0x01
SOL_P2_MORE = 0x02

# Status words
SW_USER_REJECTED = 0x6985
SW_INVALID_DATA = 0x6A80
SW_UNAVAILABLE = {
    0x6D00,  # INS not supported: wrong app open
    0x6E00,  # CLA not supported: dashboard / wrong app
    0x6E01,  # app not open
    0x5515,  # device locked
    0x6B0C,  # device locked (older firmware)
    0x6F00,  # no dongle / transport failure
    0x6804,  # app is in an unexpected state
}


def serialize_path(path: str) -> bytes:
    """Ledger path encoding: component count followed by big-endian uint32s."""
    indexes = parse_derivation_path(path)
    return bytes([len(indexes)]) + b"".join(struct.pack(">I", index) for index in indexes)


def build_apdu(ins: int, p1: int, p2: int, data: bytes = b"") -> bytes:
    return bytes([CLA, ins, p1, p2, len(data)]) + data


def translate_status(sw: int, context: str) -> SignerError:
    """Map a device status word to a pipeline error."""
    if sw == SW_USER_REJECTED:
        return UserRejected(f"User rejected {context} on device", status_word=hex(sw))
    if sw in SW_UNAVAILABLE:
        return SignerUnavailable(
            f"Ledger not ready for {context}: unlock the device and open the correct app",
            status_word=hex(sw),
        )
    if sw == SW_INVALID_DATA:
        return SignerError(f"Ledger rejected {context} data as invalid", status_word=hex(sw))
    return SignerError(f"Ledger error during {context}", status_word=hex(sw))


class LedgerSigner(HardwareSigner):
    """Ledger device signer.

    The connection is opened lazily on first use and reopened after a
    transport failure.
    """

    def __init__(self, connect_timeout: float = 5.0):
        super().__init__(SignerType.LEDGER)
        self.connect_timeout = connect_timeout
        self._dongle = None

    def _open_dongle(self):
        """Open the USB connection (blocking)."""
        try:
            from ledgerblue.comm import getDongle
        except ImportError:
            raise SignerUnavailable(
                "ledgerblue library not installed. Install with: pip install coldcraft[ledger]"
            )

        try:
            return getDongle(debug=False)
        except Exception as e:
            logger.warning(f"Failed to open Ledger: {e}")
            raise SignerUnavailable(f"Ledger not connected: {e}")

    async def _ensure_dongle(self):
        if self._dongle is not None:
            return self._dongle

        loop = asyncio.get_running_loop()
        try:
            self._dongle = await asyncio.wait_for(
                loop.run_in_executor(None, self._open_dongle),
                timeout=self.connect_timeout,
            )
        except asyncio.TimeoutError:
            raise SignerUnavailable(f"Ledger did not respond within {self.connect_timeout}s")

        logger.info("Ledger connected")
        return self._dongle

    def _exchange_sync(self, dongle, apdu: bytes, context: str) -> bytes:
        from ledgerblue.commException import CommException

        try:
            return bytes(dongle.exchange(apdu))
        except CommException as e:
            error = translate_status(e.sw, context)
            if isinstance(error, SignerUnavailable):
                self._reset()
            raise error

    def _reset(self) -> None:
        dongle, self._dongle = self._dongle, None
        if dongle is not None:
            try:
                dongle.close()
            except Exception as e:
                logger.debug(f"Error closing Ledger: {e}")

    async def _exchange(self, apdu: bytes, context: str) -> bytes:
        """Send one APDU and return the response data.

        No timeout: the user may take as long as needed to confirm.
        """
        dongle = await self._ensure_dongle()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._exchange_sync, dongle, apdu, context)
        except SignerError as e:
            logger.info(f"Ledger {context}: {e.code} {e.details}")
            raise
        except OSError as e:
            self._reset()
            raise SignerUnavailable(f"Ledger transport failed during {context}: {e}")

    # ----------------------
    # Addresses
    # ----------------------

    async def _get_address(self, family: ChainFamily, derivation_path: str, display: bool) -> str:
        path = serialize_path(derivation_path)
        p1 = 0x01 if display else 0x00

        if family == ChainFamily.EVM:
            response = await self._exchange(build_apdu(ETH_INS_GET_ADDRESS, p1, 0x00, path), "address request")
            pubkey_len = response[0]
            addr_len = response[1 + pubkey_len]
            address = response[2 + pubkey_len:2 + pubkey_len + addr_len].decode("ascii")
            return to_checksum_address("0x" + address)

        self._require_hardened(derivation_path)
        response = await self._exchange(build_apdu(SOL_INS_GET_PUBKEY, p1, 0x00, path), "public key request")
        return str(Pubkey.from_bytes(response[:32]))

    # ----------------------
    # Signing
    # ----------------------

    async def _sign_transaction(self, request: SignatureRequest) -> SignatureResult:
        if request.family == ChainFamily.EVM:
            response = await self._send_eth_chunks(
                ETH_INS_SIGN_TX,
                serialize_path(request.derivation_path) + request.payload,
                "transaction",
            )
            return self._eth_signature(response)

        self._require_hardened(request.derivation_path)
        response = await self._send_solana_message(request.derivation_path, request.payload)
        if len(response) < 64:
            raise SignerError("Ledger returned a short signature", length=len(response))
        return SignatureResult(signature=response[:64])

    async def _sign_message(self, family: ChainFamily, derivation_path: str, message: bytes) -> SignatureResult:
        if family == ChainFamily.SOLANA:
            self._require_hardened(derivation_path)
            response = await self._send_solana_message(
                derivation_path,
                solana_offchain_message(message),
                ins=SOL_INS_SIGN_OFFCHAIN_MESSAGE,
                context="message",
            )
            if len(response) < 64:
                raise SignerError("Ledger returned a short signature", length=len(response))
            return SignatureResult(signature=response[:64])

        data = serialize_path(derivation_path) + struct.pack(">I", len(message)) + message
        response = await self._send_eth_chunks(ETH_INS_SIGN_PERSONAL, data, "message")
        return self._eth_signature(response)

    async def _send_eth_chunks(self, ins: int, data: bytes, context: str) -> bytes:
        response = b""
        for offset in range(0, len(data), MAX_CHUNK):
            p1 = ETH_P1_FIRST if offset == 0 else ETH_P1_MORE
            chunk = data[offset:offset + MAX_CHUNK]
            response = await self._exchange(build_apdu(ins, p1, 0x00, chunk), context)
        return response

    async def _send_solana_message(
        self,
        derivation_path: str,
        message: bytes,
        ins: int = SOL_INS_SIGN_MESSAGE,
        context: str = "transaction",
    ) -> bytes:
        # First chunk carries the signer count and path
        data = bytes([1]) + serialize_path(derivation_path) + message
        chunks = [data[i:i + MAX_CHUNK] for i in range(0, len(data), MAX_CHUNK)]

        response = b""
        for i, chunk in enumerate(chunks):
            p2 = 0
            if i > 0:
                p2 |= SOL_P2_EXTEND
            if i < len(chunks) - 1:
                p2 |= SOL_P2_MORE
            response = await self._exchange(build_apdu(ins, SOL_P1_CONFIRM, p2, chunk), context)
        return response

    @staticmethod
    def _eth_signature(response: bytes) -> SignatureResult:
        if len(response) < 65:
            raise SignerError("Ledger returned a short signature", length=len(response))
        v = response[0]
        # Older app versions return 27/28 or an EIP-155 style v truncated to a byte
        recovery_id = (v - 27) & 1 if v >= 27 else v & 1
        return SignatureResult(signature=response[1:65], recovery_id=recovery_id)

    @staticmethod
    def _require_hardened(derivation_path: str) -> None:
        if not is_fully_hardened(derivation_path):
            raise ValidationError(
                f"Solana derivation path must be fully hardened: {derivation_path}",
                field="derivation_path",
                rule="hardened_path",
            )

    async def health_check(self) -> bool:
        """Check the device is connected without prompting."""
        try:
            await self._ensure_dongle()
            return True
        except SignerError as e:
            logger.warning(f"Ledger health check failed: {e}")
            return False

    async def close(self) -> None:
        self._reset()
