"""Hardware signing.

Provides signer implementations behind one interface:
- LedgerSigner: Ledger device over USB (Ethereum and Solana apps)
- SimulatedSigner: Mnemonic-derived keys for development and tests
"""

from coldcraft.signing.base import (
    HardwareSigner,
    SignerType,
    parse_derivation_path,
)
from coldcraft.signing.factory import get_signer, reset_signer
from coldcraft.signing.simulated import SimulatedSigner

__all__ = [
    "HardwareSigner",
    "SignerType",
    "SimulatedSigner",
    "get_signer",
    "parse_derivation_path",
    "reset_signer",
]
