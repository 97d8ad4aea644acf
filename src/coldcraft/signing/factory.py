"""Signer factory.

Creates the hardware signer selected by configuration. There is one signer
per process, since there is one physical device.
"""

import logging
from typing import Optional

from coldcraft.config import Settings, get_settings
from coldcraft.errors import ConfigurationError
from coldcraft.signing.base import HardwareSigner, SignerType

logger = logging.getLogger(__name__)


def get_signer_type(settings: Optional[Settings] = None) -> SignerType:
    """Determine which signer to use.

    Raises:
        ConfigurationError: If SIGNER_BACKEND names an unknown backend
    """
    settings = settings or get_settings()
    explicit = settings.signer_backend.lower().strip()
    try:
        return SignerType(explicit)
    except ValueError:
        raise ConfigurationError(
            f"Unknown SIGNER_BACKEND {settings.signer_backend!r} "
            f"(expected one of: {', '.join(t.value for t in SignerType)})"
        )


_signer_instance: Optional[HardwareSigner] = None


def get_signer(settings: Optional[Settings] = None) -> HardwareSigner:
    """Get the configured signer instance.

    Returns a singleton for the configured signer type.
    """
    global _signer_instance

    if _signer_instance is not None:
        return _signer_instance

    settings = settings or get_settings()
    signer_type = get_signer_type(settings)
    logger.info(f"Initializing {signer_type.value} signer")

    if signer_type == SignerType.SIMULATED:
        if settings.is_production:
            raise ConfigurationError("The simulated signer cannot be used in production")
        from coldcraft.signing.simulated import build_simulated_signer
        _signer_instance = build_simulated_signer(settings.simulated_signer_mnemonic)

    else:  # LEDGER
        from coldcraft.signing.ledger import LedgerSigner
        _signer_instance = LedgerSigner(connect_timeout=settings.ledger_connect_timeout)

    return _signer_instance


def reset_signer():
    """Reset the signer instance (for testing)."""
    global _signer_instance
    _signer_instance = None


async def get_signer_info(signer: Optional[HardwareSigner] = None) -> dict:
    """Get information about the current signer.

    Returns:
        Dict with signer type, health status and class
    """
    signer = signer or get_signer()
    health = await signer.health_check()

    return {
        "type": signer.signer_type.value,
        "healthy": health,
        "class": signer.__class__.__name__,
    }
