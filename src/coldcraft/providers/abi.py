"""Contract ABI lookup via Blockscout.

Used only to describe contract calls on screen; a missing or failed lookup
never blocks crafting.
"""

import logging
from typing import Optional

import httpx

from coldcraft.chains import NetworkConfig
from coldcraft.config import Settings, get_settings

logger = logging.getLogger(__name__)


class AbiProvider:
    """Fetches verified contract ABIs from a network's Blockscout instance."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.timeout = timeout
        self._transport = transport
        self._cache: dict[tuple[str, str], Optional[list]] = {}

    async def get_abi(self, network: NetworkConfig, address: str) -> Optional[list]:
        """Get the ABI of a verified contract.

        Args:
            network: EVM network the contract lives on
            address: Contract address

        Returns:
            ABI as a list of entries, or None if unavailable
        """
        if not self.settings.abi_lookup_enabled or not network.blockscout_url:
            return None

        key = (network.name, address.lower())
        if key in self._cache:
            return self._cache[key]

        url = f"{network.blockscout_url}/api/v2/smart-contracts/{address}"
        params = {}
        if self.settings.blockscout_api_key:
            params["apikey"] = self.settings.blockscout_api_key

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            logger.warning(f"ABI lookup failed for {address} on {network.name}: {e}")
            return None

        if response.status_code == 404:
            self._cache[key] = None
            return None
        if response.status_code != 200:
            logger.warning(f"ABI lookup for {address} on {network.name} returned HTTP {response.status_code}")
            return None

        try:
            body = response.json()
        except ValueError:
            logger.warning(f"ABI lookup for {address} on {network.name} returned invalid JSON")
            return None

        abi = body.get("abi") if isinstance(body, dict) else None
        abi = abi if isinstance(abi, list) else None
        self._cache[key] = abi
        logger.debug(f"ABI for {address} on {network.name}: {len(abi) if abi else 0} entries")
        return abi
