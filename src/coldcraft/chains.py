"""Network registry for all supported chains.

Two families are supported:
- EVM (account/nonce based): mainnet, sepolia, polygon, arbitrum, optimism, base
- Solana (recent-blockhash based): solana-mainnet, solana-devnet, solana-testnet

Public RPC defaults are used unless an endpoint is configured explicitly.
"""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional

from coldcraft.config import Settings, get_settings
from coldcraft.errors import ConfigurationError


class ChainFamily(str, Enum):
    """Transaction model family."""
    EVM = "evm"
    SOLANA = "solana"


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for a network."""

    name: str
    family: ChainFamily
    display_name: str
    native_symbol: str
    native_decimals: int
    rpc_url: str
    explorer_url: str

    chain_id: Optional[int] = None  # EVM only
    alchemy_slug: Optional[str] = None
    blockscout_url: Optional[str] = None  # EVM only
    block_time_seconds: float = 12.0

    @property
    def is_evm(self) -> bool:
        return self.family == ChainFamily.EVM

    @property
    def is_solana(self) -> bool:
        return self.family == ChainFamily.SOLANA


# ======================
# Network Configurations
# ======================

NETWORKS: dict[str, NetworkConfig] = {
    "mainnet": NetworkConfig(
        name="mainnet",
        family=ChainFamily.EVM,
        display_name="Ethereum",
        native_symbol="ETH",
        native_decimals=18,
        rpc_url="https://cloudflare-eth.com",
        explorer_url="https://etherscan.io",
        chain_id=1,
        alchemy_slug="eth-mainnet",
        blockscout_url="https://eth.blockscout.com",
    ),
    "sepolia": NetworkConfig(
        name="sepolia",
        family=ChainFamily.EVM,
        display_name="Sepolia",
        native_symbol="ETH",
        native_decimals=18,
        rpc_url="https://rpc.sepolia.org",
        explorer_url="https://sepolia.etherscan.io",
        chain_id=11155111,
        alchemy_slug="eth-sepolia",
        blockscout_url="https://eth-sepolia.blockscout.com",
    ),
    "polygon": NetworkConfig(
        name="polygon",
        family=ChainFamily.EVM,
        display_name="Polygon",
        native_symbol="POL",
        native_decimals=18,
        rpc_url="https://polygon-rpc.com",
        explorer_url="https://polygonscan.com",
        chain_id=137,
        alchemy_slug="polygon-mainnet",
        blockscout_url="https://polygon.blockscout.com",
        block_time_seconds=2.0,
    ),
    "arbitrum": NetworkConfig(
        name="arbitrum",
        family=ChainFamily.EVM,
        display_name="Arbitrum One",
        native_symbol="ETH",
        native_decimals=18,
        rpc_url="https://arb1.arbitrum.io/rpc",
        explorer_url="https://arbiscan.io",
        chain_id=42161,
        alchemy_slug="arb-mainnet",
        blockscout_url="https://arbitrum.blockscout.com",
        block_time_seconds=0.25,
    ),
    "optimism": NetworkConfig(
        name="optimism",
        family=ChainFamily.EVM,
        display_name="Optimism",
        native_symbol="ETH",
        native_decimals=18,
        rpc_url="https://mainnet.optimism.io",
        explorer_url="https://optimistic.etherscan.io",
        chain_id=10,
        alchemy_slug="opt-mainnet",
        blockscout_url="https://optimism.blockscout.com",
        block_time_seconds=2.0,
    ),
    "base": NetworkConfig(
        name="base",
        family=ChainFamily.EVM,
        display_name="Base",
        native_symbol="ETH",
        native_decimals=18,
        rpc_url="https://mainnet.base.org",
        explorer_url="https://basescan.org",
        chain_id=8453,
        alchemy_slug="base-mainnet",
        blockscout_url="https://base.blockscout.com",
        block_time_seconds=2.0,
    ),
    "solana-mainnet": NetworkConfig(
        name="solana-mainnet",
        family=ChainFamily.SOLANA,
        display_name="Solana",
        native_symbol="SOL",
        native_decimals=9,
        rpc_url="https://api.mainnet-beta.solana.com",
        explorer_url="https://solscan.io",
        block_time_seconds=0.4,
    ),
    "solana-devnet": NetworkConfig(
        name="solana-devnet",
        family=ChainFamily.SOLANA,
        display_name="Solana Devnet",
        native_symbol="SOL",
        native_decimals=9,
        rpc_url="https://api.devnet.solana.com",
        explorer_url="https://solscan.io/?cluster=devnet",
        block_time_seconds=0.4,
    ),
    "solana-testnet": NetworkConfig(
        name="solana-testnet",
        family=ChainFamily.SOLANA,
        display_name="Solana Testnet",
        native_symbol="SOL",
        native_decimals=9,
        rpc_url="https://api.testnet.solana.com",
        explorer_url="https://solscan.io/?cluster=testnet",
        block_time_seconds=0.4,
    ),
}


def get_network(name: str, settings: Optional[Settings] = None) -> NetworkConfig:
    """Get configuration for a network with endpoint overrides applied.

    Priority for the RPC endpoint:
    1. Explicit per-network setting ({NETWORK}_RPC_URL)
    2. Alchemy endpoint if ALCHEMY_API_KEY is set (EVM only)
    3. Public default

    Raises:
        ConfigurationError: If the network is unknown
    """
    config = NETWORKS.get(name.lower())
    if config is None:
        raise ConfigurationError(f"Unsupported network: {name}")

    settings = settings or get_settings()
    override = settings.get_rpc_override(config.name)
    if override:
        return replace(config, rpc_url=override)

    if config.is_evm and settings.alchemy_api_key and config.alchemy_slug:
        return replace(
            config,
            rpc_url=f"https://{config.alchemy_slug}.g.alchemy.com/v2/{settings.alchemy_api_key}",
        )

    return config


def get_networks(family: Optional[ChainFamily] = None) -> list[str]:
    """Get names of supported networks, optionally filtered by family."""
    return [
        name for name, config in NETWORKS.items()
        if family is None or config.family == family
    ]
