"""Application configuration using pydantic-settings.

Policy constants for retries, reservation expiry and fee staleness live here
so they can be tuned per deployment without code changes.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")

    # ======================
    # Hardware signer
    # ======================
    signer_backend: str = Field(
        default="ledger", description="Signer backend: ledger or simulated"
    )
    simulated_signer_mnemonic: Optional[str] = Field(
        default=None, description="BIP39 mnemonic for the simulated signer (development only)"
    )
    ledger_connect_timeout: float = Field(
        default=5.0, description="Seconds to wait for the Ledger device to open"
    )
    default_evm_path: str = Field(
        default="44'/60'/0'/0/0", description="Default EVM derivation path"
    )
    default_solana_path: str = Field(
        default="44'/501'/0'/0'", description="Default Solana derivation path"
    )

    # ======================
    # Chain RPC Endpoints
    # ======================
    alchemy_api_key: str = Field(default="", description="Alchemy API key for EVM endpoints")
    mainnet_rpc_url: Optional[str] = Field(default=None, description="Ethereum mainnet RPC URL")
    sepolia_rpc_url: Optional[str] = Field(default=None, description="Sepolia RPC URL")
    polygon_rpc_url: Optional[str] = Field(default=None, description="Polygon RPC URL")
    arbitrum_rpc_url: Optional[str] = Field(default=None, description="Arbitrum RPC URL")
    optimism_rpc_url: Optional[str] = Field(default=None, description="Optimism RPC URL")
    base_rpc_url: Optional[str] = Field(default=None, description="Base RPC URL")
    solana_mainnet_rpc_url: Optional[str] = Field(default=None, description="Solana mainnet RPC URL")
    solana_devnet_rpc_url: Optional[str] = Field(default=None, description="Solana devnet RPC URL")
    solana_testnet_rpc_url: Optional[str] = Field(default=None, description="Solana testnet RPC URL")

    # ======================
    # Contract ABI lookup
    # ======================
    blockscout_api_key: str = Field(default="", description="Blockscout API key")
    abi_lookup_enabled: bool = Field(
        default=True, description="Resolve contract method names for display"
    )

    # ======================
    # RPC / broadcast policy
    # ======================
    rpc_timeout: float = Field(default=30.0, description="Timeout for every RPC call (seconds)")
    broadcast_max_retries: int = Field(
        default=3, description="Attempts for transient broadcast failures"
    )
    broadcast_backoff_base: float = Field(
        default=1.0, description="Base delay for exponential broadcast backoff (seconds)"
    )
    confirmation_timeout: float = Field(
        default=90.0, description="Seconds to wait for confirmation before reporting dropped"
    )
    confirmation_poll_interval: float = Field(
        default=2.0, description="Seconds between confirmation polls"
    )

    # ======================
    # Sequencing
    # ======================
    nonce_reservation_ttl: float = Field(
        default=300.0, description="Seconds before an unresolved nonce reservation is reclaimable"
    )

    # ======================
    # Fee estimation
    # ======================
    fee_history_blocks: int = Field(default=20, description="Blocks sampled by eth_feeHistory")
    fee_max_staleness: float = Field(
        default=600.0, description="Max age of a cached fallback fee estimate (seconds)"
    )
    gas_limit_multiplier: float = Field(
        default=1.2, description="Safety multiplier applied to gas / compute estimates"
    )
    max_gas_limit: int = Field(default=10_000_000, description="Reject transactions above this gas limit")
    solana_compute_unit_ceiling: int = Field(
        default=200_000, description="Compute-unit limit used when simulation is unavailable"
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_rpc_override(self, network: str) -> Optional[str]:
        """Get an explicitly configured RPC URL for a network, if any."""
        attr = f"{network.replace('-', '_')}_rpc_url"
        return getattr(self, attr, None)

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "signer_backend": self.signer_backend,
            "simulated_signer_mnemonic": "***" if self.simulated_signer_mnemonic else "(not set)",
            "alchemy_api_key": "***" if self.alchemy_api_key else "(not set)",
            "blockscout_api_key": "***" if self.blockscout_api_key else "(not set)",
            "policy": {
                "rpc_timeout": self.rpc_timeout,
                "broadcast_max_retries": self.broadcast_max_retries,
                "broadcast_backoff_base": self.broadcast_backoff_base,
                "confirmation_timeout": self.confirmation_timeout,
                "nonce_reservation_ttl": self.nonce_reservation_ttl,
                "fee_max_staleness": self.fee_max_staleness,
                "gas_limit_multiplier": self.gas_limit_multiplier,
                "max_gas_limit": self.max_gas_limit,
            },
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
