"""
Super Router Configuration Management
Uses pydantic-settings for type-safe environment variable loading
"""

from typing import Literal, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from web3 import Web3

from super_router.errors import ConfigError


# Chain ids used in the EIP-712 permit domain
CHAIN_IDS = {
    "base": 8453,
    "base-sepolia": 84532,
}


class RouterConfig(BaseSettings):
    """Configuration for the payment-gated generation router"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Host to bind the server to")
    port: int = Field(default=3402, description="Port to bind the server to")
    public_url: str = Field(default="http://localhost:3402", description="Externally visible base URL")
    endpoints_config: str = Field(default="endpoints.json", description="Path to the endpoint catalog")

    # Facilitator
    facilitator_url: str = Field(default="https://facilitator.x402.org")
    facilitator_signer: str = Field(default="", description="Address allowed to spend the permit")
    settle_payments: bool = Field(default=True, description="Settle after a successful verify")

    # Payment Configuration
    wallet_address: str = Field(default="", description="Payee wallet address")
    payment_network: Literal["base", "base-sepolia"] = Field(default="base")
    payment_token_address: str = Field(default="0x587Cd533F418825521f3A1daa7CCd1E7339A1B07")
    payment_token_symbol: str = Field(default="STARKBOT")
    payment_token_decimals: int = Field(default=18, ge=0, le=36)
    payment_token_name: str = Field(default="StarkBot")
    payment_token_version: str = Field(default="1")
    endpoint_costs: dict[str, str] = Field(
        default_factory=dict,
        description="Per-endpoint cost overrides in human units, keyed by endpoint path"
    )
    rpc_url: str = Field(default="https://mainnet.base.org")

    # x402 challenge
    challenge_secret: str = Field(default="", description="HMAC key for challenge nonces")
    challenge_ttl_seconds: int = Field(default=300, ge=1)

    # Test/bypass mode disables payment verification entirely
    test_mode: bool = Field(default=False)

    # Generation provider
    fal_key: str = Field(default="")
    fal_base_url: str = Field(default="https://fal.run")

    # Database (cache table)
    supabase_url: str = Field(default="")
    supabase_key: str = Field(default="")
    cache_ttl_days: int = Field(default=30, ge=1)

    # Blob storage
    storage_url: str = Field(default="", description="Defaults to SUPABASE_URL")
    storage_key: str = Field(default="", description="Defaults to SUPABASE_KEY")
    storage_bucket: str = Field(default="generated-media")
    storage_cdn_url: str = Field(default="", description="Public URL prefix for stored objects")

    # Timeouts (seconds)
    facilitator_timeout: float = Field(default=15.0)
    provider_timeout: float = Field(default=180.0)
    download_timeout: float = Field(default=60.0)
    postprocess_timeout: float = Field(default=120.0)
    storage_timeout: float = Field(default=30.0)
    cache_timeout: float = Field(default=10.0)

    # Retry policy
    facilitator_retries: int = Field(default=2, ge=0)
    provider_retries: int = Field(default=2, ge=0)
    upload_retries: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=8.0, ge=0)

    # Expiry sweep
    cleanup_interval_seconds: int = Field(default=3600, ge=1)
    cleanup_batch_size: int = Field(default=100, ge=1)

    # CORS Configuration
    cors_origins: list[str] = Field(default=["*"], description="Allowed CORS origins")

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["json", "text"] = Field(default="json")

    @field_validator("wallet_address", "facilitator_signer", "payment_token_address")
    @classmethod
    def validate_address(cls, v):
        if not v:
            return v
        if not Web3.is_address(v):
            raise ValueError(f"not a valid EVM address: {v}")
        return Web3.to_checksum_address(v)

    @property
    def chain_id(self) -> int:
        return CHAIN_IDS[self.payment_network]

    @property
    def effective_storage_url(self) -> str:
        return self.storage_url or self.supabase_url

    @property
    def effective_storage_key(self) -> str:
        return self.storage_key or self.supabase_key

    def require_credentials(self) -> None:
        """Raise ConfigError naming every required setting that is missing"""
        required = {
            "FACILITATOR_SIGNER": self.facilitator_signer,
            "WALLET_ADDRESS": self.wallet_address,
            "FAL_KEY": self.fal_key,
            "SUPABASE_URL": self.supabase_url,
            "SUPABASE_KEY": self.supabase_key,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")


# Singleton instance
_router_config: Optional[RouterConfig] = None


def get_config() -> RouterConfig:
    """Get or create router configuration singleton"""
    global _router_config
    if _router_config is None:
        try:
            _router_config = RouterConfig()
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e
    return _router_config


def reset_config() -> None:
    """Drop the cached configuration so the next get_config() re-reads the environment"""
    global _router_config
    _router_config = None
