"""
Configuration management using Pydantic Settings.
Supports multiple environments: development, staging, production, test.
"""

from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings with environment-based configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application
    app_name: str = "Moltbank Teller"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"
    agent_name: str = "moltbank-teller"

    # API
    host: str = "0.0.0.0"
    port: int = 3402
    cors_origins: List[str] = ["*"]
    background_tasks_enabled: bool = True

    # Database
    database_url: Optional[str] = None
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Chain (USDC payments on BASE)
    base_rpc_url: str = "https://mainnet.base.org"
    safe_address: Optional[str] = None
    usdc_contract: str = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    usdc_decimals: int = 6
    payment_chain: str = "BASE"
    payment_token: str = "USDC"
    rpc_timeout_seconds: int = 30

    # Teller loop timing
    poll_interval_seconds: float = 15
    worker_interval_seconds: float = 15
    queue_cooldown_seconds: float = 120
    stats_interval_seconds: float = 300
    ingest_lookback_blocks: int = 50

    # Pricing, in USDC
    tier_prices: Dict[str, Decimal] = {
        "regular": Decimal("10"),
        "premium": Decimal("50"),
        "vip": Decimal("100"),
    }
    # Tiers the payment watcher may classify on-chain payments into
    ingest_tiers: List[str] = ["regular", "premium", "vip"]
    nxt_layer_gas: Dict[str, Decimal] = {
        "regular": Decimal("5"),
        "premium": Decimal("5"),
        "vip": Decimal("10"),
    }
    nxt_gas_chain: str = "NXT"
    gas_bundle_price: Decimal = Decimal("15")
    gas_bundle_per_chain: Dict[str, Decimal] = {
        "regular": Decimal("0"),
        "premium": Decimal("2.5"),
        "vip": Decimal("5"),
        "standalone": Decimal("2.5"),
    }
    gas_bundle_chains: List[str] = ["BTC", "ETH", "XRP", "SOL", "BASE"]

    # Referrals
    referral_percent: Decimal = Decimal("0.10")
    referral_points: Dict[str, int] = {"regular": 100, "premium": 500, "vip": 1000}
    referral_cap: int = 10

    # Provisioning backend
    provisioning_backend: str = "simulated"  # simulated or http
    provisioning_api_url: Optional[str] = None
    provisioning_api_key: Optional[str] = None
    provisioning_timeout_seconds: int = 30
    simulated_latency_seconds: float = 0.5

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console
    log_file: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("provisioning_backend")
    @classmethod
    def validate_provisioning_backend(cls, v: str) -> str:
        allowed = ["simulated", "http"]
        if v not in allowed:
            raise ValueError(f"Provisioning backend must be one of: {allowed}")
        return v

    @field_validator("ingest_tiers")
    @classmethod
    def validate_ingest_tiers(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("At least one ingest tier is required")
        return v

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def tier_price(self, tier: str) -> Decimal:
        """Price of a tier in USDC; gas bundles use the bundle price."""
        if tier == "gas_bundle":
            return self.gas_bundle_price
        return self.tier_prices[tier]

    def validate_required(self) -> None:
        """Raise ConfigurationError listing every missing required value."""
        required = [
            ("DATABASE_URL", self.database_url),
            ("SAFE_ADDRESS", self.safe_address),
        ]
        if self.provisioning_backend == "http":
            required.append(("PROVISIONING_API_URL", self.provisioning_api_url))

        missing = [name for name, value in required if not value]
        if missing:
            raise ConfigurationError(
                f"Missing required env vars: {', '.join(missing)}",
                details={"missing": missing},
            )


# Global settings instance
settings = Settings()


class DatabaseConfig:
    """Database-specific configuration."""

    @staticmethod
    def get_database_url(url: Optional[str] = None, async_driver: bool = True) -> str:
        """Get database URL with appropriate driver."""
        url = url or settings.database_url
        if not url:
            raise ConfigurationError("DATABASE_URL is not configured")

        if async_driver:
            if url.startswith("postgresql://"):
                return url.replace("postgresql://", "postgresql+asyncpg://", 1)
            if url.startswith("sqlite://"):
                return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        else:
            if url.startswith("postgresql+asyncpg://"):
                return url.replace("postgresql+asyncpg://", "postgresql://", 1)
            if url.startswith("sqlite+aiosqlite://"):
                return url.replace("sqlite+aiosqlite://", "sqlite://", 1)
        return url

    @staticmethod
    def get_engine_config(url: str) -> dict:
        """Get SQLAlchemy engine configuration."""
        if url.startswith("sqlite"):
            return {}
        return {
            "pool_size": settings.database_pool_size,
            "max_overflow": settings.database_max_overflow,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }


class ChainConfig:
    """EVM constants for watching USDC transfers."""

    # keccak256("Transfer(address,address,uint256)")
    TRANSFER_EVENT_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

    @staticmethod
    def address_topic(address: str) -> str:
        """Left-pad an address to a 32-byte log topic."""
        return "0x" + address.lower().replace("0x", "").rjust(64, "0")
