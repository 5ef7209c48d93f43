"""Configuration management for the Polymarket copytrader."""

from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# System Configuration
# =============================================================================


class SystemConfig(BaseSettings):
    """System-level configuration settings."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development", validation_alias="ENVIRONMENT"
    )
    app_name: str = Field(default="Polymarket Copytrader", validation_alias="APP_NAME")
    app_version: str = Field(default="1.0.0", validation_alias="APP_VERSION")

    # Operational settings
    dry_run: bool = Field(default=False, validation_alias="DRY_RUN")


# =============================================================================
# Polymarket API Configuration
# =============================================================================


class PolymarketAPIConfig(BaseSettings):
    """Polymarket CLOB and Data API configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Wallet credentials (signing happens inside py-clob-client)
    private_key: str = Field(default="", validation_alias="PRIVATE_KEY")
    funder_address: str = Field(default="", validation_alias="FUNDER_ADDRESS")

    # Endpoints
    clob_api_url: str = Field(
        default="https://clob.polymarket.com", validation_alias="CLOB_API_URL"
    )
    data_api_url: str = Field(
        default="https://data-api.polymarket.com", validation_alias="DATA_API_URL"
    )

    # Polygon mainnet
    chain_id: int = Field(default=137, validation_alias="POLYMARKET_CHAIN_ID")

    # 0 = EOA, 1 = email/magic proxy, 2 = browser proxy
    signature_type: int = Field(default=0, validation_alias="POLYMARKET_SIGNATURE_TYPE")

    # Transport settings
    timeout: int = Field(default=30, validation_alias="POLYMARKET_TIMEOUT")
    retry_attempts: int = Field(default=3, validation_alias="POLYMARKET_RETRY_ATTEMPTS")
    activity_limit: int = Field(default=100, validation_alias="POLYMARKET_ACTIVITY_LIMIT")

    @field_validator("signature_type")
    @classmethod
    def validate_signature_type(cls, v):
        """Validate signature type is one the CLOB understands."""
        if v not in (0, 1, 2):
            raise ValueError("Signature type must be 0, 1 or 2")
        return v

    @field_validator("retry_attempts")
    @classmethod
    def validate_retry_attempts(cls, v):
        if v < 0:
            raise ValueError("Retry attempts cannot be negative")
        return v

    @field_validator("activity_limit")
    @classmethod
    def validate_activity_limit(cls, v):
        if v <= 0 or v > 500:
            raise ValueError("Activity limit must be between 1 and 500")
        return v

    @computed_field
    @property
    def has_credentials(self) -> bool:
        """Check if wallet credentials are configured."""
        return bool(self.private_key) and bool(self.funder_address)


# =============================================================================
# Copytrade Configuration
# =============================================================================


class CopytradeSettings(BaseSettings):
    """Polling cadence and sizing defaults for copy sessions."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    # Matches Polygon block time
    poll_interval_seconds: float = Field(
        default=2.0, validation_alias="COPYTRADE_POLL_INTERVAL"
    )

    # Polymarket rejects orders below $1
    min_order_size_usd: Decimal = Field(
        default=Decimal("1.0"), validation_alias="COPYTRADE_MIN_ORDER_SIZE"
    )

    default_reinvest: bool = Field(default=False, validation_alias="COPYTRADE_REINVEST")
    default_allow_add_to_position: bool = Field(
        default=False, validation_alias="COPYTRADE_ALLOW_ADD"
    )

    @field_validator("poll_interval_seconds")
    @classmethod
    def validate_poll_interval(cls, v):
        if v < 0:
            raise ValueError("Poll interval cannot be negative")
        return v

    @field_validator("min_order_size_usd")
    @classmethod
    def validate_min_order_size(cls, v):
        if v < 0:
            raise ValueError("Minimum order size cannot be negative")
        return v


# =============================================================================
# Database Configuration
# =============================================================================


class DatabaseConfig(BaseSettings):
    """Database configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    database_url: str = Field(
        default="sqlite:///./copytrader.db", validation_alias="DATABASE_URL"
    )
    echo: bool = Field(default=False, validation_alias="DATABASE_ECHO")


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore", populate_by_name=True
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_file: Optional[str] = Field(
        default="logs/copytrader.log", validation_alias="LOG_FILE"
    )
    # "console" for humans at a terminal, "json" for shipping
    log_format: Literal["console", "json"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


# =============================================================================
# Global Configuration Container
# =============================================================================


class CopytraderConfig:
    """
    Container for all copytrader configurations.

    Usage:
        from copytrader.core.config import copytrader_config

        if copytrader_config.polymarket.has_credentials:
            key = copytrader_config.polymarket.private_key
    """

    def __init__(self):
        self.system = SystemConfig()
        self.polymarket = PolymarketAPIConfig()
        self.copytrade = CopytradeSettings()
        self.database = DatabaseConfig()
        self.logging = LoggingConfig()

    @property
    def is_dry_run(self) -> bool:
        return self.system.dry_run

    def validate_configuration(self, require_credentials: bool = True) -> dict:
        """
        Validate the complete configuration and return any issues.

        Returns:
            Dictionary with 'valid' boolean and 'issues' list
        """
        issues: List[str] = []

        if require_credentials:
            if not self.polymarket.private_key or self.polymarket.private_key.startswith("your_"):
                issues.append("Missing or invalid PRIVATE_KEY")
            if not self.polymarket.funder_address or self.polymarket.funder_address.startswith("your_"):
                issues.append("Missing or invalid FUNDER_ADDRESS")
            elif not self.polymarket.funder_address.startswith("0x"):
                issues.append("FUNDER_ADDRESS must be a 0x-prefixed address")

        if not self.polymarket.clob_api_url.startswith("http"):
            issues.append("CLOB_API_URL must be an http(s) URL")
        if not self.polymarket.data_api_url.startswith("http"):
            issues.append("DATA_API_URL must be an http(s) URL")

        return {"valid": len(issues) == 0, "issues": issues}


# =============================================================================
# Global Configuration Instances
# =============================================================================

polymarket_config = PolymarketAPIConfig()
copytrade_settings = CopytradeSettings()
database_config = DatabaseConfig()
logging_config = LoggingConfig()

copytrader_config = CopytraderConfig()


__all__ = [
    "SystemConfig",
    "PolymarketAPIConfig",
    "CopytradeSettings",
    "DatabaseConfig",
    "LoggingConfig",
    "CopytraderConfig",
    "polymarket_config",
    "copytrade_settings",
    "database_config",
    "logging_config",
    "copytrader_config",
]
