"""
Application configuration loaded from environment variables.

All configuration is validated at startup to fail fast on misconfiguration.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Value shipped in the example env file; treated as "not configured".
PLACEHOLDER_PINATA_JWT = "your_pinata_jwt_token_here"


class Settings(BaseSettings):
    """
    Application settings with validation.

    All settings are loaded from environment variables with the same name.
    Use .env file for local development.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./invoicex.db",
        description="SQLAlchemy async URL (postgresql+asyncpg://... in production)",
    )

    # Storage
    storage_backend: Literal["remote", "local"] = Field(
        default="remote",
        description="Preferred storage backend; falls back to local without Pinata credentials",
    )
    pinata_jwt: SecretStr | None = Field(
        default=None,
        description="Pinata API JWT for remote pinning",
    )
    pinata_api_url: str = Field(default="https://api.pinata.cloud")
    pinata_gateway: str = Field(default="https://gateway.pinata.cloud")
    storage_path: Path = Field(
        default=Path("./storage"),
        description="Local path for fallback document storage",
    )
    storage_timeout_seconds: float = Field(default=30.0, gt=0)
    storage_max_concurrency: int = Field(
        default=4,
        ge=1,
        description="Maximum in-flight requests to the pinning service",
    )
    upload_max_attempts: int = Field(default=3, ge=1, le=10)
    upload_backoff_seconds: float = Field(default=0.5, ge=0)

    # Ledger
    ledger_backend: Literal["static", "xrpl"] = Field(
        default="static",
        description="Role lookups from configuration, or against the XRP Ledger",
    )
    xrpl_network: Literal["testnet", "mainnet", "devnet"] = Field(
        default="testnet",
        description="XRPL network to connect to",
    )
    ledger_account: str | None = Field(
        default=None,
        description="Registry account that signs mirrored KYB decisions",
    )
    reviewer_addresses: list[str] = Field(
        default_factory=list,
        description="Accounts holding the KYB verifier role",
    )
    ledger_outbox_size: int = Field(
        default=1000,
        ge=1,
        description="Unsigned ledger records kept until drained by the signer",
    )

    # Workflow
    supported_jurisdictions: list[str] = Field(
        default_factory=lambda: ["US", "GB", "SG", "CA", "AU", "DE", "FR", "JP"],
    )
    default_validity_days: int = Field(default=365, ge=1)

    # Server
    debug: bool = Field(
        default=False,
        description="Enable debug mode with detailed error messages"
    )

    @field_validator("supported_jurisdictions")
    @classmethod
    def _upper_jurisdictions(cls, value: list[str]) -> list[str]:
        return [code.strip().upper() for code in value if code.strip()]

    @property
    def remote_storage_configured(self) -> bool:
        """True if Pinata credentials are present and not the placeholder."""
        if self.pinata_jwt is None:
            return False
        token = self.pinata_jwt.get_secret_value().strip()
        return bool(token) and token != PLACEHOLDER_PINATA_JWT


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once at startup and cached for subsequent calls.
    This ensures consistent configuration across the application lifecycle.
    """
    return Settings()
