"""Configuration management with Pydantic settings."""

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class Settings(BaseSettings):
    """opcsign configuration settings.

    Precedence: CLI flag > environment variable > .env file > defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="OPCSIGN_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Remote signing authority
    azure_key_vault_url: str | None = Field(
        default=None,
        description="URL of the Azure Key Vault holding the signing key",
    )

    azure_key_vault_client_id: str | None = Field(
        default=None,
        description="Client ID used to authenticate to the Key Vault",
    )

    azure_key_vault_client_secret: SecretStr | None = Field(
        default=None,
        description="Client secret used to authenticate to the Key Vault",
    )

    azure_key_vault_certificate: str | None = Field(
        default=None,
        description="Name of the certificate in the Key Vault",
    )

    azure_key_vault_access_token: SecretStr | None = Field(
        default=None,
        description="Pre-acquired access token; takes precedence over client credentials",
    )

    key_vault_api_version: str = Field(
        default="7.4",
        description="Key Vault API version used by the Azure SDK clients",
    )

    key_vault_tenant_id: str = Field(
        default="organizations",
        description="Tenant for client credentials until the vault challenge names one",
    )

    # Network behaviour
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Connection and read timeout for Key Vault requests (seconds)",
    )

    timestamp_timeout_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="Timeout for timestamp authority requests (seconds)",
    )

    log_level: LogLevel = Field(
        default="WARNING",
        description="Root log level for the CLI",
    )

    def get_client_secret(self) -> str | None:
        """Return the configured client secret in plaintext, if any."""
        secret = self.azure_key_vault_client_secret
        return secret.get_secret_value() if secret is not None else None

    def get_access_token(self) -> str | None:
        """Return the configured access token in plaintext, if any."""
        token = self.azure_key_vault_access_token
        return token.get_secret_value() if token is not None else None


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Set the global settings instance (useful for testing)."""
    global _settings
    _settings = settings
