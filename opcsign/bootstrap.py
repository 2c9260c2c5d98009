"""Application bootstrap wiring ports, adapters, and services."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from opcsign.app.adapters import (
    AzureKeyVaultClient,
    OpcPackage,
    Rfc3161Timestamper,
    build_token_credential,
)
from opcsign.app.ports import (
    KeyVaultCredential,
    KeyVaultPort,
    PackageFileMode,
    PackagePort,
    TimestamperPort,
)
from opcsign.app.sign_command import KeyVaultClientFactory, OutputCallback, SignCommand
from opcsign.app.sign_service import SignService
from opcsign.config import Settings, get_settings


@dataclass(slots=True)
class ApplicationContainer:
    """Aggregates wired services and adapters for the CLI layer."""

    settings: Settings
    key_vault_client_factory: KeyVaultClientFactory
    timestamper: TimestamperPort
    sign_service: SignService = field(init=False)

    def __post_init__(self) -> None:
        self.sign_service = SignService(self.open_package)

    def open_package(self, path: Path) -> PackagePort:
        """Open ``path`` for signing with the container's timestamper."""
        return OpcPackage.open(path, PackageFileMode.READ_WRITE, timestamper=self.timestamper)

    def create_sign_command(self, output: OutputCallback | None = None) -> SignCommand:
        return SignCommand(self.sign_service, self.key_vault_client_factory, output)


def _key_vault_client_factory(settings: Settings) -> KeyVaultClientFactory:
    def factory(vault_url: str, credential: KeyVaultCredential) -> KeyVaultPort:
        return AzureKeyVaultClient(
            vault_url,
            build_token_credential(credential, settings.key_vault_tenant_id),
            api_version=settings.key_vault_api_version,
            timeout_seconds=settings.request_timeout_seconds,
        )

    return factory


def bootstrap_application(settings: Settings | None = None) -> ApplicationContainer:
    """Create the application container with default adapters."""

    active_settings = settings or get_settings()
    return ApplicationContainer(
        settings=active_settings,
        key_vault_client_factory=_key_vault_client_factory(active_settings),
        timestamper=Rfc3161Timestamper(active_settings.timestamp_timeout_seconds),
    )
