"""Azure Key Vault adapter built on the Azure SDK async clients.

Key features:
- Signs digests with a vault-held key (``CryptographyClient.sign``)
- Fetches the public certificate and its key id (``CertificateClient``)
- Authenticates with either a bearer access token or a client id/secret;
  the SDK's challenge policy discovers the tenant from the vault
- No retries: every transport failure surfaces to the caller
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from types import TracebackType
from typing import Any

from azure.core.credentials import AccessToken
from azure.core.credentials_async import AsyncTokenCredential
from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ServiceRequestTimeoutError,
    ServiceResponseTimeoutError,
)
from azure.identity.aio import ClientSecretCredential as AzureClientSecretCredential
from azure.keyvault.certificates.aio import CertificateClient
from azure.keyvault.keys.crypto import SignatureAlgorithm
from azure.keyvault.keys.crypto.aio import CryptographyClient

from opcsign.app.ports.key_vault import (
    AccessTokenCredential,
    KeyVaultCertificate,
    KeyVaultCredential,
)
from opcsign.errors import KeyVaultError, RemoteSigningError
from opcsign.utils.algorithms import RSNULL

logger = logging.getLogger(__name__)

CertificateClientFactory = Callable[[str, AsyncTokenCredential], CertificateClient]
CryptographyClientFactory = Callable[[str, AsyncTokenCredential], CryptographyClient]


class StaticTokenCredential:
    """``AsyncTokenCredential`` that hands out one pre-acquired bearer token."""

    def __init__(self, token: str, lifetime_seconds: int = 3600) -> None:
        self._token = token
        self._lifetime_seconds = lifetime_seconds

    async def get_token(
        self,
        *scopes: str,
        claims: str | None = None,
        tenant_id: str | None = None,
        enable_cae: bool = False,
        **kwargs: Any,
    ) -> AccessToken:
        return AccessToken(self._token, int(time.time()) + self._lifetime_seconds)

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> StaticTokenCredential:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    def __repr__(self) -> str:
        return "StaticTokenCredential(token=***)"


def build_token_credential(credential: KeyVaultCredential, tenant_id: str) -> AsyncTokenCredential:
    """Turn command-line credentials into an Azure SDK token credential.

    Client credentials accept any tenant so the vault's challenge decides
    which authority issues the token.
    """
    if isinstance(credential, AccessTokenCredential):
        return StaticTokenCredential(credential.token)
    return AzureClientSecretCredential(
        tenant_id,
        credential.client_id,
        credential.client_secret,
        additionally_allowed_tenants=["*"],
    )


class AzureKeyVaultClient:
    """Key Vault client for one vault and one token credential.

    Example:
        >>> client = AzureKeyVaultClient(
        ...     "https://contoso.vault.azure.net",
        ...     StaticTokenCredential("eyJ0..."),
        ... )
        >>> certificate = await client.get_certificate("codesign")
        >>> signature = await client.sign(certificate.kid, "RS256", digest)
    """

    def __init__(
        self,
        vault_url: str,
        credential: AsyncTokenCredential,
        *,
        api_version: str | None = None,
        timeout_seconds: float = 30.0,
        certificate_client_factory: CertificateClientFactory | None = None,
        cryptography_client_factory: CryptographyClientFactory | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            vault_url: Base URL of the vault
            credential: Token credential; closed together with this client
            api_version: Key Vault API version passed to the SDK clients
            timeout_seconds: Connection and read timeout
            certificate_client_factory: Builds the certificate client (tests inject fakes)
            cryptography_client_factory: Builds a crypto client for a key id
        """
        self.vault_url = vault_url.rstrip("/")
        self._credential = credential
        self._client_options: dict[str, Any] = {
            "retry_total": 0,
            "connection_timeout": timeout_seconds,
            "read_timeout": timeout_seconds,
        }
        if api_version:
            self._client_options["api_version"] = api_version
        self._certificate_client_factory = (
            certificate_client_factory or self._default_certificate_client
        )
        self._cryptography_client_factory = (
            cryptography_client_factory or self._default_cryptography_client
        )
        self._certificates: CertificateClient | None = None
        self._crypto_clients: dict[str, CryptographyClient] = {}
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def sign(self, key_id: str, algorithm: str, digest: bytes) -> bytes:
        logger.debug("Requesting %s signature from %s", algorithm, key_id)
        client = self._cryptography_client(key_id)
        try:
            result = await client.sign(_signature_algorithm(algorithm), digest)
        except AzureError as exc:
            raise _translate_error(exc, RemoteSigningError, "signing") from exc

        signature = result.signature
        if not signature:
            raise RemoteSigningError("Key Vault sign response did not contain a signature value.")
        return bytes(signature)

    async def get_certificate(self, name: str) -> KeyVaultCertificate:
        try:
            certificate = await self._certificate_client().get_certificate(name)
        except AzureError as exc:
            raise _translate_error(
                exc, KeyVaultError, f"fetching certificate '{name}'"
            ) from exc

        if not certificate.cer or not certificate.key_id:
            raise KeyVaultError(
                f"Key Vault certificate '{name}' has no public certificate or key id."
            )
        return KeyVaultCertificate(cer=bytes(certificate.cer), kid=certificate.key_id)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        for client in self._crypto_clients.values():
            await client.close()
        self._crypto_clients.clear()
        if self._certificates is not None:
            await self._certificates.close()
        await self._credential.close()

    def _certificate_client(self) -> CertificateClient:
        if self._certificates is None:
            self._certificates = self._certificate_client_factory(
                self.vault_url, self._credential
            )
        return self._certificates

    def _cryptography_client(self, key_id: str) -> CryptographyClient:
        client = self._crypto_clients.get(key_id)
        if client is None:
            client = self._cryptography_client_factory(key_id, self._credential)
            self._crypto_clients[key_id] = client
        return client

    def _default_certificate_client(
        self, vault_url: str, credential: AsyncTokenCredential
    ) -> CertificateClient:
        return CertificateClient(vault_url, credential, **self._client_options)

    def _default_cryptography_client(
        self, key_id: str, credential: AsyncTokenCredential
    ) -> CryptographyClient:
        return CryptographyClient(key_id, credential, **self._client_options)


def _signature_algorithm(algorithm: str) -> SignatureAlgorithm | str:
    # RSNULL has no SignatureAlgorithm member; the service takes the raw name.
    if algorithm == RSNULL:
        return algorithm
    return SignatureAlgorithm(algorithm)


def _summary(exc: AzureError) -> str:
    lines = str(exc.message or "").strip().splitlines()
    return lines[0] if lines else type(exc).__name__


def _translate_error(
    exc: AzureError, error_cls: type[RemoteSigningError], action: str
) -> RemoteSigningError:
    """Map an Azure SDK failure onto the opcsign error taxonomy."""
    if isinstance(exc, ClientAuthenticationError):
        status = f" (HTTP {exc.status_code})" if exc.status_code else ""
        return KeyVaultError(f"Authentication to Key Vault failed{status}: {_summary(exc)}")
    if isinstance(exc, HttpResponseError) and exc.status_code is not None:
        return error_cls(f"Key Vault returned HTTP {exc.status_code}: {_summary(exc)}")
    if isinstance(exc, (ServiceRequestTimeoutError, ServiceResponseTimeoutError)):
        return error_cls(f"Key Vault request timed out while {action}.")
    return error_cls(f"Key Vault request failed while {action}: {_summary(exc)}")
