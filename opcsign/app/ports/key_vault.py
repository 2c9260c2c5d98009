"""Key Vault port interface and the credential and identity value types."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from cryptography import x509

from opcsign.utils.algorithms import HashAlgorithmName


@dataclass(frozen=True, slots=True)
class AccessTokenCredential:
    """Pre-acquired bearer token for the vault resource."""

    token: str

    def __repr__(self) -> str:
        return "AccessTokenCredential(token=***)"


@dataclass(frozen=True, slots=True)
class ClientSecretCredential:
    """Client id/secret pair exchanged for a token on first use."""

    client_id: str
    client_secret: str

    def __repr__(self) -> str:
        return f"ClientSecretCredential(client_id={self.client_id!r}, client_secret=***)"


KeyVaultCredential = AccessTokenCredential | ClientSecretCredential


@dataclass(frozen=True, slots=True)
class KeyVaultCertificate:
    """Public half of a Key Vault certificate and the id of its backing key."""

    cer: bytes
    kid: str


class KeyVaultPort(Protocol):
    """Port interface for a remote signing authority.

    Side effects: Authenticated HTTPS requests (online).
    """

    async def sign(self, key_id: str, algorithm: str, digest: bytes) -> bytes:
        """Ask the vault to sign ``digest`` with the key ``key_id``.

        Args:
            key_id: Key identifier URL (``kid``)
            algorithm: JWS algorithm id, e.g. ``RS256``
            digest: Bytes to sign

        Returns:
            Raw signature bytes
        """
        ...

    async def get_certificate(self, name: str) -> KeyVaultCertificate:
        """Fetch the latest version of certificate ``name``."""
        ...

    async def aclose(self) -> None: ...


@dataclass(frozen=True, slots=True)
class RemoteKeyHandle:
    """Reference to a vault key by identifier, plus the client that can use it."""

    key_id: str
    client: KeyVaultPort


@dataclass(frozen=True, slots=True)
class SigningIdentity:
    """Certificate and remote key materialized for one signing operation.

    The certificate's public key and ``key`` must belong to the same key pair;
    this is not checked here.
    """

    certificate: x509.Certificate
    key: RemoteKeyHandle
    file_digest_algorithm: HashAlgorithmName
    pkcs_digest_algorithm: HashAlgorithmName
