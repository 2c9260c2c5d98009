"""Port interfaces for the opcsign application layer.

These protocol interfaces define contracts for adapters.
The signing workflow depends on these ports, never on concrete implementations.
"""

__all__ = [
    "AccessTokenCredential",
    "ClientSecretCredential",
    "KeyVaultCertificate",
    "KeyVaultCredential",
    "KeyVaultPort",
    "PackageFileMode",
    "VSIX_SIGNATURE_PRESET",
    "PackagePort",
    "PackageSignaturePort",
    "RemoteKeyHandle",
    "SignatureBuilderPort",
    "SigningContextPort",
    "SigningIdentity",
    "TimestampBuilderPort",
    "TimestampError",
    "TimestamperPort",
    "TimestampResult",
]

from opcsign.app.ports.key_vault import (
    AccessTokenCredential,
    ClientSecretCredential,
    KeyVaultCertificate,
    KeyVaultCredential,
    KeyVaultPort,
    RemoteKeyHandle,
    SigningIdentity,
)
from opcsign.app.ports.package import (
    PackageFileMode,
    PackagePort,
    PackageSignaturePort,
    SignatureBuilderPort,
    TimestampBuilderPort,
    VSIX_SIGNATURE_PRESET,
)
from opcsign.app.ports.signer import SigningContextPort
from opcsign.app.ports.timestamp import TimestampError, TimestamperPort, TimestampResult
