"""Package port interfaces for reading and signing OPC containers."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Protocol

from cryptography import x509

from opcsign.app.ports.timestamp import TimestampResult
from opcsign.utils.algorithms import HashAlgorithmName

if TYPE_CHECKING:  # pragma: no cover
    from opcsign.app.ports.signer import SigningContextPort


class PackageFileMode(Enum):
    READ = "r"
    READ_WRITE = "rw"


class TimestampBuilderPort(Protocol):
    """Adds a timestamp to an already committed signature."""

    async def sign(
        self, timestamp_url: str, digest_algorithm: HashAlgorithmName
    ) -> TimestampResult: ...


class PackageSignaturePort(Protocol):
    """A signature stored in a package."""

    part_name: str
    certificate: x509.Certificate | None
    signature_method: str
    timestamped: bool

    def create_timestamp_builder(self) -> TimestampBuilderPort: ...


class SignatureBuilderPort(Protocol):
    """Collects parts via named presets and commits one signature."""

    def enqueue_named_preset(self, preset: str) -> None: ...

    async def sign(self, context: SigningContextPort) -> PackageSignaturePort:
        """Sign the enqueued parts and commit the signature atomically.

        Existing signatures are replaced, never appended to.
        """
        ...


class PackagePort(Protocol):
    """Port interface for an opened package.

    Side effects: Holds an exclusive lock; rewrites the package on commit.
    """

    def get_signatures(self) -> list[PackageSignaturePort]: ...

    def create_signature_builder(self) -> SignatureBuilderPort: ...

    def close(self) -> None: ...


VSIX_SIGNATURE_PRESET = "vsix"
"""Named content-selector preset for VSIX packages."""
