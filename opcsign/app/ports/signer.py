"""Signer port interface for digest signing against a remote key."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from cryptography import x509

from opcsign.utils.algorithms import HashAlgorithmName, SigningAlgorithm


class SigningContextPort(Protocol):
    """Port interface for the signing identity used by one invocation.

    Implementations never hold private key material. ``sign_digest`` crosses
    the network; ``verify_digest`` is local.

    Side effects: Remote signing requests (online).
    """

    @property
    def file_digest_algorithm(self) -> HashAlgorithmName: ...

    @property
    def pkcs_digest_algorithm(self) -> HashAlgorithmName: ...

    @property
    def certificate(self) -> x509.Certificate: ...

    @property
    def signature_algorithm(self) -> SigningAlgorithm: ...

    @property
    def context_creation_time(self) -> datetime: ...

    async def sign_digest(self, digest: bytes) -> bytes:
        """Sign a precomputed digest.

        Args:
            digest: Digest computed with ``pkcs_digest_algorithm``

        Returns:
            Raw signature bytes
        """
        ...

    async def verify_digest(self, digest: bytes, signature: bytes) -> bool:
        """Verify signature.

        Args:
            digest: Digest that was signed
            signature: Signature to verify

        Returns:
            True if signature is valid
        """
        ...

    async def aclose(self) -> None: ...
