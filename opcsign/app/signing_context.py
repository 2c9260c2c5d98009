"""Signing context backed by a key held in Azure Key Vault."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from types import TracebackType

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from opcsign.app.ports.key_vault import SigningIdentity
from opcsign.errors import InvalidDigestError, RemoteSigningError, UnsupportedAlgorithmError
from opcsign.utils.algorithms import (
    RSNULL,
    HashAlgorithmName,
    SigningAlgorithm,
    digest_info_prefix,
    signature_algorithm_to_jws_alg_id,
)

logger = logging.getLogger(__name__)


class KeyVaultSigningContext:
    """Signing context for one materialized Key Vault identity.

    The private key never leaves the vault: ``sign_digest`` asks the vault to
    sign, ``verify_digest`` checks locally against the certificate. Closing
    the context closes the vault client behind the key handle.
    """

    def __init__(self, identity: SigningIdentity) -> None:
        self._identity = identity
        self._context_creation_time = datetime.now(UTC)
        self._closed = False

    @property
    def context_creation_time(self) -> datetime:
        """Date and time the context was created (diagnostic only)."""
        return self._context_creation_time

    @property
    def file_digest_algorithm(self) -> HashAlgorithmName:
        return self._identity.file_digest_algorithm

    @property
    def pkcs_digest_algorithm(self) -> HashAlgorithmName:
        return self._identity.pkcs_digest_algorithm

    @property
    def certificate(self) -> x509.Certificate:
        """Certificate whose public key validates produced signatures."""
        return self._identity.certificate

    @property
    def signature_algorithm(self) -> SigningAlgorithm:
        """Signature algorithm family. Only RSA is supported."""
        return SigningAlgorithm.RSA

    async def sign_digest(self, digest: bytes) -> bytes:
        """Sign ``digest`` with the remote key.

        Raises:
            InvalidDigestError: If ``digest`` does not match the PKCS digest length
            RemoteSigningError: If the vault call fails or returns unusable output
        """
        pkcs_algorithm = self._identity.pkcs_digest_algorithm
        if len(digest) != pkcs_algorithm.digest_size:
            raise InvalidDigestError(
                f"Digest length {len(digest)} does not match {pkcs_algorithm.value}."
            )

        algorithm = signature_algorithm_to_jws_alg_id(self.signature_algorithm, pkcs_algorithm)
        payload = digest
        if algorithm == RSNULL:
            payload = digest_info_prefix(pkcs_algorithm) + digest

        key = self._identity.key
        signature = await key.client.sign(key.key_id, algorithm, payload)

        expected_length = (self._public_key().key_size + 7) // 8
        if not isinstance(signature, bytes):
            raise RemoteSigningError("Key Vault returned a signature that is not bytes.")
        if len(signature) != expected_length:
            raise RemoteSigningError(
                f"Key Vault returned a {len(signature)}-byte signature; "
                f"expected {expected_length} bytes."
            )
        return signature

    async def verify_digest(self, digest: bytes, signature: bytes) -> bool:
        """Verify ``signature`` over ``digest`` with PKCS#1 v1.5 padding.

        Returns False for a wrong signature; never contacts the vault.
        """
        public_key = self._public_key()
        hash_algorithm = self._identity.pkcs_digest_algorithm.hash_algorithm()
        try:
            public_key.verify(signature, digest, padding.PKCS1v15(), Prehashed(hash_algorithm))
        except InvalidSignature:
            return False
        return True

    async def aclose(self) -> None:
        """Release the vault transport. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        await self._identity.key.client.aclose()
        logger.debug("Signing context created at %s closed", self._context_creation_time)

    async def __aenter__(self) -> KeyVaultSigningContext:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    def _public_key(self) -> rsa.RSAPublicKey:
        public_key = self._identity.certificate.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise UnsupportedAlgorithmError(
                "The signing certificate does not carry an RSA public key."
            )
        return public_key
