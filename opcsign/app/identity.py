"""Materialize a signing identity from a Key Vault certificate."""

from __future__ import annotations

import logging

from opcsign.app.ports.key_vault import KeyVaultPort, RemoteKeyHandle, SigningIdentity
from opcsign.errors import KeyVaultError
from opcsign.utils.algorithms import HashAlgorithmName
from opcsign.utils.crypto import load_certificate

logger = logging.getLogger(__name__)


async def materialize_identity(
    client: KeyVaultPort,
    certificate_name: str,
    file_digest_algorithm: HashAlgorithmName,
    pkcs_digest_algorithm: HashAlgorithmName,
) -> SigningIdentity:
    """Fetch ``certificate_name`` and pair it with its vault key id.

    The vault guarantees the certificate and ``kid`` belong to the same key
    pair; nothing here checks it.

    Raises:
        KeyVaultError: If the certificate cannot be fetched or parsed
    """
    vault_certificate = await client.get_certificate(certificate_name)
    try:
        certificate = load_certificate(vault_certificate.cer)
    except ValueError as exc:
        raise KeyVaultError(
            f"Key Vault certificate '{certificate_name}' is not a valid X.509 certificate."
        ) from exc

    logger.info(
        "Using certificate %s (serial %x)",
        certificate.subject.rfc4514_string(),
        certificate.serial_number,
    )
    return SigningIdentity(
        certificate=certificate,
        key=RemoteKeyHandle(key_id=vault_certificate.kid, client=client),
        file_digest_algorithm=file_digest_algorithm,
        pkcs_digest_algorithm=pkcs_digest_algorithm,
    )
