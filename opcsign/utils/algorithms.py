"""Digest and signature algorithm names, and their Key Vault wire identifiers."""

from __future__ import annotations

from enum import Enum

from cryptography.hazmat.primitives import hashes

from opcsign.errors import UnsupportedAlgorithmError


class HashAlgorithmName(Enum):
    """Digest algorithms accepted for file, PKCS, and timestamp digests."""

    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA384 = "sha384"
    SHA512 = "sha512"

    @property
    def digest_size(self) -> int:
        """Digest length in bytes."""
        return _DIGEST_SIZES[self]

    @property
    def bits(self) -> int:
        return self.digest_size * 8

    def hash_algorithm(self) -> hashes.HashAlgorithm:
        """Return a fresh ``cryptography`` hash instance for this algorithm."""
        return _HASH_FACTORIES[self]()


class SigningAlgorithm(Enum):
    """Asymmetric algorithm families. Only RSA can be signed remotely."""

    RSA = "RSA"
    ECDSA = "ECDSA"


DEFAULT_DIGEST_ALGORITHM = HashAlgorithmName.SHA256

_DIGEST_SIZES = {
    HashAlgorithmName.SHA1: 20,
    HashAlgorithmName.SHA256: 32,
    HashAlgorithmName.SHA384: 48,
    HashAlgorithmName.SHA512: 64,
}

_HASH_FACTORIES = {
    HashAlgorithmName.SHA1: hashes.SHA1,
    HashAlgorithmName.SHA256: hashes.SHA256,
    HashAlgorithmName.SHA384: hashes.SHA384,
    HashAlgorithmName.SHA512: hashes.SHA512,
}

# (family, digest width in bits) -> JWS algorithm id understood by Key Vault.
# RSNULL signs a caller-built DigestInfo; Key Vault has no RS1.
_JWS_ALGORITHM_IDS: dict[tuple[SigningAlgorithm, int], str] = {
    (SigningAlgorithm.RSA, 160): "RSNULL",
    (SigningAlgorithm.RSA, 256): "RS256",
    (SigningAlgorithm.RSA, 384): "RS384",
    (SigningAlgorithm.RSA, 512): "RS512",
}

RSNULL = "RSNULL"

# DER-encoded DigestInfo headers (RFC 8017, section 9.2, note 1).
_DIGEST_INFO_PREFIXES = {
    HashAlgorithmName.SHA1: bytes.fromhex("3021300906052b0e03021a05000414"),
    HashAlgorithmName.SHA256: bytes.fromhex("3031300d060960864801650304020105000420"),
    HashAlgorithmName.SHA384: bytes.fromhex("3041300d060960864801650304020205000430"),
    HashAlgorithmName.SHA512: bytes.fromhex("3051300d060960864801650304020305000440"),
}


def signature_algorithm_to_jws_alg_id(
    signature_algorithm: SigningAlgorithm,
    digest_algorithm: HashAlgorithmName,
) -> str:
    """Translate a (signature, digest) pair into the Key Vault ``alg`` value.

    Raises:
        UnsupportedAlgorithmError: For any family other than RSA.
    """
    try:
        return _JWS_ALGORITHM_IDS[(signature_algorithm, digest_algorithm.bits)]
    except KeyError:
        raise UnsupportedAlgorithmError(
            f"Signature algorithm {signature_algorithm.value} with "
            f"{digest_algorithm.value} is not supported."
        ) from None


def algorithm_from_input(value: str | None) -> HashAlgorithmName:
    """Resolve a user-supplied digest name.

    ``None`` and ``""`` resolve to SHA-256. Matching is case-insensitive.
    Unknown names raise rather than fall back to the default.
    """
    if value is None or value == "":
        return DEFAULT_DIGEST_ALGORITHM
    try:
        return HashAlgorithmName(value.lower())
    except ValueError:
        raise UnsupportedAlgorithmError(f"Digest algorithm '{value}' is not supported.") from None


def digest_info_prefix(digest_algorithm: HashAlgorithmName) -> bytes:
    """Return the DER DigestInfo header that precedes a raw digest."""
    return _DIGEST_INFO_PREFIXES[digest_algorithm]


def compute_digest(data: bytes, digest_algorithm: HashAlgorithmName) -> bytes:
    """Hash ``data`` with ``digest_algorithm``."""
    digest = hashes.Hash(digest_algorithm.hash_algorithm())
    digest.update(data)
    return digest.finalize()
