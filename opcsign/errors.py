"""Error taxonomy shared by the signing core, adapters, and CLI."""

from __future__ import annotations

from opcsign.exit_codes import ExitCode


class OpcSignError(Exception):
    """Base class for failures surfaced to the command boundary."""

    exit_code: ExitCode = ExitCode.FAILED


class OptionValidationError(OpcSignError):
    """Missing or malformed input detected before any remote or file I/O."""

    exit_code = ExitCode.INVALID_OPTIONS


class UnsupportedAlgorithmError(OptionValidationError):
    """Requested signature or digest algorithm does not resolve."""


class RemoteSigningError(OpcSignError):
    """The remote signing authority failed or returned unusable output."""


class SignatureVerificationError(RemoteSigningError):
    """A signature returned by the remote authority does not verify locally."""


class KeyVaultError(RemoteSigningError):
    """Key Vault lookup or authentication failed while resolving an identity."""


class PackageError(OpcSignError):
    """Reading or rewriting the target package failed."""


class PackageLockedError(PackageError):
    """Another process holds the exclusive lock on the package."""


class InvalidDigestError(OpcSignError):
    """A digest handed to the signer does not match its algorithm's length."""
