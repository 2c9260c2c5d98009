"""Sign command: option validation, identity resolution and exit-code mapping."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from pydantic import BaseModel, SecretStr

from opcsign.app.adapters.timestamp import parse_timestamp_url
from opcsign.app.identity import materialize_identity
from opcsign.app.ports.key_vault import (
    AccessTokenCredential,
    ClientSecretCredential,
    KeyVaultCredential,
    KeyVaultPort,
)
from opcsign.app.ports.timestamp import TimestampError
from opcsign.app.sign_service import SignService, WorkflowResult, WorkflowState
from opcsign.app.signing_context import KeyVaultSigningContext
from opcsign.errors import (
    OpcSignError,
    OptionValidationError,
    PackageError,
    UnsupportedAlgorithmError,
)
from opcsign.exit_codes import ExitCode
from opcsign.utils.algorithms import HashAlgorithmName, algorithm_from_input

logger = logging.getLogger(__name__)

KeyVaultClientFactory = Callable[[str, KeyVaultCredential], KeyVaultPort]
OutputCallback = Callable[[str, bool], None]

SIGNING_COMPLETE_MESSAGE = "The signing operation is complete."
ALREADY_SIGNED_MESSAGE = "The package is already signed."
TIMESTAMP_FAILED_MESSAGE = "Timestamping the signature failed."


class SignRequest(BaseModel):
    """Raw sign options as supplied on the command line or by settings."""

    file: str | None = None
    timestamp_url: str | None = None
    timestamp_algorithm: str | None = None
    file_digest: str | None = None
    force: bool = False
    azure_key_vault_url: str | None = None
    azure_key_vault_client_id: str | None = None
    azure_key_vault_client_secret: SecretStr | None = None
    azure_key_vault_certificate: str | None = None
    azure_key_vault_access_token: SecretStr | None = None


@dataclass(frozen=True, slots=True)
class ValidatedSignRequest:
    path: Path
    vault_url: str
    credential: KeyVaultCredential
    certificate_name: str
    timestamp_url: str | None
    file_digest_algorithm: HashAlgorithmName
    timestamp_digest_algorithm: HashAlgorithmName
    force: bool


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


def is_valid_timestamp_url(url: str) -> bool:
    """True for absolute ``http``/``https`` URLs with a valid host."""
    try:
        parse_timestamp_url(url)
    except TimestampError:
        return False
    return True


def validate_sign_request(request: SignRequest) -> ValidatedSignRequest:
    """Validate ``request`` and stop at the first problem, in a fixed order.

    Raises:
        OptionValidationError: Missing options or unsupported algorithms (exit 1)
        OpcSignError: Invalid timestamp URL (exit 2)
        PackageError: Missing package file (exit 2)
    """
    if not request.azure_key_vault_url:
        raise OptionValidationError("The Azure Key Vault URL must be specified for Azure signing.")

    access_token = _secret(request.azure_key_vault_access_token)
    credential: KeyVaultCredential
    if access_token:
        credential = AccessTokenCredential(access_token)
    else:
        client_secret = _secret(request.azure_key_vault_client_secret)
        if not request.azure_key_vault_client_id:
            raise OptionValidationError(
                "The Azure Key Vault Client ID or Access Token must be specified for Azure signing."
            )
        if not client_secret:
            raise OptionValidationError(
                "The Azure Key Vault Client Secret or Access Token must be specified "
                "for Azure signing."
            )
        credential = ClientSecretCredential(request.azure_key_vault_client_id, client_secret)

    if not request.azure_key_vault_certificate:
        raise OptionValidationError(
            "The Azure Key Vault Client Certificate Name must be specified for Azure signing."
        )

    if request.timestamp_url is not None and not is_valid_timestamp_url(request.timestamp_url):
        raise OpcSignError("Specified timestamp URL is invalid.")

    path = Path(request.file) if request.file else None
    if path is None or not path.is_file():
        raise PackageError("Specified file does not exist.")

    try:
        file_digest_algorithm = algorithm_from_input(request.file_digest)
    except UnsupportedAlgorithmError:
        raise UnsupportedAlgorithmError(
            "Specified file digest algorithm is not supported."
        ) from None
    try:
        timestamp_digest_algorithm = algorithm_from_input(request.timestamp_algorithm)
    except UnsupportedAlgorithmError:
        raise UnsupportedAlgorithmError(
            "Specified timestamp digest algorithm is not supported."
        ) from None

    return ValidatedSignRequest(
        path=path,
        vault_url=request.azure_key_vault_url,
        credential=credential,
        certificate_name=request.azure_key_vault_certificate,
        timestamp_url=request.timestamp_url,
        file_digest_algorithm=file_digest_algorithm,
        timestamp_digest_algorithm=timestamp_digest_algorithm,
        force=request.force,
    )


def _log_output(message: str, is_error: bool) -> None:
    logger.log(logging.ERROR if is_error else logging.INFO, message)


class SignCommand:
    """Runs one remote-backed sign and maps its outcome to an exit code.

    Nothing is retried or repaired here: failures are reported once through
    ``output`` and turned into an exit code.
    """

    def __init__(
        self,
        sign_service: SignService,
        key_vault_client_factory: KeyVaultClientFactory,
        output: OutputCallback | None = None,
    ) -> None:
        self._sign_service = sign_service
        self._key_vault_client_factory = key_vault_client_factory
        self._output = output or _log_output

    async def run(self, request: SignRequest) -> ExitCode:
        try:
            validated = validate_sign_request(request)
        except OpcSignError as exc:
            self._output(str(exc), True)
            return exc.exit_code

        try:
            result = await self._execute(validated)
        except OpcSignError as exc:
            logger.debug("Signing %s failed", validated.path, exc_info=True)
            self._output(str(exc), True)
            return ExitCode.FAILED

        return self._classify(result)

    async def _execute(self, request: ValidatedSignRequest) -> WorkflowResult:
        client = self._key_vault_client_factory(request.vault_url, request.credential)
        try:
            identity = await materialize_identity(
                client,
                request.certificate_name,
                request.file_digest_algorithm,
                request.file_digest_algorithm,
            )
        except BaseException:
            await client.aclose()
            raise

        async with KeyVaultSigningContext(identity) as context:
            return await self._sign_service.sign_package(
                request.path,
                context,
                force=request.force,
                timestamp_url=request.timestamp_url,
                timestamp_digest_algorithm=request.timestamp_digest_algorithm,
            )

    def _classify(self, result: WorkflowResult) -> ExitCode:
        if result.state is WorkflowState.COMPLETE:
            self._output(SIGNING_COMPLETE_MESSAGE, False)
            return ExitCode.SUCCESS
        if result.state is WorkflowState.BLOCKED:
            self._output(ALREADY_SIGNED_MESSAGE, True)
            return ExitCode.FAILED
        self._output(TIMESTAMP_FAILED_MESSAGE, True)
        return ExitCode.FAILED
