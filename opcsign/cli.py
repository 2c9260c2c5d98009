"""opcsign CLI application with Typer."""

import asyncio
import logging
from typing import Annotated, get_args

import typer

from opcsign import __version__
from opcsign.app.sign_command import SignRequest
from opcsign.bootstrap import bootstrap_application
from opcsign.config import LogLevel, get_settings
from opcsign.exit_codes import ExitCode

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVELS: frozenset[str] = frozenset(get_args(LogLevel))

app = typer.Typer(
    name="opcsign",
    help="Sign OPC/VSIX packages with certificates held in Azure Key Vault",
    add_completion=False,
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"opcsign version {__version__}")
        raise typer.Exit()


def _echo(message: str, is_error: bool) -> None:
    if is_error:
        typer.secho(message, fg=typer.colors.RED, err=True)
    else:
        typer.secho(message, fg=typer.colors.GREEN)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            help="DEBUG, INFO, WARNING, ERROR or CRITICAL (defaults to OPCSIGN_LOG_LEVEL)",
        ),
    ] = None,
) -> None:
    """opcsign - remote-backed package signing."""
    level = (log_level or get_settings().log_level).upper()
    if level not in LOG_LEVELS:
        typer.secho(f"Error: Unknown log level: {log_level}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=int(ExitCode.INVALID_OPTIONS))
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT)


@app.command("sign")
def sign(
    file: Annotated[str, typer.Argument(help="Path to the package to sign")],
    timestamp: Annotated[
        str | None,
        typer.Option("--timestamp", "-t", help="RFC 3161 timestamp authority URL"),
    ] = None,
    timestamp_algorithm: Annotated[
        str | None,
        typer.Option(
            "--timestamp-algorithm",
            "-ta",
            help="Digest algorithm for the timestamp: sha1, sha256, sha384 or sha512",
        ),
    ] = None,
    file_digest: Annotated[
        str | None,
        typer.Option(
            "--file-digest",
            "-fd",
            help="Digest algorithm for package parts and the signature (default sha256)",
        ),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Replace any existing signature"),
    ] = False,
    azure_key_vault_url: Annotated[
        str | None,
        typer.Option("--azure-key-vault-url", "-kvu", help="Azure Key Vault URL"),
    ] = None,
    azure_key_vault_client_id: Annotated[
        str | None,
        typer.Option("--azure-key-vault-client-id", "-kvi", help="Client ID for the vault"),
    ] = None,
    azure_key_vault_client_secret: Annotated[
        str | None,
        typer.Option(
            "--azure-key-vault-client-secret", "-kvs", help="Client secret for the vault"
        ),
    ] = None,
    azure_key_vault_certificate: Annotated[
        str | None,
        typer.Option(
            "--azure-key-vault-certificate",
            "-kvc",
            help="Name of the certificate in the vault",
        ),
    ] = None,
    azure_key_vault_accesstoken: Annotated[
        str | None,
        typer.Option(
            "--azure-key-vault-accesstoken",
            "-kva",
            help="Access token for the vault (replaces client id and secret)",
        ),
    ] = None,
) -> None:
    """Sign a package with a certificate held in Azure Key Vault."""
    container = bootstrap_application()
    settings = container.settings

    request = SignRequest(
        file=file,
        timestamp_url=timestamp,
        timestamp_algorithm=timestamp_algorithm,
        file_digest=file_digest,
        force=force,
        azure_key_vault_url=azure_key_vault_url or settings.azure_key_vault_url,
        azure_key_vault_client_id=azure_key_vault_client_id or settings.azure_key_vault_client_id,
        azure_key_vault_client_secret=(
            azure_key_vault_client_secret or settings.get_client_secret()
        ),
        azure_key_vault_certificate=(
            azure_key_vault_certificate or settings.azure_key_vault_certificate
        ),
        azure_key_vault_access_token=(
            azure_key_vault_accesstoken or settings.get_access_token()
        ),
    )

    command = container.create_sign_command(output=_echo)
    exit_code = asyncio.run(command.run(request))
    raise typer.Exit(code=int(exit_code))


if __name__ == "__main__":
    app()
