"""Pytest configuration and fixtures."""

import shutil
import tempfile
import time
import zipfile
from collections.abc import Callable, Generator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
from asn1crypto import algos, cms, tsp
from azure.core.credentials import AccessToken
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.keyvault.keys.crypto import SignResult
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed
from cryptography.x509.oid import NameOID

from opcsign.app.adapters import AzureKeyVaultClient, Rfc3161Timestamper, StaticTokenCredential
from opcsign.app.ports import (
    AccessTokenCredential,
    KeyVaultCertificate,
    KeyVaultCredential,
    RemoteKeyHandle,
    SigningIdentity,
)
from opcsign.app.signing_context import KeyVaultSigningContext
from opcsign.bootstrap import ApplicationContainer
from opcsign.config import Settings
from opcsign.errors import RemoteSigningError
from opcsign.utils.algorithms import HashAlgorithmName, digest_info_prefix

VAULT_URL = "https://contoso.vault.azure.net"
CERTIFICATE_NAME = "codesign"
KEY_ID = f"{VAULT_URL}/keys/{CERTIFICATE_NAME}/0123456789abcdef"
ACCESS_TOKEN = "test-access-token"
ISSUED_TOKEN = "issued-token"
KEY_VAULT_SCOPE = "https://vault.azure.net/.default"
CLIENT_ID = "11111111-2222-3333-4444-555555555555"
CLIENT_SECRET = "s3cr3t"
TSA_URL = "http://timestamp.example.test/tsa"

CONTENT_TYPES_XML = (
    b'<?xml version="1.0" encoding="utf-8"?>'
    b'<Types xmlns="http://schemas.openxmlformats.org/package/2006/content-types">'
    b'<Default Extension="vsixmanifest" ContentType="text/xml" />'
    b'<Default Extension="js" ContentType="application/javascript" />'
    b'<Default Extension="json" ContentType="application/json" />'
    b'<Default Extension="rels" ContentType="application/vnd.openxmlformats-package.relationships+xml" />'
    b"</Types>"
)

VSIX_PARTS = {
    "[Content_Types].xml": CONTENT_TYPES_XML,
    "extension.vsixmanifest": b"<PackageManifest Version=\"2.0.0\"><Metadata /></PackageManifest>",
    "extension/package.json": b'{"name": "sample", "version": "1.0.0"}',
    "extension/out/main.js": b"exports.activate = function () {};\n",
}

_JWS_HASHES = {
    "RS256": hashes.SHA256,
    "RS384": hashes.SHA384,
    "RS512": hashes.SHA512,
}


def sign_payload(private_key: rsa.RSAPrivateKey, algorithm: str, payload: bytes) -> bytes:
    """Sign ``payload`` the way Key Vault does for ``algorithm``."""
    if algorithm == "RSNULL":
        prefix = digest_info_prefix(HashAlgorithmName.SHA1)
        assert payload.startswith(prefix), "RSNULL payload must carry a SHA-1 DigestInfo"
        return private_key.sign(
            payload[len(prefix) :], padding.PKCS1v15(), Prehashed(hashes.SHA1())
        )
    return private_key.sign(payload, padding.PKCS1v15(), Prehashed(_JWS_HASHES[algorithm]()))


def write_vsix(path: Path, parts: dict[str, bytes] | None = None) -> Path:
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, data in (parts or VSIX_PARTS).items():
            archive.writestr(name, data)
    return path


class LocalKeyVault:
    """In-process ``KeyVaultPort`` that signs with a local RSA key."""

    def __init__(self, private_key: rsa.RSAPrivateKey, certificate: x509.Certificate) -> None:
        self.private_key = private_key
        self.certificate = certificate
        self.sign_calls: list[tuple[str, str, bytes]] = []
        self.close_count = 0
        self.fail_sign = False
        self.truncate_signature = False

    async def sign(self, key_id: str, algorithm: str, digest: bytes) -> bytes:
        self.sign_calls.append((key_id, algorithm, digest))
        if self.fail_sign:
            raise RemoteSigningError("Key Vault returned HTTP 503: Service Unavailable")
        signature = sign_payload(self.private_key, algorithm, digest)
        if self.truncate_signature:
            return signature[:-1]
        return signature

    async def get_certificate(self, name: str) -> KeyVaultCertificate:
        return KeyVaultCertificate(
            cer=self.certificate.public_bytes(serialization.Encoding.DER), kid=KEY_ID
        )

    async def aclose(self) -> None:
        self.close_count += 1


@dataclass
class VaultCertificate:
    """The parts of an SDK ``KeyVaultCertificate`` the adapter reads."""

    cer: bytes | None
    key_id: str | None


def vault_error(error_cls: type[HttpResponseError], status: int, message: str) -> HttpResponseError:
    error = error_cls(message=message)
    error.status_code = status
    return error


class FakeClientSecretCredential:
    """Client-credential token issuer that caches the token it hands out."""

    def __init__(self, vault: "FakeKeyVault", client_id: str, client_secret: str) -> None:
        self._vault = vault
        self._client_id = client_id
        self._client_secret = client_secret
        self._token: AccessToken | None = None
        self.closed = False

    async def get_token(self, *scopes: str, **kwargs) -> AccessToken:
        if self._token is None:
            self._vault.token_requests.append({"client_id": self._client_id, "scopes": scopes})
            if (self._client_id, self._client_secret) != (CLIENT_ID, CLIENT_SECRET):
                raise ClientAuthenticationError(
                    message="AADSTS7000215: Invalid client secret provided.\nTrace ID: 0"
                )
            self._token = AccessToken(ISSUED_TOKEN, int(time.time()) + 3600)
        return self._token

    async def close(self) -> None:
        self.closed = True


class FakeCertificateClient:
    def __init__(self, vault: "FakeKeyVault", credential) -> None:
        self._vault = vault
        self._credential = credential

    async def get_certificate(self, name: str) -> VaultCertificate:
        self._vault.requests.append(("get_certificate", name))
        await self._vault.authorize(self._credential)
        if name != CERTIFICATE_NAME:
            raise vault_error(
                ResourceNotFoundError, 404, "A certificate with that name was not found."
            )
        return VaultCertificate(
            cer=self._vault.certificate_der or None, key_id=self._vault.certificate_key_id
        )

    async def close(self) -> None:
        self._vault.closed_clients.append("certificates")


class FakeCryptographyClient:
    def __init__(self, vault: "FakeKeyVault", key_id: str, credential) -> None:
        self._vault = vault
        self.key_id = key_id
        self._credential = credential

    async def sign(self, algorithm, digest: bytes) -> SignResult:
        vault = self._vault
        vault.requests.append(("sign", self.key_id))
        await vault.authorize(self._credential)
        alg = getattr(algorithm, "value", algorithm)
        vault.sign_requests.append({"alg": alg, "value": digest})
        if vault.sign_error is not None:
            raise vault.sign_error
        if vault.sign_status is not None:
            raise vault_error(
                HttpResponseError,
                vault.sign_status,
                "(Throttled) Sign request failed.\nCode: Throttled\nMessage: Sign request failed.",
            )
        if self.key_id != KEY_ID:
            raise vault_error(ResourceNotFoundError, 404, "Key not found.")
        payload = digest
        if vault.tamper_signature:
            payload = payload[:-1] + bytes([payload[-1] ^ 0x01])
        signature = sign_payload(vault.private_key, alg, payload)
        return SignResult(key_id=self.key_id, algorithm=algorithm, signature=signature)

    async def close(self) -> None:
        self._vault.closed_clients.append(f"crypto:{self.key_id}")


class FakeKeyVault:
    """Stand-ins for the Azure SDK certificate, crypto and credential clients."""

    def __init__(self, private_key: rsa.RSAPrivateKey, certificate: x509.Certificate) -> None:
        self.private_key = private_key
        self.certificate_der = certificate.public_bytes(serialization.Encoding.DER)
        self.certificate_key_id: str | None = KEY_ID
        self.requests: list[tuple[str, str]] = []
        self.sign_requests: list[dict] = []
        self.token_requests: list[dict] = []
        self.closed_clients: list[str] = []
        self.sign_status: int | None = None
        self.sign_error: Exception | None = None
        self.tamper_signature = False

    async def authorize(self, credential) -> None:
        token = (await credential.get_token(KEY_VAULT_SCOPE)).token
        if token not in {ACCESS_TOKEN, ISSUED_TOKEN}:
            raise vault_error(ClientAuthenticationError, 401, "The access token is invalid.")

    def token_credential(self, credential: KeyVaultCredential):
        if isinstance(credential, AccessTokenCredential):
            return StaticTokenCredential(credential.token)
        return FakeClientSecretCredential(self, credential.client_id, credential.client_secret)

    def certificate_client(self, vault_url: str, credential) -> FakeCertificateClient:
        assert vault_url == VAULT_URL
        return FakeCertificateClient(self, credential)

    def cryptography_client(self, key_id: str, credential) -> FakeCryptographyClient:
        return FakeCryptographyClient(self, key_id, credential)

    def client(
        self, credential: KeyVaultCredential, vault_url: str = VAULT_URL
    ) -> AzureKeyVaultClient:
        return AzureKeyVaultClient(
            vault_url,
            self.token_credential(credential),
            certificate_client_factory=self.certificate_client,
            cryptography_client_factory=self.cryptography_client,
        )


def der_sequence(*encoded: bytes) -> bytes:
    body = b"".join(encoded)
    if len(body) < 0x80:
        return bytes([0x30, len(body)]) + body
    size = len(body).to_bytes((len(body).bit_length() + 7) // 8, "big")
    return bytes([0x30, 0x80 | len(size)]) + size + body


class FakeTimestampAuthority:
    """RFC 3161 authority served through ``httpx.MockTransport``.

    ``mode`` selects the reply: ``granted``, ``rejection``, ``unavailable``,
    ``empty_grant``, ``garbage``, ``wrong_nonce`` or ``wrong_imprint``.
    """

    def __init__(self) -> None:
        self.mode = "granted"
        self.requests: list[tsp.TimeStampReq] = []

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.mode == "unavailable":
            return httpx.Response(503)
        if self.mode == "garbage":
            return httpx.Response(200, content=b"not a timestamp reply")

        ts_request = tsp.TimeStampReq.load(request.content)
        self.requests.append(ts_request)
        if self.mode == "rejection":
            # RFC 3161 replies carry no token on refusal.
            status = tsp.PKIStatusInfo(
                {"status": "rejection", "status_string": ["unsupported policy"]}
            )
            content = der_sequence(status.dump())
        elif self.mode == "empty_grant":
            content = der_sequence(tsp.PKIStatusInfo({"status": "granted"}).dump())
        else:
            reply = tsp.TimeStampResp(
                {"status": {"status": "granted"}, "time_stamp_token": self._token(ts_request)}
            )
            content = reply.dump()
        return httpx.Response(
            200, content=content, headers={"Content-Type": "application/timestamp-reply"}
        )

    def _token(self, ts_request: tsp.TimeStampReq) -> cms.ContentInfo:
        imprint = ts_request["message_imprint"]
        algorithm = imprint["hash_algorithm"]["algorithm"].native
        hashed_message = imprint["hashed_message"].native
        if self.mode == "wrong_imprint":
            hashed_message = bytes(len(hashed_message))
        nonce = ts_request["nonce"].native
        if self.mode == "wrong_nonce":
            nonce += 1

        tst_info = tsp.TSTInfo(
            {
                "version": "v1",
                "policy": "1.2.3.4.1",
                "message_imprint": {
                    "hash_algorithm": {"algorithm": algorithm},
                    "hashed_message": hashed_message,
                },
                "serial_number": len(self.requests),
                "gen_time": datetime.now(UTC),
                "nonce": nonce,
            }
        )
        signed_data = cms.SignedData(
            {
                "version": "v3",
                "digest_algorithms": [algos.DigestAlgorithm({"algorithm": algorithm})],
                "encap_content_info": {"content_type": "tst_info", "content": tst_info},
                "signer_infos": [],
            }
        )
        return cms.ContentInfo({"content_type": "signed_data", "content": signed_data})


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmpdir = tempfile.mkdtemp()
    try:
        yield Path(tmpdir)
    finally:
        shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def override_settings() -> Generator[Settings, None, None]:
    """Provide isolated opcsign settings scoped to tests."""

    import opcsign.config as config_module

    original_settings = getattr(config_module, "_settings", None)
    settings = config_module.Settings(_env_file=None)
    config_module._settings = settings

    try:
        yield settings
    finally:
        config_module._settings = original_settings


@pytest.fixture(scope="session")
def rsa_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def certificate(rsa_key: rsa.RSAPrivateKey) -> x509.Certificate:
    """Self-signed code signing certificate for ``rsa_key``."""
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "opcsign test signer")])
    now = datetime.now(UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(rsa_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(rsa_key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def other_certificate() -> x509.Certificate:
    """Certificate for a key pair unrelated to ``rsa_key``."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "unrelated signer")])
    now = datetime.now(UTC)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=30))
        .sign(key, hashes.SHA256())
    )


@pytest.fixture
def local_vault(rsa_key: rsa.RSAPrivateKey, certificate: x509.Certificate) -> LocalKeyVault:
    return LocalKeyVault(rsa_key, certificate)


@pytest.fixture
def make_context(
    local_vault: LocalKeyVault, certificate: x509.Certificate
) -> Callable[..., KeyVaultSigningContext]:
    """Factory for signing contexts backed by ``local_vault``."""

    def factory(
        algorithm: HashAlgorithmName = HashAlgorithmName.SHA256,
        cert: x509.Certificate | None = None,
    ) -> KeyVaultSigningContext:
        identity = SigningIdentity(
            certificate=cert or certificate,
            key=RemoteKeyHandle(key_id=KEY_ID, client=local_vault),
            file_digest_algorithm=algorithm,
            pkcs_digest_algorithm=algorithm,
        )
        return KeyVaultSigningContext(identity)

    return factory


@pytest.fixture
def fake_vault(rsa_key: rsa.RSAPrivateKey, certificate: x509.Certificate) -> FakeKeyVault:
    return FakeKeyVault(rsa_key, certificate)


@pytest.fixture
def fake_tsa() -> FakeTimestampAuthority:
    return FakeTimestampAuthority()


@pytest.fixture
def vsix_file(temp_dir: Path) -> Path:
    """An unsigned sample VSIX package."""
    return write_vsix(temp_dir / "sample.vsix")


@pytest.fixture
def container(
    override_settings: Settings,
    fake_vault: FakeKeyVault,
    fake_tsa: FakeTimestampAuthority,
) -> ApplicationContainer:
    """Application container wired to the fake vault and fake TSA."""

    def client_factory(vault_url: str, credential: KeyVaultCredential) -> AzureKeyVaultClient:
        return fake_vault.client(credential, vault_url)

    return ApplicationContainer(
        settings=override_settings,
        key_vault_client_factory=client_factory,
        timestamper=Rfc3161Timestamper(transport=fake_tsa.transport),
    )
