"""RFC 3161 timestamper and signature timestamp embedding."""

from pathlib import Path

import httpx
import pytest
from asn1crypto import cms

from opcsign.app.adapters import OpcPackage, Rfc3161Timestamper
from opcsign.app.adapters.timestamp import TIMESTAMP_QUERY_CONTENT_TYPE
from opcsign.app.ports import VSIX_SIGNATURE_PRESET, PackageFileMode, TimestampError, TimestampResult
from opcsign.utils.algorithms import HashAlgorithmName, compute_digest

from conftest import TSA_URL


@pytest.mark.asyncio
async def test_granted_reply_returns_token_over_data(fake_tsa) -> None:
    timestamper = Rfc3161Timestamper(transport=fake_tsa.transport)

    token = await timestamper.timestamp(TSA_URL, HashAlgorithmName.SHA256, b"signature bytes")

    request = fake_tsa.requests[0]
    assert request["cert_req"].native is True
    assert request["nonce"].native is not None
    content_info = cms.ContentInfo.load(token)
    tst_info = content_info["content"]["encap_content_info"]["content"].parsed
    assert tst_info["message_imprint"]["hashed_message"].native == compute_digest(
        b"signature bytes", HashAlgorithmName.SHA256
    )


@pytest.mark.asyncio
@pytest.mark.parametrize("algorithm", [HashAlgorithmName.SHA1, HashAlgorithmName.SHA512])
async def test_imprint_uses_requested_algorithm(fake_tsa, algorithm) -> None:
    timestamper = Rfc3161Timestamper(transport=fake_tsa.transport)

    await timestamper.timestamp(TSA_URL, algorithm, b"data")

    imprint = fake_tsa.requests[0]["message_imprint"]
    assert imprint["hash_algorithm"]["algorithm"].native == algorithm.value
    assert len(imprint["hashed_message"].native) == algorithm.digest_size


@pytest.mark.asyncio
async def test_request_content_type() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(503)

    timestamper = Rfc3161Timestamper(transport=httpx.MockTransport(handler))

    with pytest.raises(TimestampError):
        await timestamper.timestamp(TSA_URL, HashAlgorithmName.SHA256, b"data")
    assert seen[0].method == "POST"
    assert seen[0].headers["Content-Type"] == TIMESTAMP_QUERY_CONTENT_TYPE


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("mode", "message"),
    [
        ("unavailable", "HTTP 503"),
        ("rejection", "refused the request: rejection"),
        ("empty_grant", "sent no token"),
        ("garbage", "malformed reply"),
        ("wrong_nonce", "nonce does not match"),
        ("wrong_imprint", "does not cover the requested data"),
    ],
)
async def test_bad_replies_raise_timestamp_error(fake_tsa, mode: str, message: str) -> None:
    fake_tsa.mode = mode
    timestamper = Rfc3161Timestamper(transport=fake_tsa.transport)

    with pytest.raises(TimestampError, match=message):
        await timestamper.timestamp(TSA_URL, HashAlgorithmName.SHA256, b"data")


@pytest.mark.asyncio
async def test_unreachable_authority_raises_timestamp_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    timestamper = Rfc3161Timestamper(transport=httpx.MockTransport(handler))

    with pytest.raises(TimestampError, match="failed"):
        await timestamper.timestamp(TSA_URL, HashAlgorithmName.SHA256, b"data")


@pytest.mark.asyncio
@pytest.mark.parametrize("url", ["http://:80/tsa", "http://exa mple.com/tsa", "ldap://tsa.example.test"])
async def test_malformed_url_is_rejected_without_request(fake_tsa, url: str) -> None:
    timestamper = Rfc3161Timestamper(transport=fake_tsa.transport)

    with pytest.raises(TimestampError, match="Timestamp URL"):
        await timestamper.timestamp(url, HashAlgorithmName.SHA256, b"data")

    assert fake_tsa.requests == []


async def _sign(path: Path, make_context, timestamper: Rfc3161Timestamper):
    package = OpcPackage.open(path, PackageFileMode.READ_WRITE, timestamper=timestamper)
    builder = package.create_signature_builder()
    builder.enqueue_named_preset(VSIX_SIGNATURE_PRESET)
    signature = await builder.sign(make_context())
    return package, signature


@pytest.mark.asyncio
async def test_timestamp_builder_embeds_token(vsix_file: Path, make_context, fake_tsa) -> None:
    timestamper = Rfc3161Timestamper(transport=fake_tsa.transport)
    package, signature = await _sign(vsix_file, make_context, timestamper)
    with package:
        result = await signature.create_timestamp_builder().sign(
            TSA_URL, HashAlgorithmName.SHA256
        )

    assert result is TimestampResult.SUCCESS
    imprint = fake_tsa.requests[0]["message_imprint"]["hashed_message"].native
    assert imprint == compute_digest(signature.signature_value, HashAlgorithmName.SHA256)

    with OpcPackage.open(vsix_file) as reopened:
        stored = reopened.get_signatures()[0]
        assert stored.timestamped is True
        assert stored.timestamp_token is not None
        assert stored.verify() is True


@pytest.mark.asyncio
async def test_failed_timestamp_leaves_signature_committed(
    vsix_file: Path, make_context, fake_tsa
) -> None:
    fake_tsa.mode = "rejection"
    timestamper = Rfc3161Timestamper(transport=fake_tsa.transport)
    package, signature = await _sign(vsix_file, make_context, timestamper)
    with package:
        result = await signature.create_timestamp_builder().sign(
            TSA_URL, HashAlgorithmName.SHA256
        )

    assert result is TimestampResult.FAILED
    with OpcPackage.open(vsix_file) as reopened:
        stored = reopened.get_signatures()
        assert len(stored) == 1
        assert stored[0].timestamped is False
        assert stored[0].verify() is True


@pytest.mark.asyncio
async def test_retimestamp_replaces_token(vsix_file: Path, make_context, fake_tsa) -> None:
    timestamper = Rfc3161Timestamper(transport=fake_tsa.transport)
    package, signature = await _sign(vsix_file, make_context, timestamper)
    with package:
        builder = signature.create_timestamp_builder()
        await builder.sign(TSA_URL, HashAlgorithmName.SHA256)
        await builder.sign(TSA_URL, HashAlgorithmName.SHA256)
        data = package.read_part(signature.part_name)

    assert data.count(b"EncapsulatedTimeStamp>") == 2  # one open and one close tag
