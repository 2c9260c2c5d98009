"""RFC 3161 timestamp client over httpx."""

from __future__ import annotations

import logging
import re
import secrets

import httpx
from asn1crypto import algos, cms, core, tsp

from opcsign.app.ports.timestamp import TimestampError
from opcsign.utils.algorithms import HashAlgorithmName, compute_digest

logger = logging.getLogger(__name__)

TIMESTAMP_QUERY_CONTENT_TYPE = "application/timestamp-query"
_GRANTED = {"granted", "granted_with_mods"}
_HOST = re.compile(r"[A-Za-z0-9.:-]+")


class TimeStampReply(core.Sequence):
    """``TimeStampResp`` with the token optional.

    Authorities omit the token when they refuse a request, which
    ``tsp.TimeStampResp`` cannot parse.
    """

    _fields = [
        ("status", tsp.PKIStatusInfo),
        ("time_stamp_token", cms.ContentInfo, {"optional": True}),
    ]


def parse_timestamp_url(url: str) -> httpx.URL:
    """Parse an absolute ``http``/``https`` timestamp URL with a real host.

    Raises:
        TimestampError: If ``url`` is not such a URL
    """
    try:
        target = httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise TimestampError(f"Timestamp URL {url!r} is invalid: {exc}") from exc
    if target.scheme.lower() not in {"http", "https"}:
        raise TimestampError(f"Timestamp URL {url!r} is not an http or https URL.")
    if not _HOST.fullmatch(target.raw_host.decode("ascii")):
        raise TimestampError(f"Timestamp URL {url!r} does not name a valid host.")
    return target


def build_timestamp_request(
    digest_algorithm: HashAlgorithmName, data: bytes, nonce: int
) -> tsp.TimeStampReq:
    """Build a TimeStampReq asking for the TSA certificate in the reply."""
    return tsp.TimeStampReq(
        {
            "version": 1,
            "message_imprint": tsp.MessageImprint(
                {
                    "hash_algorithm": algos.DigestAlgorithm(
                        {"algorithm": digest_algorithm.value}
                    ),
                    "hashed_message": compute_digest(data, digest_algorithm),
                }
            ),
            "nonce": nonce,
            "cert_req": True,
        }
    )


class Rfc3161Timestamper:
    """Timestamper that talks to an RFC 3161 authority over HTTP(S).

    Every failure, including a transport error, a rejected request or a
    reply that does not match the request, raises :class:`TimestampError`.
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport

    async def timestamp(
        self, url: str, digest_algorithm: HashAlgorithmName, data: bytes
    ) -> bytes:
        target = parse_timestamp_url(url)
        nonce = secrets.randbits(63)
        request = build_timestamp_request(digest_algorithm, data, nonce)
        logger.debug("Requesting %s timestamp from %s", digest_algorithm.value, url)

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as http:
            try:
                response = await http.post(
                    target,
                    content=request.dump(),
                    headers={"Content-Type": TIMESTAMP_QUERY_CONTENT_TYPE},
                )
            except (httpx.HTTPError, httpx.InvalidURL) as exc:
                raise TimestampError(f"Timestamp request to {url} failed: {exc}") from exc

        if response.is_error:
            raise TimestampError(
                f"Timestamp authority returned HTTP {response.status_code}."
            )
        return _extract_token(response.content, request, nonce)


def _extract_token(body: bytes, request: tsp.TimeStampReq, nonce: int) -> bytes:
    try:
        reply = TimeStampReply.load(body)
        status = reply["status"]["status"].native
        if status not in _GRANTED:
            detail = reply["status"]["status_string"].native
            message = f"Timestamp authority refused the request: {status}"
            raise TimestampError(f"{message} ({'; '.join(detail)})" if detail else message)

        token = reply["time_stamp_token"]
        if isinstance(token, core.Void):
            raise TimestampError("Timestamp authority granted the request but sent no token.")
        tst_info = token["content"]["encap_content_info"]["content"].parsed
        imprint = tst_info["message_imprint"]
        expected = request["message_imprint"]
    except (ValueError, TypeError, KeyError, AttributeError) as exc:
        raise TimestampError(f"Timestamp authority returned a malformed reply: {exc}") from exc

    if imprint["hashed_message"].native != expected["hashed_message"].native:
        raise TimestampError("Timestamp reply does not cover the requested data.")
    requested_algorithm = expected["hash_algorithm"]["algorithm"].native
    if imprint["hash_algorithm"]["algorithm"].native != requested_algorithm:
        raise TimestampError("Timestamp reply used a different digest algorithm.")
    if tst_info["nonce"].native != nonce:
        raise TimestampError("Timestamp reply nonce does not match the request.")
    return token.dump()
