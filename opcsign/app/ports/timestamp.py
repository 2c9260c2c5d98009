"""Timestamp port interface for RFC 3161 timestamp authorities."""

from __future__ import annotations

from enum import Enum
from typing import Protocol

from opcsign.utils.algorithms import HashAlgorithmName


class TimestampResult(Enum):
    """Terminal outcome of a timestamp request."""

    SUCCESS = "success"
    FAILED = "failed"


class TimestamperPort(Protocol):
    """Port interface for obtaining timestamp tokens.

    Side effects: HTTP requests to the timestamp authority (online).
    """

    async def timestamp(
        self, url: str, digest_algorithm: HashAlgorithmName, data: bytes
    ) -> bytes:
        """Request a timestamp token over ``data``.

        Args:
            url: Absolute http(s) URL of the authority
            digest_algorithm: Algorithm for the message imprint
            data: Bytes to timestamp (hashed before sending)

        Returns:
            DER-encoded timestamp token (CMS ContentInfo)

        Raises:
            TimestampError: If the authority rejects or cannot be reached
        """
        ...


class TimestampError(Exception):
    """Raised by timestamper adapters; classified as ``TimestampResult.FAILED``."""
