"""Encoding helpers and certificate loading."""

from __future__ import annotations

import base64
import binascii

from cryptography import x509


def encode_bytes(data: bytes) -> str:
    """Encode binary data as standard base64 for XML and JSON payloads."""
    return base64.b64encode(data).decode("ascii")


def decode_bytes(encoded: str) -> bytes:
    """Decode data produced by :func:`encode_bytes`.

    Raises:
        ValueError: If ``encoded`` is not valid base64.
    """
    try:
        return base64.b64decode("".join(encoded.split()).encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as exc:
        raise ValueError("Invalid base64 data") from exc


def load_certificate(data: bytes) -> x509.Certificate:
    """Load an X.509 certificate from DER or PEM bytes.

    Raises:
        ValueError: If ``data`` holds neither encoding.
    """
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)
