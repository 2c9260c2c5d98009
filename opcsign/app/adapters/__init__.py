"""Concrete adapters wiring application ports to built-in implementations."""

from __future__ import annotations

from .key_vault import AzureKeyVaultClient, StaticTokenCredential, build_token_credential
from .opc_package import OpcPackage
from .timestamp import Rfc3161Timestamper
from .xml_signature import OpcSignature, XmlSignatureBuilder, XmlTimestampBuilder

__all__ = [
    "AzureKeyVaultClient",
    "OpcPackage",
    "OpcSignature",
    "Rfc3161Timestamper",
    "StaticTokenCredential",
    "XmlSignatureBuilder",
    "XmlTimestampBuilder",
    "build_token_credential",
]
