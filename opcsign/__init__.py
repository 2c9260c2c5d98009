"""opcsign - Sign OPC/VSIX packages with keys held in Azure Key Vault.

The private key never leaves the vault: digests are sent for remote signing
and the result is verified locally against the vault certificate.
"""

__version__ = "0.1.0"
__author__ = "opcsign Contributors"

from opcsign.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
