"""Application layer for opcsign.

This layer orchestrates the signing workflow without direct network I/O.
Remote signing, timestamping and package rewriting are delegated to adapters
via port interfaces.
"""

__all__ = [
    "KeyVaultSigningContext",
    "SignCommand",
    "SignRequest",
    "SignService",
    "WorkflowResult",
    "WorkflowState",
    "materialize_identity",
]

from opcsign.app.identity import materialize_identity
from opcsign.app.sign_command import SignCommand, SignRequest
from opcsign.app.sign_service import SignService, WorkflowResult, WorkflowState
from opcsign.app.signing_context import KeyVaultSigningContext
