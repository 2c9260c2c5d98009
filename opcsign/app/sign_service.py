"""Sign workflow for one package.

Drives the already-signed guard, signature construction and the optional
timestamp step as an explicit state machine. Package and signing I/O is
delegated to ports.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from opcsign.app.ports import (
    VSIX_SIGNATURE_PRESET,
    PackagePort,
    PackageSignaturePort,
    SigningContextPort,
    TimestampResult,
)
from opcsign.utils.algorithms import DEFAULT_DIGEST_ALGORITHM, HashAlgorithmName

logger = logging.getLogger(__name__)


class WorkflowState(Enum):
    START = "start"
    ALREADY_SIGNED_CHECK = "already_signed_check"
    BLOCKED = "blocked"
    SIGNING = "signing"
    SIGNED = "signed"
    TIMESTAMPING_SKIPPED = "timestamping_skipped"
    TIMESTAMPING = "timestamping"
    COMPLETE = "complete"
    TIMESTAMP_FAILED = "timestamp_failed"


TERMINAL_STATES = frozenset(
    {WorkflowState.BLOCKED, WorkflowState.COMPLETE, WorkflowState.TIMESTAMP_FAILED}
)


@dataclass(frozen=True, slots=True)
class WorkflowResult:
    """Terminal state of one workflow run and what it produced."""

    state: WorkflowState
    signature: PackageSignaturePort | None = None
    timestamp_result: TimestampResult | None = None
    trace: tuple[WorkflowState, ...] = ()


def evaluate_existing_signatures(count: int, force: bool) -> WorkflowState:
    """Decide whether a package with ``count`` signatures may be signed.

    Existing signatures block signing unless ``force`` is set, in which case
    the new signature replaces them.
    """
    if count > 0 and not force:
        return WorkflowState.BLOCKED
    return WorkflowState.SIGNING


class SignService:
    """Runs the sign workflow against packages opened through ``package_opener``.

    The opener must return a package opened exclusively for read-write; it
    is closed when the run ends, whatever the outcome.
    """

    def __init__(self, package_opener: Callable[[Path], PackagePort]) -> None:
        self._package_opener = package_opener

    async def sign_package(
        self,
        path: Path,
        context: SigningContextPort,
        *,
        force: bool = False,
        timestamp_url: str | None = None,
        timestamp_digest_algorithm: HashAlgorithmName = DEFAULT_DIGEST_ALGORITHM,
    ) -> WorkflowResult:
        """Sign ``path`` and optionally timestamp the new signature.

        Args:
            path: Package to sign
            context: Signing context for the remote key
            force: Replace existing signatures instead of refusing
            timestamp_url: Timestamp authority URL; ``None`` skips timestamping
            timestamp_digest_algorithm: Digest for the timestamp imprint

        Returns:
            WorkflowResult whose state is BLOCKED, COMPLETE or TIMESTAMP_FAILED

        Raises:
            PackageError: If the package cannot be read or written
            RemoteSigningError: If remote signing fails (nothing is committed)
        """
        trace = [WorkflowState.START]

        def advance(state: WorkflowState) -> None:
            trace.append(state)
            logger.debug("%s: %s", path.name, state.value)

        package = self._package_opener(path)
        try:
            advance(WorkflowState.ALREADY_SIGNED_CHECK)
            existing = package.get_signatures()
            decision = evaluate_existing_signatures(len(existing), force)
            advance(decision)
            if decision is WorkflowState.BLOCKED:
                logger.warning(
                    "%s already carries %d signature(s); not signing without force",
                    path.name,
                    len(existing),
                )
                return WorkflowResult(WorkflowState.BLOCKED, trace=tuple(trace))

            if existing:
                logger.info("Replacing %d existing signature(s) on %s", len(existing), path.name)
            builder = package.create_signature_builder()
            builder.enqueue_named_preset(VSIX_SIGNATURE_PRESET)
            signature = await builder.sign(context)
            advance(WorkflowState.SIGNED)

            if timestamp_url is None:
                advance(WorkflowState.TIMESTAMPING_SKIPPED)
                advance(WorkflowState.COMPLETE)
                return WorkflowResult(WorkflowState.COMPLETE, signature, trace=tuple(trace))

            advance(WorkflowState.TIMESTAMPING)
            timestamp_result = await signature.create_timestamp_builder().sign(
                timestamp_url, timestamp_digest_algorithm
            )
            if timestamp_result is TimestampResult.SUCCESS:
                final_state = WorkflowState.COMPLETE
            else:
                # The committed signature is left in place.
                logger.warning("%s is signed but the timestamp failed", path.name)
                final_state = WorkflowState.TIMESTAMP_FAILED
            advance(final_state)
            return WorkflowResult(final_state, signature, timestamp_result, tuple(trace))
        finally:
            package.close()
