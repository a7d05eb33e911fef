"""
Heirloom — Enrollment Service

Orchestrates the verify → enroll flow:

  1. validate required fields
  2. verify the proof (permissive or cryptographic strategy)
  3. replay check: has this nullifier been seen?
  4. commit the nullifier            ← replay-prevention commit point
  5. commit the user record
  6. allowlist the wallet on-chain

Steps 3–6 are not one transaction. Partial completion is an expected
outcome, not a bug:

  * Steps 3 and 4 race. Two calls with the same nullifier can both pass the
    check; the registry's primary key decides, and the loser gets
    ReplayError.
  * A failure at step 5 leaves the nullifier committed. The same proof can
    never be replayed, at the cost of an orphaned nullifier.
  * A failure at step 6 leaves the user enrolled but not allowlisted. The
    error reaches the caller unchanged; the attempt is recorded as
    ENROLLED_BUT_UNNOTIFIED and reconciliation is left to operators.

No step has a timeout of its own; the registry, verifier and ledger
clients own theirs.
"""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING, Any

import structlog

from heirloom.systems.identity.errors import (
    ConflictError,
    DuplicateKeyError,
    EnrollmentError,
    InputError,
    ReplayError,
)
from heirloom.systems.identity.types import (
    EnrollmentResult,
    EnrollmentState,
    NewUser,
    ProofSubmission,
)

if TYPE_CHECKING:
    from heirloom.clients.ledger import LedgerNotifier
    from heirloom.clients.registry import IdentityRegistry
    from heirloom.systems.identity.sessions import SessionStore
    from heirloom.systems.identity.verifier import ProofVerifier

logger = structlog.get_logger("heirloom.identity.enrollment")

MISSING_FIELDS_MESSAGE = "requestId, walletAddress, nullifierHash, and proof are required"
UNRESOLVED_IDENTITY_MESSAGE = "did and credentialHash are required"


def _missing(value: Any) -> bool:
    """Absent, empty string, false or zero. Empty objects and lists count as present."""
    if value is None or value is False:
        return True
    if isinstance(value, (int, float)):
        return value == 0
    return isinstance(value, str) and value == ""


class EnrollmentAttempt:
    """Tracks one enroll() call through the state machine."""

    __slots__ = ("state", "history", "_log")

    def __init__(self, log: Any) -> None:
        self.state = EnrollmentState.STARTED
        self.history: list[EnrollmentState] = [EnrollmentState.STARTED]
        self._log = log

    def advance(self, state: EnrollmentState) -> None:
        self._log.debug("enrollment_state", previous=self.state.value, state=state.value)
        self.state = state
        self.history.append(state)

    @property
    def path(self) -> list[str]:
        return [state.value for state in self.history]


class EnrollmentService:
    """
    One human, one account.

    Owns no durable state: sessions live in the SessionStore, nullifiers and
    users in the registry. Keeps only outcome counters for health reporting.
    """

    system_id: str = "enrollment"

    def __init__(
        self,
        sessions: SessionStore,
        verifier: ProofVerifier,
        registry: IdentityRegistry,
        ledger: LedgerNotifier,
    ) -> None:
        self._sessions = sessions
        self._verifier = verifier
        self._registry = registry
        self._ledger = ledger
        self._outcomes: Counter[EnrollmentState] = Counter()
        self._logger = logger.bind(system=self.system_id)

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def outcomes(self) -> dict[str, int]:
        return {state.value: count for state, count in self._outcomes.items()}

    # ─── Start ─────────────────────────────────────────────────────

    def start(self, wallet_address: str | None = None) -> dict[str, Any]:
        """Open a verification session and return ``{requestId, request}``."""
        session = self._sessions.create(self._verifier.build_request, wallet_address)
        self._logger.info(
            "verification_started",
            request_id=session.request_id,
            wallet_address=wallet_address,
            mode=self._verifier.mode,
        )
        return {"requestId": session.request_id, "request": session.request}

    # ─── Enroll ────────────────────────────────────────────────────

    async def enroll(
        self,
        request_id: str | None,
        wallet_address: str | None,
        nullifier_hash: str | None,
        proof: Any,
        did: str | None = None,
        credential_hash: str | None = None,
    ) -> EnrollmentResult:
        log = self._logger.bind(request_id=request_id, wallet_address=wallet_address)
        attempt = EnrollmentAttempt(log)
        try:
            result = await self._run(
                attempt, log,
                request_id, wallet_address, nullifier_hash, proof, did, credential_hash,
            )
        except Exception as exc:
            self._finish_failed(attempt, log, exc)
            raise
        self._finish(attempt, log, EnrollmentState.ENROLLED)
        return result

    async def _run(
        self,
        attempt: EnrollmentAttempt,
        log: Any,
        request_id: str | None,
        wallet_address: str | None,
        nullifier_hash: str | None,
        proof: Any,
        did: str | None,
        credential_hash: str | None,
    ) -> EnrollmentResult:
        # 1. Required fields
        attempt.advance(EnrollmentState.VALIDATING)
        if any(_missing(v) for v in (request_id, wallet_address, nullifier_hash, proof)):
            raise InputError(MISSING_FIELDS_MESSAGE)

        # 2. Proof
        attempt.advance(EnrollmentState.VERIFYING)
        verification = await self._verifier.verify(
            ProofSubmission(
                request_id=request_id,
                proof=proof,
                nullifier_hash=nullifier_hash,
                did=did,
                credential_hash=credential_hash,
            )
        )
        resolved_did = did if verification.did is None else verification.did
        resolved_credential_hash = (
            credential_hash
            if verification.credential_hash is None
            else verification.credential_hash
        )
        if not resolved_did or not resolved_credential_hash:
            raise InputError(UNRESOLVED_IDENTITY_MESSAGE)

        # 3. Replay check
        attempt.advance(EnrollmentState.CHECKING_REPLAY)
        if await self._registry.exists_nullifier(nullifier_hash):
            raise ReplayError()

        # 4. Nullifier commit. A duplicate here means a concurrent attempt
        #    with the same nullifier won the race after our check.
        attempt.advance(EnrollmentState.COMMITTING_NULLIFIER)
        try:
            await self._registry.insert_nullifier(nullifier_hash)
        except DuplicateKeyError as exc:
            log.info("nullifier_race_lost", constraint=exc.constraint)
            raise ReplayError() from exc

        # 5. User commit. The nullifier is not rolled back on failure.
        attempt.advance(EnrollmentState.COMMITTING_USER)
        try:
            user = await self._registry.insert_user(
                NewUser(
                    wallet_address=wallet_address,
                    did=resolved_did,
                    credential_hash=resolved_credential_hash,
                )
            )
        except DuplicateKeyError as exc:
            log.info("user_conflict", constraint=exc.constraint)
            raise ConflictError() from exc

        # 6. Ledger allowlist
        attempt.advance(EnrollmentState.NOTIFYING_LEDGER)
        await self._ledger.notify(wallet_address)

        return EnrollmentResult(ok=True, user=user)

    # ─── Outcome bookkeeping ───────────────────────────────────────

    def _finish(
        self, attempt: EnrollmentAttempt, log: Any, terminal: EnrollmentState
    ) -> None:
        attempt.advance(terminal)
        self._outcomes[terminal] += 1
        log.info(
            "enrollment_finished",
            outcome=terminal.value,
            path=attempt.path,
        )

    def _finish_failed(
        self, attempt: EnrollmentAttempt, log: Any, exc: Exception
    ) -> None:
        failed_in = attempt.state
        terminal = _terminal_for(failed_in, exc)
        attempt.advance(terminal)
        self._outcomes[terminal] += 1

        if terminal is EnrollmentState.ENROLLED_BUT_UNNOTIFIED:
            log.error(
                "enrollment_unnotified",
                outcome=terminal.value,
                path=attempt.path,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        elif isinstance(exc, EnrollmentError) and exc.status_code < 500:
            log.info(
                "enrollment_rejected",
                outcome=terminal.value,
                failed_in=failed_in.value,
                path=attempt.path,
                error=str(exc),
            )
        else:
            log.warning(
                "enrollment_failed",
                outcome=terminal.value,
                failed_in=failed_in.value,
                path=attempt.path,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    # ─── Health ────────────────────────────────────────────────────

    async def health(self) -> dict[str, Any]:
        return {
            "status": "healthy",
            "mode": self._verifier.mode,
            "sessions": self._sessions.stats(),
            "ledger": self._ledger.stats(),
            "outcomes": self.outcomes,
        }


def _terminal_for(state: EnrollmentState, exc: Exception) -> EnrollmentState:
    if state is EnrollmentState.NOTIFYING_LEDGER:
        return EnrollmentState.ENROLLED_BUT_UNNOTIFIED
    if isinstance(exc, ReplayError):
        return EnrollmentState.DUPLICATE
    if isinstance(exc, ConflictError):
        return EnrollmentState.CONFLICT
    rejected = isinstance(exc, EnrollmentError) and exc.status_code < 500
    if rejected and state in (EnrollmentState.VALIDATING, EnrollmentState.VERIFYING):
        return EnrollmentState.REJECTED
    return EnrollmentState.FAILED
