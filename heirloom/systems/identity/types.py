"""
Heirloom — Identity Types

Records owned by the session store and the identity registry, the
per-attempt enrollment state machine, and verifier inputs/outputs.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from heirloom.primitives.common import CamelModel

# ─── Session Store ────────────────────────────────────────────────


class VerificationSession(BaseModel):
    """A short-lived proof request, keyed by ``request_id``."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    nonce: str
    request: dict[str, Any]
    created_at: float  # store clock seconds, used for TTL eviction
    wallet_address: str | None = None


# ─── Registry Records ─────────────────────────────────────────────


class UserRecord(CamelModel):
    id: str
    wallet_address: str
    did: str
    credential_hash: str
    created_at: datetime | None = None


class NewUser(BaseModel):
    wallet_address: str
    did: str
    credential_hash: str


# ─── Verifier ─────────────────────────────────────────────────────


class ProofSubmission(BaseModel):
    """What the verifier needs from a /verify call."""

    request_id: str
    proof: Any
    nullifier_hash: str
    did: str | None = None
    credential_hash: str | None = None


class VerificationResult(BaseModel):
    did: str | None = None
    credential_hash: str | None = None


# ─── Enrollment ───────────────────────────────────────────────────


class EnrollmentState(str, enum.Enum):
    STARTED = "started"
    VALIDATING = "validating"
    VERIFYING = "verifying"
    CHECKING_REPLAY = "checking_replay"
    COMMITTING_NULLIFIER = "committing_nullifier"
    COMMITTING_USER = "committing_user"
    NOTIFYING_LEDGER = "notifying_ledger"
    # Terminal
    REJECTED = "rejected"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    FAILED = "failed"
    ENROLLED = "enrolled"
    ENROLLED_BUT_UNNOTIFIED = "enrolled_but_unnotified"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({
    EnrollmentState.REJECTED,
    EnrollmentState.DUPLICATE,
    EnrollmentState.CONFLICT,
    EnrollmentState.FAILED,
    EnrollmentState.ENROLLED,
    EnrollmentState.ENROLLED_BUT_UNNOTIFIED,
})


class EnrollmentResult(BaseModel):
    ok: bool = True
    user: UserRecord

    def to_wire(self) -> dict[str, Any]:
        return {"ok": self.ok, "user": self.user.to_wire()}
