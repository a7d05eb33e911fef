"""
Heirloom -- Identity Enrollment Error Hierarchy

All exceptions raised on the verify -> enroll path.

Each class carries the HTTP status the API layer renders it with, so the
routers never need to know which step failed.

  InputError               400  missing or unresolvable request fields
  UnknownSessionError      400  requestId not found or already evicted
  InvalidProofFormatError  400  proof payload has no recognisable token
  VerificationFailedError  401  the verification capability rejected the proof
  ReplayError              409  nullifier already used
  ConflictError            409  wallet or identity already enrolled
  ConfigurationError       500  a required setting is absent
  UpstreamError            502  registry or ledger transport failure

DuplicateKeyError is internal: the registry client raises it on a
uniqueness violation and the enrollment service maps it to ReplayError or
ConflictError depending on which insert tripped it.
"""

from __future__ import annotations


class EnrollmentError(RuntimeError):
    """Base for every error the enrollment path raises deliberately."""

    status_code: int = 500
    default_message: str = "Enrollment failed"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class InputError(EnrollmentError):
    status_code = 400
    default_message = "Invalid request"


class ReplayError(EnrollmentError):
    """The nullifier has already been consumed by an earlier enrollment."""

    status_code = 409
    default_message = "Identity already used"


class ConflictError(EnrollmentError):
    """The user insert hit a uniqueness constraint."""

    status_code = 409
    default_message = "Wallet or identity already used"


class ConfigurationError(EnrollmentError):
    status_code = 500
    default_message = "Service is not configured"


class UnknownSessionError(EnrollmentError):
    status_code = 400
    default_message = "Unknown or expired verification request"


class InvalidProofFormatError(EnrollmentError):
    status_code = 400
    default_message = "Invalid proof format; expected JWZ string"


class VerificationFailedError(EnrollmentError):
    status_code = 401
    default_message = "Proof verification failed"


class UpstreamError(EnrollmentError):
    """Registry or ledger failure not attributable to a uniqueness conflict."""

    status_code = 502
    default_message = "Upstream service failure"


class DuplicateKeyError(EnrollmentError):
    """
    Structured uniqueness-violation signal from the registry.

    Never rendered to callers as-is; ``constraint`` names the violated
    constraint when the store reports it.
    """

    status_code = 409
    default_message = "Duplicate key"

    def __init__(self, message: str | None = None, constraint: str = "") -> None:
        super().__init__(message)
        self.constraint = constraint
