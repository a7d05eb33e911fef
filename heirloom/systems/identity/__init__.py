"""
Heirloom — Identity Enrollment System

Proof-of-personhood gate in front of the user registry: verification
sessions, proof verification, and the enrollment orchestration that ties
them to the registry and the on-chain allowlist.
"""

from heirloom.systems.identity.service import EnrollmentService
from heirloom.systems.identity.sessions import SessionStore
from heirloom.systems.identity.verifier import (
    CryptographicProofVerifier,
    PermissiveProofVerifier,
    ProofVerifier,
    build_proof_verifier,
)

__all__ = [
    "EnrollmentService",
    "SessionStore",
    "ProofVerifier",
    "PermissiveProofVerifier",
    "CryptographicProofVerifier",
    "build_proof_verifier",
]
