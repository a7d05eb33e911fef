"""
Heirloom — Privado Verification Router

Endpoints:
  POST /start   — open a verification session, return the proof request
  POST /verify  — verify a proof and enroll the wallet

Bodies are optional and every field is optional at the schema level:
missing fields are the enrollment service's call (400), not a 422.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

router = APIRouter()


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRequest(_Body):
    wallet_address: str | None = None


class VerifyRequest(_Body):
    request_id: str | None = None
    wallet_address: str | None = None
    nullifier_hash: str | None = None
    proof: Any = None
    did: str | None = None
    credential_hash: str | None = None


@router.post("/start")
async def start_verification(
    request: Request, body: StartRequest | None = None
) -> dict[str, Any]:
    """Create a verification session for an optional wallet hint."""
    enrollment = request.app.state.enrollment
    wallet_address = body.wallet_address if body else None
    return enrollment.start(wallet_address)


@router.post("/verify")
async def verify_and_enroll(
    request: Request, body: VerifyRequest | None = None
) -> dict[str, Any]:
    """Verify the submitted proof and enroll the wallet."""
    enrollment = request.app.state.enrollment
    body = body or VerifyRequest()
    result = await enrollment.enroll(
        request_id=body.request_id,
        wallet_address=body.wallet_address,
        nullifier_hash=body.nullifier_hash,
        proof=body.proof,
        did=body.did,
        credential_hash=body.credential_hash,
    )
    return result.to_wire()
