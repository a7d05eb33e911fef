"""
Heirloom — Proof Verifier

Two interchangeable strategies, chosen by ``privado.dev_mode``:

  PermissiveProofVerifier     — development only. Accepts any proof, needs
                                no session, and derives a deterministic
                                credential hash from the proof content.
  CryptographicProofVerifier  — production. Builds iden3 authorization
                                requests and fully verifies the returned JWZ
                                against the stored request.

Both also build the request descriptor handed out by ``POST /start``, since
its shape depends on the mode.
"""

from __future__ import annotations

import abc
import hashlib
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx
import structlog

from heirloom.clients.iden3 import (
    Iden3Verifier,
    StateResolver,
    create_authorization_request,
)
from heirloom.primitives.singleflight import SingleFlight
from heirloom.systems.identity.errors import (
    ConfigurationError,
    InvalidProofFormatError,
    UnknownSessionError,
    UpstreamError,
    VerificationFailedError,
)
from heirloom.systems.identity.types import ProofSubmission, VerificationResult

if TYPE_CHECKING:
    from heirloom.config import PrivadoConfig
    from heirloom.systems.identity.sessions import SessionStore

logger = structlog.get_logger("heirloom.identity.verifier")

DEV_DID = "did:privado:dev"
CALLBACK_SESSION_PARAM = "sessionId"

# Object proofs: first present key wins.
PROOF_TOKEN_KEYS: tuple[str, ...] = ("token", "jwz", "jwt", "proof")


# ─── Proof decoding ───────────────────────────────────────────────


@dataclass(frozen=True)
class ProofToken:
    """A proof token and where in the payload it was found."""

    source: str  # "raw" for a bare string, else the object key
    token: str


def decode_proof(proof: Any) -> ProofToken:
    """
    Decode a submitted proof into its token.

    A bare string is the token. An object is searched for ``token``, ``jwz``,
    ``jwt`` and ``proof`` in that order; the first key that is present must
    hold a string. Everything else is rejected.
    """
    if isinstance(proof, str):
        return ProofToken(source="raw", token=proof)

    if isinstance(proof, dict):
        for key in PROOF_TOKEN_KEYS:
            candidate = proof.get(key)
            if candidate is None:
                continue
            if isinstance(candidate, str):
                return ProofToken(source=key, token=candidate)
            break

    raise InvalidProofFormatError()


def hash_proof(proof: Any) -> str:
    """SHA-256 hex of the proof: strings as-is, anything else as compact JSON."""
    if isinstance(proof, str):
        text = proof
    else:
        text = json.dumps(proof, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(text.encode()).hexdigest()


# ─── Strategy interface ───────────────────────────────────────────


class FullVerifier(Protocol):
    """The external verification capability."""

    async def full_verify(
        self,
        token: str,
        request: dict[str, Any],
        accepted_state_transition_delay_ms: int,
    ) -> dict[str, Any]: ...


class ProofVerifier(abc.ABC):
    mode: str = ""

    @abc.abstractmethod
    def build_request(
        self, request_id: str, nonce: str, wallet_address: str | None
    ) -> dict[str, Any]:
        """Descriptor returned to the client by ``POST /start``."""

    @abc.abstractmethod
    async def verify(self, submission: ProofSubmission) -> VerificationResult: ...

    async def close(self) -> None:
        return None


# ─── Permissive ───────────────────────────────────────────────────


class PermissiveProofVerifier(ProofVerifier):
    """Accept-everything verifier for local development."""

    mode = "permissive"

    def __init__(self, config: PrivadoConfig) -> None:
        self._config = config

    def build_request(
        self, request_id: str, nonce: str, wallet_address: str | None
    ) -> dict[str, Any]:
        return {
            "nonce": nonce,
            "callbackUrl": self._config.callback_url,
            "walletAddress": wallet_address,
        }

    async def verify(self, submission: ProofSubmission) -> VerificationResult:
        # Only absent overrides fall back; an empty string is kept as given.
        return VerificationResult(
            did=DEV_DID if submission.did is None else submission.did,
            credential_hash=(
                hash_proof(submission.proof)
                if submission.credential_hash is None
                else submission.credential_hash
            ),
        )


# ─── Cryptographic ────────────────────────────────────────────────


class CryptographicProofVerifier(ProofVerifier):
    """
    iden3 JWZ verification against requests held in the session store.

    The underlying ``Iden3Verifier`` is built lazily on the first
    verification and shared: concurrent first callers trigger exactly one
    construction.
    """

    mode = "cryptographic"

    def __init__(
        self,
        config: PrivadoConfig,
        sessions: SessionStore,
        verifier_factory: Callable[[], Awaitable[FullVerifier]] | None = None,
    ) -> None:
        self._config = config
        self._sessions = sessions
        self._verifier = SingleFlight(
            verifier_factory or self._build_iden3_verifier,
            name="iden3_verifier",
        )
        self._logger = logger.bind(mode=self.mode)

    # ── Request building ──────────────────────────────────────

    def build_request(
        self, request_id: str, nonce: str, wallet_address: str | None
    ) -> dict[str, Any]:
        cfg = self._config
        self._require(
            verifier_did=cfg.verifier_did,
            callback_url=cfg.callback_url,
            request_reason=cfg.request_reason,
        )

        try:
            callback = httpx.URL(cfg.callback_url).copy_merge_params(
                {CALLBACK_SESSION_PARAM: request_id}
            )
        except httpx.InvalidURL as exc:
            raise ConfigurationError(f"Invalid callback URL: {cfg.callback_url}") from exc

        request = create_authorization_request(
            cfg.request_reason, cfg.verifier_did, str(callback)
        )
        body = request["body"]
        if cfg.request_scope:
            body["scope"] = [*(body.get("scope") or []), *cfg.request_scope]
        body["reason"] = cfg.request_reason
        if wallet_address:
            body["message"] = f"Wallet verification for {wallet_address}"
        return request

    # ── Verification ──────────────────────────────────────────

    async def verify(self, submission: ProofSubmission) -> VerificationResult:
        session = self._sessions.get(submission.request_id)
        if session is None:
            raise UnknownSessionError()

        proof = decode_proof(submission.proof)
        verifier = await self._verifier.get()

        try:
            auth_response = await verifier.full_verify(
                proof.token,
                session.request,
                self._config.accepted_delay_ms,
            )
        except Exception as exc:
            self._logger.info(
                "proof_rejected",
                request_id=submission.request_id,
                proof_source=proof.source,
                error=str(exc),
            )
            raise VerificationFailedError() from exc

        did = _resolve_subject(auth_response)
        if did is None:
            did = submission.did
        self._logger.info(
            "proof_verified",
            request_id=submission.request_id,
            proof_source=proof.source,
            did=did,
        )
        return VerificationResult(
            did=did,
            credential_hash=(
                hash_proof(proof.token)
                if submission.credential_hash is None
                else submission.credential_hash
            ),
        )

    async def close(self) -> None:
        if self._verifier.ready:
            verifier = await self._verifier.get()
            close = getattr(verifier, "close", None)
            if close is not None:
                await close()

    # ── Internals ─────────────────────────────────────────────

    async def _build_iden3_verifier(self) -> FullVerifier:
        cfg = self._config
        self._require(
            resolver_prefix=cfg.resolver_prefix,
            rpc_url=cfg.rpc_url,
            state_contract_address=cfg.state_contract_address,
            circuits_dir=cfg.circuits_dir,
            ipfs_gateway_url=cfg.ipfs_gateway_url,
            verifier_service_url=cfg.verifier_service_url,
        )
        try:
            return await Iden3Verifier.create(
                state_resolvers={
                    cfg.resolver_prefix: StateResolver(cfg.rpc_url, cfg.state_contract_address),
                },
                circuits_dir=cfg.circuits_dir,
                ipfs_gateway_url=cfg.ipfs_gateway_url,
                service_url=cfg.verifier_service_url,
                timeout_s=cfg.verifier_timeout_s,
            )
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            # KeyError: no verifierId in the reply. ValueError: non-JSON body.
            raise UpstreamError(f"Verifier initialisation failed: {exc!r}") from exc

    @staticmethod
    def _require(**settings: str) -> None:
        missing = [name for name, value in settings.items() if not value]
        if missing:
            raise ConfigurationError(
                f"Privado verifier not configured: missing {', '.join(missing)}"
            )


def _resolve_subject(auth_response: Any) -> str | None:
    """Subject DID: top-level ``from``, then ``body.from``, then ``body.subject``."""
    if not isinstance(auth_response, dict):
        return None
    if auth_response.get("from") is not None:
        return auth_response["from"]
    body = auth_response.get("body")
    if not isinstance(body, dict):
        return None
    if body.get("from") is not None:
        return body["from"]
    return body.get("subject")


def build_proof_verifier(config: PrivadoConfig, sessions: SessionStore) -> ProofVerifier:
    if config.dev_mode:
        logger.warning("privado_dev_mode_enabled")
        return PermissiveProofVerifier(config)
    return CryptographicProofVerifier(config, sessions)
