"""
Heirloom — iden3 Authorization Client

Two halves of the Privado ID (iden3) auth protocol:

  create_authorization_request()  — builds the iden3comm authorization
                                    request a wallet answers with a JWZ
  Iden3Verifier                   — full verification of a JWZ response,
                                    delegated to the iden3 auth verifier
                                    service

Constructing an ``Iden3Verifier`` is expensive: it reads every circuit
verification key from the circuits directory and registers the chain state
resolvers with the verifier service. Callers should construct it once (see
``heirloom.primitives.singleflight``).
"""

from __future__ import annotations

import asyncio
import json
import uuid
from pathlib import Path
from typing import Any

import httpx
import structlog

from heirloom.systems.identity.errors import ConfigurationError

logger = structlog.get_logger("heirloom.clients.iden3")

AUTHORIZATION_REQUEST_TYPE = "https://iden3-communication.io/authorization/1.0/request"
PLAIN_MEDIA_TYPE = "application/iden3comm-plain-json"
VERIFICATION_KEY_FILE = "verification_key.json"


def create_authorization_request(
    reason: str,
    sender: str,
    callback_url: str,
) -> dict[str, Any]:
    """Build an iden3comm authorization request with an empty scope."""
    message_id = str(uuid.uuid4())
    return {
        "id": message_id,
        "thid": message_id,
        "typ": PLAIN_MEDIA_TYPE,
        "type": AUTHORIZATION_REQUEST_TYPE,
        "from": sender,
        "body": {
            "callbackUrl": callback_url,
            "reason": reason,
            "scope": [],
        },
    }


class StateResolver:
    """On-chain identity state lookup for one resolver prefix."""

    __slots__ = ("rpc_url", "contract_address")

    def __init__(self, rpc_url: str, contract_address: str) -> None:
        self.rpc_url = rpc_url
        self.contract_address = contract_address

    def to_dict(self) -> dict[str, str]:
        return {"rpcUrl": self.rpc_url, "contractAddress": self.contract_address}

    def __repr__(self) -> str:
        return f"StateResolver({self.rpc_url}, {self.contract_address})"


def _load_verification_keys(circuits_dir: Path) -> dict[str, Any]:
    if not circuits_dir.is_dir():
        raise ConfigurationError(f"Circuits directory not found: {circuits_dir}")
    keys: dict[str, Any] = {}
    for key_file in sorted(circuits_dir.glob(f"*/{VERIFICATION_KEY_FILE}")):
        with open(key_file) as f:
            keys[key_file.parent.name] = json.load(f)
    if not keys:
        raise ConfigurationError(f"No circuit verification keys under {circuits_dir}")
    return keys


class Iden3Verifier:
    """
    Handle on a configured iden3 auth verifier.

    Build with ``await Iden3Verifier.create(...)``; the constructor only
    wires already-registered state.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        verifier_id: str,
        circuits: list[str],
    ) -> None:
        self._client = client
        self._verifier_id = verifier_id
        self._circuits = circuits

    @property
    def circuits(self) -> list[str]:
        return list(self._circuits)

    @classmethod
    async def create(
        cls,
        *,
        state_resolvers: dict[str, StateResolver],
        circuits_dir: str | Path,
        ipfs_gateway_url: str,
        service_url: str,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Iden3Verifier:
        keys = await asyncio.to_thread(_load_verification_keys, Path(circuits_dir))

        client = httpx.AsyncClient(
            base_url=service_url,
            timeout=timeout_s,
            transport=transport,
        )
        try:
            response = await client.post(
                "/v1/verifiers",
                json={
                    "stateResolvers": {
                        prefix: resolver.to_dict()
                        for prefix, resolver in state_resolvers.items()
                    },
                    "verificationKeys": keys,
                    "ipfsGatewayURL": ipfs_gateway_url,
                },
            )
            response.raise_for_status()
            verifier_id = response.json()["verifierId"]
        except BaseException:
            await client.aclose()
            raise

        logger.info(
            "iden3_verifier_created",
            verifier_id=verifier_id,
            circuits=sorted(keys),
            resolvers=sorted(state_resolvers),
        )
        return cls(client, verifier_id, sorted(keys))

    async def full_verify(
        self,
        token: str,
        request: dict[str, Any],
        accepted_state_transition_delay_ms: int,
    ) -> dict[str, Any]:
        """
        Verify a JWZ token against the original authorization request.

        Returns the decoded authorization response message. Raises on any
        rejection or transport failure.
        """
        response = await self._client.post(
            f"/v1/verifiers/{self._verifier_id}/verify",
            json={
                "token": token,
                "request": request,
                "options": {
                    "AcceptedStateTransitionDelay": accepted_state_transition_delay_ms,
                },
            },
        )
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        await self._client.aclose()
