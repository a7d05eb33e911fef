"""
Heirloom — Identity Registry Client

Typed access to the Hasura GraphQL record store holding nullifiers and
enrolled users. The client has no state of its own beyond its HTTP pool;
uniqueness of nullifiers and wallet addresses is enforced by the store's
primary/unique keys and reported back as ``DuplicateKeyError``.

Tables:
  identity_nullifiers(nullifier_hash PK, created_at)
  users(id PK, wallet_address UNIQUE, did, credential_hash, created_at)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

import httpx
import structlog

from heirloom.primitives.common import utc_now
from heirloom.systems.identity.errors import (
    ConfigurationError,
    DuplicateKeyError,
    UpstreamError,
)
from heirloom.systems.identity.types import NewUser, UserRecord

if TYPE_CHECKING:
    from heirloom.config import RegistryConfig

logger = structlog.get_logger("heirloom.clients.registry")

_ADMIN_SECRET_HEADER = "x-hasura-admin-secret"
_CONSTRAINT_VIOLATION = "constraint-violation"
_PG_UNIQUE_VIOLATION = "23505"

CHECK_NULLIFIER = """
query CheckNullifier($nullifier_hash: String!) {
  identity_nullifiers_by_pk(nullifier_hash: $nullifier_hash) {
    nullifier_hash
  }
}
"""

INSERT_NULLIFIER = """
mutation InsertNullifier($nullifier_hash: String!, $created_at: timestamptz!) {
  insert_identity_nullifiers_one(object: { nullifier_hash: $nullifier_hash, created_at: $created_at }) {
    nullifier_hash
  }
}
"""

INSERT_USER = """
mutation InsertUser($wallet_address: String!, $did: String!, $credential_hash: String!, $created_at: timestamptz!) {
  insert_users_one(object: { wallet_address: $wallet_address, did: $did, credential_hash: $credential_hash, created_at: $created_at }) {
    id
    wallet_address
    did
    credential_hash
    created_at
  }
}
"""


class IdentityRegistry(Protocol):
    """What the enrollment service needs from the record store."""

    async def exists_nullifier(self, nullifier_hash: str) -> bool: ...

    async def insert_nullifier(self, nullifier_hash: str) -> None:
        """Raises ``DuplicateKeyError`` if the hash is already recorded."""
        ...

    async def insert_user(self, user: NewUser) -> UserRecord:
        """Raises ``DuplicateKeyError`` on a duplicate wallet or identity."""
        ...


def _duplicate_key_from(errors: list[dict[str, Any]]) -> DuplicateKeyError | None:
    """
    Pick out a uniqueness violation from a GraphQL error list.

    Hasura reports every constraint violation with the same code; when the
    Postgres error is attached, only SQLSTATE 23505 counts as a duplicate.
    """
    for err in errors:
        extensions = err.get("extensions") or {}
        if extensions.get("code") != _CONSTRAINT_VIOLATION:
            continue
        internal = (extensions.get("internal") or {}).get("error") or {}
        pg_code = internal.get("status_code")
        if pg_code and pg_code != _PG_UNIQUE_VIOLATION:
            continue
        constraint = internal.get("constraint", "") or (internal.get("description") or "")
        return DuplicateKeyError(err.get("message") or None, constraint=constraint)
    return None


class HasuraRegistryClient:
    """
    Async GraphQL client for the identity registry.

    Lifecycle: construct → connect() → use → close().
    """

    def __init__(
        self,
        config: RegistryConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the HTTP pool. Missing endpoint/secret is reported on first use."""
        self._client = httpx.AsyncClient(
            timeout=self._config.timeout_s,
            transport=self._transport,
        )
        logger.info(
            "registry_client_ready",
            endpoint=self._config.graphql_endpoint or None,
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("registry_client_closed")

    async def health_check(self) -> dict[str, Any]:
        if not self._config.graphql_endpoint:
            return {"status": "unconfigured"}
        try:
            await self._request("query Health { __typename }")
            return {"status": "connected"}
        except Exception as e:
            logger.error("registry_health_check_failed", error=str(e))
            return {"status": "disconnected", "error": str(e)}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Registry client not connected. Call connect() first.")
        return self._client

    # ── Operations ────────────────────────────────────────────

    async def exists_nullifier(self, nullifier_hash: str) -> bool:
        data = await self._request(CHECK_NULLIFIER, {"nullifier_hash": nullifier_hash})
        return bool(data.get("identity_nullifiers_by_pk"))

    async def insert_nullifier(self, nullifier_hash: str) -> None:
        await self._request(
            INSERT_NULLIFIER,
            {
                "nullifier_hash": nullifier_hash,
                "created_at": utc_now().isoformat(),
            },
        )

    async def insert_user(self, user: NewUser) -> UserRecord:
        data = await self._request(
            INSERT_USER,
            {
                "wallet_address": user.wallet_address,
                "did": user.did,
                "credential_hash": user.credential_hash,
                "created_at": utc_now().isoformat(),
            },
        )
        row = data.get("insert_users_one")
        if not row:
            raise UpstreamError("Registry returned no user row")
        return UserRecord(
            id=str(row["id"]),
            wallet_address=row["wallet_address"],
            did=row["did"],
            credential_hash=row["credential_hash"],
            created_at=row.get("created_at"),
        )

    # ── Transport ─────────────────────────────────────────────

    async def _request(
        self, query: str, variables: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        if not self._config.graphql_endpoint or not self._config.admin_secret:
            raise ConfigurationError("Registry GraphQL endpoint/secret not configured")

        try:
            response = await self.client.post(
                self._config.graphql_endpoint,
                json={"query": query, "variables": variables or {}},
                headers={_ADMIN_SECRET_HEADER: self._config.admin_secret},
            )
        except httpx.HTTPError as exc:
            logger.warning("registry_transport_failed", error=str(exc))
            raise UpstreamError(f"Registry request failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise UpstreamError(
                f"Registry returned non-JSON response (HTTP {response.status_code})"
            ) from exc

        errors = body.get("errors") if isinstance(body, dict) else None
        if errors:
            duplicate = _duplicate_key_from(errors)
            if duplicate is not None:
                logger.info("registry_duplicate_key", constraint=duplicate.constraint)
                raise duplicate
            raise UpstreamError("; ".join(str(e.get("message", e)) for e in errors))

        if response.is_error:
            raise UpstreamError(f"Registry returned HTTP {response.status_code}")

        data = body.get("data") if isinstance(body, dict) else None
        if data is None:
            raise UpstreamError("Registry response missing data")
        return data
