"""
Unit tests for HasuraRegistryClient.

GraphQL responses are served by ``httpx.MockTransport``; no network.
"""

from __future__ import annotations

import json

import httpx
import pytest

from heirloom.clients.registry import HasuraRegistryClient
from heirloom.config import RegistryConfig
from heirloom.systems.identity.errors import (
    ConfigurationError,
    DuplicateKeyError,
    UpstreamError,
)
from heirloom.systems.identity.types import NewUser

ENDPOINT = "https://hasura.example/v1/graphql"


def _config(**overrides) -> RegistryConfig:
    fields = {"graphql_endpoint": ENDPOINT, "admin_secret": "s3cret"}
    fields.update(overrides)
    return RegistryConfig(**fields)


async def _client_for(handler, **config_overrides) -> tuple[HasuraRegistryClient, list]:
    seen: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = HasuraRegistryClient(_config(**config_overrides), transport=httpx.MockTransport(record))
    await client.connect()
    return client, seen


def _unique_violation(constraint: str) -> dict:
    return {
        "errors": [{
            "message": f'Uniqueness violation. duplicate key value violates unique constraint "{constraint}"',
            "extensions": {
                "code": "constraint-violation",
                "internal": {"error": {"status_code": "23505", "constraint": constraint}},
            },
        }],
    }


# ─── Happy path ───────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_exists_nullifier(self):
        client, seen = await _client_for(
            lambda r: httpx.Response(200, json={"data": {"identity_nullifiers_by_pk": {"nullifier_hash": "n1"}}})
        )

        assert await client.exists_nullifier("n1") is True

        sent = json.loads(seen[0].content)
        assert sent["variables"] == {"nullifier_hash": "n1"}
        assert seen[0].headers["x-hasura-admin-secret"] == "s3cret"
        await client.close()

    @pytest.mark.asyncio
    async def test_absent_nullifier(self):
        client, _ = await _client_for(
            lambda r: httpx.Response(200, json={"data": {"identity_nullifiers_by_pk": None}})
        )

        assert await client.exists_nullifier("n1") is False
        await client.close()

    @pytest.mark.asyncio
    async def test_insert_user_returns_record(self):
        row = {
            "id": "7",
            "wallet_address": "0xAA",
            "did": "did:privado:dev",
            "credential_hash": "ch",
            "created_at": "2026-01-01T00:00:00+00:00",
        }
        client, seen = await _client_for(
            lambda r: httpx.Response(200, json={"data": {"insert_users_one": row}})
        )

        user = await client.insert_user(
            NewUser(wallet_address="0xAA", did="did:privado:dev", credential_hash="ch")
        )

        assert user.id == "7"
        assert user.wallet_address == "0xAA"
        sent = json.loads(seen[0].content)["variables"]
        assert sent["wallet_address"] == "0xAA"
        assert "created_at" in sent
        await client.close()


# ─── Failures ─────────────────────────────────────────────────────


class TestErrors:
    @pytest.mark.asyncio
    async def test_unique_violation_is_duplicate_key(self):
        client, _ = await _client_for(
            lambda r: httpx.Response(200, json=_unique_violation("identity_nullifiers_pkey"))
        )

        with pytest.raises(DuplicateKeyError) as exc_info:
            await client.insert_nullifier("n1")

        assert exc_info.value.constraint == "identity_nullifiers_pkey"
        await client.close()

    @pytest.mark.asyncio
    async def test_other_constraint_violation_is_upstream(self):
        body = _unique_violation("users_fk")
        body["errors"][0]["extensions"]["internal"]["error"]["status_code"] = "23503"
        client, _ = await _client_for(lambda r: httpx.Response(200, json=body))

        with pytest.raises(UpstreamError) as exc_info:
            await client.insert_nullifier("n1")

        assert not isinstance(exc_info.value, DuplicateKeyError)
        await client.close()

    @pytest.mark.asyncio
    async def test_generic_graphql_error_is_upstream(self):
        client, _ = await _client_for(
            lambda r: httpx.Response(200, json={"errors": [{"message": "field not found"}]})
        )

        with pytest.raises(UpstreamError, match="field not found"):
            await client.exists_nullifier("n1")
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_data_is_upstream(self):
        client, _ = await _client_for(lambda r: httpx.Response(200, json={}))

        with pytest.raises(UpstreamError, match="missing data"):
            await client.exists_nullifier("n1")
        await client.close()

    @pytest.mark.asyncio
    async def test_transport_failure_is_upstream(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        client, _ = await _client_for(refuse)

        with pytest.raises(UpstreamError):
            await client.exists_nullifier("n1")
        await client.close()

    @pytest.mark.asyncio
    async def test_unconfigured_endpoint(self):
        client, seen = await _client_for(lambda r: httpx.Response(200), graphql_endpoint="")

        with pytest.raises(ConfigurationError):
            await client.exists_nullifier("n1")

        assert seen == []
        assert (await client.health_check())["status"] == "unconfigured"
        await client.close()
