"""
Shared fixtures: an in-memory identity registry that enforces the same
uniqueness rules as the real store, a manual clock, and a mocked ledger.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from heirloom.config import PrivadoConfig
from heirloom.primitives.common import utc_now
from heirloom.systems.identity.errors import DuplicateKeyError
from heirloom.systems.identity.types import NewUser, UserRecord


class InMemoryRegistry:
    """
    Registry double with primary/unique keys on nullifier and wallet.

    Every call yields to the event loop first, so concurrent enrollments
    interleave between the replay check and the insert just like they do
    against the real store.
    """

    def __init__(self) -> None:
        self.nullifiers: dict[str, object] = {}
        self.users: dict[str, UserRecord] = {}
        self.mutations = 0

    async def exists_nullifier(self, nullifier_hash: str) -> bool:
        await asyncio.sleep(0)
        return nullifier_hash in self.nullifiers

    async def insert_nullifier(self, nullifier_hash: str) -> None:
        await asyncio.sleep(0)
        if nullifier_hash in self.nullifiers:
            raise DuplicateKeyError(constraint="identity_nullifiers_pkey")
        self.nullifiers[nullifier_hash] = utc_now()
        self.mutations += 1

    async def insert_user(self, user: NewUser) -> UserRecord:
        await asyncio.sleep(0)
        if user.wallet_address in self.users:
            raise DuplicateKeyError(constraint="users_wallet_address_key")
        record = UserRecord(
            id=str(len(self.users) + 1),
            wallet_address=user.wallet_address,
            did=user.did,
            credential_hash=user.credential_hash,
            created_at=utc_now(),
        )
        self.users[user.wallet_address] = record
        self.mutations += 1
        return record


class ManualClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def ledger() -> MagicMock:
    notifier = MagicMock()
    notifier.notify = AsyncMock(return_value=None)
    notifier.stats = MagicMock(return_value={"disabled": False, "notified": 0})
    return notifier


@pytest.fixture
def dev_config() -> PrivadoConfig:
    return PrivadoConfig(dev_mode=True, callback_url="https://app.example/callback")


@pytest.fixture
def prod_config(tmp_path) -> PrivadoConfig:
    return PrivadoConfig(
        dev_mode=False,
        verifier_did="did:iden3:polygon:amoy:verifier",
        callback_url="https://api.example/privado/callback",
        rpc_url="https://rpc-amoy.example",
        circuits_dir=str(tmp_path),
    )
