"""
Unit tests for LedgerNotifier.

The web3 instance is mocked; signing uses a real throwaway key so the
signed payload handed to ``send_raw_transaction`` is genuine.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3 import Web3

from heirloom.clients.ledger import DEFAULT_ALLOWLIST_ABI, LedgerNotifier
from heirloom.config import LedgerConfig
from heirloom.systems.identity.errors import ConfigurationError, UpstreamError

# Well-known test key, never funded.
TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
# sign_transaction only accepts a checksummed "to".
CONTRACT = Web3.to_checksum_address("0x000000000000000000000000000000000000c0de")
WALLET = "0x00000000000000000000000000000000000000aa"


def _config(**overrides) -> LedgerConfig:
    fields = {
        "rpc_url": "https://rpc.example",
        "private_key": TEST_KEY,
        "contract_address": CONTRACT,
    }
    fields.update(overrides)
    return LedgerConfig(**fields)


def _make_web3(status: int = 1) -> tuple[MagicMock, MagicMock]:
    w3 = MagicMock()
    contract = MagicMock()
    call = MagicMock()
    call.build_transaction = AsyncMock(return_value={
        "to": CONTRACT,
        "value": 0,
        "gas": 100_000,
        "gasPrice": 1_000_000_000,
        "nonce": 3,
        "chainId": 80002,
        "data": "0x",
    })
    contract.functions.verifyUser = MagicMock(return_value=call)
    w3.eth.contract = MagicMock(return_value=contract)
    w3.eth.get_transaction_count = AsyncMock(return_value=3)
    w3.eth.send_raw_transaction = AsyncMock(return_value=bytes.fromhex("ab" * 32))
    w3.eth.wait_for_transaction_receipt = AsyncMock(
        return_value={"status": status, "blockNumber": 12}
    )
    return w3, contract


class TestNotify:
    @pytest.mark.asyncio
    async def test_disabled_is_noop(self):
        w3, _ = _make_web3()
        notifier = LedgerNotifier(LedgerConfig(disabled=True), web3=w3)

        await notifier.notify(WALLET)

        w3.eth.contract.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_configuration(self):
        notifier = LedgerNotifier(LedgerConfig())

        with pytest.raises(ConfigurationError, match="Chain configuration missing"):
            await notifier.notify(WALLET)

    @pytest.mark.asyncio
    async def test_submits_and_waits_for_receipt(self):
        w3, contract = _make_web3()
        notifier = LedgerNotifier(_config(), web3=w3)

        await notifier.notify(WALLET)

        w3.eth.contract.assert_called_once()
        assert w3.eth.contract.call_args.kwargs["abi"] == DEFAULT_ALLOWLIST_ABI
        contract.functions.verifyUser.assert_called_once()
        assert contract.functions.verifyUser.call_args.args[0].lower() == WALLET
        w3.eth.send_raw_transaction.assert_awaited_once()
        w3.eth.wait_for_transaction_receipt.assert_awaited_once()
        assert notifier.stats()["notified"] == 1

    @pytest.mark.asyncio
    async def test_reverted_transaction(self):
        w3, _ = _make_web3(status=0)
        notifier = LedgerNotifier(_config(), web3=w3)

        with pytest.raises(UpstreamError, match="reverted"):
            await notifier.notify(WALLET)

        assert notifier.stats()["notified"] == 0

    @pytest.mark.asyncio
    async def test_transport_errors_propagate_unwrapped(self):
        w3, _ = _make_web3()
        w3.eth.send_raw_transaction.side_effect = ConnectionError("rpc down")
        notifier = LedgerNotifier(_config(), web3=w3)

        with pytest.raises(ConnectionError):
            await notifier.notify(WALLET)

    @pytest.mark.asyncio
    async def test_custom_abi_is_used(self):
        abi = [{"name": "verifyUser", "type": "function", "inputs": [{"name": "u", "type": "address"}]}]
        w3, _ = _make_web3()
        notifier = LedgerNotifier(_config(contract_abi=abi), web3=w3)

        await notifier.notify(WALLET)

        assert w3.eth.contract.call_args.kwargs["abi"] == abi

    @pytest.mark.asyncio
    async def test_sends_are_serialised(self):
        w3, _ = _make_web3()
        in_flight = 0
        peak = 0

        async def send(raw):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.001)
            in_flight -= 1
            return bytes.fromhex("cd" * 32)

        w3.eth.send_raw_transaction = AsyncMock(side_effect=send)
        notifier = LedgerNotifier(_config(), web3=w3)

        await asyncio.gather(*[notifier.notify(WALLET) for _ in range(5)])

        assert peak == 1
        assert notifier.stats()["notified"] == 5
