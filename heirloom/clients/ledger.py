"""
Heirloom — Ledger Allowlist Notifier

After a user is enrolled, their wallet is allowlisted on-chain by calling
``verifyUser(address)`` on the allowlist contract and waiting for the
receipt.

Environment variables consumed (via LedgerConfig):
  HEIRLOOM_LEDGER__DISABLED          — skip allowlisting entirely
  HEIRLOOM_LEDGER__RPC_URL           — JSON-RPC endpoint
  HEIRLOOM_LEDGER__PRIVATE_KEY       — signer key (never logged)
  HEIRLOOM_LEDGER__CONTRACT_ADDRESS  — allowlist contract
  HEIRLOOM_LEDGER__CONTRACT_ABI      — optional JSON ABI override

Failures are not retried or compensated here: a transport error or revert
propagates to the caller after the registry write has already committed.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3

from heirloom.systems.identity.errors import ConfigurationError, UpstreamError

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

    from heirloom.config import LedgerConfig

logger = structlog.get_logger("heirloom.clients.ledger")

DEFAULT_ALLOWLIST_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"internalType": "address", "name": "user", "type": "address"}],
        "name": "verifyUser",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class LedgerNotifier:
    """
    Submits allowlist transactions from a single signer.

    Sends are serialised with an ``asyncio.Lock``: concurrent enrollments
    would otherwise read the same pending nonce.
    """

    def __init__(self, config: LedgerConfig, web3: AsyncWeb3 | None = None) -> None:
        self._config = config
        self._w3 = web3
        self._account: LocalAccount | None = None
        self._send_lock = asyncio.Lock()
        self._notified = 0

    @property
    def disabled(self) -> bool:
        return self._config.disabled

    def _connect(self) -> tuple[AsyncWeb3, LocalAccount]:
        cfg = self._config
        if not cfg.rpc_url or not cfg.private_key or not cfg.contract_address:
            raise ConfigurationError("Chain configuration missing for allowlisting")

        if self._w3 is None:
            self._w3 = AsyncWeb3(AsyncHTTPProvider(cfg.rpc_url))
        if self._account is None:
            self._account = Account.from_key(cfg.private_key)
            logger.info(
                "ledger_signer_loaded",
                signer=self._account.address,
                contract=cfg.contract_address,
            )
        return self._w3, self._account

    async def notify(self, wallet_address: str) -> None:
        """Allowlist ``wallet_address`` and wait for the transaction to be mined."""
        if self._config.disabled:
            logger.info("ledger_notify_skipped", wallet_address=wallet_address)
            return

        w3, account = self._connect()
        contract = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(self._config.contract_address),
            abi=self._config.contract_abi or DEFAULT_ALLOWLIST_ABI,
        )
        user = AsyncWeb3.to_checksum_address(wallet_address)

        async with self._send_lock:
            nonce = await w3.eth.get_transaction_count(account.address, "pending")
            tx = await contract.functions.verifyUser(user).build_transaction({
                "from": account.address,
                "nonce": nonce,
            })
            signed = account.sign_transaction(tx)
            tx_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)

        logger.info(
            "ledger_tx_submitted",
            wallet_address=wallet_address,
            tx_hash=tx_hash.hex(),
            nonce=nonce,
        )

        receipt = await w3.eth.wait_for_transaction_receipt(
            tx_hash, timeout=self._config.confirmation_timeout_s
        )
        if receipt["status"] != 1:
            logger.error(
                "ledger_tx_reverted",
                wallet_address=wallet_address,
                tx_hash=tx_hash.hex(),
            )
            raise UpstreamError(f"Allowlist transaction reverted: {tx_hash.hex()}")

        self._notified += 1
        logger.info(
            "ledger_notified",
            wallet_address=wallet_address,
            tx_hash=tx_hash.hex(),
            block=receipt.get("blockNumber"),
        )

    async def close(self) -> None:
        if self._w3 is not None:
            provider = self._w3.provider
            disconnect = getattr(provider, "disconnect", None)
            if disconnect is not None:
                await disconnect()
            self._w3 = None

    def stats(self) -> dict[str, Any]:
        return {"disabled": self._config.disabled, "notified": self._notified}
