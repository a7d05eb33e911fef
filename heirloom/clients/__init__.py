"""
Heirloom — External Service Clients

The identity registry (Hasura GraphQL), the on-chain allowlist (web3), and
the iden3 auth verifier service.
"""

from heirloom.clients.iden3 import Iden3Verifier, create_authorization_request
from heirloom.clients.ledger import LedgerNotifier
from heirloom.clients.registry import HasuraRegistryClient, IdentityRegistry

__all__ = [
    "HasuraRegistryClient",
    "IdentityRegistry",
    "LedgerNotifier",
    "Iden3Verifier",
    "create_authorization_request",
]
