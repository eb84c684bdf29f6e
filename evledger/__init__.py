# evledger/__init__.py
"""
evledger: single-writer ledger for EV ownership, charging-session
settlement and peer-to-peer energy credits.

Every operation is one isolated transaction: it either applies in full
(state, notifications, refund) or fails with no observable effect.
"""

from evledger.engine.ledger import LedgerEngine
from evledger.funds import FundsGateway, InMemoryFunds
from evledger.storage import SQLiteStorage, StorageBackend, create_storage
from evledger.verify.verifier import StateVerifier

__version__ = "0.1.0-dev"

__all__ = [
    "LedgerEngine",
    "FundsGateway",
    "InMemoryFunds",
    "SQLiteStorage",
    "StorageBackend",
    "create_storage",
    "StateVerifier",
]
