# evledger/storage/__init__.py
"""
Storage backends for durable ledger state.
"""

from abc import ABC, abstractmethod
from typing import ContextManager, List
from pathlib import Path
from evledger.core.types import Changeset, Event, LedgerState


class StorageBackend(ABC):
    """Abstract base for all persistent storage implementations."""

    @abstractmethod
    def load_state(self) -> LedgerState:
        pass

    @abstractmethod
    def load_events(self) -> List[Event]:
        pass

    @abstractmethod
    def is_stale(self) -> bool:
        """True if another writer committed since the last load_state()."""
        pass

    @abstractmethod
    def transaction(self) -> ContextManager[None]:
        """
        Exclusive write transaction. Commits when the block exits cleanly,
        rolls back on any exception (including a failed commit).
        """
        pass

    @abstractmethod
    def write(self, changes: Changeset) -> None:
        """Persist `changes`; only valid inside transaction()."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass


def create_storage(uri: str) -> StorageBackend:
    if uri.startswith("sqlite://"):
        from .sqlite import SQLiteStorage
        raw_path = uri[len("sqlite://"):]
        if not raw_path:
            raise ValueError(f"Missing database path in URI: {uri}")
        return SQLiteStorage(Path(raw_path).resolve())
    else:
        raise ValueError(f"Unsupported storage URI: {uri}")


from .sqlite import SQLiteStorage

__all__ = ["StorageBackend", "create_storage", "SQLiteStorage"]
