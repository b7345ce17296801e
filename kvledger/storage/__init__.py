"""
Storage backends for challenges, ledger entries and derived content.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from kvledger.core.types import Challenge, LedgerEntry, Scope

# make_entry(next_sequence, current_content) -> (entry to store, new content)
EntryFactory = Callable[[int, Dict[str, Any]], Tuple[LedgerEntry, Dict[str, Any]]]


class StorageBackend(ABC):
    """
    Abstract base for all persistence implementations.

    Two operations must be atomic: `take_challenge` (at-most-once consumption)
    and `compare_and_append` (read head, compare, write). Everything else is
    plain lookup.
    """

    # ── challenges

    @abstractmethod
    def save_challenge(self, challenge: Challenge) -> None:
        pass

    @abstractmethod
    def get_challenge(self, uuid: str) -> Optional[Challenge]:
        """Look a challenge up without consuming it."""
        pass

    @abstractmethod
    def take_challenge(
        self,
        uuid: str,
        scope: Optional[Scope] = None,
        created_at: Optional[int] = None,
    ) -> Optional[Challenge]:
        """
        Remove and return the challenge, or None if no such uuid.
        When scope and created_at are given the challenge is only removed if
        both match; otherwise it is left in place and None is returned.
        """
        pass

    @abstractmethod
    def purge_challenges(self, now: int) -> int:
        """Delete every challenge with expires_at <= now; return how many."""
        pass

    # ── ledger

    @abstractmethod
    def head(self, scope: Scope) -> Optional[LedgerEntry]:
        pass

    @abstractmethod
    def compare_and_append(
        self, scope: Scope, prev: Optional[str], make_entry: EntryFactory
    ) -> Dict[str, Any]:
        """
        Atomically: if the scope head's link != prev raise ConflictingUpdate;
        otherwise store the entry + content built by make_entry and return the content.
        """
        pass

    @abstractmethod
    def load_entries(self, scope: Scope) -> List[LedgerEntry]:
        """Entries in chain order (sequence ascending)."""
        pass

    @abstractmethod
    def get_content(self, scope: Scope) -> Optional[Dict[str, Any]]:
        """Cached derived content, or None if the scope has no entries."""
        pass

    @abstractmethod
    def put_content(self, scope: Scope, content: Dict[str, Any]) -> None:
        """Overwrite the cached content of an existing scope (cache repair)."""
        pass

    # ── indexes

    @abstractmethod
    def scopes_for_avatar(self, avatar: str) -> List[Scope]:
        pass

    @abstractmethod
    def scopes_for_proof(self, platform: str, identity: str) -> List[Scope]:
        pass

    @abstractmethod
    def list_scopes(self) -> List[Scope]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def create_storage(uri: str) -> StorageBackend:
    """
    memory://            → MemoryStorage
    sqlite://<path>      → SQLiteStorage (~ expanded, relative to cwd otherwise)
    sqlite://:memory:    → SQLiteStorage on a private in-memory database
    """
    uri = uri.strip()
    if uri.startswith("memory://"):
        from .memory import MemoryStorage
        return MemoryStorage()

    if uri.startswith("sqlite://"):
        from .sqlite import SQLiteStorage
        raw_path = uri[len("sqlite://"):]
        if not raw_path:
            raise ValueError("sqlite:// URI needs a path")
        if raw_path == ":memory:":
            return SQLiteStorage(raw_path)
        return SQLiteStorage(Path(raw_path).expanduser().resolve())

    raise ValueError(f"Unsupported storage URI: {uri}")


from .memory import MemoryStorage
from .sqlite import SQLiteStorage

__all__ = ["StorageBackend", "EntryFactory", "create_storage", "MemoryStorage", "SQLiteStorage"]
