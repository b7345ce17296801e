import copy
import threading
from typing import Any, Dict, List, Optional

from kvledger.core.errors import ConflictingUpdate, StorageUnavailable
from kvledger.core.types import Challenge, LedgerEntry, Scope
from . import EntryFactory, StorageBackend


class MemoryStorage(StorageBackend):
    """Process-local backend. One re-entrant lock guards every structure."""

    def __init__(self):
        self._lock = threading.RLock()
        self._challenges: Dict[str, Challenge] = {}
        self._entries: Dict[Scope, List[LedgerEntry]] = {}
        self._contents: Dict[Scope, Dict[str, Any]] = {}
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise StorageUnavailable("Storage is closed")

    def save_challenge(self, challenge: Challenge) -> None:
        with self._lock:
            self._check_open()
            self._challenges[challenge.uuid] = challenge

    def get_challenge(self, uuid: str) -> Optional[Challenge]:
        with self._lock:
            self._check_open()
            return self._challenges.get(uuid)

    def take_challenge(
        self,
        uuid: str,
        scope: Optional[Scope] = None,
        created_at: Optional[int] = None,
    ) -> Optional[Challenge]:
        with self._lock:
            self._check_open()
            challenge = self._challenges.get(uuid)
            if challenge is None:
                return None
            if scope is not None and challenge.scope != scope:
                return None
            if created_at is not None and challenge.created_at != created_at:
                return None
            return self._challenges.pop(uuid)

    def purge_challenges(self, now: int) -> int:
        with self._lock:
            self._check_open()
            dead = [k for k, c in self._challenges.items() if c.expires_at <= now]
            for k in dead:
                del self._challenges[k]
            return len(dead)

    def head(self, scope: Scope) -> Optional[LedgerEntry]:
        with self._lock:
            self._check_open()
            chain = self._entries.get(scope)
            return chain[-1] if chain else None

    def compare_and_append(
        self, scope: Scope, prev: Optional[str], make_entry: EntryFactory
    ) -> Dict[str, Any]:
        with self._lock:
            self._check_open()
            chain = self._entries.get(scope, [])
            head_link = chain[-1].link if chain else None
            if head_link != prev:
                raise ConflictingUpdate("scope head moved since the challenge was issued")

            current = self._contents.get(scope, {})
            entry, content = make_entry(len(chain), copy.deepcopy(current))
            self._entries[scope] = chain + [entry]
            self._contents[scope] = content
            return copy.deepcopy(content)

    def load_entries(self, scope: Scope) -> List[LedgerEntry]:
        with self._lock:
            self._check_open()
            return list(self._entries.get(scope, []))

    def get_content(self, scope: Scope) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._check_open()
            content = self._contents.get(scope)
            return copy.deepcopy(content) if content is not None else None

    def put_content(self, scope: Scope, content: Dict[str, Any]) -> None:
        with self._lock:
            self._check_open()
            if scope not in self._entries:
                raise KeyError(f"no ledger for scope {scope}")
            self._contents[scope] = copy.deepcopy(content)

    def scopes_for_avatar(self, avatar: str) -> List[Scope]:
        with self._lock:
            self._check_open()
            return sorted(
                (s for s in self._entries if s.avatar == avatar),
                key=lambda s: (s.platform, s.identity),
            )

    def scopes_for_proof(self, platform: str, identity: str) -> List[Scope]:
        with self._lock:
            self._check_open()
            return sorted(
                (s for s in self._entries if s.platform == platform and s.identity == identity),
                key=lambda s: s.avatar,
            )

    def list_scopes(self) -> List[Scope]:
        with self._lock:
            self._check_open()
            return sorted(self._entries, key=lambda s: (s.avatar, s.platform, s.identity))

    def close(self) -> None:
        with self._lock:
            self._closed = True
