# kvledger/chain/ledger.py
from typing import Any, Dict, List, Optional, Tuple

from kvledger.core.merge import fold_patches, merge_patch
from kvledger.core.types import LedgerEntry, Scope
from kvledger.storage import StorageBackend
from kvledger.telemetry import get_logger

log = get_logger(__name__)


class UpdateLedger:
    """
    Append-only, prev-linked history per scope.

    Current content is the fold of a scope's patches; the backend keeps it
    cached next to the head pointer and updates it inside the same atomic
    step as the append.
    """

    def __init__(self, storage: StorageBackend):
        self.storage = storage

    def head_link(self, scope: Scope) -> Optional[str]:
        """`prev` for the next entry: base64 of the head signature, None at genesis."""
        head = self.storage.head(scope)
        return head.link if head else None

    def append(
        self,
        scope: Scope,
        uuid: str,
        created_at: int,
        patch: Dict[str, Any],
        signature: bytes,
        sign_payload: str,
        prev: Optional[str],
    ) -> Dict[str, Any]:
        """
        Compare-and-append. Raises ConflictingUpdate when another commit
        landed between issuance (when `prev` was captured) and now.
        Returns the new content.
        """
        def make_entry(sequence: int, current: Dict[str, Any]) -> Tuple[LedgerEntry, Dict[str, Any]]:
            entry = LedgerEntry(
                uuid=uuid,
                scope=scope,
                sequence=sequence,
                created_at=created_at,
                patch=patch,
                signature=signature,
                sign_payload=sign_payload,
                prev=prev,
            )
            return entry, merge_patch(current, patch)

        content = self.storage.compare_and_append(scope, prev, make_entry)
        log.debug("ledger_appended", platform=scope.platform, uuid=uuid)
        return content

    def derive(self, scope: Scope) -> Optional[Dict[str, Any]]:
        """Cached current content, None if the scope has never been written."""
        return self.storage.get_content(scope)

    def rebuild(self, scope: Scope, repair: bool = False) -> Dict[str, Any]:
        """Fold the chain from genesis; optionally overwrite the cache with the result."""
        entries = self.storage.load_entries(scope)
        content = fold_patches(e.patch for e in entries)
        if repair and entries:
            self.storage.put_content(scope, content)
            log.info("ledger_cache_repaired", platform=scope.platform, entries=len(entries))
        return content

    def history(self, scope: Scope) -> List[LedgerEntry]:
        return self.storage.load_entries(scope)

    def scopes_for_avatar(self, avatar: str) -> List[Scope]:
        return self.storage.scopes_for_avatar(avatar)

    def scopes_for_proof(self, platform: str, identity: str) -> List[Scope]:
        return self.storage.scopes_for_proof(platform, identity)
