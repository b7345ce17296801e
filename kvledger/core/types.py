# kvledger/core/types.py
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

from kvledger.core.encoding import b64_encode

NEXTID_PLATFORM = "nextid"


@dataclass(frozen=True)
class Scope:
    """(avatar, platform, identity): the unit that owns one content object and one chain."""
    avatar: str                     # canonical 0x04… hex
    platform: str
    identity: str

    @property
    def is_nextid(self) -> bool:
        return self.platform == NEXTID_PLATFORM

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Challenge:
    """Pending, single-use authorization for one patch. Replaced by consumption, never edited."""
    uuid: str
    created_at: int                 # unix seconds
    expires_at: int
    scope: Scope
    patch: Dict[str, Any]           # exactly as submitted, not flattened
    sign_payload: str               # canonical string the avatar must sign
    prev: Optional[str] = None      # base64 signature of ledger head at issuance; None = genesis

    def is_expired(self, now: int) -> bool:
        return now >= self.expires_at

    def to_response(self) -> dict:
        """Boundary shape returned by RequestUpdate."""
        return {
            "uuid": self.uuid,
            "created_at": self.created_at,
            "sign_payload": self.sign_payload,
        }


@dataclass(frozen=True)
class LedgerEntry:
    """Single signed, applied patch in a scope's append-only chain."""
    uuid: str
    scope: Scope
    sequence: int
    created_at: int
    patch: Dict[str, Any]
    signature: bytes
    sign_payload: str
    prev: Optional[str] = None

    @property
    def link(self) -> str:
        """Value the next entry must carry as its `prev`."""
        return b64_encode(self.signature)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["signature"] = self.link
        return d


@dataclass(frozen=True)
class ScopeContent:
    scope: Scope
    content: Dict[str, Any]

    def to_proof_dict(self) -> dict:
        return {
            "platform": self.scope.platform,
            "identity": self.scope.identity,
            "content": self.content,
        }

    def to_value_dict(self) -> dict:
        return {"avatar": self.scope.avatar, "content": self.content}


@dataclass(frozen=True)
class AvatarView:
    """Everything stored under one avatar, as returned by query-by-avatar and CommitUpdate."""
    avatar: str
    proofs: List[ScopeContent] = field(default_factory=list)

    def content_for(self, platform: str, identity: str) -> Optional[Dict[str, Any]]:
        for item in self.proofs:
            if item.scope.platform == platform and item.scope.identity == identity:
                return item.content
        return None

    def to_dict(self) -> dict:
        return {
            "avatar": self.avatar,
            "proofs": [p.to_proof_dict() for p in self.proofs],
        }
