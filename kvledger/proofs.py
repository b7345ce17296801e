# kvledger/proofs.py
"""
Proof bindings are owned by an external verification service; the store only
asks whether (avatar, platform, identity) is bound before issuing a challenge.

`nextid` never needs a lookup: it is bound exactly when identity == avatar.
"""

import json
from pathlib import Path
from typing import Iterable, Optional, Protocol, Set, Tuple

from kvledger.core.types import NEXTID_PLATFORM
from kvledger.crypto.keys import DEFAULT_CURVE, normalize_public_key
from kvledger.core.errors import InvalidAvatar


class ProofClient(Protocol):
    def is_bound(self, avatar: str, platform: str, identity: str) -> bool:
        ...


def nextid_bound(avatar: str, identity: str, curve: str = DEFAULT_CURVE) -> bool:
    try:
        return normalize_public_key(identity, curve) == avatar
    except InvalidAvatar:
        return False


class OpenProofClient:
    """Trusts every non-nextid binding (the HTTP layer already checked it)."""

    def __init__(self, curve: str = DEFAULT_CURVE):
        self.curve = curve

    def is_bound(self, avatar: str, platform: str, identity: str) -> bool:
        if platform == NEXTID_PLATFORM:
            return nextid_bound(avatar, identity, self.curve)
        return True


class StaticProofClient:
    """Fixed set of bindings, e.g. a snapshot exported from the proof service."""

    def __init__(self, bindings: Iterable[Tuple[str, str, str]] = (), curve: str = DEFAULT_CURVE):
        self.curve = curve
        self._bindings: Set[Tuple[str, str, str]] = set()
        for avatar, platform, identity in bindings:
            self.add(avatar, platform, identity)

    def add(self, avatar: str, platform: str, identity: str) -> None:
        self._bindings.add((normalize_public_key(avatar, self.curve), platform, identity))

    def is_bound(self, avatar: str, platform: str, identity: str) -> bool:
        if platform == NEXTID_PLATFORM:
            return nextid_bound(avatar, identity, self.curve)
        return (avatar, platform, identity) in self._bindings

    @classmethod
    def from_file(cls, path: Optional[Path], curve: str = DEFAULT_CURVE) -> "StaticProofClient":
        """
        JSON list of {"avatar": ..., "platform": ..., "identity": ...}.
        A missing path yields a client that only accepts nextid.
        """
        if path is None:
            return cls(curve=curve)
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"{path}: expected a JSON list of bindings")
        bindings = []
        for item in data:
            try:
                bindings.append((item["avatar"], item["platform"], item["identity"]))
            except (KeyError, TypeError):
                raise ValueError(f"{path}: malformed binding {item!r}") from None
        return cls(bindings, curve=curve)
