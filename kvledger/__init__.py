# kvledger/__init__.py
"""
kvledger — signature-gated key-value store for decentralized identities.
Every change is an RFC 7396 merge patch signed by the avatar's own key and
appended to a prev-linked, per-scope ledger.
"""

__version__ = "0.1.0-dev"

from kvledger.core.errors import KVError, ProtocolError, StorageUnavailable
from kvledger.core.types import AvatarView, Challenge, LedgerEntry, Scope
from kvledger.crypto.keys import AvatarKeyPair
from kvledger.crypto.verifier import EcdsaVerifier
from kvledger.store import KVStore

__all__ = [
    "AvatarKeyPair",
    "AvatarView",
    "Challenge",
    "EcdsaVerifier",
    "KVError",
    "KVStore",
    "LedgerEntry",
    "ProtocolError",
    "Scope",
    "StorageUnavailable",
]
