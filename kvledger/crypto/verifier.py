# kvledger/crypto/verifier.py
from typing import Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import ec

from kvledger.core.encoding import b64_decode
from kvledger.core.errors import InvalidAvatar, SignatureInvalid
from kvledger.crypto.keys import (
    DEFAULT_CURVE,
    DEFAULT_HASH,
    compact_to_der,
    get_curve,
    get_hash,
    load_public_key,
)


class SignatureVerifier(Protocol):
    """Capability the protocol depends on; the concrete scheme is a deployment choice."""

    def verify(self, public_key: str, message: bytes, signature: bytes) -> bool:
        ...


class EcdsaVerifier:
    """ECDSA on a configured curve + hash."""

    def __init__(self, curve: str = DEFAULT_CURVE, hash: str = DEFAULT_HASH):
        # Resolve eagerly so a bad deployment setting fails at startup, not per request
        self._curve = get_curve(curve)
        self._hash = get_hash(hash)
        self.curve = curve.lower()
        self.hash = hash.lower()

    def verify(self, public_key: str, message: bytes, signature: bytes) -> bool:
        try:
            key = load_public_key(public_key, self.curve)
            der = compact_to_der(signature, self._curve)
        except (InvalidAvatar, ValueError):
            return False
        try:
            key.verify(der, message, ec.ECDSA(self._hash))
        except InvalidSignature:
            return False
        return True

    def __repr__(self) -> str:
        return f"EcdsaVerifier(curve={self.curve!r}, hash={self.hash!r})"


def check_signature(
    verifier: SignatureVerifier,
    avatar: str,
    message: bytes,
    signature_b64: str,
) -> bytes:
    """
    Decode + verify in one step. Returns the raw signature bytes (what the
    ledger stores and links by) or raises SignatureInvalid.
    """
    try:
        signature = b64_decode(signature_b64)
    except ValueError:
        raise SignatureInvalid("signature is not valid base64") from None
    if not signature:
        raise SignatureInvalid("signature is empty")
    if not verifier.verify(avatar, message, signature):
        raise SignatureInvalid("signature does not match avatar and payload")
    return signature
