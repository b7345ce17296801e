# kvledger/crypto/keys.py
from dataclasses import dataclass
from typing import Dict, Type

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from kvledger.core.encoding import b64_encode, hex_decode, hex_encode
from kvledger.core.errors import InvalidAvatar

DEFAULT_CURVE = "secp256k1"
DEFAULT_HASH = "sha256"

# r||s||v trailer: raw recovery id or its Ethereum-style 27/28 offset
RECOVERY_IDS = frozenset({0, 1, 27, 28})

CURVES: Dict[str, Type[ec.EllipticCurve]] = {
    "secp256k1": ec.SECP256K1,
    "secp256r1": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
}

HASHES: Dict[str, Type[hashes.HashAlgorithm]] = {
    "sha256": hashes.SHA256,
    "sha3_256": hashes.SHA3_256,
    "sha384": hashes.SHA384,
}


def get_curve(name: str) -> ec.EllipticCurve:
    try:
        return CURVES[name.lower()]()
    except KeyError:
        raise ValueError(f"Unsupported curve: {name}") from None


def get_hash(name: str) -> hashes.HashAlgorithm:
    try:
        return HASHES[name.lower()]()
    except KeyError:
        raise ValueError(f"Unsupported hash: {name}") from None


def scalar_size(curve: ec.EllipticCurve) -> int:
    return (curve.key_size + 7) // 8


def load_public_key(value: str, curve: str = DEFAULT_CURVE) -> ec.EllipticCurvePublicKey:
    """
    Parse an avatar key in compressed (33-byte) or uncompressed (65-byte)
    SEC1 form, hex, with or without the 0x prefix.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidAvatar("avatar public key is missing")
    try:
        raw = hex_decode(value)
    except ValueError:
        raise InvalidAvatar("avatar public key is not valid hex") from None
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(get_curve(curve), raw)
    except ValueError:
        raise InvalidAvatar("avatar public key is not a valid curve point") from None


def public_key_hex(key: ec.EllipticCurvePublicKey, compressed: bool = False) -> str:
    fmt = (
        serialization.PublicFormat.CompressedPoint
        if compressed
        else serialization.PublicFormat.UncompressedPoint
    )
    return hex_encode(key.public_bytes(serialization.Encoding.X962, fmt))


def normalize_public_key(value: str, curve: str = DEFAULT_CURVE) -> str:
    """Any accepted avatar form → canonical uncompressed `0x04…` lowercase hex."""
    return public_key_hex(load_public_key(value, curve))


@dataclass
class AvatarKeyPair:
    """
    Client-side key holder. The server never sees private keys; this exists
    for SDK users, the CLI `keygen`/`sign` commands, and tests.
    """
    private_key: ec.EllipticCurvePrivateKey
    curve: str = DEFAULT_CURVE
    hash: str = DEFAULT_HASH

    @classmethod
    def generate(cls, curve: str = DEFAULT_CURVE, hash: str = DEFAULT_HASH) -> "AvatarKeyPair":
        return cls(ec.generate_private_key(get_curve(curve)), curve=curve, hash=hash)

    @classmethod
    def from_private_hex(cls, value: str, curve: str = DEFAULT_CURVE, hash: str = DEFAULT_HASH) -> "AvatarKeyPair":
        secret = int.from_bytes(hex_decode(value), "big")
        return cls(ec.derive_private_key(secret, get_curve(curve)), curve=curve, hash=hash)

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self.private_key.public_key()

    def private_key_hex(self) -> str:
        size = scalar_size(self.private_key.curve)
        return hex_encode(self.private_key.private_numbers().private_value.to_bytes(size, "big"))

    def public_key_hex(self, compressed: bool = False) -> str:
        return public_key_hex(self.public_key, compressed=compressed)

    def sign(self, message: bytes) -> bytes:
        """ECDSA over `message`, returned as fixed-width r||s."""
        der = self.private_key.sign(message, ec.ECDSA(get_hash(self.hash)))
        r, s = decode_dss_signature(der)
        size = scalar_size(self.private_key.curve)
        return r.to_bytes(size, "big") + s.to_bytes(size, "big")

    def sign_b64(self, message: bytes) -> str:
        return b64_encode(self.sign(message))


def compact_to_der(signature: bytes, curve: ec.EllipticCurve) -> bytes:
    """
    Accept r||s, r||s||v or DER; return DER. v must be a recovery id
    (0, 1, 27 or 28) but is otherwise unused: the key is already known.
    Raises ValueError when none of those shapes fit.
    """
    size = scalar_size(curve)
    if len(signature) == 2 * size + 1 and signature[-1] not in RECOVERY_IDS:
        raise ValueError(f"bad recovery byte {signature[-1]}")
    if len(signature) in (2 * size, 2 * size + 1):
        r = int.from_bytes(signature[:size], "big")
        s = int.from_bytes(signature[size:2 * size], "big")
        return encode_dss_signature(r, s)
    # DER: decode to validate shape, then re-encode canonically
    r, s = decode_dss_signature(signature)
    return encode_dss_signature(r, s)
