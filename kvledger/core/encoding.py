# kvledger/core/encoding.py
import base64
import binascii


def b64_encode(data: bytes) -> str:
    """Standard base64 with padding, the form signatures and `prev` links travel in."""
    return base64.b64encode(data).decode("ascii")


def b64_decode(s: str) -> bytes:
    """
    Decode standard or URL-safe base64, padding optional.
    Raises ValueError on garbage so callers can map it to their own error.
    """
    if not isinstance(s, str):
        raise ValueError("base64 input must be a string")
    s = s.strip()
    if "-" in s or "_" in s:
        s = s.replace("-", "+").replace("_", "/")
    padding = len(s) % 4
    if padding:
        s += "=" * (4 - padding)
    try:
        return base64.b64decode(s, validate=True)
    except binascii.Error as e:
        raise ValueError(f"invalid base64: {e}") from e


def strip_hex_prefix(s: str) -> str:
    s = s.strip()
    if s[:2].lower() == "0x":
        return s[2:]
    return s


def hex_decode(s: str) -> bytes:
    """Hex string (optionally 0x-prefixed) to bytes; ValueError on bad input."""
    return bytes.fromhex(strip_hex_prefix(s))


def hex_encode(data: bytes) -> str:
    return "0x" + data.hex()
