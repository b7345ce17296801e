# kvledger/core/errors.py
"""
Error taxonomy for the signed-update protocol.

Every protocol error is client-caused and scoped to one request. Only
ConflictingUpdate is worth retrying (after a fresh RequestUpdate against the
new head). StorageUnavailable is kept outside the protocol hierarchy so a
failing backend is never mistaken for a rejected update.
"""

from typing import Any, Dict


class KVError(Exception):
    """Base for everything kvledger raises on purpose."""

    code: str = "kv_error"
    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message}


class ProtocolError(KVError):
    code = "protocol_error"


class ScopeNotFound(ProtocolError):
    code = "scope_not_found"


class ChallengeNotFound(ProtocolError):
    code = "challenge_not_found"


class ScopeMismatch(ProtocolError):
    code = "scope_mismatch"


class PatchMismatch(ProtocolError):
    code = "patch_mismatch"


class SignatureInvalid(ProtocolError):
    code = "signature_invalid"


class ConflictingUpdate(ProtocolError):
    code = "conflicting_update"
    retryable = True


class MalformedPatch(ProtocolError):
    code = "malformed_patch"


class MalformedRequest(ProtocolError):
    code = "malformed_request"


class InvalidAvatar(MalformedRequest):
    code = "invalid_avatar"


class ProofNotFound(ProtocolError):
    code = "proof_not_found"


class StorageUnavailable(KVError):
    code = "storage_unavailable"
