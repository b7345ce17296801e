# kvledger/store.py
"""
KV store façade: the two-phase signed update protocol plus read queries.

    request_update(scope, patch)  -> Challenge  (client signs challenge.sign_payload)
    commit_update(scope, uuid, created_at, signature, patch) -> AvatarView

The dict-in/dict-out `handle_*` methods are the boundary an HTTP layer calls;
they accept the legacy `persona` field and normalize the avatar key before
anything else runs.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from kvledger.chain.challenges import ChallengeStore, Clock, unix_now
from kvledger.chain.ledger import UpdateLedger
from kvledger.config import Settings
from kvledger.core.canon import sign_payload_str
from kvledger.core.errors import (
    MalformedRequest,
    PatchMismatch,
    ProofNotFound,
    ProtocolError,
    ScopeNotFound,
    StorageUnavailable,
)
from kvledger.core.merge import same_json, validate_patch
from kvledger.core.types import NEXTID_PLATFORM, AvatarView, Challenge, Scope, ScopeContent
from kvledger.crypto.keys import DEFAULT_CURVE, normalize_public_key
from kvledger.crypto.verifier import EcdsaVerifier, SignatureVerifier, check_signature
from kvledger.proofs import OpenProofClient, ProofClient, StaticProofClient
from kvledger.storage import StorageBackend, create_storage
from kvledger.telemetry import get_logger

log = get_logger(__name__)


def _require_str(body: Dict[str, Any], name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value.strip():
        raise MalformedRequest(f"{name} is required")
    return value.strip()


def _avatar_field(body: Dict[str, Any]) -> str:
    # `persona` is the pre-rename name of the field; `avatar` wins if both are sent
    value = body.get("avatar") or body.get("persona")
    if not isinstance(value, str) or not value.strip():
        raise MalformedRequest("avatar is required")
    return value.strip()


@dataclass(frozen=True)
class UpdateRequest:
    avatar: str
    platform: str
    identity: str
    patch: Dict[str, Any]

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> "UpdateRequest":
        if not isinstance(body, dict):
            raise MalformedRequest("request body must be a JSON object")
        if "patch" not in body:
            raise MalformedRequest("patch is required")
        return cls(
            avatar=_avatar_field(body),
            platform=_require_str(body, "platform"),
            identity=_require_str(body, "identity"),
            patch=body["patch"],
        )


@dataclass(frozen=True)
class CommitRequest:
    avatar: str
    platform: str
    identity: str
    uuid: str
    created_at: int
    signature: str
    patch: Dict[str, Any]

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> "CommitRequest":
        if not isinstance(body, dict):
            raise MalformedRequest("request body must be a JSON object")
        created_at = body.get("created_at")
        if isinstance(created_at, bool) or not isinstance(created_at, int):
            raise MalformedRequest("created_at must be an integer unix timestamp")
        if "patch" not in body:
            raise MalformedRequest("patch is required")
        return cls(
            avatar=_avatar_field(body),
            platform=_require_str(body, "platform"),
            identity=_require_str(body, "identity"),
            uuid=_require_str(body, "uuid"),
            created_at=created_at,
            signature=_require_str(body, "signature"),
            patch=body["patch"],
        )


class KVStore:
    def __init__(
        self,
        storage: StorageBackend,
        verifier: Optional[SignatureVerifier] = None,
        proofs: Optional[ProofClient] = None,
        ttl_seconds: int = 300,
        clock: Clock = unix_now,
        curve: str = DEFAULT_CURVE,
    ):
        self.storage = storage
        self.curve = curve
        self.verifier = verifier or EcdsaVerifier(curve=curve)
        self.proofs = proofs or OpenProofClient(curve=curve)
        self.ledger = UpdateLedger(storage)
        self.challenges = ChallengeStore(storage, self.ledger, ttl_seconds=ttl_seconds, clock=clock)

    @classmethod
    def from_settings(cls, settings: Settings, clock: Clock = unix_now) -> "KVStore":
        curve = settings.signature.curve
        if settings.proofs_mode == "static":
            proofs: ProofClient = StaticProofClient.from_file(settings.proofs_file, curve=curve)
        else:
            proofs = OpenProofClient(curve=curve)
        return cls(
            storage=create_storage(settings.storage_uri),
            verifier=EcdsaVerifier(curve=curve, hash=settings.signature.hash),
            proofs=proofs,
            ttl_seconds=settings.challenge_ttl_seconds,
            clock=clock,
            curve=curve,
        )

    def close(self) -> None:
        self.storage.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # ── scope helpers

    def normalize_avatar(self, avatar: str) -> str:
        return normalize_public_key(avatar, self.curve)

    def scope(self, avatar: str, platform: str, identity: str) -> Scope:
        """Canonical scope; nextid identities are keys too and get the same normalization."""
        if not platform or not identity:
            raise MalformedRequest("platform and identity are required")
        avatar = self.normalize_avatar(avatar)
        if platform == NEXTID_PLATFORM:
            try:
                identity = normalize_public_key(identity, self.curve)
            except MalformedRequest:
                pass  # kept verbatim; request_update rejects it as unbound
        return Scope(avatar=avatar, platform=platform, identity=identity)

    # ── protocol

    def request_update(self, scope: Scope, patch: Dict[str, Any]) -> Challenge:
        validate_patch(patch)
        if not self.proofs.is_bound(scope.avatar, scope.platform, scope.identity):
            raise ProofNotFound(f"no proof binds {scope.platform}:{scope.identity} to this avatar")

        challenge = self.challenges.issue(scope, patch)
        log.info(
            "challenge_issued",
            uuid=challenge.uuid,
            platform=scope.platform,
            genesis=challenge.prev is None,
        )
        return challenge

    def commit_update(
        self,
        scope: Scope,
        uuid: str,
        created_at: int,
        signature: str,
        patch: Dict[str, Any],
    ) -> AvatarView:
        try:
            validate_patch(patch)
            challenge = self.challenges.consume(uuid, created_at, scope)

            if not same_json(patch, challenge.patch):
                raise PatchMismatch("patch differs from the one the challenge was issued for")

            # Re-derive from stored fields; never trust a client-supplied payload string
            payload = sign_payload_str(
                challenge.scope, challenge.patch, challenge.created_at, challenge.uuid, challenge.prev
            )
            if payload != challenge.sign_payload:
                log.error("challenge_payload_drift", uuid=uuid)
                raise StorageUnavailable("stored challenge no longer re-derives its sign payload")
            raw_signature = check_signature(
                self.verifier, scope.avatar, payload.encode("utf-8"), signature
            )

            self.ledger.append(
                scope,
                uuid=challenge.uuid,
                created_at=challenge.created_at,
                patch=challenge.patch,
                signature=raw_signature,
                sign_payload=payload,
                prev=challenge.prev,
            )
        except ProtocolError as e:
            log.warning("commit_rejected", uuid=uuid, code=e.code, reason=e.message)
            raise

        log.info("update_committed", uuid=uuid, platform=scope.platform)
        return self.query_avatar(scope.avatar)

    # ── reads

    def query_avatar(self, avatar: str) -> AvatarView:
        avatar = self.normalize_avatar(avatar)
        proofs: List[ScopeContent] = []
        for scope in self.ledger.scopes_for_avatar(avatar):
            content = self.ledger.derive(scope)
            if content is not None:
                proofs.append(ScopeContent(scope, content))
        if not proofs:
            raise ScopeNotFound(f"no content stored for avatar {avatar}")
        return AvatarView(avatar=avatar, proofs=proofs)

    def query_proof(self, platform: str, identity: str) -> List[ScopeContent]:
        if platform == NEXTID_PLATFORM:
            try:
                identity = normalize_public_key(identity, self.curve)
            except MalformedRequest:
                return []
        results = []
        for scope in self.ledger.scopes_for_proof(platform, identity):
            content = self.ledger.derive(scope)
            if content is not None:
                results.append(ScopeContent(scope, content))
        return results

    # ── boundary (dict in, dict out)

    def handle_request_update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        req = UpdateRequest.from_dict(body)
        scope = self.scope(req.avatar, req.platform, req.identity)
        return self.request_update(scope, req.patch).to_response()

    def handle_commit_update(self, body: Dict[str, Any]) -> Dict[str, Any]:
        req = CommitRequest.from_dict(body)
        scope = self.scope(req.avatar, req.platform, req.identity)
        view = self.commit_update(scope, req.uuid, req.created_at, req.signature, req.patch)
        return view.to_dict()

    def handle_query_avatar(self, avatar: str) -> Optional[Dict[str, Any]]:
        """None means "not found" (no error at the boundary)."""
        try:
            return self.query_avatar(avatar).to_dict()
        except ScopeNotFound:
            return None

    def handle_query_proof(self, platform: str, identity: str) -> Dict[str, Any]:
        return {"values": [item.to_value_dict() for item in self.query_proof(platform, identity)]}
