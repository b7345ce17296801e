# kvledger/core/canon.py
import copy
from typing import Any, Dict, List, Optional, Tuple

try:
    import jcs
except ImportError:
    raise ImportError("Please install jcs: pip install jcs")

from kvledger.core.errors import MalformedPatch
from kvledger.core.types import Scope

KV_ACTION = "kv"
PATH_SEPARATOR = "_"


def canonical_json(obj: Any) -> bytes:
    """
    Produce deterministic UTF-8 bytes according to RFC 8785 (JSON Canonicalization Scheme).
    Returns bytes ready for signing.
    """
    return jcs.canonicalize(obj)


def canonical_json_str(obj: Any) -> str:
    """Same as above, but returns string (what goes over the wire as `sign_payload`)."""
    return canonical_json(obj).decode("utf-8")


def _extract_deletions(
    obj: Dict[str, Any], path: List[str], deletions: Dict[str, None]
) -> Tuple[Dict[str, Any], bool]:
    """
    Pull every null leaf out of `obj` into `deletions` under its joined path.
    Returns (what is left, whether extraction emptied a non-empty object).
    """
    kept: Dict[str, Any] = {}
    for key, value in obj.items():
        here = path + [key]
        if value is None:
            joined = PATH_SEPARATOR.join(here)
            if joined in deletions:
                raise MalformedPatch(f"two deletion paths flatten to {joined}")
            deletions[joined] = None
        elif isinstance(value, dict):
            sub, emptied = _extract_deletions(value, here, deletions)
            if not emptied:
                kept[key] = sub
        else:
            kept[key] = copy.deepcopy(value)
    return kept, bool(obj) and not kept


def flatten_patch(patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Flatten only the deletion paths of a merge patch.

        {"key": {"to": {"delete": null}}, "a": "sample"}
            -> {"a": "sample", "key_to_delete": null}

    Non-null values stay under their original top-level key, nested as given.
    Objects that held nothing but deletions disappear; explicitly empty
    objects (`{"a": {}}`) are kept.
    """
    if not isinstance(patch, dict):
        raise MalformedPatch("patch must be a JSON object")

    deletions: Dict[str, None] = {}
    kept, _ = _extract_deletions(patch, [], deletions)

    clashing = sorted(k for k in deletions if k in kept)
    if clashing:
        raise MalformedPatch(
            f"deletion path collides with a value key: {', '.join(clashing)}"
        )

    flat = dict(kept)
    flat.update(deletions)
    return flat


def build_sign_payload(
    scope: Scope,
    patch: Dict[str, Any],
    created_at: int,
    uuid: str,
    prev: Optional[str],
) -> Dict[str, Any]:
    """
    Object whose canonical form the avatar signs. The scope is part of it,
    so a signature only ever authorizes one (platform, identity) target.
    """
    return {
        "action": KV_ACTION,
        "avatar": scope.avatar,
        "created_at": created_at,
        "identity": scope.identity,
        "patch": flatten_patch(patch),
        "platform": scope.platform,
        "prev": prev,
        "uuid": uuid,
    }


def sign_payload_str(
    scope: Scope,
    patch: Dict[str, Any],
    created_at: int,
    uuid: str,
    prev: Optional[str],
) -> str:
    return canonical_json_str(build_sign_payload(scope, patch, created_at, uuid, prev))
