# kvledger/core/merge.py
"""
RFC 7396 JSON Merge Patch.

Pure functions: neither the target nor the patch is mutated, and values
copied out of the patch are deep-copied so later patches cannot alias
earlier ledger entries.
"""

import copy
import math
from typing import Any, Dict, Iterable, Optional

from kvledger.core.errors import MalformedPatch


def merge_patch(target: Any, patch: Any) -> Any:
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = dict(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def fold_patches(patches: Iterable[Dict[str, Any]], initial: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Apply patches in order, starting from `initial` (default: empty object)."""
    content: Any = copy.deepcopy(initial) if initial is not None else {}
    for patch in patches:
        content = merge_patch(content, patch)
    return content


# Largest integer a JSON number survives as without rounding (2**53 - 1)
MAX_SAFE_INTEGER = 9007199254740991


def _check_value(value: Any, path: str) -> None:
    if value is None or isinstance(value, (str, bool)):
        return
    if isinstance(value, int):
        if abs(value) > MAX_SAFE_INTEGER:
            raise MalformedPatch(f"integer out of range at {path}")
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise MalformedPatch(f"non-finite number at {path}")
        return
    if isinstance(value, list):
        for i, item in enumerate(value):
            _check_value(item, f"{path}[{i}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise MalformedPatch(f"non-string key at {path}")
            if key == "":
                raise MalformedPatch(f"empty key at {path}")
            _check_value(item, f"{path}.{key}")
        return
    raise MalformedPatch(f"unsupported value of type {type(value).__name__} at {path}")


def validate_patch(patch: Any) -> Dict[str, Any]:
    """
    Content is always an object, so a patch must be one too.
    Returns the patch unchanged so callers can validate inline.
    """
    if not isinstance(patch, dict):
        raise MalformedPatch("patch must be a JSON object")
    if not patch:
        raise MalformedPatch("patch is empty")
    _check_value(patch, "$")
    return patch


def same_json(a: Any, b: Any) -> bool:
    """
    Structural equality that also compares types, so 1, 1.0 and True are
    three different values (plain == treats them as equal).
    """
    if type(a) is not type(b):
        return False
    if isinstance(a, dict):
        return a.keys() == b.keys() and all(same_json(a[k], b[k]) for k in a)
    if isinstance(a, list):
        return len(a) == len(b) and all(same_json(x, y) for x, y in zip(a, b))
    return a == b
