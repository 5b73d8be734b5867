"""
Cache key derivation.

Turns the semantic identity of a request into a filesystem-safe key.
"""

import hashlib
import json
from typing import Any, Mapping, Union


def generate_cache_key(key_input: Union[str, Mapping[str, Any]]) -> str:
    """Derive a deterministic cache key from request parameters.

    Strings are hashed as-is. Mappings are serialized to JSON with sorted
    keys first, so two structurally equal inputs give the same key no matter
    how they were built. Values JSON can't represent natively (dates, UUIDs)
    fall back to their string form.

    Args:
        key_input: Query string or mapping of request parameters

    Returns:
        64-character hex SHA-256 digest
    """
    if isinstance(key_input, str):
        serialized = key_input
    else:
        serialized = json.dumps(
            key_input,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=str
        )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()
