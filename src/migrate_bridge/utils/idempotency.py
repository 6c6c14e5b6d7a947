"""Idempotency utilities for migration runs.

This module provides the deterministic encodings that make repeated runs
converge on the same state:
- Canonical encoding of composite keys for storage and lookup
- Content hashing of source records for change detection
"""

import hashlib
import json
from collections.abc import Mapping
from typing import Any

# Source fields carrying map bookkeeping never participate in content hashes
BOOKKEEPING_PREFIX = "migrate_map_"


def key_values(key: Any) -> tuple:
    """Normalize a key into an ordered tuple of component values.

    Accepts a mapping of key field to value (ordered by declaration), a
    list or tuple of values, or a single scalar.

    Examples:
        >>> key_values({"id": 1, "lang": "en"})
        (1, 'en')
        >>> key_values(7)
        (7,)
    """
    if key is None:
        return ()
    if isinstance(key, Mapping):
        return tuple(key.values())
    if isinstance(key, (list, tuple)):
        return tuple(key)
    return (key,)


def canonical_key(key: Any) -> str:
    """Encode a key as canonical JSON text.

    Two keys with the same component values in the same order always encode
    to the same string, which is what the unique constraints of the map
    tables compare.

    Args:
        key: Mapping, sequence or scalar key

    Returns:
        JSON array text, e.g. '[1,"en"]'
    """
    return json.dumps(list(key_values(key)), separators=(",", ":"), default=str)


def decode_key(encoded: str | None) -> tuple:
    """Decode a key produced by canonical_key back into a tuple."""
    if not encoded:
        return ()
    return tuple(json.loads(encoded))


def is_empty_key(key: Any) -> bool:
    """Return True when a key has no usable first component."""
    values = key_values(key)
    return not values or values[0] is None or values[0] == ""


def hash_resource(
    resource: Mapping[str, Any],
    exclude_fields: list[str] | None = None,
) -> str:
    """Generate SHA-256 hash of a source record for comparison.

    Creates a deterministic hash of a record. Field order does not affect the
    hash. Fields prefixed with the map bookkeeping prefix are always dropped.

    Args:
        resource: Record to hash
        exclude_fields: Optional list of extra fields to exclude

    Returns:
        SHA-256 hash as hex string (64 characters)
    """
    excluded = set(exclude_fields or [])
    content = {
        field: value
        for field, value in resource.items()
        if field not in excluded and not str(field).startswith(BOOKKEEPING_PREFIX)
    }

    resource_json = json.dumps(content, sort_keys=True, default=str)
    return hashlib.sha256(resource_json.encode()).hexdigest()
