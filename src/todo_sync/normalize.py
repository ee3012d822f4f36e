"""Canonical field forms used when comparing task records.

Two replicas of the same record are compared field by field after each
value has been reduced to a canonical form, so that cosmetic differences
(surrounding whitespace, tag order, duplicate tags, a missing priority)
never register as conflicts.

Tags are lowercased as part of normalization: ``"Work"`` and ``"work"``
are the same tag everywhere comparison or union happens.
"""

from collections.abc import Mapping
from typing import Any, Iterable, List, Tuple


DEFAULT_PRIORITY = 3
DEFAULT_ORDER = 0

# Fields that take part in conflict detection and fingerprinting.
PARTICIPATING_FIELDS: Tuple[str, ...] = ("text", "completed", "tags", "priority", "order")


def normalize_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def normalize_tags(value: Any) -> List[str]:
    """Strip, lowercase, drop empties, deduplicate and sort tags."""
    if not value:
        return []
    if isinstance(value, str):
        value = [value]
    tags = {str(tag).strip().lower() for tag in value if tag is not None}
    tags.discard("")
    return sorted(tags)


def normalize_priority(value: Any) -> int:
    if not value:
        return DEFAULT_PRIORITY
    return int(value)


def normalize_order(value: Any) -> int:
    if value is None or value == "":
        return DEFAULT_ORDER
    return int(value)


_NORMALIZERS = {
    "text": normalize_text,
    "completed": bool,
    "tags": normalize_tags,
    "priority": normalize_priority,
    "order": normalize_order,
}


def normalize(value: Any, field: str) -> Any:
    """Return the canonical form of ``value`` for ``field``.

    Fields without a registered rule are returned unchanged.
    """
    normalizer = _NORMALIZERS.get(field)
    if normalizer is None:
        return value
    return normalizer(value)


def union_tags(*tag_lists: Iterable[str]) -> List[str]:
    """Union any number of tag collections and normalize the result."""
    combined: List[str] = []
    for tags in tag_lists:
        combined.extend(tags or [])
    return normalize_tags(combined)


def deep_equal(a: Any, b: Any) -> bool:
    """Structural equality over canonical values.

    Scalars compare by value (a bool never equals an int), sequences
    element-wise, mappings by key set and per-key value.
    """
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b

    if isinstance(a, Mapping) and isinstance(b, Mapping):
        if set(a.keys()) != set(b.keys()):
            return False
        return all(deep_equal(a[key], b[key]) for key in a)

    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(deep_equal(x, y) for x, y in zip(a, b))

    if isinstance(a, (Mapping, list, tuple)) or isinstance(b, (Mapping, list, tuple)):
        return False

    return a == b
