"""Canonical identifier handling.

Identifiers arrive as ints, UUIDs, ObjectId-like objects or strings depending
on which service produced them. They are normalized once at the boundary and
only ever compared in that form.
"""
from typing import Any, Optional


def normalize_id(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def same_id(left: Any, right: Any) -> bool:
    a, b = normalize_id(left), normalize_id(right)
    return a is not None and a == b


def first_present(*candidates: Any) -> Optional[str]:
    """Return the first candidate that normalizes to a non-empty id."""
    for candidate in candidates:
        value = normalize_id(candidate)
        if value is not None:
            return value
    return None
