"""Filesystem-friendly names for artifacts derived from target paths."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_LOWERCASE_PATTERN: Pattern[str] = re.compile(r"[^a-z0-9_.-]+")
_MIXED_CASE_PATTERN: Pattern[str] = re.compile(r"[^A-Za-z0-9_.-]+")
_HYPHEN_COLLAPSE = re.compile(r"-{2,}")


def slugify(
    value: str | None,
    *,
    fallback: str = "file",
    max_length: int = 120,
    lowercase: bool = True,
) -> str:
    """Flatten ``value`` (typically a relative path) into one file name.

    ``Engine/Source/Foo.cpp`` becomes ``Engine-Source-Foo.cpp``; names longer
    than ``max_length`` keep a readable prefix plus a short content hash.
    """
    source = (value or "").strip() or fallback
    if lowercase:
        source = source.lower()
    pattern = _LOWERCASE_PATTERN if lowercase else _MIXED_CASE_PATTERN

    slug = _HYPHEN_COLLAPSE.sub("-", pattern.sub("-", source)).strip("-.")
    if not slug:
        slug = fallback
    if len(slug) <= max_length:
        return slug

    digest = hashlib.sha256(slug.encode("utf-8")).hexdigest()[:8]
    prefix = slug[: max(max_length - len(digest) - 1, 1)].rstrip("-")
    return f"{prefix}-{digest}"


__all__ = ["slugify"]
