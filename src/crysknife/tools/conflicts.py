"""Structured conflict data for patches that no longer match.

Rendering is left to the caller; a report carries enough data to rebuild a
three-part diff deterministically: the target text, what the record expected
to find there, and the closest non-qualifying position.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from ..patches.schema import PatchRecord
from ..utils.slug import slugify
from .sandbox import Sandbox

__all__ = ["ConflictReport", "NearMiss"]

_DEFAULT_RADIUS = 3


@dataclass(slots=True, frozen=True)
class NearMiss:
    position: int
    score: float
    distance: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "score": round(self.score, 6),
            "distance": None if self.distance == float("inf") else self.distance,
        }


@dataclass(slots=True, frozen=True)
class ConflictReport:
    """Everything needed to explain why a record could not be placed."""

    target_path: str
    target_text: str
    record: PatchRecord
    version_order: int
    required_score: float
    near_miss: NearMiss | None = None

    def expected_lines(self) -> List[str]:
        """The stock lines the record expects around its insertion point."""
        return [*self.record.preceding, *self.record.stock, *self.record.following]

    def actual_lines(self, radius: int = _DEFAULT_RADIUS) -> List[str]:
        """Lines of the target around the near miss (or its recorded anchor)."""
        lines = self.target_text.splitlines()
        centre = self.near_miss.position if self.near_miss else min(self.record.anchor, len(lines))
        start = max(centre - len(self.record.preceding) - radius, 0)
        end = min(centre + len(self.record.stock) + len(self.record.following) + radius, len(lines))
        return lines[start:end]

    def to_dict(self) -> Dict[str, Any]:
        record = self.record
        return {
            "target_path": self.target_path,
            "version": self.version_order,
            "required_score": round(self.required_score, 6),
            "kind": record.kind.value,
            "anchor": record.anchor,
            "preceding": list(record.preceding),
            "body": list(record.body),
            "stock": list(record.stock),
            "following": list(record.following),
            "near_miss": self.near_miss.to_dict() if self.near_miss else None,
            "target_text": self.target_text,
        }

    def write(self, directory: Path, *, sandbox: Sandbox | None = None) -> Path:
        """Persist the report as JSON for an external diff renderer."""
        name = slugify(self.target_path, fallback="conflict", lowercase=False)
        destination = directory / f"{name}.conflict.json"
        payload = json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n"
        return (sandbox or Sandbox()).write_text(destination, payload)
