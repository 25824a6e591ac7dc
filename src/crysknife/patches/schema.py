"""Typed records persisted for every patched target file."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from ..tools.guards import GuardStyle, SegmentKind


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model: strict fields, immutable once built."""

    model_config = ConfigDict(extra="forbid", frozen=True)


RecordIdentity = Tuple[str, Tuple[str, ...], Tuple[str, ...], Tuple[str, ...], Tuple[str, ...]]


class PatchRecord(RecordModel):
    """One recorded change: the guarded lines plus the stock text around them."""

    target_path: str
    kind: SegmentKind
    style: GuardStyle = GuardStyle.BLOCK
    comment: str = ""
    indent: str = ""
    preceding: Tuple[str, ...] = ()
    following: Tuple[str, ...] = ()
    body: Tuple[str, ...] = ()
    stock: Tuple[str, ...] = ()
    blank_stock: Tuple[int, ...] = ()
    replacement_style: Optional[GuardStyle] = None
    replacement_comment: str = ""
    replacement_indent: str = ""
    anchor: int = 0
    order: int = 0

    @property
    def context_size(self) -> int:
        return len(self.preceding) + len(self.following)

    def identity(self) -> RecordIdentity:
        """Fields that make two records the same change."""
        return (self.kind.value, self.preceding, self.following, self.body, self.stock)


class PatchVersion(RecordModel):
    """All records generated from one file in one generation run."""

    order: int
    created_at: datetime = Field(default_factory=utc_now)
    records: Tuple[PatchRecord, ...] = ()

    def identities(self) -> Tuple[RecordIdentity, ...]:
        return tuple(record.identity() for record in self.records)


class PatchVersionSet(RecordModel):
    """Every stored version for one target path, oldest first."""

    target_path: str
    versions: Tuple[PatchVersion, ...] = ()

    @classmethod
    def build(cls, target_path: str, versions: Iterable[PatchVersion]) -> "PatchVersionSet":
        ordered = tuple(sorted(versions, key=lambda version: version.order))
        return cls(target_path=target_path, versions=ordered)

    @property
    def newest(self) -> PatchVersion | None:
        return self.versions[-1] if self.versions else None

    def newest_first(self) -> list[PatchVersion]:
        return list(reversed(self.versions))

    def next_order(self) -> int:
        return self.versions[-1].order + 1 if self.versions else 1

    def find_identical(self, records: Sequence[PatchRecord]) -> PatchVersion | None:
        """Return the stored version carrying exactly ``records``, if any."""
        wanted = tuple(record.identity() for record in records)
        for version in self.versions:
            if version.identities() == wanted:
                return version
        return None


__all__ = [
    "PatchRecord",
    "PatchVersion",
    "PatchVersionSet",
    "RecordModel",
    "utc_now",
]
