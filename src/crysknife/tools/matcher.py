"""Fuzzy anchor matching and version selection.

A record's ``preceding``/``following`` context is compared with the lines
around every candidate insertion point of the stock text. The score of a
candidate is the summed line similarity divided by the number of context
lines; it qualifies when ``score >= 1 - content_tolerance``. Every stored
version is tried and the best fully-qualifying one wins (highest mean score,
then newest, then least positional drift).
"""

from __future__ import annotations

import difflib
import logging
import math
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..errors import CrysknifeError
from ..patches.schema import PatchRecord, PatchVersion, PatchVersionSet
from .conflicts import ConflictReport, NearMiss
from .guards import SegmentKind

LOGGER = logging.getLogger(__name__)

DEFAULT_CONTENT_TOLERANCE = 0.5
DEFAULT_LINE_TOLERANCE = math.inf
DEFAULT_FUZZY_THRESHOLD = 0.8
_EPSILON = 1e-9

LineSimilarity = Callable[[str, str], float]


def exact_similarity(expected: str, actual: str) -> float:
    return 1.0 if expected == actual else 0.0


def whitespace_similarity(expected: str, actual: str) -> float:
    return 1.0 if expected.split() == actual.split() else 0.0


def fuzzy_similarity(threshold: float = DEFAULT_FUZZY_THRESHOLD) -> LineSimilarity:
    """Similarity weighted by :class:`difflib.SequenceMatcher` ratio.

    Ratios below ``threshold`` count as a mismatch.
    """

    def compare(expected: str, actual: str) -> float:
        if expected == actual:
            return 1.0
        ratio = difflib.SequenceMatcher(None, expected.strip(), actual.strip()).ratio()
        return ratio if ratio >= threshold else 0.0

    return compare


LINE_SIMILARITIES: Dict[str, LineSimilarity] = {
    "exact": exact_similarity,
    "whitespace": whitespace_similarity,
    "fuzzy": fuzzy_similarity(),
}


def resolve_line_similarity(name: str) -> LineSimilarity:
    try:
        return LINE_SIMILARITIES[name]
    except KeyError as error:
        choices = ", ".join(sorted(LINE_SIMILARITIES))
        raise ValueError(f"Unknown line similarity '{name}' (choose from {choices})") from error


@dataclass(slots=True, frozen=True)
class Candidate:
    """Scored insertion point for one record."""

    position: int
    score: float
    distance: float

    def sort_key(self) -> tuple[float, float, int]:
        return (-self.score, self.distance, self.position)


@dataclass(slots=True, frozen=True)
class RecordMatch:
    record: PatchRecord
    position: int
    score: float
    distance: float


@dataclass(slots=True, frozen=True)
class VersionMatch:
    """Every record of one version placed in the stock text."""

    version: PatchVersion
    matches: tuple[RecordMatch, ...]

    @property
    def score(self) -> float:
        if not self.matches:
            return 1.0
        return sum(match.score for match in self.matches) / len(self.matches)

    @property
    def distance(self) -> float:
        return sum(match.distance for match in self.matches)


@dataclass(slots=True, frozen=True)
class _Placement:
    """A candidate for one record chained to the best placement of the records before it."""

    candidate: Candidate
    total: tuple[float, float]
    parent: Optional["_Placement"]


class NoMatchFoundError(CrysknifeError):
    """Raised when no stored version clears the content tolerance."""

    def __init__(self, report: ConflictReport) -> None:
        super().__init__(
            f"No position for {report.target_path} clears the content tolerance",
            details=report.to_dict(),
        )
        self.report = report


class FuzzyMatcher:
    """Locate stored records in a target file and pick the best version."""

    def __init__(
        self,
        *,
        content_tolerance: float = DEFAULT_CONTENT_TOLERANCE,
        line_tolerance: float = DEFAULT_LINE_TOLERANCE,
        similarity: LineSimilarity | str = exact_similarity,
    ) -> None:
        if not 0.0 <= content_tolerance <= 1.0:
            raise ValueError("content_tolerance must be within [0, 1]")
        if line_tolerance < 0:
            raise ValueError("line_tolerance must be non-negative")
        self.content_tolerance = content_tolerance
        self.line_tolerance = line_tolerance
        self.similarity = resolve_line_similarity(similarity) if isinstance(similarity, str) else similarity

    @property
    def required_score(self) -> float:
        return 1.0 - self.content_tolerance

    def qualifies(self, score: float) -> bool:
        return score + _EPSILON >= self.required_score

    def score(self, lines: Sequence[str], position: int, record: PatchRecord) -> Optional[float]:
        """Context agreement at ``position``, or ``None`` if the position is impossible."""

        if position < 0 or position > len(lines):
            return None
        extent = 0
        if record.kind is SegmentKind.DELETION:
            extent = len(record.stock)
            if tuple(lines[position:position + extent]) != record.stock:
                return None

        total = record.context_size
        if total == 0:
            return 1.0

        agreement = 0.0
        start = position - len(record.preceding)
        for offset, expected in enumerate(record.preceding):
            index = start + offset
            if 0 <= index < len(lines):
                agreement += self.similarity(expected, lines[index])
        after = position + extent
        for offset, expected in enumerate(record.following):
            index = after + offset
            if index < len(lines):
                agreement += self.similarity(expected, lines[index])
        return agreement / total

    def candidates(self, lines: Sequence[str], record: PatchRecord) -> List[Candidate]:
        """Every scorable position for ``record``, best first."""

        found: list[Candidate] = []
        for position in range(len(lines) + 1):
            distance = float(abs(position - record.anchor))
            if distance > self.line_tolerance:
                continue
            value = self.score(lines, position, record)
            if value is None:
                continue
            found.append(Candidate(position=position, score=value, distance=distance))
        found.sort(key=Candidate.sort_key)
        return found

    def match_version(
        self,
        lines: Sequence[str],
        version: PatchVersion,
    ) -> tuple[VersionMatch | None, tuple[PatchRecord, Candidate | None] | None]:
        """Place every record of ``version`` in order; report the first failure.

        Placements never overlap and keep the records' order. Among those, the
        one with the highest total score wins, then the least total drift.
        """

        previous: list[_Placement] = []
        extent = 0
        for record in version.records:
            ranked = self.candidates(lines, record)
            qualifying = [found for found in ranked if self.qualifies(found.score)]
            qualifying.sort(key=lambda found: found.position)
            layer: list[_Placement] = []
            if not previous:
                layer = [_Placement(found, (found.score, -found.distance), None) for found in qualifying]
            else:
                best: _Placement | None = None
                pointer = 0
                for found in qualifying:
                    while pointer < len(previous) and previous[pointer].candidate.position + extent <= found.position:
                        if best is None or previous[pointer].total > best.total:
                            best = previous[pointer]
                        pointer += 1
                    if best is not None:
                        total = (best.total[0] + found.score, best.total[1] - found.distance)
                        layer.append(_Placement(found, total, best))
            if not layer:
                return None, (record, ranked[0] if ranked else None)
            previous = layer
            extent = len(record.stock) if record.kind is SegmentKind.DELETION else 0

        chain: list[Candidate] = []
        step = max(previous, key=lambda placement: placement.total) if previous else None
        while step is not None:
            chain.append(step.candidate)
            step = step.parent
        chain.reverse()
        placed = tuple(
            RecordMatch(record=record, position=found.position, score=found.score, distance=found.distance)
            for record, found in zip(version.records, chain)
        )
        return VersionMatch(version=version, matches=placed), None

    def select(self, lines: Sequence[str], version_set: PatchVersionSet, *, target_text: str | None = None) -> VersionMatch:
        """Pick the best qualifying version; raise :class:`NoMatchFoundError` otherwise."""

        qualifying: list[VersionMatch] = []
        newest_failure: tuple[PatchRecord, Candidate | None] | None = None
        for version in version_set.newest_first():
            matched, failure = self.match_version(lines, version)
            if matched is not None:
                LOGGER.debug(
                    "%s: version %d qualifies (score %.3f)",
                    version_set.target_path,
                    version.order,
                    matched.score,
                )
                qualifying.append(matched)
            elif newest_failure is None:
                newest_failure = failure

        if qualifying:
            qualifying.sort(key=lambda match: (-match.score, -match.version.order, match.distance))
            return qualifying[0]

        text = target_text if target_text is not None else "\n".join(lines)
        newest = version_set.newest
        if newest_failure is None:
            if newest is None or not newest.records:
                raise ValueError(f"No stored versions for {version_set.target_path}")
            newest_failure = (newest.records[0], None)
        record, near = newest_failure
        report = ConflictReport(
            target_path=version_set.target_path,
            target_text=text,
            record=record,
            version_order=record.order,
            required_score=self.required_score,
            near_miss=NearMiss(position=near.position, score=near.score, distance=near.distance) if near else None,
        )
        LOGGER.info("%s: no version clears the content tolerance", version_set.target_path)
        raise NoMatchFoundError(report)


__all__ = [
    "DEFAULT_CONTENT_TOLERANCE",
    "DEFAULT_LINE_TOLERANCE",
    "Candidate",
    "FuzzyMatcher",
    "LINE_SIMILARITIES",
    "NoMatchFoundError",
    "RecordMatch",
    "VersionMatch",
    "exact_similarity",
    "fuzzy_similarity",
    "resolve_line_similarity",
    "whitespace_similarity",
]
