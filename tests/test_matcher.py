from __future__ import annotations

import math

import pytest

from crysknife.patches.schema import PatchRecord, PatchVersion, PatchVersionSet
from crysknife.tools.guards import SegmentKind
from crysknife.tools.matcher import (
    FuzzyMatcher,
    NoMatchFoundError,
    fuzzy_similarity,
    resolve_line_similarity,
    whitespace_similarity,
)


def _addition(
    preceding: tuple[str, ...],
    following: tuple[str, ...],
    *,
    body: tuple[str, ...] = ("added();",),
    anchor: int = 0,
    order: int = 1,
) -> PatchRecord:
    return PatchRecord(
        target_path="Foo.cpp",
        kind=SegmentKind.ADDITION,
        preceding=preceding,
        following=following,
        body=body,
        anchor=anchor,
        order=order,
    )


def _version_set(*records: PatchRecord) -> PatchVersionSet:
    versions = [PatchVersion(order=record.order, records=(record,)) for record in records]
    return PatchVersionSet.build("Foo.cpp", versions)


def _context(size: int) -> tuple[tuple[str, ...], tuple[str, ...]]:
    before = size // 2
    preceding = tuple(f"pre_{index}" for index in range(before))
    following = tuple(f"fol_{index}" for index in range(size - before))
    return preceding, following


def _target_with_mismatches(preceding: tuple[str, ...], following: tuple[str, ...], mismatches: int) -> list[str]:
    lines = [*preceding, *following]
    for index in range(mismatches):
        lines[index] = f"changed_{index}"
    return lines


@pytest.mark.parametrize(("size", "tolerance"), [(4, 0.5), (7, 0.5), (10, 0.3), (6, 0.0), (8, 1.0)])
def test_tolerance_boundary(size: int, tolerance: float) -> None:
    preceding, following = _context(size)
    record = _addition(preceding, following, anchor=len(preceding))
    matcher = FuzzyMatcher(content_tolerance=tolerance)
    allowed = math.floor(tolerance * size)

    within = _target_with_mismatches(preceding, following, allowed)
    match = matcher.select(within, _version_set(record))
    assert match.matches[0].position == len(preceding)
    assert match.score == pytest.approx((size - allowed) / size)

    if allowed < size:
        beyond = _target_with_mismatches(preceding, following, allowed + 1)
        with pytest.raises(NoMatchFoundError):
            matcher.select(beyond, _version_set(record))


def test_higher_score_wins_over_newer_version() -> None:
    target = ["a", "b", "c", "d"]
    older = _addition(("a", "b"), ("c", "d"), body=("old();",), anchor=2, order=1)
    newer = _addition(("a", "x"), ("c", "d"), body=("new();",), anchor=2, order=2)

    match = FuzzyMatcher().select(target, _version_set(older, newer))

    assert match.version.order == 1
    assert match.matches[0].record.body == ("old();",)


def test_equal_scores_prefer_newest_version() -> None:
    target = ["a", "b", "c", "d"]
    older = _addition(("a", "b"), ("c", "d"), body=("old();",), anchor=2, order=1)
    newer = _addition(("a", "b"), ("c", "d"), body=("new();",), anchor=2, order=2)

    match = FuzzyMatcher().select(target, _version_set(older, newer))

    assert match.version.order == 2


def test_context_drift_is_found_anywhere_by_default() -> None:
    target = [f"filler_{index}" for index in range(40)] + ["a", "b", "c", "d"]
    record = _addition(("a", "b"), ("c", "d"), anchor=2)

    match = FuzzyMatcher().select(target, _version_set(record))

    assert match.matches[0].position == 42
    assert match.matches[0].distance == 40


def test_line_tolerance_prunes_distant_candidates() -> None:
    target = [f"filler_{index}" for index in range(40)] + ["a", "b", "c", "d"]
    record = _addition(("a", "b"), ("c", "d"), anchor=2)

    with pytest.raises(NoMatchFoundError) as excinfo:
        FuzzyMatcher(line_tolerance=10).select(target, _version_set(record))

    report = excinfo.value.report
    assert report.target_path == "Foo.cpp"
    assert report.near_miss is not None
    assert report.near_miss.distance <= 10


def test_equal_scores_prefer_the_closest_position() -> None:
    target = ["a", "b", "c", "d", "a", "b", "c", "d"]
    record = _addition(("a", "b"), ("c", "d"), anchor=6)

    match = FuzzyMatcher().select(target, _version_set(record))

    assert match.matches[0].position == 6


def test_deletion_requires_stock_verbatim() -> None:
    record = PatchRecord(
        target_path="Foo.cpp",
        kind=SegmentKind.DELETION,
        preceding=("a",),
        following=("b",),
        stock=("old();",),
        anchor=1,
        order=1,
    )
    matcher = FuzzyMatcher()

    assert matcher.select(["a", "old();", "b"], _version_set(record)).matches[0].position == 1
    with pytest.raises(NoMatchFoundError):
        matcher.select(["a", "b"], _version_set(record))


def test_records_of_a_version_match_in_order() -> None:
    first = _addition(("a",), ("b",), body=("one();",), anchor=1)
    second = _addition(("b",), ("c",), body=("two();",), anchor=2)
    version_set = PatchVersionSet.build("Foo.cpp", [PatchVersion(order=1, records=(first, second))])

    match = FuzzyMatcher().select(["a", "b", "c"], version_set)

    assert [placed.position for placed in match.matches] == [1, 2]
    assert match.score == 1.0


def test_record_without_context_always_qualifies() -> None:
    record = _addition((), (), anchor=0)

    match = FuzzyMatcher(content_tolerance=0.0).select([], _version_set(record))

    assert match.matches[0].position == 0


def test_line_similarity_strategies() -> None:
    assert whitespace_similarity("int  a = 1;", "int a = 1;") == 1.0
    assert whitespace_similarity("int a = 1;", "int a = 2;") == 0.0

    fuzzy = fuzzy_similarity(0.8)
    assert fuzzy("UpdateWorld(Delta);", "UpdateWorld(DeltaTime);") > 0.8
    assert fuzzy("UpdateWorld(Delta);", "return;") == 0.0

    record = _addition(("UpdateWorld(Delta);",), ("Render();",), anchor=1)
    target = ["UpdateWorld(DeltaTime);", "Render();"]
    with pytest.raises(NoMatchFoundError):
        FuzzyMatcher(content_tolerance=0.2).select(target, _version_set(record))
    match = FuzzyMatcher(content_tolerance=0.2, similarity="fuzzy").select(target, _version_set(record))
    assert match.matches[0].position == 1


def test_unknown_similarity_name_is_rejected() -> None:
    with pytest.raises(ValueError):
        resolve_line_similarity("levenshtein")
    with pytest.raises(ValueError):
        FuzzyMatcher(content_tolerance=1.5)


def test_records_skip_a_nearer_decoy_to_keep_every_record_placed() -> None:
    first = _addition(("p1",), ("q1",), body=("one();",), anchor=10)
    second = _addition(("p2",), ("q2",), body=("two();",), anchor=12)
    version_set = PatchVersionSet.build("Foo.cpp", [PatchVersion(order=1, records=(first, second))])
    target = ["p1", "q1", "p2", "q2", *(f"f{index}" for index in range(6)), "p1", "q1"]

    match = FuzzyMatcher().select(target, version_set)

    assert [placed.position for placed in match.matches] == [1, 3]
    assert match.score == 1.0


def test_earlier_weaker_candidate_wins_when_the_best_blocks_later_records() -> None:
    first = _addition(("a", "b"), ("c", "d"), body=("one();",), anchor=0)
    second = _addition(("e",), ("f",), body=("two();",), anchor=0)
    version_set = PatchVersionSet.build("Foo.cpp", [PatchVersion(order=1, records=(first, second))])
    target = ["a", "b", "x", "d", "e", "f", "a", "b", "c", "d"]

    match = FuzzyMatcher().select(target, version_set)

    assert [placed.position for placed in match.matches] == [2, 5]
    assert match.matches[0].score == 0.75
