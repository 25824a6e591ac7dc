"""Guard comment parsing.

Plugin-owned code inside a stock file is delimited by guard comments carrying
the plugin tag. Three forms are recognised::

    // MyPlugin: Begin            int Extra = 0; // MyPlugin      // MyPlugin
    int Extra = 0;                                                int Extra = 0;
    // MyPlugin: End

A ``-`` right after the tag marks a deletion: the guarded lines are commented
out stock code that :func:`stock_view` restores. A deletion immediately
followed by an addition is treated as one replacement segment.

Parsing walks the lines once, driven by the states of :class:`_ParseState`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Pattern, Sequence

from ..errors import CrysknifeError
from ..utils.text import TextBuffer, uncomment

__all__ = [
    "GuardParser",
    "GuardStyle",
    "GuardSyntax",
    "MalformedGuardError",
    "Segment",
    "SegmentKind",
    "parse_segments",
    "stock_sources",
    "stock_view",
]

_TAG_BOUNDARY = r"(?![A-Za-z0-9_])"


class SegmentKind(str, Enum):
    """Whether a segment adds plugin code or comments out stock code."""

    ADDITION = "addition"
    DELETION = "deletion"


class GuardStyle(str, Enum):
    """Shape of the guard comments around a segment."""

    BLOCK = "block"
    SINGLE_LINE = "single_line"
    NEXT_LINE = "next_line"


class MalformedGuardError(CrysknifeError):
    """Raised when guard comments cannot be paired into segments."""

    def __init__(self, line: int, reason: str) -> None:
        super().__init__(
            f"Malformed guard at line {line}: {reason}",
            details={"line": line, "reason": reason},
        )
        self.line = line
        self.reason = reason


@dataclass(slots=True, frozen=True)
class Segment:
    """Guarded code block found in a text buffer.

    ``start``/``end`` form a 0-based half-open span over the live lines,
    guard comments included. ``body`` holds the verbatim guarded lines;
    deletions additionally expose the restorable ``stock`` lines, and
    ``blank_stock`` lists the stock lines that were blank rather than commented.
    """

    kind: SegmentKind
    style: GuardStyle
    start: int
    end: int
    body: tuple[str, ...]
    comment: str = ""
    indent: str = ""
    stock: tuple[str, ...] = ()
    blank_stock: tuple[int, ...] = ()
    replacement: Segment | None = None

    @property
    def stock_extent(self) -> int:
        return len(self.stock) if self.kind is SegmentKind.DELETION else 0

    @property
    def inserted(self) -> tuple[str, ...]:
        """Lines the plugin contributes to the file once the segment is applied."""
        if self.kind is SegmentKind.ADDITION:
            return self.body
        if self.replacement is not None:
            return self.replacement.body
        return ()


class GuardSyntax:
    """Compiled guard patterns and formatters for one plugin tag."""

    def __init__(self, tag: str) -> None:
        if not tag or not tag.strip():
            raise ValueError("Guard tag must be a non-empty string")
        self.tag = tag.strip()
        escaped = re.escape(self.tag)
        head = rf"//\s*{escaped}{_TAG_BOUNDARY}"
        self._begin: Pattern[str] = re.compile(
            rf"^(?P<indent>\s*){head}(?P<deletion>-)?(?P<comment>.*?):\s*Begin\s*$"
        )
        self._end: Pattern[str] = re.compile(rf"^\s*{head}-?\s*:\s*End\s*$")
        self._marker: Pattern[str] = re.compile(
            rf"^(?P<indent>\s*){head}(?P<deletion>-)?(?P<comment>.*)$"
        )
        self._trailing: Pattern[str] = re.compile(
            rf"^(?P<code>.*?\S)[ \t]*{head}(?P<deletion>-)?(?P<comment>.*)$"
        )
        self._any: Pattern[str] = re.compile(head)

    def begin(self, line: str) -> re.Match[str] | None:
        return self._begin.match(line)

    def end(self, line: str) -> re.Match[str] | None:
        return self._end.match(line)

    def marker(self, line: str) -> re.Match[str] | None:
        return self._marker.match(line)

    def trailing(self, line: str) -> re.Match[str] | None:
        return self._trailing.match(line)

    def mentions(self, line: str) -> bool:
        return self._any.search(line) is not None

    def format_begin(self, indent: str, comment: str = "", *, deletion: bool = False) -> str:
        return f"{indent}// {self.tag}{'-' if deletion else ''}{comment}: Begin"

    def format_end(self, indent: str) -> str:
        return f"{indent}// {self.tag}: End"

    def format_marker(self, indent: str, comment: str = "", *, deletion: bool = False) -> str:
        return f"{indent}// {self.tag}{'-' if deletion else ''}{comment}"

    def format_trailing(self, code: str, comment: str = "", *, deletion: bool = False) -> str:
        return f"{code} // {self.tag}{'-' if deletion else ''}{comment}"


class _ParseState(Enum):
    IN_BLOCK = "in_block"
    AWAIT_NEXT_LINE = "await_next_line"


@dataclass(slots=True, frozen=True)
class _OpenGuard:
    """A Begin or next-line marker still waiting for the lines it guards."""

    state: _ParseState
    line: int
    match: re.Match[str]


class GuardParser:
    """Turn a buffer into the ordered list of segments guarded by ``tag``."""

    def __init__(self, tag: str | GuardSyntax) -> None:
        self.syntax = tag if isinstance(tag, GuardSyntax) else GuardSyntax(tag)

    def parse(self, lines: Sequence[str]) -> list[Segment]:
        syntax = self.syntax
        pending: _OpenGuard | None = None
        segments: list[Segment] = []

        for index, line in enumerate(lines):
            if pending is not None and pending.state is _ParseState.IN_BLOCK:
                if syntax.end(line):
                    segments.append(self._block(lines, pending.line, index, pending.match))
                    pending = None
                    continue
                if syntax.begin(line):
                    raise MalformedGuardError(index + 1, "nested Begin inside an open block")
                if syntax.mentions(line):
                    raise MalformedGuardError(index + 1, "guard marker inside an open block")
                if pending.match.group("deletion") and line.strip() and uncomment(line) is None:
                    raise MalformedGuardError(index + 1, "code line before the End of a deletion block")
                continue

            if pending is not None:
                if not line.strip() or syntax.mentions(line):
                    raise MalformedGuardError(pending.line + 1, "next-line guard must precede exactly one code line")
                segments.append(self._next_line(index, line, pending.line, pending.match))
                pending = None
                continue

            if syntax.end(line):
                raise MalformedGuardError(index + 1, "End without a matching Begin")
            match = syntax.begin(line)
            if match:
                pending = _OpenGuard(_ParseState.IN_BLOCK, index, match)
                continue
            match = syntax.marker(line)
            if match:
                pending = _OpenGuard(_ParseState.AWAIT_NEXT_LINE, index, match)
                continue
            match = syntax.trailing(line)
            if match:
                segments.append(self._single_line(index, match))

        if pending is not None and pending.state is _ParseState.IN_BLOCK:
            raise MalformedGuardError(pending.line + 1, "Begin without a matching End")
        if pending is not None:
            raise MalformedGuardError(pending.line + 1, "next-line guard at end of file")
        return _pair_replacements(segments)

    @staticmethod
    def _block(lines: Sequence[str], start: int, end: int, opening: re.Match[str]) -> Segment:
        body = tuple(lines[start + 1:end])
        deletion = bool(opening.group("deletion"))
        stock: tuple[str, ...] = ()
        blank_stock: tuple[int, ...] = ()
        if deletion:
            stock = tuple(_restore(line) for line in body)
            blank_stock = tuple(offset for offset, line in enumerate(body) if not line.strip())
        return Segment(
            kind=SegmentKind.DELETION if deletion else SegmentKind.ADDITION,
            style=GuardStyle.BLOCK,
            start=start,
            end=end + 1,
            body=body,
            comment=opening.group("comment"),
            indent=opening.group("indent"),
            stock=stock,
            blank_stock=blank_stock,
        )

    @staticmethod
    def _next_line(index: int, line: str, opened_at: int, opening: re.Match[str]) -> Segment:
        deletion = bool(opening.group("deletion"))
        stock: tuple[str, ...] = ()
        if deletion:
            restored = uncomment(line)
            if restored is None:
                raise MalformedGuardError(index + 1, "deletion guard must precede a commented line")
            stock = (restored,)
        return Segment(
            kind=SegmentKind.DELETION if deletion else SegmentKind.ADDITION,
            style=GuardStyle.NEXT_LINE,
            start=opened_at,
            end=index + 1,
            body=(line,),
            comment=opening.group("comment"),
            indent=opening.group("indent"),
            stock=stock,
        )

    @staticmethod
    def _single_line(index: int, match: re.Match[str]) -> Segment:
        code = match.group("code")
        deletion = bool(match.group("deletion"))
        stock: tuple[str, ...] = ()
        if deletion:
            restored = uncomment(code)
            if restored is None:
                raise MalformedGuardError(index + 1, "deletion guard on a line that is not commented out")
            stock = (restored,)
        return Segment(
            kind=SegmentKind.DELETION if deletion else SegmentKind.ADDITION,
            style=GuardStyle.SINGLE_LINE,
            start=index,
            end=index + 1,
            body=(code,),
            comment=match.group("comment"),
            stock=stock,
        )


def _restore(line: str) -> str:
    if not line.strip():
        return line
    restored = uncomment(line)
    return line if restored is None else restored


def _pair_replacements(segments: list[Segment]) -> list[Segment]:
    """Attach additions that directly follow a deletion as its replacement."""
    paired: list[Segment] = []
    for segment in segments:
        previous = paired[-1] if paired else None
        if (
            previous is not None
            and previous.kind is SegmentKind.DELETION
            and previous.replacement is None
            and segment.kind is SegmentKind.ADDITION
            and segment.start == previous.end
        ):
            paired[-1] = replace(previous, end=segment.end, replacement=segment)
            continue
        paired.append(segment)
    return paired


def parse_segments(source: str | TextBuffer | Sequence[str], tag: str | GuardSyntax) -> list[Segment]:
    """Convenience wrapper accepting raw text, a buffer or a list of lines."""
    if isinstance(source, str):
        lines: Sequence[str] = TextBuffer.from_text(source).lines
    elif isinstance(source, TextBuffer):
        lines = source.lines
    else:
        lines = source
    return GuardParser(tag).parse(lines)


def stock_view(lines: Sequence[str], segments: Sequence[Segment]) -> tuple[list[str], list[int]]:
    """Return the stock lines with every segment cleared, plus each segment's anchor.

    The anchor is the index in the stock lines where the segment's stock
    extent begins (the insertion point for additions).
    """

    stock: list[str] = []
    anchors: list[int] = []
    cursor = 0
    for segment in segments:
        stock.extend(lines[cursor:segment.start])
        anchors.append(len(stock))
        if segment.kind is SegmentKind.DELETION:
            stock.extend(segment.stock)
        cursor = segment.end
    stock.extend(lines[cursor:])
    return stock, anchors


def stock_sources(line_count: int, segments: Sequence[Segment]) -> list[int]:
    """Index of the live line every :func:`stock_view` line comes from."""

    sources: list[int] = []
    cursor = 0
    for segment in segments:
        sources.extend(range(cursor, segment.start))
        if segment.kind is SegmentKind.DELETION:
            first = segment.start if segment.style is GuardStyle.SINGLE_LINE else segment.start + 1
            sources.extend(range(first, first + len(segment.stock)))
        cursor = segment.end
    sources.extend(range(cursor, line_count))
    return sources
