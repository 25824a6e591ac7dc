"""Reversible insertion and removal of guarded segments."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, List, Mapping, Sequence

from ..errors import CrysknifeError
from ..patches.schema import PatchRecord, PatchVersionSet
from ..utils.text import TextBuffer, comment_out
from .guards import (
    GuardParser,
    GuardStyle,
    GuardSyntax,
    MalformedGuardError,
    Segment,
    SegmentKind,
    stock_sources,
    stock_view,
)
from .matcher import FuzzyMatcher, RecordMatch, VersionMatch
from .sandbox import Sandbox

LOGGER = logging.getLogger(__name__)
TELEMETRY_LOGGER = logging.getLogger("crysknife.telemetry")


class PatchApplyError(CrysknifeError):
    """Raised when a segment cannot be applied or cleared; the file is left untouched."""


class FileAction(str, Enum):
    GENERATE = "generate"
    APPLY = "apply"
    CLEAR = "clear"


@dataclass(slots=True)
class FileChange:
    """In-memory result of an apply/clear on one file."""

    path: Path
    original: str
    content: str
    version: int | None = None

    @property
    def changed(self) -> bool:
        return self.content != self.original


def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def emit_patch_event(event: str, **fields: Any) -> None:
    """Log structured telemetry events for file operations."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


class PatchApplier:
    """Render records as guarded lines and splice them in or out of a buffer."""

    def __init__(self, tag: str | GuardSyntax, *, sandbox: Sandbox | None = None) -> None:
        self.syntax = tag if isinstance(tag, GuardSyntax) else GuardSyntax(tag)
        self.parser = GuardParser(self.syntax)
        self.sandbox = sandbox or Sandbox()

    def _wrap(self, style: GuardStyle, indent: str, comment: str, lines: Sequence[str], *, deletion: bool) -> List[str]:
        syntax = self.syntax
        if style is GuardStyle.BLOCK:
            return [
                syntax.format_begin(indent, comment, deletion=deletion),
                *lines,
                syntax.format_end(indent),
            ]
        if len(lines) != 1:
            raise PatchApplyError(f"{style.value} guard must wrap exactly one line, got {len(lines)}")
        if style is GuardStyle.SINGLE_LINE:
            return [syntax.format_trailing(lines[0], comment, deletion=deletion)]
        return [syntax.format_marker(indent, comment, deletion=deletion), lines[0]]

    def render(self, record: PatchRecord) -> List[str]:
        """Guarded lines that represent ``record`` inside a file."""
        if record.kind is SegmentKind.ADDITION:
            return self._wrap(record.style, record.indent, record.comment, record.body, deletion=False)

        commented = [
            line if offset in record.blank_stock else comment_out(line)
            for offset, line in enumerate(record.stock)
        ]
        rendered = self._wrap(record.style, record.indent, record.comment, commented, deletion=True)
        if record.replacement_style is not None:
            rendered.extend(
                self._wrap(
                    record.replacement_style,
                    record.replacement_indent,
                    record.replacement_comment,
                    record.body,
                    deletion=False,
                )
            )
        return rendered

    @staticmethod
    def _rendered_sources(record: PatchRecord, stock_sources: Sequence[int | None], count: int) -> List[int | None]:
        """Line sources for ``count`` rendered lines; commented stock keeps its origin."""
        if record.kind is SegmentKind.ADDITION:
            return [None] * count
        mapped: List[int | None] = [] if record.style is GuardStyle.SINGLE_LINE else [None]
        mapped.extend(stock_sources)
        if record.style is GuardStyle.BLOCK:
            mapped.append(None)
        return mapped + [None] * (count - len(mapped))

    @staticmethod
    def _same_change(segment: Segment, record: PatchRecord) -> bool:
        if segment.kind is not record.kind:
            return False
        if record.kind is SegmentKind.ADDITION:
            return segment.body == record.body
        return segment.stock == record.stock and segment.inserted == record.body

    def apply(
        self,
        lines: List[str],
        position: int,
        record: PatchRecord,
        *,
        check_existing: bool = True,
        sources: List[int | None] | None = None,
    ) -> bool:
        """Insert ``record`` at ``position`` of a live buffer, in place.

        ``position`` indexes ``lines`` directly. Returns ``False`` without
        touching ``lines`` when an equal segment already covers that position.
        ``sources``, when given, is spliced alongside ``lines``.
        """

        if position < 0 or position > len(lines):
            raise PatchApplyError(f"Position {position} outside of file with {len(lines)} line(s)")
        if check_existing:
            for segment in self.parser.parse(lines):
                if segment.start <= position < segment.end and self._same_change(segment, record):
                    return False

        rendered = self.render(record)
        extent = len(record.stock) if record.kind is SegmentKind.DELETION else 0
        if extent and tuple(lines[position:position + extent]) != record.stock:
            raise PatchApplyError(f"Stock lines for deletion are not present at line {position + 1}")
        lines[position:position + extent] = rendered
        if sources is not None:
            sources[position:position + extent] = self._rendered_sources(
                record, sources[position:position + extent], len(rendered)
            )
        return True

    def apply_version(
        self,
        stock_lines: Sequence[str],
        match: VersionMatch,
        sources: Sequence[int | None] | None = None,
    ) -> tuple[List[str], List[int | None]]:
        """Splice every matched record into ``stock_lines`` (bottom-up).

        Returns the patched lines and, for each, the index of the stock line
        it came from (``None`` for guard and plugin lines).
        """

        lines = list(stock_lines)
        origins: List[int | None] = list(sources) if sources is not None else list(range(len(lines)))
        numbered: List[tuple[int, RecordMatch]] = list(enumerate(match.matches, start=1))
        # Later records first so equal positions keep their recorded order.
        numbered.sort(key=lambda item: (item[1].position, item[0]), reverse=True)
        for segment_number, placed in numbered:
            try:
                self.apply(lines, placed.position, placed.record, check_existing=False, sources=origins)
            except PatchApplyError as error:
                raise PatchApplyError(
                    f"Segment {segment_number} of {placed.record.target_path}: {error}",
                    details={"segment": segment_number, "position": placed.position},
                ) from error
        return lines, origins

    def clear(self, lines: Sequence[str]) -> tuple[List[str], List[int]]:
        """Remove every guarded segment, restoring commented-out stock lines.

        Returns the stock lines and the live index each one came from.
        """
        segments = self.parser.parse(lines)
        stock, _ = stock_view(lines, segments)
        return stock, stock_sources(len(lines), segments)

    def _cleared(self, path: Path, buffer: TextBuffer) -> tuple[List[str], List[int]]:
        try:
            return self.clear(buffer.lines)
        except MalformedGuardError as error:
            raise PatchApplyError(f"{path}: {error}", details={"path": str(path), **error.details}) from error

    @staticmethod
    def _content(original: str, buffer: TextBuffer, lines: List[str], sources: Sequence[int | None]) -> str:
        if lines == buffer.lines:
            return original
        return buffer.with_lines(lines, sources).render()

    def plan_apply(self, path: Path, version_set: PatchVersionSet, matcher: FuzzyMatcher) -> FileChange:
        """Compute the patched content of ``path`` without writing it."""
        original = self.sandbox.read_text(path)
        buffer = TextBuffer.from_text(original)
        stock, sources = self._cleared(path, buffer)
        selected = matcher.select(stock, version_set, target_text=buffer.with_lines(stock, sources).render())
        try:
            patched, origins = self.apply_version(stock, selected, sources)
        except PatchApplyError as error:
            raise PatchApplyError(f"{path}: {error}", details={"path": str(path), **error.details}) from error
        return FileChange(
            path=path,
            original=original,
            content=self._content(original, buffer, patched, origins),
            version=selected.version.order,
        )

    def plan_clear(self, path: Path) -> FileChange:
        """Compute the cleared content of ``path`` without writing it."""
        original = self.sandbox.read_text(path)
        buffer = TextBuffer.from_text(original)
        stock, sources = self._cleared(path, buffer)
        return FileChange(path=path, original=original, content=self._content(original, buffer, stock, sources))

    def commit(self, change: FileChange, action: FileAction) -> bool:
        """Write ``change`` if it alters the file; returns whether a write happened."""
        if not change.changed:
            return False
        destination = self.sandbox.write_text(change.path, change.content)
        emit_patch_event(
            f"file.{action.value}",
            path=change.path,
            destination=destination,
            version=change.version,
            dry_run=self.sandbox.dry_run,
        )
        LOGGER.info("%s %s", action.value.capitalize(), change.path)
        return True

    def apply_file(self, path: Path, version_set: PatchVersionSet, matcher: FuzzyMatcher) -> FileChange:
        change = self.plan_apply(path, version_set, matcher)
        self.commit(change, FileAction.APPLY)
        return change

    def clear_file(self, path: Path) -> FileChange:
        change = self.plan_clear(path)
        self.commit(change, FileAction.CLEAR)
        return change


__all__ = [
    "FileAction",
    "FileChange",
    "PatchApplier",
    "PatchApplyError",
    "emit_patch_event",
]
