"""Derive patch records from live, guard-annotated files."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

from ..patches.schema import PatchRecord, PatchVersion
from ..patches.store import PatchStore, normalise_target_path
from ..utils.text import TextBuffer
from .guards import GuardParser, GuardSyntax, Segment, SegmentKind, stock_view

LOGGER = logging.getLogger(__name__)
DEFAULT_PATCH_CONTEXT = 50


@dataclass(slots=True)
class GenerationResult:
    """Outcome of generating patches for one file."""

    target_path: str
    records: tuple[PatchRecord, ...]
    version: PatchVersion | None = None

    @property
    def changed(self) -> bool:
        return self.version is not None


def build_records(
    lines: Sequence[str],
    segments: Sequence[Segment],
    target_path: str,
    *,
    patch_context: int = DEFAULT_PATCH_CONTEXT,
) -> List[PatchRecord]:
    """Turn parsed segments into records with clipped context windows.

    Context is read from the stock view of the file so it never includes
    guarded lines; each window stops at the neighbouring segment.
    """

    if patch_context < 0:
        raise ValueError("patch_context must be non-negative")
    stock, anchors = stock_view(lines, segments)
    records: list[PatchRecord] = []

    for index, segment in enumerate(segments):
        anchor = anchors[index]
        extent_end = anchor + segment.stock_extent

        lower = 0
        if index > 0:
            lower = anchors[index - 1] + segments[index - 1].stock_extent
        upper = len(stock)
        if index + 1 < len(segments):
            upper = anchors[index + 1]

        preceding = stock[max(lower, anchor - patch_context):anchor]
        following = stock[extent_end:min(upper, extent_end + patch_context)]

        fields = {
            "target_path": target_path,
            "kind": segment.kind,
            "style": segment.style,
            "comment": segment.comment,
            "indent": segment.indent,
            "preceding": tuple(preceding),
            "following": tuple(following),
            "anchor": anchor,
        }
        if segment.kind is SegmentKind.ADDITION:
            fields["body"] = segment.body
        else:
            fields.update(stock=segment.stock, blank_stock=segment.blank_stock)
            replacement = segment.replacement
            if replacement is not None:
                fields.update(
                    body=replacement.body,
                    replacement_style=replacement.style,
                    replacement_comment=replacement.comment,
                    replacement_indent=replacement.indent,
                )
        records.append(PatchRecord(**fields))
    return records


class PatchGenerator:
    """Write path: live file text in, new patch version (or nothing) out."""

    def __init__(
        self,
        store: PatchStore,
        tag: str | GuardSyntax,
        *,
        patch_context: int = DEFAULT_PATCH_CONTEXT,
    ) -> None:
        self.store = store
        self.parser = GuardParser(tag)
        self.patch_context = patch_context

    def generate(self, text: str, target_path: str) -> GenerationResult:
        key = normalise_target_path(target_path)
        buffer = TextBuffer.from_text(text)
        segments = self.parser.parse(buffer.lines)
        if not segments:
            LOGGER.debug("No guarded segments in %s", key)
            return GenerationResult(target_path=key, records=())

        records = build_records(buffer.lines, segments, key, patch_context=self.patch_context)
        existing = self.store.load(key)
        identical = existing.find_identical(records)
        if identical is not None:
            LOGGER.debug("%s already matches stored version %d", key, identical.order)
            return GenerationResult(target_path=key, records=identical.records)

        version = self.store.append(key, records)
        LOGGER.info("Generated version %d for %s (%d segment(s))", version.order, key, len(records))
        return GenerationResult(target_path=key, records=version.records, version=version)


__all__ = ["DEFAULT_PATCH_CONTEXT", "GenerationResult", "PatchGenerator", "build_records"]
