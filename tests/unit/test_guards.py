from __future__ import annotations

import textwrap

import pytest

from crysknife.tools.guards import (
    GuardStyle,
    GuardSyntax,
    MalformedGuardError,
    SegmentKind,
    parse_segments,
    stock_sources,
    stock_view,
)
from crysknife.utils.text import TextBuffer

TAG = "MyPlugin"


def _lines(text: str) -> list[str]:
    return TextBuffer.from_text(textwrap.dedent(text).lstrip("\n")).lines


def test_block_addition_is_parsed_with_span_and_body() -> None:
    lines = _lines(
        """
        int A;
        // MyPlugin: Begin
        int Extra;
        // MyPlugin: End
        int B;
        """
    )

    segments = parse_segments(lines, TAG)

    assert len(segments) == 1
    segment = segments[0]
    assert segment.kind is SegmentKind.ADDITION
    assert segment.style is GuardStyle.BLOCK
    assert (segment.start, segment.end) == (1, 4)
    assert segment.body == ("int Extra;",)


def test_block_comment_and_indent_are_recorded() -> None:
    lines = _lines(
        """
        {
            // MyPlugin Shader cache: Begin
            Cache.Flush();
            // MyPlugin: End
        }
        """
    )

    segment = parse_segments(lines, TAG)[0]

    assert segment.comment == " Shader cache"
    assert segment.indent == "    "


def test_deletion_followed_by_addition_becomes_one_replacement() -> None:
    lines = _lines(
        """
        void F()
        {
            // MyPlugin-: Begin
            // int a = 1;
            // int b = 2;
            // int c = 3;
            // MyPlugin: End
            // MyPlugin: Begin
            int a = 10;
            int b = 20;
            // MyPlugin: End
        }
        """
    )

    segments = parse_segments(lines, TAG)

    assert len(segments) == 1
    deletion = segments[0]
    assert deletion.kind is SegmentKind.DELETION
    assert deletion.stock == ("    int a = 1;", "    int b = 2;", "    int c = 3;")
    assert deletion.replacement is not None
    assert deletion.inserted == ("    int a = 10;", "    int b = 20;")
    assert (deletion.start, deletion.end) == (2, 11)


def test_single_line_and_next_line_guards() -> None:
    lines = _lines(
        """
        int x = 0; // MyPlugin
        // MyPlugin-
        // int y = 1;
        float z; // MyPlugin- keep
        """
    )

    with pytest.raises(MalformedGuardError) as excinfo:
        parse_segments(lines, TAG)
    # The trailing deletion guard sits on a line that is not commented out.
    assert excinfo.value.line == 4

    segments = parse_segments(lines[:3], TAG)
    assert [segment.style for segment in segments] == [GuardStyle.SINGLE_LINE, GuardStyle.NEXT_LINE]
    assert segments[0].body == ("int x = 0;",)
    assert segments[1].kind is SegmentKind.DELETION
    assert segments[1].stock == ("int y = 1;",)


def test_tag_must_end_at_identifier_boundary() -> None:
    lines = _lines(
        """
        // MyPluginExtra: Begin
        int x; // MyPlugin_Other
        // MyPluginExtra: End
        """
    )

    assert parse_segments(lines, TAG) == []


def test_end_accepts_optional_dash() -> None:
    lines = _lines(
        """
        // MyPlugin-: Begin
        // int a;
        // MyPlugin-: End
        """
    )

    segments = parse_segments(lines, TAG)

    assert segments[0].stock == ("int a;",)


@pytest.mark.parametrize(
    ("text", "line", "reason"),
    [
        ("// MyPlugin: Begin\nint a;\n", 1, "Begin without"),
        ("int a;\n// MyPlugin: End\n", 2, "End without"),
        ("// MyPlugin: Begin\n// MyPlugin: Begin\n// MyPlugin: End\n", 2, "nested Begin"),
        ("// MyPlugin-: Begin\n// int a;\nint b;\n// MyPlugin: End\n", 3, "code line"),
        ("int a;\n// MyPlugin\n", 2, "end of file"),
        ("// MyPlugin\n\nint a;\n", 1, "exactly one code line"),
    ],
)
def test_malformed_guards_report_line_numbers(text: str, line: int, reason: str) -> None:
    with pytest.raises(MalformedGuardError) as excinfo:
        parse_segments(text, TAG)

    assert excinfo.value.line == line
    assert reason in excinfo.value.reason
    assert excinfo.value.details["line"] == line


def test_stock_view_drops_additions_and_restores_deletions() -> None:
    lines = _lines(
        """
        a
        // MyPlugin: Begin
        added
        // MyPlugin: End
        b
        // MyPlugin-: Begin
        // c
        // MyPlugin: End
        d
        """
    )

    segments = parse_segments(lines, TAG)
    stock, anchors = stock_view(lines, segments)

    assert stock == ["a", "b", "c", "d"]
    assert anchors == [1, 2]
    assert stock_sources(len(lines), segments) == [0, 4, 6, 8]


def test_blank_lines_in_a_deletion_block_are_marked() -> None:
    lines = ["// MyPlugin-: Begin", "// a();", "", "  //", "// MyPlugin: End"]

    segment = parse_segments(lines, TAG)[0]

    assert segment.stock == ("a();", "", "  ")
    assert segment.blank_stock == (1,)


def test_syntax_formatters_round_trip_through_parser() -> None:
    syntax = GuardSyntax(TAG)
    lines = [
        syntax.format_begin("  ", " note", deletion=True),
        "  // old();",
        syntax.format_end("  "),
        syntax.format_trailing("  added();", ""),
    ]

    segments = parse_segments(lines, syntax)

    assert segments[0].kind is SegmentKind.DELETION
    assert segments[0].comment == " note"
    assert segments[0].replacement is not None
    assert segments[0].replacement.style is GuardStyle.SINGLE_LINE
    assert segments[0].inserted == ("  added();",)
