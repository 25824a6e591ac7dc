from __future__ import annotations

import pytest

from crysknife.utils.text import TextBuffer, comment_out, leading_indent, uncomment


@pytest.mark.parametrize(
    "text",
    [
        "alpha\nbeta\n",
        "alpha\r\nbeta\r\n",
        "alpha\nbeta",
        "",
        "\n",
        "single",
        "int a;\r\nint b;\nint c;\n",
        "a\nb\r\nc",
    ],
)
def test_text_buffer_render_preserves_bytes(text: str) -> None:
    assert TextBuffer.from_text(text).render() == text


def test_text_buffer_detects_crlf_and_trailing_newline() -> None:
    buffer = TextBuffer.from_text("a\r\nb")

    assert buffer.lines == ["a", "b"]
    assert buffer.newline == "\r\n"
    assert buffer.trailing_newline is False
    assert buffer.with_lines(["a", "x", "b"]).render() == "a\r\nx\r\nb"


def test_text_buffer_keeps_each_line_terminator() -> None:
    buffer = TextBuffer.from_text("int a;\r\nint b;\nint c;\n")

    assert buffer.endings == ["\r\n", "\n", "\n"]
    assert buffer.newline == "\n"
    moved = buffer.with_lines(["int a;", "added();", "int b;", "int c;"], [0, None, 1, 2])
    assert moved.render() == "int a;\r\nadded();\nint b;\nint c;\n"


def test_with_lines_keeps_missing_final_newline() -> None:
    buffer = TextBuffer.from_text("a\r\nb")

    assert buffer.with_lines(["b", "a"], [1, 0]).render() == "b\r\na"
    with pytest.raises(ValueError):
        buffer.with_lines(["a"], [0, 1])


def test_comment_out_keeps_indentation() -> None:
    assert comment_out("    int a = 1;") == "    // int a = 1;"
    assert comment_out("") == "//"
    assert comment_out("\t") == "\t//"
    assert leading_indent("\t  x") == "\t  "


@pytest.mark.parametrize("line", ["int a;", "    return;", "", "  ", "// already a comment", "\tx // y"])
def test_uncomment_inverts_comment_out(line: str) -> None:
    assert uncomment(comment_out(line)) == line


def test_uncomment_rejects_code() -> None:
    assert uncomment("int a;") is None
    assert uncomment("    //x") == "    x"
