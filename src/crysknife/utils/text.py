"""Line-oriented text helpers that keep round trips byte-exact."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable, Pattern, Sequence

_COMMENTED_LINE: Pattern[str] = re.compile(r"^(?P<indent>\s*)// ?(?P<rest>.*)$")
_INDENT: Pattern[str] = re.compile(r"^\s*")
_LINE_BREAK: Pattern[str] = re.compile(r"\r?\n")


@dataclass(slots=True)
class TextBuffer:
    """File content split into lines plus the terminator each line ended with.

    ``endings`` runs parallel to ``lines``; only the last entry may be empty.
    ``newline`` is the file's prevailing style, used for lines with no origin.
    """

    lines: list[str] = field(default_factory=list)
    endings: list[str] = field(default_factory=list)
    newline: str = "\n"

    @classmethod
    def from_text(cls, text: str) -> "TextBuffer":
        lines: list[str] = []
        endings: list[str] = []
        position = 0
        for match in _LINE_BREAK.finditer(text):
            lines.append(text[position:match.start()])
            endings.append(match.group(0))
            position = match.end()
        if position < len(text):
            lines.append(text[position:])
            endings.append("")
        newline = max(("\n", "\r\n"), key=endings.count)
        return cls(lines=lines, endings=endings, newline=newline)

    @property
    def trailing_newline(self) -> bool:
        return not self.endings or self.endings[-1] != ""

    def render(self) -> str:
        """Join lines back into text, each with its own terminator."""
        return "".join(line + ending for line, ending in zip(self.lines, self.endings))

    def with_lines(self, lines: Iterable[str], sources: Sequence[int | None] | None = None) -> "TextBuffer":
        """Build a buffer of ``lines`` in this buffer's format.

        ``sources`` maps every new line to the index of the line it came from
        here, whose terminator it keeps; ``None`` lines get :attr:`newline`.
        """

        lines = list(lines)
        if sources is None:
            sources = [None] * len(lines)
        if len(sources) != len(lines):
            raise ValueError(f"Expected {len(lines)} line source(s), got {len(sources)}")
        endings = [self.newline if source is None else self.endings[source] or self.newline for source in sources]
        if endings and not self.trailing_newline:
            endings[-1] = ""
        return TextBuffer(lines=lines, endings=endings, newline=self.newline)


def leading_indent(line: str) -> str:
    match = _INDENT.match(line)
    return match.group(0) if match else ""


def comment_out(line: str) -> str:
    """Turn a stock line into its guarded, commented form.

    The transformation is the exact inverse of :func:`uncomment`.
    """

    indent = leading_indent(line)
    rest = line[len(indent):]
    if not rest:
        return f"{indent}//"
    return f"{indent}// {rest}"


def uncomment(line: str) -> str | None:
    """Return the stock form of a commented line, or ``None`` if it is code."""

    match = _COMMENTED_LINE.match(line)
    if match is None:
        return None
    return match.group("indent") + match.group("rest")


__all__ = ["TextBuffer", "comment_out", "leading_indent", "uncomment"]
