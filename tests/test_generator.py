from __future__ import annotations

import textwrap
from pathlib import Path

from crysknife.patches.store import PatchStore
from crysknife.tools.generator import PatchGenerator, build_records
from crysknife.tools.guards import SegmentKind, parse_segments
from crysknife.utils.text import TextBuffer

TAG = "MyPlugin"

PATCHED = textwrap.dedent(
    """
    #include "Core.h"

    void Tick()
    {
        Update();
        // MyPlugin: Begin
        Plugin::Tick();
        // MyPlugin: End
        Render();
    }
    """
).lstrip()


def test_generate_stores_first_version(tmp_path: Path) -> None:
    store = PatchStore(tmp_path)
    generator = PatchGenerator(store, TAG)

    result = generator.generate(PATCHED, "Source/Tick.cpp")

    assert result.changed
    assert result.version is not None and result.version.order == 1
    record = result.records[0]
    assert record.kind is SegmentKind.ADDITION
    assert record.body == ("    Plugin::Tick();",)
    assert record.preceding == ('#include "Core.h"', "", "void Tick()", "{", "    Update();")
    assert record.following == ("    Render();", "}")
    assert record.anchor == 5


def test_generate_is_a_no_op_when_nothing_changed(tmp_path: Path) -> None:
    store = PatchStore(tmp_path)
    generator = PatchGenerator(store, TAG)
    generator.generate(PATCHED, "Source/Tick.cpp")

    again = generator.generate(PATCHED, "Source/Tick.cpp")

    assert not again.changed
    assert len(store.load("Source/Tick.cpp").versions) == 1


def test_changed_segment_appends_new_version(tmp_path: Path) -> None:
    store = PatchStore(tmp_path)
    generator = PatchGenerator(store, TAG)
    generator.generate(PATCHED, "Source/Tick.cpp")

    result = generator.generate(PATCHED.replace("Plugin::Tick();", "Plugin::Tick(Delta);"), "Source/Tick.cpp")

    assert result.version is not None and result.version.order == 2
    assert [version.order for version in store.load("Source/Tick.cpp").versions] == [1, 2]


def test_file_without_segments_produces_nothing(tmp_path: Path) -> None:
    store = PatchStore(tmp_path)

    result = PatchGenerator(store, TAG).generate("int a;\n", "Source/Plain.cpp")

    assert result.records == ()
    assert store.paths() == []


def test_context_is_clipped_by_patch_context_and_neighbours() -> None:
    lines = TextBuffer.from_text(
        textwrap.dedent(
            """
            a
            b
            // MyPlugin: Begin
            x
            // MyPlugin: End
            c
            y(); // MyPlugin
            d
            e
            """
        ).lstrip()
    ).lines
    segments = parse_segments(lines, TAG)

    records = build_records(lines, segments, "File.cpp", patch_context=2)

    assert records[0].preceding == ("a", "b")
    assert records[0].following == ("c",)
    assert records[1].preceding == ("c",)
    assert records[1].following == ("d", "e")

    narrow = build_records(lines, segments, "File.cpp", patch_context=1)
    assert narrow[0].preceding == ("b",)
    assert narrow[1].following == ("d",)


def test_deletion_record_carries_stock_and_replacement() -> None:
    lines = TextBuffer.from_text(
        "a\n// MyPlugin-: Begin\n// old();\n// MyPlugin: End\nnew(); // MyPlugin fix\nb\n"
    ).lines

    record = build_records(lines, parse_segments(lines, TAG), "File.cpp")[0]

    assert record.kind is SegmentKind.DELETION
    assert record.stock == ("old();",)
    assert record.body == ("new();",)
    assert record.replacement_comment == " fix"
    assert record.preceding == ("a",)
    assert record.following == ("b",)
