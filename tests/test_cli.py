from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from crysknife.cli import app

from conftest import PluginLayout

PATCHED = "void Tick()\n{\n    Update();\n    MyPlugin::Tick(); // MyPlugin\n    Render();\n}\n"
STOCK = "void Tick()\n{\n    Update();\n    Render();\n}\n"


def _invoke(layout: PluginLayout, *args: str):
    runner = CliRunner()
    return runner.invoke(
        app,
        ["--plugin-root", str(layout.plugin_root), "--target-root", str(layout.engine_root), *args],
        catch_exceptions=False,
    )


def test_generate_clear_apply_from_cli(plugin_layout: PluginLayout) -> None:
    plugin_layout.write_engine_file("Source/Tick.cpp", PATCHED)

    generated = _invoke(plugin_layout, "generate")
    assert generated.exit_code == 0, generated.output
    assert "Generated Source/Tick.cpp (stored version 1)" in generated.output

    cleared = _invoke(plugin_layout, "clear")
    assert cleared.exit_code == 0, cleared.output
    assert "Cleared Source/Tick.cpp" in cleared.output
    assert plugin_layout.read_engine_file("Source/Tick.cpp") == STOCK

    applied = _invoke(plugin_layout, "apply")
    assert applied.exit_code == 0, applied.output
    assert "Applied Source/Tick.cpp (applied version 1)" in applied.output
    assert plugin_layout.read_engine_file("Source/Tick.cpp") == PATCHED


def test_up_to_date_run_prints_nothing(plugin_layout: PluginLayout) -> None:
    plugin_layout.write_engine_file("Source/Tick.cpp", PATCHED)
    _invoke(plugin_layout, "generate")

    again = _invoke(plugin_layout, "generate")
    applied = _invoke(plugin_layout, "apply")

    assert (again.exit_code, again.output) == (0, "")
    assert (applied.exit_code, applied.output) == (0, "")


def test_conflict_exits_non_zero_with_diagnostic(plugin_layout: PluginLayout, tmp_path: Path) -> None:
    plugin_layout.write_engine_file("Source/Tick.cpp", PATCHED)
    _invoke(plugin_layout, "generate")
    plugin_layout.write_engine_file("Source/Tick.cpp", "int main()\n{\n    return 0;\n}\n")
    conflict_dir = tmp_path / "conflicts"

    result = _invoke(plugin_layout, "--conflict-dir", str(conflict_dir), "apply")

    assert result.exit_code == 1
    assert "Conflict: Source/Tick.cpp" in result.output
    assert "1 file(s) failed." in result.output
    report = json.loads((conflict_dir / "Source-Tick.cpp.conflict.json").read_text(encoding="utf-8"))
    assert report["target_path"] == "Source/Tick.cpp"


def test_config_error_exits_with_code_two(plugin_layout: PluginLayout) -> None:
    plugin_layout.write_config("[Global]\nBogus=Always\n")

    result = _invoke(plugin_layout, "apply")

    assert result.exit_code == 2
    assert "Config error" in result.output
    assert "Crysknife.ini:2" in result.output


def test_defines_reach_rule_evaluation(plugin_layout: PluginLayout) -> None:
    plugin_layout.write_engine_file("Source/Tick.cpp", PATCHED)
    _invoke(plugin_layout, "generate")
    plugin_layout.write_config(
        """
        [Variables]
        SkipTick=0

        [Source]
        SkipIf=IsTruthy:${SkipTick}
        """
    )

    skipped = _invoke(plugin_layout, "-D", "SkipTick=1", "clear")
    assert skipped.exit_code == 0
    assert plugin_layout.read_engine_file("Source/Tick.cpp") == PATCHED

    cleared = _invoke(plugin_layout, "clear")
    assert cleared.exit_code == 0
    assert plugin_layout.read_engine_file("Source/Tick.cpp") == STOCK


def test_dry_run_reports_sandbox(plugin_layout: PluginLayout, tmp_path: Path) -> None:
    plugin_layout.write_engine_file("Source/Tick.cpp", PATCHED)
    sandbox = tmp_path / "dry"

    result = _invoke(plugin_layout, "--dry-run", "--sandbox-root", str(sandbox), "generate")

    assert result.exit_code == 0, result.output
    assert "Dry run: 1 file(s) written under" in result.output
    assert not plugin_layout.patch_root.exists()


def test_inspect_lists_versions(plugin_layout: PluginLayout) -> None:
    plugin_layout.write_engine_file("Source/Tick.cpp", PATCHED)
    _invoke(plugin_layout, "generate")
    plugin_layout.write_engine_file("Source/Tick.cpp", PATCHED.replace("Tick();", "Tick(1);"))
    _invoke(plugin_layout, "generate")

    result = CliRunner().invoke(app, ["--plugin-root", str(plugin_layout.plugin_root), "inspect"])

    assert result.exit_code == 0, result.output
    lines = result.output.splitlines()
    assert lines[0] == "Source/Tick.cpp"
    assert lines[1].startswith("  v1 ")
    assert lines[2].startswith("  v2 ")
    assert lines[2].endswith("1 segment(s)")


def test_actions_require_target_root(plugin_layout: PluginLayout) -> None:
    result = CliRunner().invoke(app, ["--plugin-root", str(plugin_layout.plugin_root), "apply"])

    assert result.exit_code == 2


def test_invalid_tolerance_is_a_usage_error(plugin_layout: PluginLayout) -> None:
    result = _invoke(plugin_layout, "--content-tolerance", "2", "apply")

    assert result.exit_code == 2
