from __future__ import annotations

import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

TAG = "MyPlugin"


@dataclass(slots=True)
class PluginLayout:
    """Fixture payload: a plugin directory next to a tiny engine tree."""

    plugin_root: Path
    engine_root: Path

    @property
    def patch_root(self) -> Path:
        return self.plugin_root / "SourcePatch"

    def write_engine_file(self, relative: str, text: str) -> Path:
        path = self.engine_root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as handle:
            handle.write(text)
        return path

    def read_engine_file(self, relative: str) -> str:
        with (self.engine_root / relative).open("r", encoding="utf-8", newline="") as handle:
            return handle.read()

    def write_config(self, text: str, *, name: str = "Crysknife.ini") -> Path:
        self.patch_root.mkdir(parents=True, exist_ok=True)
        path = self.patch_root / name
        path.write_text(textwrap.dedent(text).lstrip(), encoding="utf-8")
        return path


@pytest.fixture()
def plugin_layout(tmp_path: Path) -> PluginLayout:
    """Create ``MyPlugin/`` and ``Engine/`` side by side under ``tmp_path``."""

    plugin_root = tmp_path / TAG
    engine_root = tmp_path / "Engine"
    plugin_root.mkdir()
    engine_root.mkdir()
    return PluginLayout(plugin_root=plugin_root, engine_root=engine_root)
