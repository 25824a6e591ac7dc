"""Run settings: defaults, optional YAML settings file, CLI overrides."""

from __future__ import annotations

import copy
import fnmatch
import math
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .tools.generator import DEFAULT_PATCH_CONTEXT
from .tools.matcher import DEFAULT_CONTENT_TOLERANCE, LINE_SIMILARITIES

DEFAULT_SETTINGS_NAME = "crysknife.yaml"
DEFAULT_PATCH_DIR = "SourcePatch"
DEFAULT_EXTENSIONS: Tuple[str, ...] = (".h", ".hpp", ".inl", ".c", ".cc", ".cpp", ".cs")

DEFAULT_SETTINGS_TEMPLATE: Dict[str, Any] = {
    "plugin": {
        "tag": "",
        "patch_dir": DEFAULT_PATCH_DIR,
    },
    "matching": {
        "patch_context": DEFAULT_PATCH_CONTEXT,
        "content_tolerance": DEFAULT_CONTENT_TOLERANCE,
        "line_tolerance": None,
        "line_similarity": "exact",
    },
    "scan": {
        "extensions": list(DEFAULT_EXTENSIONS),
        "include": [],
        "exclude": [],
    },
    "run": {
        "jobs": 0,
    },
    "defines": {},
}


class SettingsError(ValueError):
    """Raised for invalid settings values or unreadable settings files."""


@dataclass(slots=True, frozen=True)
class Settings:
    """Immutable per-invocation settings handed to every file job."""

    plugin_root: Path
    target_root: Path
    tag: str
    patch_dir: str = DEFAULT_PATCH_DIR
    patch_context: int = DEFAULT_PATCH_CONTEXT
    content_tolerance: float = DEFAULT_CONTENT_TOLERANCE
    line_tolerance: float = math.inf
    line_similarity: str = "exact"
    extensions: Tuple[str, ...] = DEFAULT_EXTENSIONS
    include: Tuple[str, ...] = ()
    exclude: Tuple[str, ...] = ()
    defines: Mapping[str, str] = field(default_factory=dict)
    jobs: int = 0
    dry_run: bool = False
    sandbox_root: Optional[Path] = None
    conflict_dir: Optional[Path] = None

    @property
    def patch_root(self) -> Path:
        return self.plugin_root / self.patch_dir

    def worker_count(self) -> int:
        if self.jobs > 0:
            return self.jobs
        return min(8, os.cpu_count() or 1)

    def selects(self, target_path: str) -> bool:
        """Apply ``include``/``exclude`` filters (globs or path prefixes)."""
        if self.include and not any(_filter_matches(target_path, entry) for entry in self.include):
            return False
        return not any(_filter_matches(target_path, entry) for entry in self.exclude)

    def scans(self, path: Path) -> bool:
        return path.suffix.lower() in self.extensions

    def validate(self) -> "Settings":
        if not self.tag.strip():
            raise SettingsError("A plugin tag is required")
        if self.patch_context < 0:
            raise SettingsError("patch_context must be non-negative")
        if not 0.0 <= self.content_tolerance <= 1.0:
            raise SettingsError("content_tolerance must be within [0, 1]")
        if self.line_tolerance < 0:
            raise SettingsError("line_tolerance must be non-negative")
        if self.line_similarity not in LINE_SIMILARITIES:
            raise SettingsError(f"Unknown line_similarity '{self.line_similarity}'")
        if self.jobs < 0:
            raise SettingsError("jobs must be non-negative")
        return self


def _filter_matches(target_path: str, entry: str) -> bool:
    pattern = entry.strip().replace("\\", "/").strip("/")
    if not pattern:
        return False
    if any(token in pattern for token in "*?["):
        return fnmatch.fnmatchcase(target_path, pattern)
    return target_path == pattern or target_path.startswith(pattern + "/")


def copy_settings_template() -> Dict[str, Any]:
    """Return a deep copy of the default settings template."""
    return copy.deepcopy(DEFAULT_SETTINGS_TEMPLATE)


def load_settings_file(path: Path) -> Dict[str, Any]:
    """Load a YAML settings file and return it as a dictionary."""
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as error:
        raise SettingsError(f"Unable to read settings {path}: {error}") from error
    except yaml.YAMLError as error:
        raise SettingsError(f"Failed to parse settings {path}: {error}") from error
    if not isinstance(data, dict):
        raise SettingsError(f"Settings in {path} must be a mapping at the top level")
    return data


def _merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def parse_defines(values: Iterable[str] | None) -> Dict[str, str]:
    """Parse ``NAME=VALUE`` pairs; a bare ``NAME`` means ``NAME=1``."""
    defines: Dict[str, str] = {}
    for raw in values or ():
        name, separator, value = raw.partition("=")
        name = name.strip()
        if not name:
            raise SettingsError(f"Invalid define '{raw}'")
        defines[name] = value.strip() if separator else "1"
    return defines


def _as_float(value: Any, label: str, *, allow_none: bool = False) -> float:
    if value is None and allow_none:
        return math.inf
    try:
        return float(value)
    except (TypeError, ValueError) as error:
        raise SettingsError(f"{label} must be a number, got {value!r}") from error


def _as_int(value: Any, label: str) -> int:
    if isinstance(value, bool):
        raise SettingsError(f"{label} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise SettingsError(f"{label} must be an integer, got {value!r}") from error


def _as_strings(value: Any, label: str) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, Iterable):
        return tuple(str(item) for item in value)
    raise SettingsError(f"{label} must be a list of strings")


def build_settings(
    plugin_root: Path,
    target_root: Path,
    *,
    settings_path: Optional[Path] = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Merge defaults, the settings file (if any) and CLI ``overrides``."""

    data = copy_settings_template()
    candidate = settings_path or plugin_root / DEFAULT_SETTINGS_NAME
    if settings_path is not None and not settings_path.exists():
        raise SettingsError(f"Settings file not found: {settings_path}")
    if candidate.exists():
        _merge(data, load_settings_file(candidate))
    _merge(data, {key: value for key, value in (overrides or {}).items() if value is not None})

    plugin_cfg = data.get("plugin") or {}
    matching_cfg = data.get("matching") or {}
    scan_cfg = data.get("scan") or {}
    run_cfg = data.get("run") or {}
    defines_cfg = data.get("defines") or {}
    if not isinstance(defines_cfg, Mapping):
        raise SettingsError("defines must be a mapping")

    tag = str(plugin_cfg.get("tag") or "").strip() or plugin_root.resolve().name
    extensions = tuple(
        entry if entry.startswith(".") else f".{entry}"
        for entry in (item.strip().lower() for item in _as_strings(scan_cfg.get("extensions"), "scan.extensions"))
        if entry
    )

    settings = Settings(
        plugin_root=plugin_root,
        target_root=target_root,
        tag=tag,
        patch_dir=str(plugin_cfg.get("patch_dir") or DEFAULT_PATCH_DIR),
        patch_context=_as_int(matching_cfg.get("patch_context"), "matching.patch_context"),
        content_tolerance=_as_float(matching_cfg.get("content_tolerance"), "matching.content_tolerance"),
        line_tolerance=_as_float(matching_cfg.get("line_tolerance"), "matching.line_tolerance", allow_none=True),
        line_similarity=str(matching_cfg.get("line_similarity") or "exact"),
        extensions=extensions,
        include=_as_strings(scan_cfg.get("include"), "scan.include"),
        exclude=_as_strings(scan_cfg.get("exclude"), "scan.exclude"),
        defines={str(key): str(value) for key, value in defines_cfg.items()},
        jobs=_as_int(run_cfg.get("jobs") or 0, "run.jobs"),
        dry_run=bool(run_cfg.get("dry_run", False)),
        sandbox_root=Path(run_cfg["sandbox_root"]) if run_cfg.get("sandbox_root") else None,
        conflict_dir=Path(run_cfg["conflict_dir"]) if run_cfg.get("conflict_dir") else None,
    )
    return settings.validate()


__all__ = [
    "DEFAULT_EXTENSIONS",
    "DEFAULT_PATCH_DIR",
    "DEFAULT_SETTINGS_NAME",
    "DEFAULT_SETTINGS_TEMPLATE",
    "Settings",
    "SettingsError",
    "build_settings",
    "copy_settings_template",
    "load_settings_file",
    "parse_defines",
]
