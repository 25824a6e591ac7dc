"""Durable storage for patch versions.

Artifacts mirror the target tree: the versions of ``Engine/Foo.cpp`` live
next to each other as ``Engine/Foo.cpp.0001.patch.json``,
``Engine/Foo.cpp.0002.patch.json`` and so on, newest last.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path, PurePosixPath
from typing import Iterator, List, Sequence

from pydantic import ValidationError

from ..errors import CrysknifeError
from ..tools.sandbox import Sandbox
from .schema import PatchRecord, PatchVersion, PatchVersionSet, utc_now

LOGGER = logging.getLogger(__name__)
ARTIFACT_SUFFIX = ".patch.json"
_ARTIFACT_PATTERN = re.compile(r"^(?P<name>.+)\.(?P<order>\d+)\.patch\.json$")


class PatchStoreError(CrysknifeError):
    """Raised when a stored artifact cannot be read back."""


def normalise_target_path(path: str | Path) -> str:
    """Convert ``path`` to the posix, root-relative form used as a store key."""
    raw = path.as_posix() if isinstance(path, Path) else str(path).replace("\\", "/")
    pure = PurePosixPath(raw.strip())
    if pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"Target path must be relative to the engine root: {path}")
    normalised = pure.as_posix()
    if normalised in {"", "."}:
        raise ValueError("Target path must not be empty")
    return normalised


class PatchStore:
    """Filesystem-backed persistence of :class:`PatchVersionSet` objects."""

    def __init__(self, root: Path | str, *, sandbox: Sandbox | None = None) -> None:
        self.root = Path(root)
        self.sandbox = sandbox or Sandbox()

    def artifact_path(self, target_path: str, order: int) -> Path:
        key = normalise_target_path(target_path)
        return self.root / f"{key}.{order:04d}{ARTIFACT_SUFFIX}"

    def _artifacts(self) -> Iterator[tuple[str, int, Path]]:
        seen: set[Path] = set()
        for base in self.sandbox.search_roots(self.root):
            if not base.is_dir():
                continue
            for candidate in sorted(base.rglob(f"*{ARTIFACT_SUFFIX}")):
                match = _ARTIFACT_PATTERN.match(candidate.name)
                if match is None:
                    continue
                relative_dir = candidate.parent.relative_to(base)
                logical = self.root / relative_dir / candidate.name
                if logical in seen:
                    continue
                seen.add(logical)
                key = (relative_dir / match.group("name")).as_posix()
                yield key, int(match.group("order")), logical

    def paths(self) -> List[str]:
        """Return every target path with at least one stored version, sorted."""
        return sorted({key for key, _, _ in self._artifacts()})

    def load(self, target_path: str) -> PatchVersionSet:
        key = normalise_target_path(target_path)
        directory = (self.root / key).parent
        prefix = PurePosixPath(key).name + "."
        versions: list[PatchVersion] = []
        seen: set[str] = set()
        for base in self.sandbox.search_roots(directory):
            if not base.is_dir():
                continue
            for candidate in sorted(base.glob(f"{_glob_escape(prefix)}*{ARTIFACT_SUFFIX}")):
                match = _ARTIFACT_PATTERN.match(candidate.name)
                if match is None or match.group("name") != PurePosixPath(key).name:
                    continue
                if candidate.name in seen:
                    continue
                seen.add(candidate.name)
                versions.append(self._read_version(candidate))
        return PatchVersionSet.build(key, versions)

    def append(self, target_path: str, records: Sequence[PatchRecord]) -> PatchVersion:
        """Persist ``records`` as the newest version for ``target_path``."""
        key = normalise_target_path(target_path)
        current = self.load(key)
        order = current.next_order()
        stamped = tuple(record.model_copy(update={"order": order, "target_path": key}) for record in records)
        version = PatchVersion(order=order, created_at=utc_now(), records=stamped)
        destination = self.artifact_path(key, order)
        self.sandbox.write_text(destination, version.model_dump_json(indent=2) + "\n")
        LOGGER.debug("Stored version %d for %s at %s", order, key, destination)
        return version

    @staticmethod
    def _read_version(path: Path) -> PatchVersion:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
            return PatchVersion.model_validate(payload)
        except (OSError, ValueError, ValidationError) as error:
            raise PatchStoreError(
                f"Unable to read patch artifact {path}: {error}",
                details={"path": path.as_posix()},
            ) from error


def _glob_escape(value: str) -> str:
    return re.sub(r"([*?\[])", r"[\1]", value)


__all__ = ["ARTIFACT_SUFFIX", "PatchStore", "PatchStoreError", "normalise_target_path"]
