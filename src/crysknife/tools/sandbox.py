"""Output routing for live runs and dry runs.

Every write performed by the pipeline goes through :class:`Sandbox`. A live
sandbox writes in place; a dry-run sandbox mirrors each absolute destination
below its own root so no live file is mutated. Reads prefer the mirrored copy
when one exists, which keeps multi-step dry runs consistent.
"""

from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import List

__all__ = ["Sandbox", "read_source_text"]


def read_source_text(path: Path) -> str:
    """Read ``path`` as UTF-8 without newline translation."""
    with path.open("r", encoding="utf-8", newline="") as handle:
        return handle.read()


class Sandbox:
    """Resolve write destinations, optionally redirecting them to a scratch root."""

    def __init__(self, root: Path | str | None = None) -> None:
        self.root = Path(root).resolve() if root is not None else None
        self._lock = threading.Lock()
        self._written: list[Path] = []

    @property
    def dry_run(self) -> bool:
        return self.root is not None

    @property
    def written(self) -> List[Path]:
        with self._lock:
            return list(self._written)

    def resolve(self, path: Path | str) -> Path:
        """Return where a write to ``path`` actually lands."""
        candidate = Path(path)
        if self.root is None:
            return candidate
        absolute = candidate.resolve()
        parts = list(absolute.parts[1:])
        if absolute.drive:
            parts.insert(0, absolute.drive.replace(":", "").strip("\\/") or "drive")
        return self.root.joinpath(*parts)

    def search_roots(self, path: Path | str) -> List[Path]:
        """Locations to consult when reading ``path``, most recent first."""
        candidate = Path(path)
        if self.root is None:
            return [candidate]
        return [self.resolve(candidate), candidate]

    def exists(self, path: Path | str) -> bool:
        return any(location.exists() for location in self.search_roots(path))

    def read_text(self, path: Path | str) -> str:
        for location in self.search_roots(path):
            if location.is_file():
                return read_source_text(location)
        raise FileNotFoundError(f"File not found: {path}")

    def write_text(self, path: Path | str, content: str) -> Path:
        """Atomically write ``content`` to the resolved destination of ``path``."""
        destination = self.resolve(path)
        destination.parent.mkdir(parents=True, exist_ok=True)
        handle = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            newline="",
            dir=destination.parent,
            prefix=f".{destination.name}.",
            suffix=".tmp",
            delete=False,
        )
        try:
            with handle:
                handle.write(content)
            if destination.exists():
                os.chmod(handle.name, destination.stat().st_mode & 0o777)
            os.replace(handle.name, destination)
        except OSError:
            Path(handle.name).unlink(missing_ok=True)
            raise
        with self._lock:
            self._written.append(destination)
        return destination
