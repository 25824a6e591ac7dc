"""Exception hierarchy shared by the patching pipeline."""

from __future__ import annotations

from typing import Any, Mapping


class CrysknifeError(RuntimeError):
    """Base error carrying structured details for reporting."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


__all__ = ["CrysknifeError"]
