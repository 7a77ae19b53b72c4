"""Temporal worker entry points, loaded on first access."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

_WORKER_EXPORTS = {"build_parser", "build_worker", "main", "run_worker"}

__all__ = sorted(_WORKER_EXPORTS)

if TYPE_CHECKING:
    from .worker import build_parser, build_worker, main, run_worker


def __getattr__(name: str) -> Any:
    # temporalio.worker is only imported when a worker is actually needed
    if name in _WORKER_EXPORTS:
        from . import worker

        return getattr(worker, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
