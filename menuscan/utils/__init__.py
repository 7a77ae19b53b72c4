"""Utility helpers for the menuscan CLI and supporting modules."""

from __future__ import annotations

from .cli import (
    build_outcome_view,
    emit_plain_result,
    sources_to_documents,
    temporal_ui_url,
    workflow_history_url,
)

__all__ = [
    "build_outcome_view",
    "emit_plain_result",
    "sources_to_documents",
    "temporal_ui_url",
    "workflow_history_url",
]
