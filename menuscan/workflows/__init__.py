"""Workflow package exposing public Temporal workflows."""

from .extraction_workflow import MenuExtractionWorkflow

__all__ = [
    "MenuExtractionWorkflow",
]
