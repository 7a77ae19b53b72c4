"""Temporal activity package for the menuscan project."""

from .extract import extract_menu_activity, store_outcome_activity

__all__ = [
    "extract_menu_activity",
    "store_outcome_activity",
]
