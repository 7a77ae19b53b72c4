"""Simple storage for extraction outcomes."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Dict

from ..extraction.ledger import format_cost_report
from ..extraction.models import ExtractionOutcome


def _safe_stem(name: str) -> str:
    stem = re.sub(r"[^A-Za-z0-9._-]+", "-", Path(name).stem).strip("-.")
    return stem or "extraction"


def render_report(outcome: ExtractionOutcome) -> str:
    """Human readable summary stored beside the JSON payload."""

    lines = []
    if outcome.success:
        lines.append(f"Status: success ({len(outcome.items or [])} items)")
    else:
        lines.append(f"Status: failed in phase {outcome.failed_phase} ({outcome.error_type})")
        lines.append(f"Error: {outcome.error}")
    lines.append(f"Processing time: {outcome.processing_time_ms} ms")
    lines.append("")
    lines.append(format_cost_report(outcome.costs, failed_phase=None if outcome.success else outcome.failed_phase))
    if outcome.warnings:
        lines.append("")
        lines.append("Warnings:")
        lines.extend(f"- {warning}" for warning in outcome.warnings)
    return "\n".join(lines) + "\n"


def store_outcome(
    outcome: ExtractionOutcome,
    output_dir: Path,
    name: str = "extraction",
) -> Dict[str, Path]:
    """Store the outcome as JSON plus a plain-text cost report."""

    output_dir.mkdir(parents=True, exist_ok=True)

    stem = _safe_stem(name)
    json_path = output_dir / f"{stem}.json"
    report_path = output_dir / f"{stem}.cost_report.txt"

    json_path.write_text(outcome.model_dump_json(indent=2), encoding="utf-8")
    report_path.write_text(render_report(outcome), encoding="utf-8")
    return {
        "outcome_path": json_path.resolve(),
        "report_path": report_path.resolve(),
    }


def load_outcome(json_path: Path) -> ExtractionOutcome:
    """Load an outcome written by :func:`store_outcome`."""

    payload = json.loads(json_path.read_text(encoding="utf-8"))
    return ExtractionOutcome.model_validate(payload)
