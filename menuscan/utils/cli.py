"""CLI helper utilities shared across the menuscan commands."""

from __future__ import annotations

import argparse
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import unquote, urlparse

from rich import box
from rich.console import Console, Group, RenderableType
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..config import (
    DEFAULT_OUTPUT_DIR,
    DEFAULT_TEMPORAL_ADDRESS,
    DEFAULT_TEMPORAL_NAMESPACE,
    DEFAULT_TEMPORAL_TASK_QUEUE,
)
from ..extraction.ledger import PHASE_NAMES, format_cost_report
from ..extraction.models import ExtractionOutcome, FinalMenuItem
from ..ingestion.fetch import document_meta_for_path
from ..ingestion.models import DocumentMeta

_CONSOLE: Optional[Console] = None

MAX_TABLE_ITEMS = 200


@dataclass(frozen=True)
class CLITheme:
    """Palette used by the Rich renderers."""

    header_fg: str = "#e6edf3"
    response_fg: str = "#f9fafb"
    muted: str = "#9ca3af"
    success: str = "#22c55e"
    warning: str = "#facc15"
    error: str = "#f87171"
    accent: str = "#38bdf8"
    highlight: str = "#a855f7"


DEFAULT_THEME = CLITheme()


def get_console() -> Console:
    """Return a singleton Rich Console configured for the CLI."""

    global _CONSOLE

    if _CONSOLE is None:
        _CONSOLE = Console(
            log_time=False,
            log_path=False,
            highlight=False,
            soft_wrap=True,
        )

    return _CONSOLE


@dataclass
class ResponseView:
    """Renderable details for an extraction outcome."""

    status: str
    title: str
    body: RenderableType
    metadata: Dict[str, Any] = field(default_factory=dict)


def _coerce_outcome(outcome: Union[ExtractionOutcome, Dict[str, Any]]) -> ExtractionOutcome:
    if isinstance(outcome, ExtractionOutcome):
        return outcome
    return ExtractionOutcome.model_validate(outcome)


def _format_sizes(item: FinalMenuItem) -> str:
    parts = []
    for size in item.sizes:
        label = f"{size.size} {size.price}" if size.price is not None else size.size
        parts.append(f"{label}*" if size.is_default and len(item.sizes) > 1 else label)
    return ", ".join(parts)


def _items_table(items: List[FinalMenuItem], theme: CLITheme) -> Table:
    table = Table(box=box.SIMPLE_HEAVY, expand=True, header_style=f"bold {theme.accent}")
    table.add_column("Section", style=theme.muted, no_wrap=True)
    table.add_column("Item", style=f"bold {theme.response_fg}")
    table.add_column("Category", style=theme.highlight)
    table.add_column("Sizes", style=theme.success)
    table.add_column("Modifiers", style=theme.muted)
    for item in items[:MAX_TABLE_ITEMS]:
        modifiers = ", ".join(f"{group.name} ({len(group.options)})" for group in item.modifier_groups)
        table.add_row(item.section, item.name, item.category, _format_sizes(item), modifiers)
    if len(items) > MAX_TABLE_ITEMS:
        table.caption = f"{len(items) - MAX_TABLE_ITEMS} more item(s) not shown"
    return table


def _costs_table(outcome: ExtractionOutcome, theme: CLITheme) -> Table:
    table = Table(box=box.SIMPLE, header_style=f"bold {theme.accent}")
    table.add_column("Phase")
    table.add_column("Calls", justify="right")
    table.add_column("Input tokens", justify="right")
    table.add_column("Output tokens", justify="right")
    table.add_column("Cost (USD)", justify="right", style=theme.success)
    costs = outcome.costs
    for number, phase in ((1, costs.phase1), (2, costs.phase2), (3, costs.phase3)):
        table.add_row(
            f"{number}. {PHASE_NAMES[number]}",
            str(phase.calls),
            f"{phase.input_tokens:,}",
            f"{phase.output_tokens:,}",
            f"${phase.cost:.6f}",
        )
    table.add_row(
        Text("Total", style="bold"),
        str(costs.total_calls),
        f"{costs.total_input_tokens:,}",
        f"{costs.total_output_tokens:,}",
        Text(f"${costs.total:.6f}", style="bold"),
    )
    return table


def build_outcome_view(
    outcome: Union[ExtractionOutcome, Dict[str, Any]],
    theme: CLITheme = DEFAULT_THEME,
) -> ResponseView:
    """Create a ResponseView for a finished (or failed) extraction."""

    outcome = _coerce_outcome(outcome)
    parts: List[RenderableType] = []
    metadata: Dict[str, Any] = {
        "processing_time_ms": outcome.processing_time_ms,
        "total_cost": outcome.costs.total,
    }

    if outcome.success:
        items = outcome.items or []
        metadata["items"] = len(items)
        if items:
            parts.append(_items_table(items, theme))
        else:
            parts.append(Text("No menu items were extracted.", style=theme.warning))
        status, title = "success", f"Extracted {len(items)} menu item(s)"
    else:
        phase = outcome.failed_phase
        phase_label = PHASE_NAMES.get(phase, "unknown") if phase is not None else "input"
        message = f"{outcome.error_type or 'error'}: {outcome.error}"
        parts.append(Text(message, style=f"bold {theme.error}"))
        metadata.update({"error_type": outcome.error_type, "failed_phase": phase})
        status, title = "error", f"Extraction failed during {phase_label}"

    parts.append(_costs_table(outcome, theme))
    if outcome.warnings:
        warnings = Text("\n".join(f"- {warning}" for warning in outcome.warnings), style=theme.warning)
        parts.append(Panel(warnings, title="Warnings", border_style=theme.warning))

    return ResponseView(status=status, title=title, body=Group(*parts), metadata=metadata)


def render_outcome(
    outcome: Union[ExtractionOutcome, Dict[str, Any]],
    *,
    console: Optional[Console] = None,
    theme: CLITheme = DEFAULT_THEME,
) -> None:
    console = console or get_console()
    view = build_outcome_view(outcome, theme)
    border = theme.success if view.status == "success" else theme.error
    console.print(Panel(view.body, title=view.title, border_style=border))


def emit_plain_result(outcome: Union[ExtractionOutcome, Dict[str, Any]]) -> None:
    """Plain-text rendering for non-interactive output."""

    outcome = _coerce_outcome(outcome)
    if outcome.success:
        items = outcome.items or []
        print(f"Extracted {len(items)} menu item(s).")
        for item in items:
            print(f"- [{item.section}] {item.name} ({item.category}): {_format_sizes(item)}")
    else:
        print(f"[error] {outcome.error_type}: {outcome.error}")
    print()
    print(format_cost_report(outcome.costs, failed_phase=None if outcome.success else outcome.failed_phase))
    for warning in outcome.warnings:
        print(f"[warn] {warning}")


def print_run_banner(
    *,
    console: Optional[Console],
    use_rich: bool,
    workflow_id: str,
    workflow_link: Optional[str],
) -> None:
    if use_rich and console is not None:
        details = Text(f"Workflow ID: {workflow_id}", style="bold white")
        if workflow_link:
            details.append(f"\nTrack progress: {workflow_link}", style="bold cyan")
        console.print(Panel(details, border_style="cyan", title="Menu extraction"))
        return

    print(f"Workflow ID     : {workflow_id}")
    if workflow_link:
        print(f"Track progress  : {workflow_link}")


def _is_url(source: str) -> bool:
    return urlparse(source).scheme in {"http", "https"}


def source_to_document(source: str, media_type: str = "") -> DocumentMeta:
    """Describe a local path or an http(s) URL as a :class:`DocumentMeta`."""

    if _is_url(source):
        parsed = urlparse(source)
        name = Path(unquote(parsed.path)).name or parsed.netloc
        digest = hashlib.sha1(source.encode("utf-8")).hexdigest()[:12]
        return DocumentMeta(id=f"{Path(name).stem or 'document'}-{digest}", name=name, media_type=media_type, url=source)
    return document_meta_for_path(Path(source), media_type=media_type)


def sources_to_documents(sources: Iterable[str], media_type: str = "") -> List[DocumentMeta]:
    return [source_to_document(source, media_type) for source in sources]


def build_main_cli_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the extraction command."""

    parser = argparse.ArgumentParser(description="Extract structured menu items from menu documents")
    parser.add_argument("sources", nargs="+", help="Menu files (PDF, image, spreadsheet) or http(s) URLs")
    parser.add_argument(
        "--local",
        action="store_true",
        help="Run the pipeline in this process instead of through Temporal.",
    )
    parser.add_argument("--address", default=DEFAULT_TEMPORAL_ADDRESS)
    parser.add_argument("--namespace", default=DEFAULT_TEMPORAL_NAMESPACE)
    parser.add_argument("--task-queue", default=DEFAULT_TEMPORAL_TASK_QUEUE)
    parser.add_argument("--workflow-id-prefix", default=None)
    parser.add_argument("--output-dir", default=DEFAULT_OUTPUT_DIR)
    parser.add_argument("--name", default=None, help="Base file name for the stored outcome.")
    parser.add_argument(
        "--media-type",
        default="",
        help="Declared media type applied to every source; detected from content when omitted.",
    )
    parser.add_argument("--no-store", dest="store", action="store_false", help="Do not write the outcome to disk.")
    parser.add_argument("--json", dest="as_json", action="store_true", help="Print the outcome as JSON.")
    parser.add_argument("--plain", action="store_true", help="Disable Rich rendering.")
    parser.add_argument("--log-level", default="WARNING")
    return parser


def outcome_json(outcome: Union[ExtractionOutcome, Dict[str, Any]]) -> str:
    return json.dumps(_coerce_outcome(outcome).model_dump(mode="json"), indent=2, ensure_ascii=False)


def temporal_ui_url(address: str, namespace: str) -> Optional[str]:
    """Return the Temporal UI base URL for a given address/namespace."""

    if not address:
        return None

    host = address
    if "://" in address:
        parsed = urlparse(address)
        host = parsed.hostname or ""
    else:
        host = address.split(":")[0]

    if not host:
        return None

    return f"http://{host}:8233/namespaces/{namespace}/workflows"


def workflow_history_url(base_url: str, workflow_id: str, run_id: Optional[str] = None) -> str:
    """Compose a Temporal history view URL for the workflow/run pair."""

    url = f"{base_url}/{workflow_id}"
    if run_id:
        url += f"/{run_id}/history"
    return url
