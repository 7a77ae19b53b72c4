"""Command-line interface for menu extraction."""

from __future__ import annotations

import asyncio
import logging
import sys
import uuid
from contextlib import nullcontext
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from temporalio.client import Client, WorkflowHandle

from .config import PipelineConfig
from .extraction.errors import InvalidDocumentsError
from .extraction.models import ExtractionOutcome, ExtractionStatus
from .extraction.pipeline import run_extraction, validate_documents
from .ingestion.models import DocumentMeta
from .ingestion.storage import store_outcome
from .utils.cli import (
    build_main_cli_parser,
    emit_plain_result,
    get_console,
    outcome_json,
    print_run_banner,
    render_outcome,
    sources_to_documents,
    temporal_ui_url,
    workflow_history_url,
)
from .workflows import MenuExtractionWorkflow

load_dotenv()

logger = logging.getLogger(__name__)

_STATUS_LABELS = {
    ExtractionStatus.PHASE1: "Phase 1: analyzing menu structure…",
    ExtractionStatus.PHASE2: "Phase 2: extracting menu items…",
    ExtractionStatus.PHASE3: "Phase 3: enriching sizes and modifiers…",
    ExtractionStatus.COMPLETE: "Extraction complete",
    ExtractionStatus.FAILED: "Extraction failed",
}


def _outcome_name(documents: List[DocumentMeta], explicit: Optional[str]) -> str:
    if explicit:
        return explicit
    if len(documents) == 1:
        return Path(documents[0].name).stem or "extraction"
    return f"{Path(documents[0].name).stem or 'menu'}-and-{len(documents) - 1}-more"


async def _run_local(
    cfg: PipelineConfig,
    documents: List[DocumentMeta],
    *,
    use_rich: bool,
) -> ExtractionOutcome:
    console = get_console()
    spinner = console.status("[cyan]Preparing documents…[/]", spinner="dots") if use_rich else nullcontext()
    with spinner as status:

        def on_status(value: ExtractionStatus) -> None:
            label = _STATUS_LABELS.get(value, value.value)
            if status is not None:
                status.update(f"[cyan]{label}[/]")
            else:
                print(f"[progress] {label}")

        return await run_extraction(documents, cfg, on_status=on_status)


async def _start_workflow(
    cfg: PipelineConfig,
    payload: Dict[str, Any],
) -> Tuple[WorkflowHandle, str, Optional[str]]:
    """Start the extraction workflow and return the handle, id and history link."""

    ui_url = temporal_ui_url(cfg.address, cfg.namespace)

    client = await Client.connect(cfg.address, namespace=cfg.namespace)
    wf_id = f"{cfg.workflow_id_prefix_value()}-{uuid.uuid4().hex}"

    handle = await client.start_workflow(
        MenuExtractionWorkflow.run,
        payload,
        id=wf_id,
        task_queue=cfg.task_queue,
    )

    workflow_link = workflow_history_url(ui_url, wf_id) if ui_url else None
    return handle, wf_id, workflow_link


async def _run_temporal(
    cfg: PipelineConfig,
    documents: List[DocumentMeta],
    *,
    name: str,
    store: bool,
    use_rich: bool,
) -> Tuple[ExtractionOutcome, Dict[str, Any]]:
    payload = {
        "documents": [document.model_dump() for document in documents],
        "config": cfg.to_activity_payload(),
        "output_dir": cfg.output_dir,
        "name": name,
        "store": store,
    }
    handle, wf_id, workflow_link = await _start_workflow(cfg, payload)
    console = get_console()
    print_run_banner(console=console, use_rich=use_rich, workflow_id=wf_id, workflow_link=workflow_link)

    waiting = console.status("[cyan]Waiting for workflow result…[/]", spinner="dots") if use_rich else nullcontext()
    with waiting:
        result = await handle.result()
    return ExtractionOutcome.model_validate(result["outcome"]), result.get("paths") or {}


async def _run(args: Any) -> int:
    cfg = PipelineConfig().copy(
        address=args.address,
        namespace=args.namespace,
        task_queue=args.task_queue,
        workflow_id_prefix=args.workflow_id_prefix,
        output_dir=args.output_dir,
    )
    documents = sources_to_documents(args.sources, args.media_type)
    name = _outcome_name(documents, args.name)

    console = get_console()
    use_rich = bool(not args.plain and not args.as_json and console.is_terminal)

    try:
        validate_documents(documents)
        if args.local:
            outcome = await _run_local(cfg, documents, use_rich=use_rich)
            paths: Dict[str, Any] = {}
            if args.store:
                paths = store_outcome(outcome, Path(cfg.output_dir), name)
        else:
            outcome, paths = await _run_temporal(cfg, documents, name=name, store=args.store, use_rich=use_rich)
    except InvalidDocumentsError as exc:
        print(f"[error] {exc}", file=sys.stderr)
        return 2

    if args.as_json:
        print(outcome_json(outcome))
    elif use_rich:
        render_outcome(outcome, console=console)
    else:
        emit_plain_result(outcome)

    for label, path in paths.items():
        logger.info("Stored %s at %s", label, path)
        if not args.as_json:
            print(f"{label.replace('_', ' ')}: {path}")

    return 0 if outcome.success else 1


def main() -> None:
    parser = build_main_cli_parser()
    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":  # pragma: no cover
    main()
