"""Temporal workflow that extracts a menu and stores the outcome."""

from __future__ import annotations

from typing import Any, Dict, Optional

from temporalio import workflow
from temporalio.exceptions import ApplicationError

EXTRACT_MENU_ACTIVITY = "extract_menu_activity"
STORE_OUTCOME_ACTIVITY = "store_outcome_activity"
DEFAULT_EXTRACTION_TIMEOUT_MINUTES = 30


@workflow.defn
class MenuExtractionWorkflow:
    """Workflow that runs one extraction job end to end."""

    @workflow.run
    async def run(self, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = payload or {}
        documents = payload.get("documents") or []
        config_payload = payload.get("config") or {}
        output_dir = payload.get("output_dir") or config_payload.get("output_dir", "extractions")
        name = payload.get("name") or "extraction"
        timeout_minutes = int(payload.get("timeout_minutes", DEFAULT_EXTRACTION_TIMEOUT_MINUTES))
        store = bool(payload.get("store", True))

        if not documents:
            raise ApplicationError("documents must be provided in payload", non_retryable=True)

        outcome = await workflow.execute_activity(
            EXTRACT_MENU_ACTIVITY,
            args=(documents, config_payload),
            schedule_to_close_timeout=workflow.timedelta(minutes=timeout_minutes),
        )

        paths: Dict[str, Any] = {}
        if store:
            paths = await workflow.execute_activity(
                STORE_OUTCOME_ACTIVITY,
                args=(outcome, output_dir, name),
                schedule_to_close_timeout=workflow.timedelta(minutes=2),
            )

        return {
            "outcome": outcome,
            "paths": paths,
        }


__all__ = ["MenuExtractionWorkflow"]
