"""Activities that run the extraction pipeline and persist its outcome."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from temporalio import activity

from ..config import PipelineConfig
from ..extraction.errors import InvalidDocumentsError
from ..extraction.models import ExtractionOutcome
from ..extraction.pipeline import run_extraction, validate_documents
from ..ingestion.models import DocumentMeta
from ..ingestion.storage import store_outcome

logger = logging.getLogger(__name__)


@activity.defn
async def extract_menu_activity(
    documents: List[Dict[str, Any]],
    config_payload: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Run the three extraction phases for ``documents`` and return the outcome payload."""

    config = PipelineConfig.from_activity_payload(config_payload)
    try:
        metas = [DocumentMeta(**document) for document in documents]
        validate_documents(metas)
        outcome = await run_extraction(metas, config)
    except InvalidDocumentsError as exc:
        logger.warning("Rejected extraction request: %s", exc)
        outcome = ExtractionOutcome(success=False, error=str(exc), error_type=exc.error_type)
    return outcome.model_dump(mode="json")


@activity.defn
async def store_outcome_activity(
    outcome_payload: Dict[str, Any],
    output_dir: str = "extractions",
    name: str = "extraction",
) -> Dict[str, Any]:
    """Persist an outcome payload to disk."""

    outcome = ExtractionOutcome.model_validate(outcome_payload)
    paths = store_outcome(outcome, Path(output_dir), name)
    return {key: str(path) for key, path in paths.items()}


__all__ = ["extract_menu_activity", "store_outcome_activity"]
