import asyncio
from pathlib import Path
from typing import Any, Dict, List

import pytest
from menuscan.activities import extract_menu_activity, store_outcome_activity
from menuscan.config import ModelLimits, PipelineConfig
from menuscan.workflows import MenuExtractionWorkflow
from temporalio import activity

temporalio_testing = pytest.importorskip("temporalio.testing")
temporalio_worker = pytest.importorskip("temporalio.worker")
temporalio_client = pytest.importorskip("temporalio.client")

DOCUMENTS = [{"id": "menu", "name": "menu.pdf", "media_type": "application/pdf", "url": "https://cdn.example/menu.pdf"}]

extract_calls: List[Dict[str, Any]] = []
store_calls: List[Dict[str, Any]] = []


@activity.defn(name="extract_menu_activity")
async def stub_extract(documents: List[Dict[str, Any]], config_payload: Dict[str, Any]) -> Dict[str, Any]:
    extract_calls.append({"documents": documents, "config": config_payload})
    return {"success": True, "items": [], "warnings": ["stub"]}


@activity.defn(name="store_outcome_activity")
async def stub_store(outcome: Dict[str, Any], output_dir: str, name: str) -> Dict[str, str]:
    store_calls.append({"outcome": outcome, "output_dir": output_dir, "name": name})
    return {"outcome_path": f"{output_dir}/{name}.json", "report_path": f"{output_dir}/{name}.cost_report.txt"}


async def _execute(payload: Dict[str, Any], workflow_id: str) -> Dict[str, Any]:
    env = await temporalio_testing.WorkflowEnvironment.start_time_skipping()
    try:
        async with temporalio_worker.Worker(
            env.client,
            task_queue="test-extraction-workflow",
            workflows=[MenuExtractionWorkflow],
            activities=[stub_extract, stub_store],
        ):
            handle = await env.client.start_workflow(
                MenuExtractionWorkflow.run,
                payload,
                id=workflow_id,
                task_queue="test-extraction-workflow",
            )
            return await asyncio.wait_for(handle.result(), timeout=10)
    finally:
        await env.shutdown()


@pytest.mark.asyncio
async def test_workflow_extracts_then_stores() -> None:
    extract_calls.clear()
    store_calls.clear()

    result = await _execute(
        {"documents": DOCUMENTS, "config": {"output_dir": "out"}, "name": "Dinner-Menu"},
        "test-extraction-workflow-store",
    )

    assert result["outcome"]["success"] is True
    assert result["paths"]["outcome_path"] == "out/Dinner-Menu.json"
    assert extract_calls[0]["documents"] == DOCUMENTS
    assert store_calls[0]["name"] == "Dinner-Menu"
    assert store_calls[0]["outcome"]["warnings"] == ["stub"]


@pytest.mark.asyncio
async def test_workflow_can_skip_storage() -> None:
    store_calls.clear()

    result = await _execute({"documents": DOCUMENTS, "store": False}, "test-extraction-workflow-no-store")

    assert result["paths"] == {}
    assert store_calls == []


@pytest.mark.asyncio
async def test_workflow_requires_documents() -> None:
    with pytest.raises(temporalio_client.WorkflowFailureError):
        await _execute({"documents": []}, "test-extraction-workflow-empty")


@pytest.mark.asyncio
async def test_extract_activity_reports_invalid_documents() -> None:
    payload = await extract_menu_activity([{"id": "menu", "name": "menu.pdf", "media_type": "", "url": ""}])

    assert payload["success"] is False
    assert payload["error_type"] == "invalid_documents"
    assert payload["items"] is None


@pytest.mark.asyncio
async def test_store_activity_writes_files(tmp_path: Path) -> None:
    paths = await store_outcome_activity({"success": True, "items": []}, str(tmp_path), "lunch")

    assert Path(paths["outcome_path"]).name == "lunch.json"
    assert Path(paths["report_path"]).read_text(encoding="utf-8").startswith("Status: success (0 items)")


def test_config_survives_activity_payload() -> None:
    config = PipelineConfig(
        api_key="secret",
        enrichment_batch_size=10,
        model_limits={"pro": ModelLimits(requests_per_minute=5, tokens_per_minute=1000)},
    )

    payload = config.to_activity_payload()
    restored = PipelineConfig.from_activity_payload({**payload, "unknown": 1})

    assert "api_key" not in payload
    assert restored.enrichment_batch_size == 10
    assert restored.model_limits["pro"].requests_per_minute == 5
    assert restored.api_key is None


def test_config_canonicalizes_and_rejects_fallback_category() -> None:
    assert PipelineConfig(fallback_category="  glassware ").fallback_category == "Glassware"

    with pytest.raises(ValueError):
        PipelineConfig(fallback_category="Misc")
    with pytest.raises(ValueError):
        PipelineConfig.from_activity_payload({"fallback_category": "Misc"})


@pytest.mark.asyncio
async def test_registered_worker_stores_rejected_request(tmp_path: Path) -> None:
    from menuscan import temporal

    documents = [{"id": "menu", "name": "menu.doc", "media_type": "application/msword", "url": "https://x/menu.doc"}]
    env = await temporalio_testing.WorkflowEnvironment.start_time_skipping()
    try:
        async with temporal.build_worker(env.client, "test-extraction-worker"):
            result = await env.client.execute_workflow(
                MenuExtractionWorkflow.run,
                {"documents": documents, "output_dir": str(tmp_path), "name": "rejected"},
                id="test-extraction-worker-rejected",
                task_queue="test-extraction-worker",
            )
    finally:
        await env.shutdown()

    assert result["outcome"]["error_type"] == "invalid_documents"
    assert Path(result["paths"]["outcome_path"]) == (tmp_path / "rejected.json").resolve()
    assert (tmp_path / "rejected.cost_report.txt").exists()


def test_worker_parser_defaults() -> None:
    from menuscan import temporal

    args = temporal.build_parser().parse_args([])

    assert args.task_queue == "menuscan"
    assert args.log_level == "INFO"
