"""LangGraph orchestration of the three extraction phases."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypedDict

from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel, Field

from ..config import PipelineConfig
from ..ingestion.models import PreparedDocument
from .errors import MenuscanError
from .ledger import PHASE_NAMES, TelemetryLedger, TelemetrySink
from .models import ExtractionOutcome, ExtractionStatus, FinalMenuItem, MenuStructure, RawMenuItem
from .phases import PhaseContext, discover_structure, enrich_items, extract_items
from .rate_limiter import RateLimiterRegistry
from .service import GenerationService
from .upload_cache import UploadCache

logger = logging.getLogger(__name__)

StatusListener = Callable[[ExtractionStatus], None]


class ExtractionRunState(BaseModel):
    """State shared across the phase nodes of one run."""

    documents: List[PreparedDocument] = Field(default_factory=list)
    status: ExtractionStatus = ExtractionStatus.IDLE
    structure: Optional[MenuStructure] = None
    raw_items: List[RawMenuItem] = Field(default_factory=list)
    items: List[FinalMenuItem] = Field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None
    failed_phase: Optional[int] = None

    def to_graph_state(self) -> "ExtractionGraphState":
        """Return a LangGraph compatible dictionary."""

        return {
            "documents": [doc.model_dump() for doc in self.documents],
            "status": self.status.value,
            "structure": self.structure.model_dump() if self.structure is not None else None,
            "raw_items": [item.model_dump() for item in self.raw_items],
            "items": [item.model_dump() for item in self.items],
            "error": self.error,
            "error_type": self.error_type,
            "failed_phase": self.failed_phase,
        }

    @classmethod
    def from_graph_state(cls, state: "ExtractionGraphState") -> "ExtractionRunState":
        """Instantiate from a LangGraph state payload."""

        structure = state.get("structure")
        return cls(
            documents=[PreparedDocument(**doc) for doc in state.get("documents", [])],
            status=ExtractionStatus(state.get("status", ExtractionStatus.IDLE.value)),
            structure=MenuStructure(**structure) if structure else None,
            raw_items=[RawMenuItem(**item) for item in state.get("raw_items", [])],
            items=[FinalMenuItem(**item) for item in state.get("items", [])],
            error=state.get("error"),
            error_type=state.get("error_type"),
            failed_phase=state.get("failed_phase"),
        )


class ExtractionGraphState(TypedDict, total=False):
    """TypedDict representation consumed by LangGraph."""

    documents: List[Dict[str, Any]]
    status: str
    structure: Optional[Dict[str, Any]]
    raw_items: List[Dict[str, Any]]
    items: List[Dict[str, Any]]
    error: Optional[str]
    error_type: Optional[str]
    failed_phase: Optional[int]


@dataclass
class NodeDependencies:
    """Collaborators shared across nodes."""

    context: PhaseContext
    set_status: Callable[[ExtractionStatus], None]


PhaseNode = Callable[[ExtractionGraphState], Awaitable[ExtractionGraphState]]


def _record_failure(
    deps: NodeDependencies,
    run_state: ExtractionRunState,
    phase: int,
    exc: BaseException,
) -> ExtractionGraphState:
    error_type = exc.error_type if isinstance(exc, MenuscanError) else "unexpected_error"
    logger.warning("Phase %s failed: %s", phase, exc)
    deps.context.ledger.error(phase, "PHASE_ERROR", str(exc), data={"error_type": error_type})
    deps.context.ledger.end_phase(phase, f"{PHASE_NAMES[phase]} failed", failed=True)
    run_state.error = str(exc)
    run_state.error_type = error_type
    run_state.failed_phase = phase
    return run_state.to_graph_state()


def build_structure_node(deps: NodeDependencies) -> PhaseNode:
    async def _node(state: ExtractionGraphState) -> ExtractionGraphState:
        run_state = ExtractionRunState.from_graph_state(state)
        deps.set_status(ExtractionStatus.PHASE1)
        run_state.status = ExtractionStatus.PHASE1
        deps.context.ledger.start_phase(1, f"Analyzing structure of {len(run_state.documents)} document(s)")
        try:
            structure = await discover_structure(deps.context, run_state.documents)
        except Exception as exc:
            return _record_failure(deps, run_state, 1, exc)
        run_state.structure = structure
        deps.context.ledger.end_phase(1, f"Found {len(structure.sections)} sections", len(structure.sections))
        return run_state.to_graph_state()

    return _node


def build_extraction_node(deps: NodeDependencies) -> PhaseNode:
    async def _node(state: ExtractionGraphState) -> ExtractionGraphState:
        run_state = ExtractionRunState.from_graph_state(state)
        assert run_state.structure is not None
        deps.set_status(ExtractionStatus.PHASE2)
        run_state.status = ExtractionStatus.PHASE2
        deps.context.ledger.start_phase(2, f"Extracting items from {len(run_state.structure.sections)} sections")
        try:
            raw_items = await extract_items(deps.context, run_state.structure, run_state.documents)
        except Exception as exc:
            return _record_failure(deps, run_state, 2, exc)
        run_state.raw_items = raw_items
        deps.context.ledger.end_phase(2, f"Extracted {len(raw_items)} items", len(raw_items))
        return run_state.to_graph_state()

    return _node


def build_enrichment_node(deps: NodeDependencies) -> PhaseNode:
    async def _node(state: ExtractionGraphState) -> ExtractionGraphState:
        run_state = ExtractionRunState.from_graph_state(state)
        deps.set_status(ExtractionStatus.PHASE3)
        run_state.status = ExtractionStatus.PHASE3
        deps.context.ledger.start_phase(3, f"Enriching {len(run_state.raw_items)} items")
        try:
            items = await enrich_items(deps.context, run_state.raw_items, run_state.documents)
        except Exception as exc:
            return _record_failure(deps, run_state, 3, exc)
        run_state.items = items
        deps.context.ledger.end_phase(3, f"Enriched {len(items)} items", len(items))
        return run_state.to_graph_state()

    return _node


def build_terminal_node(deps: NodeDependencies, status: ExtractionStatus) -> PhaseNode:
    async def _node(state: ExtractionGraphState) -> ExtractionGraphState:
        run_state = ExtractionRunState.from_graph_state(state)
        deps.set_status(status)
        run_state.status = status
        return run_state.to_graph_state()

    return _node


def _route_after(next_node: str) -> Callable[[ExtractionGraphState], str]:
    def _route(state: ExtractionGraphState) -> str:
        return "failed" if state.get("error") else next_node

    return _route


class PhaseOrchestrator:
    """Runs structure discovery, item extraction and enrichment over prepared documents.

    Every run ends in an :class:`ExtractionOutcome`; failures are reported in it with the
    cost accumulated up to the failing phase.
    """

    def __init__(
        self,
        service: GenerationService,
        limiters: RateLimiterRegistry,
        uploads: UploadCache,
        config: Optional[PipelineConfig] = None,
        *,
        sink: Optional[TelemetrySink] = None,
        clock: Callable[[], float] = time.time,
        on_status: Optional[StatusListener] = None,
    ) -> None:
        self._service = service
        self._limiters = limiters
        self._uploads = uploads
        self._config = config or PipelineConfig()
        self._sink = sink
        self._clock = clock
        self._on_status = on_status
        self.status = ExtractionStatus.IDLE

    def _set_status(self, status: ExtractionStatus) -> None:
        self.status = status
        if self._on_status is not None:
            self._on_status(status)

    def _build_graph(self, deps: NodeDependencies):
        graph_builder = StateGraph(ExtractionGraphState)
        graph_builder.add_node("structure", build_structure_node(deps))
        graph_builder.add_node("extraction", build_extraction_node(deps))
        graph_builder.add_node("enrichment", build_enrichment_node(deps))
        graph_builder.add_node("complete", build_terminal_node(deps, ExtractionStatus.COMPLETE))
        graph_builder.add_node("failed", build_terminal_node(deps, ExtractionStatus.FAILED))
        graph_builder.add_edge(START, "structure")
        graph_builder.add_conditional_edges(
            "structure",
            _route_after("extraction"),
            {"extraction": "extraction", "failed": "failed"},
        )
        graph_builder.add_conditional_edges(
            "extraction",
            _route_after("enrichment"),
            {"enrichment": "enrichment", "failed": "failed"},
        )
        graph_builder.add_conditional_edges(
            "enrichment",
            _route_after("complete"),
            {"complete": "complete", "failed": "failed"},
        )
        graph_builder.add_edge("complete", END)
        graph_builder.add_edge("failed", END)
        return graph_builder.compile()

    def new_ledger(self) -> TelemetryLedger:
        return TelemetryLedger(self._sink, clock=self._clock)

    async def run(
        self,
        documents: List[PreparedDocument],
        *,
        ledger: Optional[TelemetryLedger] = None,
        warnings: Optional[List[str]] = None,
    ) -> ExtractionOutcome:
        """Run all three phases and return the outcome; never raises for phase failures."""

        started = self._clock()
        ledger = ledger or self.new_ledger()
        context = PhaseContext(
            service=self._service,
            limiters=self._limiters,
            uploads=self._uploads,
            ledger=ledger,
            config=self._config,
            warnings=list(warnings or []),
        )
        deps = NodeDependencies(context=context, set_status=self._set_status)

        evicted = self._uploads.evict_older_than(self._config.cache_max_age_seconds)
        if evicted:
            ledger.debug(0, "UPLOAD_CACHE_EVICTED", f"Evicted {evicted} stale upload handle(s)")

        initial_state = ExtractionRunState(documents=documents)
        graph = self._build_graph(deps)
        result_state = ExtractionRunState.from_graph_state(await graph.ainvoke(initial_state.to_graph_state()))

        processing_time_ms = int((self._clock() - started) * 1000)
        costs = ledger.costs()
        success = result_state.error is None
        if success:
            ledger.success(
                None,
                "EXTRACTION_COMPLETE",
                f"{len(result_state.items)} items for ${costs.total:.6f} in {processing_time_ms}ms",
            )
        else:
            ledger.error(
                result_state.failed_phase,
                "EXTRACTION_FAILED",
                f"{result_state.error} (partial cost ${costs.total:.6f})",
            )

        return ExtractionOutcome(
            success=success,
            items=result_state.items if success else None,
            structure=result_state.structure,
            costs=costs,
            processing_time_ms=processing_time_ms,
            error=result_state.error,
            error_type=result_state.error_type,
            failed_phase=result_state.failed_phase,
            warnings=context.warnings,
            ledger=ledger.entries(),
            telemetry=ledger.telemetry(),
        )
