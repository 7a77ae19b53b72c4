"""Cost ledger and structured telemetry for an extraction run."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from .models import (
    CostLedgerEntry,
    ExtractionCosts,
    PhaseCost,
    TelemetryEntry,
    TelemetryLevel,
)
from .service import ModelVariant, calculate_cost

logger = logging.getLogger(__name__)

PHASE_NAMES = {
    0: "Preparation",
    1: "Structure Analysis",
    2: "Item Extraction",
    3: "Modifier Enrichment",
}

_LOG_LEVELS = {
    TelemetryLevel.DEBUG: logging.DEBUG,
    TelemetryLevel.INFO: logging.INFO,
    TelemetryLevel.SUCCESS: logging.INFO,
    TelemetryLevel.PHASE: logging.INFO,
    TelemetryLevel.WARN: logging.WARNING,
    TelemetryLevel.ERROR: logging.ERROR,
}


class TelemetrySink(Protocol):
    def __call__(self, entry: TelemetryEntry) -> None:
        ...


class LoggingTelemetrySink:
    """Forwards telemetry entries to the standard logging module."""

    def __init__(self, logger_name: str = "menuscan.telemetry") -> None:
        self._logger = logging.getLogger(logger_name)

    def __call__(self, entry: TelemetryEntry) -> None:
        prefix = f"[P{entry.phase}] " if entry.phase is not None else ""
        suffix = ""
        if entry.tokens:
            suffix += f" tokens={entry.tokens.get('input', 0)}/{entry.tokens.get('output', 0)}"
        if entry.cost is not None:
            suffix += f" cost=${entry.cost:.6f}"
        self._logger.log(
            _LOG_LEVELS[entry.level],
            "%s%s %s: %s%s",
            prefix,
            entry.level.value,
            entry.operation,
            entry.details,
            suffix,
        )


class TelemetryLedger:
    """Append-only record of model calls plus phase markers and telemetry events."""

    def __init__(
        self,
        sink: Optional[TelemetrySink] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._sink = sink
        self._clock = clock
        self._entries: List[CostLedgerEntry] = []
        self._telemetry: List[TelemetryEntry] = []
        self._phase_started: Dict[int, float] = {}
        self._call_index = 0

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def event(
        self,
        level: TelemetryLevel,
        operation: str,
        details: str,
        *,
        data: Optional[Dict[str, Any]] = None,
        phase: Optional[int] = None,
        tokens: Optional[Dict[str, int]] = None,
        cost: Optional[float] = None,
    ) -> TelemetryEntry:
        entry = TelemetryEntry(
            timestamp_ms=self._now_ms(),
            level=level,
            operation=operation,
            details=details,
            data=data,
            phase=phase,
            tokens=tokens,
            cost=cost,
        )
        self._telemetry.append(entry)
        if self._sink is not None:
            try:
                self._sink(entry)
            except Exception:  # pragma: no cover - sink failures are logged only
                logger.exception("Telemetry sink raised while handling %s", operation)
        return entry

    def debug(self, phase: Optional[int], operation: str, details: str, **extra: Any) -> TelemetryEntry:
        return self.event(TelemetryLevel.DEBUG, operation, details, phase=phase, **extra)

    def info(self, phase: Optional[int], operation: str, details: str, **extra: Any) -> TelemetryEntry:
        return self.event(TelemetryLevel.INFO, operation, details, phase=phase, **extra)

    def success(self, phase: Optional[int], operation: str, details: str, **extra: Any) -> TelemetryEntry:
        return self.event(TelemetryLevel.SUCCESS, operation, details, phase=phase, **extra)

    def warn(self, phase: Optional[int], operation: str, details: str, **extra: Any) -> TelemetryEntry:
        return self.event(TelemetryLevel.WARN, operation, details, phase=phase, **extra)

    def error(self, phase: Optional[int], operation: str, details: str, **extra: Any) -> TelemetryEntry:
        return self.event(TelemetryLevel.ERROR, operation, details, phase=phase, **extra)

    def start_phase(self, phase: int, description: str) -> None:
        self._phase_started[phase] = self._clock()
        self.event(TelemetryLevel.PHASE, "PHASE_START", description, phase=phase)

    def end_phase(self, phase: int, summary: str, item_count: int = 0, *, failed: bool = False) -> int:
        started = self._phase_started.pop(phase, self._clock())
        elapsed_ms = int((self._clock() - started) * 1000)
        cost = self.phase_cost(phase)
        self.event(
            TelemetryLevel.PHASE,
            "PHASE_FAILED" if failed else "PHASE_END",
            summary,
            phase=phase,
            data={"elapsed_ms": elapsed_ms, "items": item_count, "calls": cost.calls},
            tokens={"input": cost.input_tokens, "output": cost.output_tokens},
            cost=cost.cost,
        )
        return elapsed_ms

    def record_call(
        self,
        phase: int,
        variant: ModelVariant,
        model: str,
        input_tokens: int,
        output_tokens: int,
        *,
        images: int = 0,
        batch_id: Optional[str] = None,
        document_ids: Iterable[str] = (),
    ) -> CostLedgerEntry:
        self._call_index += 1
        entry = CostLedgerEntry(
            phase=phase,
            api_call_index=self._call_index,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=calculate_cost(variant, input_tokens, output_tokens, images),
            timestamp_ms=self._now_ms(),
            batch_id=batch_id,
            document_ids=list(document_ids),
        )
        self._entries.append(entry)
        self.event(
            TelemetryLevel.INFO,
            "API_CALL_COMPLETE",
            f"Call {entry.api_call_index} to {model}" + (f" ({batch_id})" if batch_id else ""),
            phase=phase,
            data={"document_ids": entry.document_ids} if entry.document_ids else None,
            tokens={"input": input_tokens, "output": output_tokens},
            cost=entry.cost_usd,
        )
        return entry

    def entries(self) -> List[CostLedgerEntry]:
        return list(self._entries)

    def telemetry(self) -> List[TelemetryEntry]:
        return list(self._telemetry)

    def phase_entries(self, phase: int) -> List[CostLedgerEntry]:
        return [entry for entry in self._entries if entry.phase == phase]

    def phase_cost(self, phase: int) -> PhaseCost:
        entries = self.phase_entries(phase)
        return PhaseCost(
            cost=round(sum(entry.cost_usd for entry in entries), 8),
            calls=len(entries),
            input_tokens=sum(entry.input_tokens for entry in entries),
            output_tokens=sum(entry.output_tokens for entry in entries),
        )

    def costs(self) -> ExtractionCosts:
        phases = {phase: self.phase_cost(phase) for phase in (1, 2, 3)}
        return ExtractionCosts(
            phase1=phases[1],
            phase2=phases[2],
            phase3=phases[3],
            total=round(sum(entry.cost_usd for entry in self._entries), 8),
            total_calls=len(self._entries),
            total_input_tokens=sum(entry.input_tokens for entry in self._entries),
            total_output_tokens=sum(entry.output_tokens for entry in self._entries),
        )


def format_cost_report(costs: ExtractionCosts, *, failed_phase: Optional[int] = None) -> str:
    """Plain-text breakdown of cost per phase."""

    title = "EXTRACTION COST REPORT" if failed_phase is None else f"PARTIAL COST REPORT (failed in phase {failed_phase})"
    lines = [title, "=" * len(title)]
    for number, phase in ((1, costs.phase1), (2, costs.phase2), (3, costs.phase3)):
        lines.append(
            f"Phase {number} ({PHASE_NAMES[number]}): ${phase.cost:.6f} "
            f"| {phase.calls} calls | {phase.input_tokens:,} in / {phase.output_tokens:,} out"
        )
    lines.append("-" * len(title))
    lines.append(
        f"Total: ${costs.total:.6f} | {costs.total_calls} calls | "
        f"{costs.total_input_tokens:,} in / {costs.total_output_tokens:,} out"
    )
    return "\n".join(lines)
