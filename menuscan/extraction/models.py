"""Pydantic models shared by the extraction phases."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _ModelPayload(BaseModel):
    """Accepts both snake_case and the camelCase keys models tend to emit."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DocumentLocation(_ModelPayload):
    document_id: str
    page_numbers: Optional[List[int]] = None
    sheet_names: Optional[List[str]] = None


class MenuSection(_ModelPayload):
    name: str
    order: int = 0
    description: str = ""
    document_locations: List[DocumentLocation] = Field(default_factory=list)
    estimated_items: int = 0
    is_super_big: bool = False
    confidence: float = 0.8


class MenuStructure(_ModelPayload):
    """Sections and venue signals discovered in phase 1."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    sections: List[MenuSection]
    venue_signals: Dict[str, Any] = Field(default_factory=dict)
    overall_confidence: float = 0.8
    total_estimated_items: int = 0

    def section_names(self) -> List[str]:
        return [section.name for section in self.sections]


class SourceInfo(_ModelPayload):
    document_id: str
    page: Optional[int] = None
    sheet: Optional[str] = None


class RawMenuItem(_ModelPayload):
    """An item as extracted in phase 2, before sizes and modifiers are structured."""

    name: str
    description: str = ""
    price: Optional[str] = None
    category: str = ""
    section: str = ""
    source: SourceInfo


class SizeOption(_ModelPayload):
    size: str
    price: Optional[str] = None
    is_default: bool = False


class ModifierOption(_ModelPayload):
    name: str
    price: Optional[str] = None


class ModifierGroup(_ModelPayload):
    name: str
    options: List[ModifierOption] = Field(default_factory=list)
    required: bool = False
    multi_select: bool = False


class FinalMenuItem(_ModelPayload):
    name: str
    description: str = ""
    category: str
    section: str
    sizes: List[SizeOption] = Field(default_factory=list)
    modifier_groups: List[ModifierGroup] = Field(default_factory=list)
    source: SourceInfo


class UploadedFileHandle(BaseModel):
    """A document already submitted to the model service."""

    model_config = ConfigDict(frozen=True)

    document_id: str
    remote_uri: str
    remote_name: str
    mime_type: str
    size_bytes: int = 0
    uploaded_at: float


class CostLedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: int
    api_call_index: int
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    timestamp_ms: int
    batch_id: Optional[str] = None
    document_ids: List[str] = Field(default_factory=list)


class TelemetryLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    WARN = "WARN"
    ERROR = "ERROR"
    PHASE = "PHASE"


class TelemetryEntry(BaseModel):
    timestamp_ms: int
    level: TelemetryLevel
    operation: str
    details: str
    data: Optional[Dict[str, Any]] = None
    phase: Optional[int] = None
    tokens: Optional[Dict[str, int]] = None
    cost: Optional[float] = None


class PhaseCost(BaseModel):
    cost: float = 0.0
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0


class ExtractionCosts(BaseModel):
    phase1: PhaseCost = Field(default_factory=PhaseCost)
    phase2: PhaseCost = Field(default_factory=PhaseCost)
    phase3: PhaseCost = Field(default_factory=PhaseCost)
    total: float = 0.0
    total_calls: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.total_input_tokens + self.total_output_tokens


class ExtractionStatus(str, Enum):
    IDLE = "idle"
    PHASE1 = "phase1"
    PHASE2 = "phase2"
    PHASE3 = "phase3"
    COMPLETE = "complete"
    FAILED = "failed"


class ExtractionOutcome(BaseModel):
    """Terminal result of a run. ``items`` is set iff ``success``; ``error`` iff not."""

    success: bool
    items: Optional[List[FinalMenuItem]] = None
    structure: Optional[MenuStructure] = None
    costs: ExtractionCosts = Field(default_factory=ExtractionCosts)
    processing_time_ms: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None
    failed_phase: Optional[int] = None
    warnings: List[str] = Field(default_factory=list)
    ledger: List[CostLedgerEntry] = Field(default_factory=list)
    telemetry: List[TelemetryEntry] = Field(default_factory=list)
