"""Error taxonomy for the extraction pipeline."""

from __future__ import annotations

from typing import Optional


class MenuscanError(Exception):
    """Base class for every error raised by the pipeline."""

    error_type = "menuscan_error"


class ClassificationDegraded(MenuscanError):
    """Text extraction failed or was not trustworthy; the document falls back to OCR.

    Never raised past the classifier. Instances are attached to telemetry only.
    """

    error_type = "classification_degraded"

    def __init__(self, document_id: str, reason: str) -> None:
        super().__init__(f"Document {document_id} degraded to image path: {reason}")
        self.document_id = document_id
        self.reason = reason


class DocumentFetchError(MenuscanError):
    """Bytes for a source document could not be retrieved."""

    error_type = "document_fetch_failed"

    def __init__(self, document_id: str, message: str) -> None:
        super().__init__(f"Could not fetch document {document_id}: {message}")
        self.document_id = document_id


class InvalidDocumentsError(MenuscanError):
    """The input document list failed validation."""

    error_type = "invalid_documents"


class UploadFailed(MenuscanError):
    """Submitting a document to the model service failed."""

    error_type = "upload_failed"

    def __init__(self, document_id: str, message: str) -> None:
        super().__init__(f"Upload failed for document {document_id}: {message}")
        self.document_id = document_id


class PhaseParseFailure(MenuscanError):
    """A model response could not be decoded into the schema expected by a phase."""

    error_type = "phase_parse_failure"

    def __init__(self, phase: int, message: str, response_text: str = "") -> None:
        super().__init__(f"Phase {phase} response could not be parsed: {message}")
        self.phase = phase
        self.response_text = response_text


class ExternalServiceError(MenuscanError):
    """Network, quota or service-side failure reported by the model service."""

    error_type = "external_service_error"

    def __init__(self, message: str, *, phase: Optional[int] = None, model: Optional[str] = None) -> None:
        super().__init__(message)
        self.phase = phase
        self.model = model


__all__ = [
    "ClassificationDegraded",
    "DocumentFetchError",
    "ExternalServiceError",
    "InvalidDocumentsError",
    "MenuscanError",
    "PhaseParseFailure",
    "UploadFailed",
]
