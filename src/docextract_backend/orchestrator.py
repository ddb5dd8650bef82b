"""
Extraction orchestrator contract.

The orchestrator turns the document attributes of one job into a structured
success/failure result. The real OCR and template-parsing pipeline lives
outside this service; JobManager only depends on the
ExtractionOrchestrator protocol defined here.

MockExtractionOrchestrator produces deterministic per-document-type fields
so the admin portal can be exercised end to end without the external
pipeline.
"""

from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from .models import DocumentType

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = {
    "application/pdf",
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
}

# Fields each document template extracts, in display order
TEMPLATE_FIELDS: Dict[DocumentType, List[str]] = {
    DocumentType.LICENSE: ["licenseNumber", "expirationDate", "firstName", "lastName", "dateOfBirth"],
    DocumentType.CARTER_CERT: ["certificateNumber", "carterName", "issueDate", "expirationDate"],
    DocumentType.INSURANCE: ["policyNumber", "insuredName", "insurerName", "effectiveDate", "expirationDate"],
}


@dataclass
class ExtractionRequest:
    job_id: str
    carter_id: Optional[str]
    document_type: DocumentType
    file_path: str
    file_size: int
    mime_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractionResult:
    """
    Outcome of one extraction attempt.

    Attributes:
        success: Whether text extraction and parsing both succeeded
        extracted_text: Raw OCR / PDF text
        parsed_data: Fields parsed from the text by the document template
        confidence: Combined confidence in [0, 1]
        fields_found: Template fields present in parsed_data
        fields_missing: Template fields that could not be parsed
        processing_time_ms: Wall-clock duration of the attempt
        errors: Non-fatal problems collected along the way
        error: Failure reason when success is False
    """

    success: bool
    processing_time_ms: int = 0
    extracted_text: Optional[str] = None
    parsed_data: Dict[str, Any] = field(default_factory=dict)
    confidence: Optional[float] = None
    fields_found: List[str] = field(default_factory=list)
    fields_missing: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error: Optional[str] = None


class ExtractionOrchestrator(Protocol):
    def process_extraction_job(self, request: ExtractionRequest) -> ExtractionResult:
        ...


def calculate_overall_confidence(text_confidence: float, parse_confidence: float, processing_method: str) -> float:
    """
    Combine text-extraction and parsing confidence into one score.

    Parsing is weighted 60% and text extraction 40%. Native PDF text gets a
    small bonus; low-confidence OCR is penalised.

    Example:
        >>> calculate_overall_confidence(0.9, 0.9, "pdf-text-extraction")
        0.95
    """
    overall = text_confidence * 0.4 + parse_confidence * 0.6

    if processing_method == "pdf-text-extraction":
        overall = min(1.0, overall + 0.05)

    if "ocr" in processing_method and text_confidence < 0.8:
        overall = max(0.1, overall - 0.1)

    return round(overall, 2)


class MockExtractionOrchestrator:
    """
    Deterministic stand-in for the external extraction pipeline.

    Values are derived from the job id so repeated runs of the same job
    produce the same fields.
    """

    text_confidence = 0.92
    parse_confidence = 0.95

    def process_extraction_job(self, request: ExtractionRequest) -> ExtractionResult:
        started = time.perf_counter()
        if request.mime_type not in SUPPORTED_MIME_TYPES:
            logger.warning(f"Job {request.job_id}: unsupported file type {request.mime_type}")
            return ExtractionResult(
                success=False,
                error=f"Unsupported file type: {request.mime_type}",
                processing_time_ms=self._elapsed_ms(started),
            )

        document_type = DocumentType(request.document_type)
        parsed = self._mock_fields(document_type, request.job_id)
        method = "pdf-text-extraction" if request.mime_type == "application/pdf" else "google-vision-ocr"
        fields = TEMPLATE_FIELDS[document_type]

        return ExtractionResult(
            success=True,
            extracted_text=f"Mock OCR text for {document_type.value} document {request.file_path}",
            parsed_data=parsed,
            confidence=calculate_overall_confidence(self.text_confidence, self.parse_confidence, method),
            fields_found=[name for name in fields if parsed.get(name)],
            fields_missing=[name for name in fields if not parsed.get(name)],
            processing_time_ms=self._elapsed_ms(started),
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.perf_counter() - started) * 1000)

    @staticmethod
    def _mock_fields(document_type: DocumentType, job_id: str) -> Dict[str, Any]:
        digits = str(int(hashlib.sha256(job_id.encode()).hexdigest(), 16))[:6]
        if document_type is DocumentType.LICENSE:
            return {
                "licenseNumber": f"DL{digits}",
                "expirationDate": "2026-12-31",
                "firstName": "John",
                "lastName": "Doe",
                "dateOfBirth": "1985-06-15",
            }
        if document_type is DocumentType.CARTER_CERT:
            return {
                "certificateNumber": f"CC{digits}",
                "carterName": "John Doe",
                "issueDate": "2024-01-15",
                "expirationDate": "2026-01-15",
            }
        return {
            "policyNumber": f"POL{digits}",
            "insuredName": "John Doe",
            "insurerName": "Mock Insurance Co.",
            "effectiveDate": "2025-01-01",
            "expirationDate": "2026-01-01",
        }


def build_orchestrator(backend: str) -> ExtractionOrchestrator:
    """
    Create the orchestrator named in the settings.

    Raises:
        ValueError: If the backend name is unknown
    """
    if backend == "mock":
        return MockExtractionOrchestrator()
    raise ValueError(f"Unknown orchestrator backend: {backend}")
