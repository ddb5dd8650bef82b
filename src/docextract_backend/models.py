from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentType(str, Enum):
    LICENSE = "license"
    CARTER_CERT = "carter_cert"
    INSURANCE = "insurance"


class ManageAction(str, Enum):
    RETRY = "retry"
    CANCEL = "cancel"
    RESET_STUCK = "reset_stuck"
    CLEAR_FAILED = "clear_failed"


class CamelModel(BaseModel):
    """Base model serialised with the portal's camelCase field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExtractionJob(CamelModel):
    id: str
    status: JobStatus
    carter_id: Optional[str] = None
    document_type: DocumentType
    file_path: str
    file_size: int
    mime_type: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class ExtractionRecord(CamelModel):
    job_id: str
    carter_id: Optional[str] = None
    document_type: DocumentType
    file_path: str
    extraction_status: str
    ocr_text: Optional[str] = None
    extracted_data: Dict[str, Any] = Field(default_factory=dict)
    confidence_score: Optional[float] = None
    fields_found: List[str] = Field(default_factory=list)
    fields_missing: List[str] = Field(default_factory=list)
    processing_time_ms: Optional[int] = None
    errors: List[str] = Field(default_factory=list)
    processed_at: Optional[datetime] = None


class JobCreateRequest(CamelModel):
    document_type: DocumentType
    file_path: str = Field(min_length=1)
    file_size: int = Field(ge=0)
    mime_type: str = Field(min_length=1)
    carter_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    max_retries: int = Field(default=3, ge=0)


class ProcessJobResult(CamelModel):
    extracted_data: Dict[str, Any]
    confidence: Optional[float] = None
    fields_found: List[str] = Field(default_factory=list)


class ProcessJobResponse(CamelModel):
    success: bool
    message: str
    job_id: str
    result: Optional[ProcessJobResult] = None


class TriggerResult(CamelModel):
    success: bool
    message: str


class CheckResult(CamelModel):
    success: bool
    message: str
    jobs_found: int = 0


class QueueStats(CamelModel):
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total_today: int = 0
    error: Optional[str] = None


class RetryResult(CamelModel):
    retried_count: int
    message: str


class ManageJobRequest(CamelModel):
    action: ManageAction
    job_id: Optional[str] = None
    job_ids: Optional[List[str]] = None


class ManageJobResult(CamelModel):
    job_id: str
    success: bool
    error: Optional[str] = None


class ManageResult(CamelModel):
    success: bool
    action: str
    affected: int = 0
    results: Optional[List[ManageJobResult]] = None
    message: str
    error: Optional[str] = None


class RecentJob(CamelModel):
    id: str
    status: JobStatus
    document_type: DocumentType
    created_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class QueueHealth(CamelModel):
    is_healthy: bool
    issues: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class QueueStatus(CamelModel):
    success: bool
    stats: QueueStats
    avg_processing_time_ms: Optional[int] = None
    last_processed_at: Optional[datetime] = None
    recent_jobs: List[RecentJob] = Field(default_factory=list)
    health: QueueHealth
    error: Optional[str] = None


class ExtractionProgress(CamelModel):
    step: str
    message: str


class ExtractionStatus(CamelModel):
    job_id: str
    status: JobStatus
    progress: Optional[ExtractionProgress] = None
    extracted_data: Optional[Dict[str, Any]] = None
    confidence_score: Optional[float] = None
    error: Optional[str] = None
    processing_time_ms: Optional[int] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class CleanupResult(CamelModel):
    success: bool
    deleted_count: int
    message: str
