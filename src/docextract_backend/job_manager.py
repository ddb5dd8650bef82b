"""
Job lifecycle management for document extraction.

This module owns the state machine of an extraction job:

    queued -> processing -> completed | failed
    failed -> queued  (retry, while retry_count < max_retries)

- Single-shot processing of a queued job through the extraction orchestrator
- Recording the outcome (job status and the extraction record)
- Administrative queue actions (retry, cancel, reset stuck, clear failed)
- Queue status with a health assessment for the admin dashboard

Every status change is a conditional write in the job store, so a job that
another caller already moved past the expected status is left untouched.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from .configuration import Settings
from .database import JobDatabase
from .errors import JobNotFoundError, JobProcessingError, StoreError
from .models import (
    CleanupResult,
    ExtractionJob,
    ExtractionProgress,
    ExtractionRecord,
    ExtractionStatus,
    JobCreateRequest,
    JobStatus,
    ManageAction,
    ManageJobResult,
    ManageResult,
    ProcessJobResponse,
    ProcessJobResult,
    QueueHealth,
    QueueStats,
    QueueStatus,
    RecentJob,
)
from .orchestrator import ExtractionOrchestrator, ExtractionRequest, ExtractionResult
from .utils import utcnow

logger = logging.getLogger(__name__)

NOT_QUEUED_MESSAGE = "Job not found or not in queued status"

# Health thresholds used by the queue status view
MAX_PROCESSING_JOBS = 5
MAX_QUEUE_BACKLOG = 20
MAX_FAILURE_RATE = 0.3
STUCK_PROCESSING_MINUTES = 10
IDLE_QUEUE_MINUTES = 30


def assess_queue_health(
    stats: QueueStats,
    recent_jobs: Sequence[Dict[str, Any]],
    last_processed_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> QueueHealth:
    """
    Derive dashboard issues and recommendations from queue counts.

    Args:
        stats: Current queue counts
        recent_jobs: Most recent job rows (as returned by the store)
        last_processed_at: Completion time of the latest finished job
        now: Reference time (defaults to the current UTC time)
    """
    now = now or utcnow()
    issues: List[str] = []
    recommendations: List[str] = []

    if stats.processing > MAX_PROCESSING_JOBS:
        issues.append(f"{stats.processing} jobs stuck in processing state")
        recommendations.append("Check for hung processes or restart job processing")

    if stats.queued > MAX_QUEUE_BACKLOG:
        issues.append(f"Large queue backlog: {stats.queued} jobs waiting")
        recommendations.append("Consider running manual job processing or scaling up")

    total_processed = stats.completed + stats.failed
    if total_processed > 0:
        failure_rate = stats.failed / total_processed
        if failure_rate > MAX_FAILURE_RATE:
            issues.append(f"High failure rate: {int(failure_rate * 100 + 0.5)}%")
            recommendations.append("Review recent error logs and fix common issues")

    stuck_cutoff = now - timedelta(minutes=STUCK_PROCESSING_MINUTES)
    stuck = [
        job for job in recent_jobs
        if job["status"] == JobStatus.PROCESSING.value
        and (job.get("started_at") or job["created_at"]) < stuck_cutoff
    ]
    if stuck:
        issues.append(f"{len(stuck)} jobs processing for more than {STUCK_PROCESSING_MINUTES} minutes")
        recommendations.append("Reset stuck jobs to queued status")

    if last_processed_at and stats.queued > 0:
        if now - last_processed_at > timedelta(minutes=IDLE_QUEUE_MINUTES):
            issues.append(f"No jobs processed in the last {IDLE_QUEUE_MINUTES} minutes despite queue backlog")
            recommendations.append("Check if background job processing is running")

    is_healthy = not issues
    if is_healthy and stats.queued == 0 and stats.processing == 0:
        recommendations.append("Queue is healthy and empty")

    return QueueHealth(is_healthy=is_healthy, issues=issues, recommendations=recommendations)


class JobManager:
    """
    Central coordinator for extraction job lifecycle management.

    Attributes:
        store: Job store holding jobs and extraction records
        orchestrator: Component performing the actual extraction
        settings: Queue thresholds (stuck age, retry batch size, retention)
    """

    def __init__(
        self,
        store: JobDatabase,
        orchestrator: ExtractionOrchestrator,
        settings: Settings,
    ) -> None:
        self.store = store
        self.orchestrator = orchestrator
        self.settings = settings

    def get_job(self, job_id: str) -> Optional[ExtractionJob]:
        record = self.store.get_job(job_id)
        return ExtractionJob(**record) if record else None

    def create_job(self, request: JobCreateRequest) -> ExtractionJob:
        """Enqueue a new extraction job in the queued state."""
        record = self.store.create_job(
            document_type=request.document_type.value,
            file_path=request.file_path,
            file_size=request.file_size,
            mime_type=request.mime_type,
            carter_id=request.carter_id,
            user_id=request.user_id,
            metadata=request.metadata,
            max_retries=request.max_retries,
        )
        logger.info(f"Job {record['id']} queued for {request.document_type.value} extraction")
        return ExtractionJob(**record)

    def process_job(self, job_id: str) -> ProcessJobResponse:
        """
        Process one queued job synchronously.

        The job must exist and be queued. It is moved to processing with a
        conditional write, handed to the orchestrator, then moved to
        completed (with one extraction record upserted) or failed.

        Args:
            job_id: The job to process

        Returns:
            ProcessJobResponse with the parsed data of the extraction

        Raises:
            JobNotFoundError: If the job is absent, not queued, or was claimed
                by another caller first; nothing is written in that case
            JobProcessingError: If the orchestrator reports a failure; the job
                is left in failed state with the error message recorded
            StoreError: If the job store is unavailable
        """
        record = self.store.get_job_with_status(job_id, JobStatus.QUEUED)
        if record is None:
            raise JobNotFoundError(job_id, NOT_QUEUED_MESSAGE)

        if not self.store.transition_job(job_id, JobStatus.QUEUED, JobStatus.PROCESSING, started_at=utcnow()):
            logger.warning(f"Job {job_id} was claimed by another caller")
            raise JobNotFoundError(job_id, NOT_QUEUED_MESSAGE)

        logger.info(f"Processing job directly: {job_id}")
        return self._run_extraction(ExtractionJob(**record))

    def process_next_job(self) -> Optional[ProcessJobResponse]:
        """
        Claim the oldest queued job and process it.

        Returns:
            The processing response, or None when the queue is empty
        """
        record = self.store.claim_next_job()
        if record is None:
            return None
        logger.info(f"Claimed job {record['id']} from the queue")
        return self._run_extraction(ExtractionJob(**record))

    def _run_extraction(self, job: ExtractionJob) -> ProcessJobResponse:
        request = ExtractionRequest(
            job_id=job.id,
            carter_id=job.carter_id,
            document_type=job.document_type,
            file_path=job.file_path,
            file_size=job.file_size,
            mime_type=job.mime_type,
            metadata=job.metadata,
        )
        try:
            result = self.orchestrator.process_extraction_job(request)
        except Exception as exc:
            logger.exception(f"Orchestrator raised while processing job {job.id}")
            result = ExtractionResult(success=False, error=str(exc) or None)

        if not result.success:
            message = result.error or "Job processing failed"
            self.store.transition_job(
                job.id,
                JobStatus.PROCESSING,
                JobStatus.FAILED,
                error_message=message,
                completed_at=utcnow(),
            )
            logger.error(f"Job {job.id} failed: {message}")
            raise JobProcessingError(job.id, message)

        if not self.store.transition_job(job.id, JobStatus.PROCESSING, JobStatus.COMPLETED, completed_at=utcnow()):
            raise JobProcessingError(job.id, f"Job {job.id} left processing state before completion")

        record = ExtractionRecord(
            job_id=job.id,
            carter_id=job.carter_id,
            document_type=job.document_type,
            file_path=job.file_path,
            extraction_status=JobStatus.COMPLETED.value,
            ocr_text=result.extracted_text,
            extracted_data=result.parsed_data or {},
            confidence_score=result.confidence,
            fields_found=result.fields_found,
            fields_missing=result.fields_missing,
            processing_time_ms=result.processing_time_ms,
            errors=result.errors,
        )
        self.store.upsert_extraction(record.model_dump())
        logger.info(f"Job {job.id} completed with confidence {result.confidence}")

        return ProcessJobResponse(
            success=True,
            message="Job processed successfully",
            job_id=job.id,
            result=ProcessJobResult(
                extracted_data=result.parsed_data or {},
                confidence=result.confidence,
                fields_found=result.fields_found,
            ),
        )

    def get_extraction_status(self, job_id: str) -> ExtractionStatus:
        """
        Describe where a job is in its lifecycle.

        Raises:
            JobNotFoundError: If the job does not exist
        """
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        row = self.store.get_extraction(job_id)
        extraction = ExtractionRecord(**row) if row else None

        status = ExtractionStatus(
            job_id=job.id,
            status=job.status,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )
        if job.status is JobStatus.QUEUED:
            status.progress = ExtractionProgress(step="ocr", message="Waiting in queue...")
        elif job.status is JobStatus.PROCESSING:
            if extraction and extraction.ocr_text:
                status.progress = ExtractionProgress(step="parsing", message="Parsing extracted text...")
            else:
                status.progress = ExtractionProgress(step="ocr", message="Extracting text from document...")
        elif job.status is JobStatus.COMPLETED:
            status.progress = ExtractionProgress(step="validation", message="Extraction completed")
            if extraction:
                status.extracted_data = extraction.extracted_data
                status.confidence_score = extraction.confidence_score
                status.processing_time_ms = extraction.processing_time_ms
        else:
            status.error = job.error_message or "Extraction failed"
        return status

    def manage(
        self,
        action: ManageAction,
        job_id: Optional[str] = None,
        job_ids: Optional[Sequence[str]] = None,
    ) -> ManageResult:
        """
        Run an administrative action on the queue.

        Args:
            action: retry, cancel, reset_stuck or clear_failed
            job_id: Single target job (retry/cancel)
            job_ids: Several target jobs (retry/cancel)

        Returns:
            ManageResult; success is False when the store failed mid-action

        Raises:
            ValueError: If cancel is requested without any job id
        """
        targets = [job_id] if job_id else list(job_ids or [])
        logger.info(f"Queue management action: {action.value}")
        try:
            if action is ManageAction.RETRY:
                return self._retry_jobs(targets)
            if action is ManageAction.CANCEL:
                return self._cancel_jobs(targets)
            if action is ManageAction.RESET_STUCK:
                return self._reset_stuck_jobs()
            return self._clear_failed_jobs()
        except StoreError as exc:
            logger.exception(f"Queue management action {action.value} failed")
            return ManageResult(
                success=False,
                action=action.value,
                message=f"Failed to {action.value.replace('_', ' ')} jobs",
                error=str(exc),
            )

    def _retry_jobs(self, targets: List[str]) -> ManageResult:
        if not targets:
            eligible = self.store.list_retryable_jobs(limit=self.settings.retry_batch_limit)
            targets = [job["id"] for job in eligible]

        if not targets:
            return ManageResult(success=True, action="retry", affected=0, message="No jobs eligible for retry")

        results: List[ManageJobResult] = []
        for target in targets:
            job = self.store.get_job(target)
            if job is None:
                error = "Job not found"
            elif job["retry_count"] >= job["max_retries"]:
                error = "Max retries exceeded"
            elif job["status"] != JobStatus.FAILED.value or not self.store.retry_failed_job(target):
                error = "Job is not in failed status"
            else:
                error = None
            results.append(ManageJobResult(job_id=target, success=error is None, error=error))

        affected = sum(1 for result in results if result.success)
        return ManageResult(
            success=True,
            action="retry",
            affected=affected,
            results=results,
            message=f"Successfully retried {affected} out of {len(targets)} jobs",
        )

    def _cancel_jobs(self, targets: List[str]) -> ManageResult:
        if not targets:
            raise ValueError("Job ID(s) required for cancel action")

        results: List[ManageJobResult] = []
        for target in targets:
            canceled = self.store.transition_job(
                target,
                [JobStatus.QUEUED, JobStatus.PROCESSING],
                JobStatus.FAILED,
                error_message="Canceled by administrator",
                completed_at=utcnow(),
            )
            results.append(ManageJobResult(
                job_id=target,
                success=canceled,
                error=None if canceled else "Job not found or not active",
            ))

        affected = sum(1 for result in results if result.success)
        return ManageResult(
            success=True,
            action="cancel",
            affected=affected,
            results=results,
            message=f"Successfully canceled {affected} out of {len(targets)} jobs",
        )

    def _reset_stuck_jobs(self) -> ManageResult:
        cutoff = utcnow() - timedelta(minutes=self.settings.stuck_after_minutes)
        affected = self.store.reset_stuck_jobs(cutoff)
        if affected == 0:
            return ManageResult(success=True, action="reset_stuck", affected=0, message="No stuck jobs found")
        return ManageResult(
            success=True,
            action="reset_stuck",
            affected=affected,
            message=f"Reset {affected} stuck jobs back to queued status",
        )

    def _clear_failed_jobs(self) -> ManageResult:
        days = self.settings.clear_failed_after_days
        affected = self.store.delete_failed_jobs(utcnow() - timedelta(days=days))
        if affected == 0:
            return ManageResult(success=True, action="clear_failed", affected=0, message="No old failed jobs to clear")
        return ManageResult(
            success=True,
            action="clear_failed",
            affected=affected,
            message=f"Cleared {affected} old failed jobs (older than {days} days)",
        )

    def queue_status(self, stats: QueueStats) -> QueueStatus:
        """
        Build the dashboard view from queue counts and recent activity.

        Args:
            stats: Counts from JobProcessor.get_queue_stats

        Returns:
            QueueStatus; success is False when counts or recent activity
            could not be read
        """
        if stats.error:
            return self._unhealthy_status(stats.error)

        now = utcnow()
        try:
            recent = self.store.list_recent_jobs(limit=10)
            times = self.store.recent_processing_times(since=now - timedelta(days=7), limit=100)
        except StoreError as exc:
            logger.exception("Error getting queue status")
            return self._unhealthy_status(str(exc))

        last_processed_at = next(
            (
                job["completed_at"] for job in recent
                if job["status"] in (JobStatus.COMPLETED.value, JobStatus.FAILED.value) and job["completed_at"]
            ),
            None,
        )
        return QueueStatus(
            success=True,
            stats=stats,
            avg_processing_time_ms=round(sum(times) / len(times)) if times else None,
            last_processed_at=last_processed_at,
            recent_jobs=[RecentJob(**job) for job in recent],
            health=assess_queue_health(stats, recent, last_processed_at, now),
        )

    @staticmethod
    def _unhealthy_status(error: str) -> QueueStatus:
        return QueueStatus(
            success=False,
            stats=QueueStats(),
            health=QueueHealth(
                is_healthy=False,
                issues=["Failed to fetch queue status"],
                recommendations=["Check database connectivity"],
            ),
            error=error,
        )

    def cleanup_old_jobs(self, older_than_days: Optional[int] = None) -> CleanupResult:
        """Delete finished jobs older than the retention period."""
        days = self.settings.cleanup_after_days if older_than_days is None else older_than_days
        deleted = self.store.cleanup_old_jobs(days)
        logger.info(f"Cleaned up {deleted} finished jobs older than {days} days")
        return CleanupResult(
            success=True,
            deleted_count=deleted,
            message=f"Deleted {deleted} finished jobs older than {days} days",
        )
