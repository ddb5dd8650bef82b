"""
Queue-level operations on extraction jobs.

JobProcessor keeps no state between calls. It counts rows in the job
store, forwards a trigger to the batch processing Edge Function, and asks
the store to re-queue failed jobs that are still under their retry limit.
Every operation returns a result object instead of raising, so the admin
dashboard always gets an answer.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import httpx

from .configuration import Settings
from .database import JobDatabase
from .models import CheckResult, JobStatus, QueueStats, RetryResult, TriggerResult
from .utils import start_of_today

logger = logging.getLogger(__name__)


class JobProcessor:
    """
    Trigger, monitor and retry queued extraction work.

    Attributes:
        settings: Validated settings (base URL and service credential)
        store: Job store used for counts and the retry procedure
    """

    def __init__(
        self,
        settings: Settings,
        store: JobDatabase,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        """
        Initialize the processor.

        Args:
            settings: Service settings; the credential was validated when they were built
            store: Job store
            http_client: Client used for the Edge Function call. When omitted a
                short-lived client is created per call.
        """
        self.settings = settings
        self.store = store
        self._http_client = http_client

    def trigger_processing(self) -> TriggerResult:
        """
        Ask the Edge Function to process pending jobs.

        Sends one POST with the service credential and no body. Any
        non-success status, transport error or unreadable reply is reported
        as a failed TriggerResult.
        """
        headers = {
            "Authorization": f"Bearer {self.settings.service_role_key}",
            "Content-Type": "application/json",
        }
        client = self._http_client or httpx.Client(timeout=self.settings.edge_function_timeout)
        try:
            response = client.post(self.settings.function_url, headers=headers)
            if not response.is_success:
                message = f"Edge Function call failed: {response.reason_phrase}"
                logger.error(f"Error triggering job processing: {message}")
                return TriggerResult(success=False, message=message)
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"Error triggering job processing: {exc}")
            return TriggerResult(success=False, message=str(exc) or "Unknown error")
        finally:
            if self._http_client is None:
                client.close()

        message = payload.get("message") if isinstance(payload, dict) else None
        return TriggerResult(success=True, message=message or "Processing triggered successfully")

    def check_and_process_jobs(self) -> CheckResult:
        """
        Trigger processing only when there is queued work.

        Returns:
            CheckResult with the number of queued jobs found
        """
        try:
            jobs_found = self.store.count_jobs(status=JobStatus.QUEUED)
        except Exception as exc:
            logger.exception("Error checking jobs")
            return CheckResult(success=False, message=f"Failed to count pending jobs: {exc}", jobs_found=0)

        if jobs_found == 0:
            return CheckResult(success=True, message="No pending jobs found", jobs_found=0)

        logger.info(f"{jobs_found} queued jobs found, triggering processing")
        result = self.trigger_processing()
        return CheckResult(
            success=result.success,
            message=f"{jobs_found} jobs found. {result.message}",
            jobs_found=jobs_found,
        )

    def get_queue_stats(self) -> QueueStats:
        """
        Count jobs per status plus the jobs created today.

        The five counts run concurrently and are joined before returning.
        Any failure degrades to zero counts with the error message attached.
        """
        today = start_of_today()
        try:
            with ThreadPoolExecutor(max_workers=5) as executor:
                futures = {
                    "queued": executor.submit(self.store.count_jobs, JobStatus.QUEUED),
                    "processing": executor.submit(self.store.count_jobs, JobStatus.PROCESSING),
                    "completed": executor.submit(self.store.count_jobs, JobStatus.COMPLETED),
                    "failed": executor.submit(self.store.count_jobs, JobStatus.FAILED),
                    "total_today": executor.submit(self.store.count_jobs, None, today),
                }
                counts = {name: future.result() for name, future in futures.items()}
        except Exception as exc:
            logger.exception("Error getting queue stats")
            return QueueStats(error=str(exc) or exc.__class__.__name__)

        return QueueStats(**counts)

    def retry_failed_jobs(self) -> RetryResult:
        """
        Re-queue failed jobs that are below their own retry limit.

        Jobs are retried one at a time through the store's retry procedure;
        a job that cannot be retried is skipped and the rest continue.
        """
        try:
            failed_jobs = self.store.list_retryable_jobs()
        except Exception as exc:
            logger.exception("Error retrying failed jobs")
            return RetryResult(retried_count=0, message=f"Failed to get retryable jobs: {exc}")

        if not failed_jobs:
            return RetryResult(retried_count=0, message="No failed jobs eligible for retry")

        retried_count = 0
        for job in failed_jobs:
            try:
                if self.store.retry_failed_job(job["id"]):
                    retried_count += 1
                else:
                    logger.warning(f"Job {job['id']} was not eligible for retry anymore")
            except Exception as exc:
                logger.error(f"Retry of job {job['id']} failed: {exc}")

        return RetryResult(
            retried_count=retried_count,
            message=f"Successfully retried {retried_count} out of {len(failed_jobs)} failed jobs",
        )
