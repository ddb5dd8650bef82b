from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .configuration import load_settings
from .database import JobDatabase
from .errors import JobNotFoundError, JobProcessingError, StoreError
from .job_manager import JobManager
from .job_processor import JobProcessor
from .middleware import RequestLoggingMiddleware
from .models import ExtractionJob, JobCreateRequest, ManageJobRequest, ManageResult, QueueStats
from .orchestrator import build_orchestrator

logger = logging.getLogger(__name__)

app = FastAPI(title="Document Extraction Admin API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

settings = load_settings()
job_database = JobDatabase(settings.database_path)
job_manager = JobManager(job_database, build_orchestrator(settings.orchestrator_backend), settings)
job_processor = JobProcessor(settings, job_database)


def get_job_manager() -> JobManager:
    return job_manager


def get_job_processor() -> JobProcessor:
    return job_processor


def _dump(model: BaseModel) -> Dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True)


def _error(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    content: Dict[str, Any] = {"success": False, "error": error}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/jobs", response_model=ExtractionJob, status_code=201)
def create_job(payload: JobCreateRequest, manager: JobManager = Depends(get_job_manager)):
    try:
        return manager.create_job(payload)
    except StoreError as exc:
        logger.exception("Failed to enqueue extraction job")
        return _error(500, "Failed to create job", str(exc))


@app.get("/jobs/{job_id}", response_model=ExtractionJob)
def get_job(job_id: str, manager: JobManager = Depends(get_job_manager)):
    try:
        job = manager.get_job(job_id)
    except StoreError as exc:
        logger.exception(f"Failed to load job {job_id}")
        return _error(500, "Internal server error", str(exc))
    if not job:
        return _error(404, "Job not found")
    return job


@app.get("/extractions/{job_id}")
def extraction_status(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JSONResponse:
    try:
        status = manager.get_extraction_status(job_id)
    except JobNotFoundError as exc:
        return _error(404, exc.message)
    except StoreError as exc:
        logger.exception(f"Failed to load extraction status of job {job_id}")
        return _error(500, "Internal server error", str(exc))
    return JSONResponse(content={"success": True, **_dump(status)})


@app.post("/admin/process-job")
async def process_job(request: Request, manager: JobManager = Depends(get_job_manager)) -> JSONResponse:
    payload = await _read_json(request)
    job_id = payload.get("jobId") if isinstance(payload, dict) else None
    if not isinstance(job_id, str) or not job_id.strip():
        return _error(400, "Job ID is required")

    try:
        response = await run_in_threadpool(manager.process_job, job_id)
    except JobNotFoundError as exc:
        return _error(404, exc.message)
    except JobProcessingError as exc:
        return _error(500, exc.message)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Direct job processing error")
        return _error(500, "Internal server error", str(exc) or "Unknown error")

    return JSONResponse(content=_dump(response))


@app.post("/admin/process-next-job")
async def process_next_job(manager: JobManager = Depends(get_job_manager)) -> JSONResponse:
    try:
        response = await run_in_threadpool(manager.process_next_job)
    except JobProcessingError as exc:
        return _error(500, exc.message)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Queue job processing error")
        return _error(500, "Internal server error", str(exc) or "Unknown error")

    if response is None:
        return JSONResponse(content={"success": True, "message": "No jobs in queue"})
    return JSONResponse(content=_dump(response))


@app.post("/admin/queue/trigger")
def trigger_processing(processor: JobProcessor = Depends(get_job_processor)) -> JSONResponse:
    result = processor.trigger_processing()
    return JSONResponse(status_code=200 if result.success else 500, content=_dump(result))


@app.post("/admin/queue/process")
def check_and_process(processor: JobProcessor = Depends(get_job_processor)) -> JSONResponse:
    result = processor.check_and_process_jobs()
    return JSONResponse(status_code=200 if result.success else 500, content=_dump(result))


@app.get("/admin/queue/stats", response_model=QueueStats)
def queue_stats(processor: JobProcessor = Depends(get_job_processor)) -> QueueStats:
    return processor.get_queue_stats()


@app.get("/admin/queue/status")
def queue_status(
    manager: JobManager = Depends(get_job_manager),
    processor: JobProcessor = Depends(get_job_processor),
) -> JSONResponse:
    status = manager.queue_status(processor.get_queue_stats())
    return JSONResponse(status_code=200 if status.success else 500, content=_dump(status))


@app.post("/admin/queue/retry-failed")
def retry_failed(processor: JobProcessor = Depends(get_job_processor)) -> JSONResponse:
    return JSONResponse(content=_dump(processor.retry_failed_jobs()))


@app.post("/admin/queue/manage")
async def manage_queue(request: Request, manager: JobManager = Depends(get_job_manager)) -> JSONResponse:
    payload = await _read_json(request)
    if not isinstance(payload, dict) or not payload.get("action"):
        result = ManageResult(success=False, action="", message="Action is required")
        return JSONResponse(status_code=400, content=_dump(result))

    try:
        body = ManageJobRequest.model_validate(payload)
    except ValidationError as exc:
        invalid = {str(error["loc"][0]) for error in exc.errors() if error["loc"]}
        if "action" in invalid:
            message = "Unknown action"
        else:
            message = "jobId must be a string and jobIds a list of strings"
        result = ManageResult(success=False, action=str(payload["action"]), message=message)
        return JSONResponse(status_code=400, content=_dump(result))

    action = body.action
    try:
        result = await run_in_threadpool(manager.manage, action, body.job_id, body.job_ids)
    except ValueError as exc:
        result = ManageResult(success=False, action=action.value, message=str(exc))
        return JSONResponse(status_code=400, content=_dump(result))

    return JSONResponse(status_code=200 if result.success else 500, content=_dump(result))


@app.post("/admin/queue/cleanup")
async def cleanup_jobs(request: Request, manager: JobManager = Depends(get_job_manager)) -> JSONResponse:
    payload = await _read_json(request)
    older_than_days = payload.get("olderThanDays") if isinstance(payload, dict) else None
    if older_than_days is not None and (
        isinstance(older_than_days, bool) or not isinstance(older_than_days, int) or older_than_days < 0
    ):
        return _error(400, "olderThanDays must be a non-negative integer")

    try:
        result = await run_in_threadpool(manager.cleanup_old_jobs, older_than_days)
    except StoreError as exc:
        logger.exception("Cleanup of old jobs failed")
        return _error(500, "Failed to clean up old jobs", str(exc))
    return JSONResponse(content=_dump(result))
