"""
Document Extraction Admin Backend - REST API for the extraction job queue

This package provides a FastAPI-based web service that administers the
queue of document extraction jobs for carters' documents (driver
licenses, carter certificates, insurance certificates). It enables:

- Enqueueing extraction jobs and reading their status
- Synchronous single-job processing through an extraction orchestrator
- Triggering the batch processing Edge Function when work is queued
- Queue statistics and a health assessment for the admin dashboard
- Retrying, canceling, resetting and clearing jobs

The backend does not perform OCR or template parsing itself; it owns the
job lifecycle and delegates the extraction computation to the orchestrator.

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Job lifecycle state machine and queue administration
    - job_processor: Edge Function trigger, queue statistics and retries
    - database: SQLite job store with conditional status transitions
    - orchestrator: Extraction orchestrator contract and mock implementation
    - configuration: Settings loading (defaults, YAML, environment)
    - models: Pydantic models for request/response validation

Usage:
    Run the API server with:
        uvicorn docextract_backend.main:app --reload --host 0.0.0.0 --port 8000

    SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set (or present in
    a .env file); the server refuses to start without them.
"""
