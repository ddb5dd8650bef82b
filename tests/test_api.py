"""
Tests for the document extraction admin API endpoints.

Tests cover:
- Health check
- Job creation and lookup
- Direct job processing (400 / 404 / 500 / 200)
- Edge Function trigger and check-and-process
- Queue statistics, status, retry, management and cleanup
"""

from datetime import timedelta

import pytest

from docextract_backend.errors import StoreError
from docextract_backend.job_manager import JobManager
from docextract_backend.main import get_job_manager
from docextract_backend.models import JobStatus
from docextract_backend.orchestrator import ExtractionResult
from docextract_backend.utils import utcnow

from conftest import StubOrchestrator


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestJobs:
    """Tests for job creation and lookup endpoints."""

    def test_create_job(self, client):
        """Creating a job returns it in queued state with camelCase fields."""
        response = client.post("/jobs", json={
            "documentType": "license",
            "filePath": "carters/c1/license.png",
            "fileSize": 2048,
            "mimeType": "image/png",
            "carterId": "c1",
        })
        assert response.status_code == 201

        data = response.json()
        assert data["status"] == "queued"
        assert data["documentType"] == "license"
        assert data["retryCount"] == 0
        assert data["maxRetries"] == 3

        lookup = client.get(f"/jobs/{data['id']}")
        assert lookup.status_code == 200
        assert lookup.json()["filePath"] == "carters/c1/license.png"

    def test_create_job_with_unknown_document_type(self, client):
        response = client.post("/jobs", json={
            "documentType": "passport",
            "filePath": "/f",
            "fileSize": 1,
            "mimeType": "image/png",
        })
        assert response.status_code == 422

    def test_get_nonexistent_job(self, client):
        response = client.get("/jobs/nonexistent-job-id")
        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Job not found"}

    def test_extraction_status(self, client, make_job):
        job = make_job()
        response = client.get(f"/extractions/{job['id']}")
        assert response.status_code == 200
        data = response.json()
        assert data["jobId"] == job["id"]
        assert data["progress"] == {"step": "ocr", "message": "Waiting in queue..."}

    def test_extraction_status_nonexistent(self, client):
        assert client.get("/extractions/missing").status_code == 404

    @pytest.mark.parametrize("path", ["/jobs/j1", "/extractions/j1"])
    def test_store_failure_on_lookup_is_json(self, client, store, monkeypatch, path):
        """A failing store gives a structured 500 body on read routes."""

        def boom(*args, **kwargs):
            raise StoreError("disk I/O error")

        monkeypatch.setattr(store, "get_job", boom)
        response = client.get(path)

        assert response.status_code == 500
        assert response.headers["content-type"] == "application/json"
        assert response.json() == {
            "success": False,
            "error": "Internal server error",
            "details": "disk I/O error",
        }


class TestProcessJob:
    """Tests for the /admin/process-job endpoint."""

    @pytest.mark.parametrize("body", [{}, {"jobId": ""}, {"jobId": 12}, ["j1"]])
    def test_missing_job_id(self, client, body):
        response = client.post("/admin/process-job", json=body)
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Job ID is required"}

    def test_invalid_json_body(self, client):
        response = client.post(
            "/admin/process-job",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_unknown_job(self, client):
        response = client.post("/admin/process-job", json={"jobId": "missing"})
        assert response.status_code == 404
        assert response.json()["error"] == "Job not found or not in queued status"

    def test_successful_processing(self, client, make_job, store):
        make_job(job_id="j1")

        response = client.post("/admin/process-job", json={"jobId": "j1"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Job processed successfully"
        assert data["result"]["extractedData"]["licenseNumber"].startswith("DL")
        assert data["result"]["fieldsFound"] == [
            "licenseNumber", "expirationDate", "firstName", "lastName", "dateOfBirth",
        ]
        assert isinstance(data["result"]["confidence"], float)
        assert store.get_job("j1")["status"] == "completed"
        assert store.count_extractions("j1") == 1

    def test_second_call_is_rejected(self, client, make_job):
        make_job(job_id="j1")
        assert client.post("/admin/process-job", json={"jobId": "j1"}).status_code == 200
        assert client.post("/admin/process-job", json={"jobId": "j1"}).status_code == 404

    def test_orchestrator_failure(self, client, store, settings, make_job):
        failing = JobManager(store, StubOrchestrator(ExtractionResult(success=False, error="Parsing failed")), settings)
        client.app.dependency_overrides[get_job_manager] = lambda: failing
        make_job(job_id="j1")

        response = client.post("/admin/process-job", json={"jobId": "j1"})

        assert response.status_code == 500
        assert response.json() == {"success": False, "error": "Parsing failed"}
        job = store.get_job("j1")
        assert job["status"] == "failed"
        assert job["error_message"] == "Parsing failed"

    def test_store_failure_is_internal_error(self, client, store, monkeypatch):
        def boom(*args, **kwargs):
            raise StoreError("unable to open database file")

        monkeypatch.setattr(store, "get_job_with_status", boom)
        response = client.post("/admin/process-job", json={"jobId": "j1"})

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": "Internal server error",
            "details": "unable to open database file",
        }

    def test_process_next_job(self, client, make_job):
        assert client.post("/admin/process-next-job").json() == {"success": True, "message": "No jobs in queue"}
        job = make_job()
        response = client.post("/admin/process-next-job")
        assert response.status_code == 200
        assert response.json()["jobId"] == job["id"]


class TestQueueProcessing:
    """Tests for the Edge Function trigger endpoints."""

    def test_trigger(self, client, edge_function):
        response = client.post("/admin/queue/trigger")
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "Processed 1 job"}
        assert len(edge_function.requests) == 1

    def test_trigger_failure(self, client, edge_function):
        edge_function.status_code = 502
        response = client.post("/admin/queue/trigger")
        assert response.status_code == 500
        assert response.json()["message"] == "Edge Function call failed: Bad Gateway"

    def test_check_and_process_empty_queue(self, client, edge_function):
        response = client.post("/admin/queue/process")
        assert response.json() == {"success": True, "message": "No pending jobs found", "jobsFound": 0}
        assert edge_function.requests == []


class TestQueueAdministration:
    """Tests for stats, status, retry, manage and cleanup endpoints."""

    def test_stats(self, client, make_job):
        make_job()
        response = client.get("/admin/queue/stats")
        assert response.status_code == 200
        data = response.json()
        assert data["queued"] == 1
        assert data["totalToday"] == 1
        assert data["error"] is None

    def test_stats_never_errors(self, client, store, monkeypatch):
        def boom(*args, **kwargs):
            raise StoreError("disk I/O error")

        monkeypatch.setattr(store, "count_jobs", boom)
        response = client.get("/admin/queue/stats")
        assert response.status_code == 200
        data = response.json()
        assert [data[k] for k in ("queued", "processing", "completed", "failed", "totalToday")] == [0, 0, 0, 0, 0]
        assert data["error"] == "disk I/O error"

    def test_status(self, client):
        response = client.get("/admin/queue/status")
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["health"]["isHealthy"] is True

    def test_status_with_store_failure(self, client, store, monkeypatch):
        def boom(*args, **kwargs):
            raise StoreError("disk I/O error")

        monkeypatch.setattr(store, "count_jobs", boom)
        response = client.get("/admin/queue/status")
        assert response.status_code == 500
        assert response.json()["health"]["issues"] == ["Failed to fetch queue status"]

    def test_retry_failed(self, client, store, make_job):
        job = make_job()
        store.transition_job(job["id"], JobStatus.QUEUED, JobStatus.FAILED, error_message="boom")

        response = client.post("/admin/queue/retry-failed")

        assert response.json() == {
            "retriedCount": 1,
            "message": "Successfully retried 1 out of 1 failed jobs",
        }

    def test_manage_requires_action(self, client):
        response = client.post("/admin/queue/manage", json={})
        assert response.status_code == 400
        assert response.json()["message"] == "Action is required"

    def test_manage_unknown_action(self, client):
        response = client.post("/admin/queue/manage", json={"action": "explode"})
        assert response.status_code == 400
        assert response.json()["message"] == "Unknown action"

    @pytest.mark.parametrize("body", [
        {"action": "cancel", "jobIds": "j1"},
        {"action": "cancel", "jobIds": ["j1", 2]},
        {"action": "cancel", "jobId": ["j1"]},
    ])
    def test_manage_rejects_malformed_ids(self, client, body):
        response = client.post("/admin/queue/manage", json=body)
        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["action"] == "cancel"
        assert data["message"] == "jobId must be a string and jobIds a list of strings"

    def test_manage_accepts_id_list(self, client, make_job, store):
        first, second = make_job(), make_job()
        response = client.post("/admin/queue/manage", json={"action": "cancel", "jobIds": [first["id"], second["id"]]})
        assert response.status_code == 200
        assert response.json()["affected"] == 2

    def test_manage_cancel_without_ids(self, client):
        response = client.post("/admin/queue/manage", json={"action": "cancel"})
        assert response.status_code == 400
        assert response.json()["message"] == "Job ID(s) required for cancel action"

    def test_manage_cancel(self, client, make_job, store):
        job = make_job()
        response = client.post("/admin/queue/manage", json={"action": "cancel", "jobId": job["id"]})
        assert response.status_code == 200
        data = response.json()
        assert data["affected"] == 1
        assert data["results"] == [{"jobId": job["id"], "success": True, "error": None}]
        assert store.get_job(job["id"])["status"] == "failed"

    def test_cleanup(self, client, make_job, store):
        job = make_job()
        store.transition_job(job["id"], JobStatus.QUEUED, JobStatus.FAILED, completed_at=utcnow() - timedelta(days=3))

        response = client.post("/admin/queue/cleanup", json={"olderThanDays": 1})

        assert response.status_code == 200
        assert response.json()["deletedCount"] == 1

    def test_cleanup_rejects_negative_age(self, client):
        response = client.post("/admin/queue/cleanup", json={"olderThanDays": -1})
        assert response.status_code == 400
