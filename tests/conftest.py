"""
Pytest configuration and fixtures for the document extraction backend tests.
"""

import os
import shutil
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_IMPORT_DIR = tempfile.mkdtemp(prefix="docextract_test_")
os.environ["SUPABASE_URL"] = "https://project.supabase.test"
os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-service-role-key"
os.environ["DOCEXTRACT_DB_PATH"] = str(Path(_IMPORT_DIR) / "import.db")

from docextract_backend.configuration import load_settings
from docextract_backend.database import JobDatabase
from docextract_backend.job_manager import JobManager
from docextract_backend.job_processor import JobProcessor
from docextract_backend.main import app, get_job_manager, get_job_processor
from docextract_backend.orchestrator import ExtractionRequest, ExtractionResult, MockExtractionOrchestrator
from docextract_backend.utils import serialize_datetime


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_IMPORT_DIR, ignore_errors=True)


class StubOrchestrator:
    """Orchestrator returning a fixed result and remembering its requests."""

    def __init__(self, result: Optional[ExtractionResult] = None, exc: Optional[Exception] = None):
        self.result = result
        self.exc = exc
        self.requests: List[ExtractionRequest] = []

    def process_extraction_job(self, request: ExtractionRequest) -> ExtractionResult:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc
        return self.result


class FakeEdgeFunction:
    """httpx.MockTransport handler standing in for the batch processing function."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.payload: Any = {"message": "Processed 1 job"}
        self.exc: Optional[Exception] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.exc is not None:
            raise self.exc
        return httpx.Response(self.status_code, json=self.payload)


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a per-test SQLite file."""
    return load_settings(overrides={
        "supabase": {
            "url": "https://project.supabase.test",
            "service_role_key": "test-service-role-key",
        },
        "database": {"path": str(tmp_path / "jobs.db")},
    })


@pytest.fixture
def store(settings):
    return JobDatabase(settings.database_path)


@pytest.fixture
def orchestrator():
    return MockExtractionOrchestrator()


@pytest.fixture
def manager(store, orchestrator, settings):
    return JobManager(store, orchestrator, settings)


@pytest.fixture
def edge_function():
    return FakeEdgeFunction()


@pytest.fixture
def http_client(edge_function):
    client = httpx.Client(transport=httpx.MockTransport(edge_function))
    yield client
    client.close()


@pytest.fixture
def processor(settings, store, http_client):
    return JobProcessor(settings, store, http_client=http_client)


@pytest.fixture
def client(manager, processor):
    """Test client whose dependencies use the per-test store and fakes."""
    app.dependency_overrides[get_job_manager] = lambda: manager
    app.dependency_overrides[get_job_processor] = lambda: processor
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_job(store):
    """Factory inserting a queued job with sensible defaults."""

    def _make_job(**overrides: Any) -> Dict[str, Any]:
        fields = {
            "document_type": "license",
            "file_path": "/f",
            "file_size": 100,
            "mime_type": "image/png",
            "carter_id": "c1",
        }
        fields.update(overrides)
        return store.create_job(**fields)

    return _make_job


@pytest.fixture
def set_columns(store):
    """Write raw column values, e.g. to age a job past a cutoff."""

    def _set_columns(job_id: str, **columns: Any) -> None:
        assignments = ", ".join(f"{name} = ?" for name in columns)
        values = [
            serialize_datetime(value) if isinstance(value, datetime) else value
            for value in columns.values()
        ]
        with store._get_connection() as conn:
            conn.execute(f"UPDATE extraction_jobs SET {assignments} WHERE id = ?", (*values, job_id))

    return _set_columns
