"""
Pytest configuration and fixtures for testing the FloatAST API.

This module provides:
- Environment variable overrides to prevent real oracle calls
- A fresh in-memory storage per test, injected into the FastAPI app
- Test client fixture for the FastAPI app
- Event log redirection into tmp_path
"""
import os
import tempfile

import pytest
from fastapi.testclient import TestClient

# Override environment variables to prevent real API calls.
# The fake key does not start with "sk-", so the model router stays offline.
os.environ["OPENAI_API_KEY"] = "test-key-sk-1234567890"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["ENABLE_ORACLE_CONCEPTS"] = "false"
os.environ.setdefault("EVENT_LOG_DIR", tempfile.mkdtemp(prefix="float-ast-events-"))

# Import app after env vars are set
from main import app  # noqa: E402
from storage import MemoryStorage, get_storage  # noqa: E402


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def test_app(storage):
    """
    The app from main.py with storage swapped for a per-test MemoryStorage.
    """
    app.dependency_overrides[get_storage] = lambda: storage
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(test_app):
    """
    Create a test client for the FastAPI app.

    raise_server_exceptions=False so exceptions go through the exception
    handlers and come back as responses, matching production behavior.
    """
    return TestClient(test_app, raise_server_exceptions=False)


@pytest.fixture
def event_log(tmp_path, monkeypatch):
    """Point the JSONL event logs at tmp_path and return the directory."""
    monkeypatch.setattr("services_logging.EXTRACTION_LOG_FILE", tmp_path / "fragment_extractions.jsonl")
    monkeypatch.setattr("services_logging.CONCEPT_LOG_FILE", tmp_path / "concept_extractions.jsonl")
    return tmp_path
