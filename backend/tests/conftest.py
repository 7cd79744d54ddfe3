"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip the background scheduler when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import pytest

# Shared TestClient fixture so route tests run in-process. The lifespan (MongoDB
# connect, scheduler) is not entered because the client is not used as a context manager.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app)."""
    return TestClient(app)
