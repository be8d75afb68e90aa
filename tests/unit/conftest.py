"""
Global fixtures for all unit tests.

This conftest provides autouse fixtures that prevent real external service calls:
- MongoDB connection attempts (would cause 5-30s timeout per test)
- Configuration isolation (prevents real credentials and field mappings leaking in)

These fixtures apply automatically to ALL tests in tests/unit/.
"""

import os
import pytest
from unittest.mock import patch, MagicMock

# Set test environment BEFORE any imports to prevent Config from loading real values
os.environ["DEBUG_MODE"] = "false"

from src.common.batch_runner import BatchOptions
from src.common.config import Config
from src.common.repositories import (
    AtlasCompanyRepository,
    AtlasOperationRunsRepository,
    reset_company_repository,
    reset_operation_runs_repository,
)


@pytest.fixture(autouse=True)
def mock_mongodb():
    """
    Prevent MongoDB connection attempts in all unit tests.

    MongoClient("") defaults to localhost:27017, causing 5-30s timeout per test.
    The repository modules import MongoClient by name, so they are patched too.
    """
    mock_instance = MagicMock()
    mock_db = MagicMock()
    mock_collection = MagicMock()

    # Setup chain: client["db"]["collection"]
    mock_instance.__getitem__ = MagicMock(return_value=mock_db)
    mock_db.__getitem__ = MagicMock(return_value=mock_collection)
    mock_collection.find_one = MagicMock(return_value=None)
    mock_collection.find = MagicMock(return_value=[])

    with patch("pymongo.MongoClient") as mock_client, \
            patch("src.common.repositories.company_repository.MongoClient", mock_client), \
            patch("src.common.repositories.operation_runs_repository.MongoClient", mock_client):
        mock_client.return_value = mock_instance
        yield mock_client

    AtlasCompanyRepository._client = None
    AtlasOperationRunsRepository._client = None
    reset_company_repository()
    reset_operation_runs_repository()


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """
    Isolate tests from real credentials and configuration.

    Config reads the environment at import time, so the class attributes
    themselves are replaced.
    """
    monkeypatch.setattr(Config, "MONGODB_URI", "mongodb://localhost:27017/test")
    monkeypatch.setattr(Config, "MONGODB_DATABASE", "agency_test")
    monkeypatch.setattr(Config, "CLOUD_FUNCTIONS_BASE_URL", "https://functions.test")
    monkeypatch.setattr(Config, "CLOUD_FUNCTIONS_AUTH_TOKEN", "")
    monkeypatch.setattr(Config, "WEBSITE_CUSTOM_FIELD", None)
    monkeypatch.setattr(Config, "PROGRAM_URL_FIELD", None)
    monkeypatch.setattr(Config, "BLOG_URL_FIELD", None)
    monkeypatch.setattr(Config, "BLOG_SKIP_RECENT_DAYS", 7)
    monkeypatch.setattr(Config, "BULK_BATCH_SIZE", 5)
    monkeypatch.setattr(Config, "BULK_MAX_RETRIES", 2)
    monkeypatch.setattr(Config, "BULK_RETRY_DELAY_MS", 2000)
    monkeypatch.setattr(Config, "BULK_INTER_BATCH_DELAY_MS", 1000)


class RecordingSleep:
    """Sleep replacement that records requested delays and returns immediately."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def recording_sleep():
    """A sleep function that records delays without waiting."""
    return RecordingSleep()


@pytest.fixture
def fast_options():
    """Batch options with tiny delays."""
    return BatchOptions(batch_size=5, max_retries=2, retry_delay_ms=100, inter_batch_delay_ms=0)


@pytest.fixture
def event_log():
    """A progress callback that keeps every event."""
    events = []

    def callback(event):
        events.append(event)

    callback.events = events
    return callback
