"""
Pytest configuration and fixtures for Translation Backend tests.
"""

import os
import shutil
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_STORE_DIR = tempfile.mkdtemp(prefix="translation_test_store_")
os.environ["STORE_URL"] = f"sqlite:///{_STORE_DIR}/translations.db"
os.environ["BROKER_URL"] = "memory://module-app"
os.environ["RECONNECT_INTERVAL"] = "0.01"

from translation_backend.broker import MemoryBroker
from translation_backend.configuration import QUEUE_NAME, load_settings
from translation_backend.database import TranslationDatabase
from translation_backend.errors import BrokerUnavailableError
from translation_backend.main import create_app
from translation_backend.supervisor import ReconnectionSupervisor
from translation_backend.translator import ReverseTranslator
from translation_backend.worker import TranslationWorker


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_STORE_DIR, ignore_errors=True)


def connector(broker: MemoryBroker):
    """Connection factory that fails while the broker is marked unavailable."""

    def connect():
        if not broker.ping():
            raise BrokerUnavailableError("broker unavailable")
        return broker

    return connect


@pytest.fixture
def queue_name():
    return QUEUE_NAME


@pytest.fixture
def database(tmp_path: Path):
    """A fresh status store per test."""
    return TranslationDatabase(tmp_path / "translations.db")


@pytest.fixture
def broker():
    """A fresh in-memory broker per test."""
    return MemoryBroker()


@pytest.fixture
def supervisor(broker):
    return ReconnectionSupervisor(connect=connector(broker), interval=0.01)


@pytest.fixture
def worker(database, queue_name):
    return TranslationWorker(database, ReverseTranslator(), queue_name, poll_timeout=0.01)


@pytest.fixture
def app(database, supervisor):
    return create_app(settings=load_settings(environ={}), database=database, supervisor=supervisor)


@pytest.fixture
def client(app, supervisor):
    """Test client with the application lifespan running and the broker connected."""
    with TestClient(app) as test_client:
        supervisor.acquire()
        yield test_client


@pytest.fixture
def submit(client):
    """Submit a translation request and return its request id."""

    def _submit(text="hello", target_language="fr"):
        response = client.post("/translations", json={"text": text, "targetLanguage": target_language})
        assert response.status_code == 202
        return response.json()["requestId"]

    return _submit
