import hashlib
import hmac
import logging
import os
import tempfile
from pathlib import Path
from unittest.mock import patch
from urllib.parse import urlencode

import pytest
from celery import Task
from fastapi.testclient import TestClient

# Set test environment variables
test_db_path = Path(tempfile.gettempdir()) / "payhook_test.db"
os.environ.update(
    {
        "DATABASE_URL": os.getenv("TEST_DATABASE_URL", f"sqlite:///{test_db_path}"),
        "HITPAY_SALT": "topsecret",
        "DEDUP_BACKEND": "memory",
        "DEDUP_FAILURE_POLICY": "fail_closed",
        "ADMIN_TOKEN": "admin-token",
        "ARCHIVE_BUCKET": "",
        "AWS_ACCESS_KEY_ID": "test",
        "AWS_SECRET_ACCESS_KEY": "test",
        "REDIS_URL": "redis://localhost:6379/2",
    }
)
os.environ.pop("FORWARD_URL", None)

# Import app modules after setting environment variables
from payhook.core.config import get_settings
from payhook.db.models import Base
from payhook.db.session import SessionLocal, engine
from payhook.handlers import registry
from payhook.services.dedup import InMemoryDedupStore

logger = logging.getLogger(__name__)

SALT = "topsecret"


def sign_form(fields: dict, secret: str = SALT) -> dict:
    """Return ``fields`` with a valid ``hmac`` entry, computed independently."""
    message = "".join(f"{k}{fields[k]}" for k in sorted(fields))
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return {**fields, "hmac": digest}


def form_body(fields: dict) -> bytes:
    return urlencode(fields).encode()


def sign_raw(body: bytes, secret: str = SALT) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def vendor_fields():
    return {
        "payment_id": "p1",
        "payment_request_id": "pr1",
        "phone": "",
        "amount": "2.00",
        "currency": "MYR",
        "status": "completed",
        "reference_number": "",
    }


@pytest.fixture(autouse=True)
def celery_apply_async():
    with patch.object(Task, "apply_async") as mock:

        class MockAsyncResult:
            def __init__(self):
                self.id = "mock-task-id"

        mock.return_value = MockAsyncResult()
        yield mock


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def clean_registry():
    registry.clear()
    yield
    registry.clear()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def dedup_store():
    return InMemoryDedupStore()


@pytest.fixture
def app(dedup_store):
    from payhook.main import app, get_dedup_store

    app.dependency_overrides[get_dedup_store] = lambda: dedup_store
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"Authorization": "Bearer admin-token"}
