"""Pytest configuration and fixtures."""

import os
import tempfile

from cryptography.fernet import Fernet

# Settings are read at import time, so the environment is set before importing builder
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = (
    f"sqlite:///{os.path.join(tempfile.gettempdir(), f'builder-test-{os.getpid()}.db')}"
)
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from builder.core.database import clean_database, close_db, create_tables  # noqa: E402
from builder.main import app  # noqa: E402
from builder.models import Task  # noqa: E402
from builder.services import TaskService, sandbox_registry  # noqa: E402

TEST_USER_ID = "user-1"
OTHER_USER_ID = "user-2"


def create_test_task(
    prompt: str = "Test task prompt",
    repo_url: str = "https://github.com/test/repo.git",
    user_id: str = TEST_USER_ID,
    **kwargs,
) -> Task:
    """Helper function to create a test task with default values."""
    return TaskService.create_task(
        user_id=user_id, prompt=prompt, repo_url=repo_url, **kwargs
    )


@pytest.fixture(autouse=True, scope="function")
def mock_celery_task(mocker):
    """Mock Celery task scheduling for all tests."""
    return {
        "execute": mocker.patch("builder.tasks.execution.execute_builder_task.delay"),
        "continue": mocker.patch("builder.tasks.execution.continue_builder_task.delay"),
    }


@pytest.fixture(autouse=True, scope="function")
def clean_db():
    """Initialize and clean database for each test."""
    create_tables()

    # Clean all tables before test to ensure isolation
    clean_database()

    yield

    close_db()


@pytest.fixture(autouse=True, scope="function")
def clean_registry():
    """Drop sandbox handles registered by a test."""
    yield
    for task_id in sandbox_registry.task_ids():
        sandbox_registry.unregister(task_id)


@pytest.fixture(scope="function")
def test_client():
    """Create a test client."""
    with TestClient(app) as client:
        yield client


@pytest.fixture(scope="function")
def auth_headers():
    """Provide authentication headers for API requests."""
    from builder.core.config import settings

    return {"X-API-Key": settings.api_secret_key, "X-User-Id": TEST_USER_ID}
