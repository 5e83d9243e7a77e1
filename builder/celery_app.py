"""Celery application configuration."""

from celery import Celery
from celery.signals import setup_logging

from builder.core.config import settings
from builder.core.log_config import configure_logging

# Create Celery app
app = Celery("builder")

# Configure Celery
app.conf.update(
    # Broker configuration
    broker_url=settings.celery_broker_url,
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,
    # Result backend - disabled (fire-and-forget, task state lives in the database)
    result_backend=None,
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Task execution
    task_track_started=True,
    task_acks_late=True,  # Acknowledge after task completion
    worker_prefetch_multiplier=1,  # Only fetch one task at a time
    # Task routing
    task_routes={
        "builder.tasks.execution.*": {"queue": "builder_tasks"},
    },
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()


# Auto-discover tasks from builder.tasks module
app.autodiscover_tasks(["builder.tasks"])
