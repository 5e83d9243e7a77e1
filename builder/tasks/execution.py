"""Task execution Celery tasks."""

import logging

from builder.celery_app import app
from builder.services import TaskRunner

logger = logging.getLogger(__name__)


@app.task(name="builder.tasks.execution.execute_builder_task")
def execute_builder_task(task_id: str) -> str:
    """Run a task to completion in a sandbox.

    This is a thin Celery wrapper around TaskRunner. Failures are recorded
    on the task itself, so the Celery task is never retried.

    Args:
        task_id: ID of the task to execute
    """
    logger.info(f"Executing task {task_id}")
    return TaskRunner(task_id).run().value


@app.task(name="builder.tasks.execution.continue_builder_task")
def continue_builder_task(
    task_id: str, instruction: str, selected_model: str | None = None
) -> bool:
    """Run a follow-up instruction in a task's kept-alive sandbox."""
    logger.info(f"Continuing task {task_id}")
    return TaskRunner(task_id).run_follow_up(instruction, selected_model)
