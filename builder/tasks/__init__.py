"""Background Celery tasks."""

from .execution import continue_builder_task, execute_builder_task

__all__ = ["continue_builder_task", "execute_builder_task"]
