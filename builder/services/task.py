"""Task service for business logic."""

import logging
from datetime import UTC, datetime

from sqlalchemy import func, update
from sqlmodel import select

from builder.core.config import settings
from builder.core.database import get_session
from builder.core.errors import InvalidTransitionError, NotFoundError, ValidationError
from builder.core.ids import is_valid_task_id
from builder.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AgentType,
    MessageRole,
    Task,
    TaskMessage,
    TaskStatus,
)

logger = logging.getLogger(__name__)


def _load_task(
    session, task_id: str, user_id: str | None = None, include_deleted: bool = False
) -> Task:
    statement = select(Task).where(Task.id == task_id)
    if not include_deleted:
        statement = statement.where(Task.deleted_at.is_(None))
    if user_id is not None:
        statement = statement.where(Task.user_id == user_id)
    task = session.execute(statement).scalar_one_or_none()
    if task is None:
        raise NotFoundError(f"Task with id {task_id} not found")
    return task


def _update_if_status(session, task_id: str, expected: TaskStatus, values: dict) -> bool:
    """Write values only while the task is still in the expected status."""
    statement = (
        update(Task)
        .where(Task.id == task_id, Task.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(statement).rowcount == 1


class TaskService:
    """Service for task-related business logic."""

    @staticmethod
    def create_task(
        user_id: str,
        prompt: str,
        repo_url: str,
        selected_agent: AgentType = AgentType.CLAUDE,
        selected_model: str | None = None,
        install_dependencies: bool = False,
        max_duration: int | None = None,
        keep_alive: bool = False,
        mcp_connector_ids: list[str] | None = None,
        task_id: str | None = None,
        branch_name: str | None = None,
        parent_task_id: str | None = None,
        schedule: bool = True,
    ) -> Task:
        """Create a new task and queue it for execution.

        Args:
            task_id: Optional client-assigned id for optimistic creation
            schedule: Hand the task to the worker pool once persisted
        """
        if not prompt or not prompt.strip():
            raise ValidationError("Prompt is required")
        if not repo_url or not repo_url.strip():
            raise ValidationError("Repository URL is required")
        if task_id is not None and not is_valid_task_id(task_id):
            raise ValidationError(
                "Task id must be 8 to 64 lowercase letters or digits"
            )

        with get_session() as session:
            if task_id is not None and session.get(Task, task_id) is not None:
                raise ValidationError(f"Task with id {task_id} already exists")

            task = Task(
                user_id=user_id,
                prompt=prompt,
                repo_url=repo_url.strip(),
                selected_agent=AgentType(selected_agent),
                selected_model=selected_model,
                install_dependencies=install_dependencies,
                max_duration=max_duration or settings.max_sandbox_duration,
                keep_alive=keep_alive,
                mcp_connector_ids=list(mcp_connector_ids or []),
                branch_name=branch_name,
                parent_task_id=parent_task_id,
                status=TaskStatus.PENDING,
            )
            if task_id is not None:
                task.id = task_id
            session.add(task)
            session.commit()
            session.refresh(task)

        if schedule:
            from builder.tasks import execute_builder_task

            execute_builder_task.delay(task.id)

        return task

    @staticmethod
    def task_exists(task_id: str) -> bool:
        """Return True if a task with this id exists, deleted or not."""
        with get_session() as session:
            return session.get(Task, task_id) is not None

    @staticmethod
    def get_task_by_id(task_id: str, user_id: str | None = None) -> Task:
        """Get a non-deleted task by ID, optionally scoped to its owner."""
        with get_session() as session:
            return _load_task(session, task_id, user_id)

    @staticmethod
    def list_tasks(
        user_id: str, limit: int = 100, offset: int = 0
    ) -> tuple[list[Task], int]:
        """List a user's non-deleted tasks, newest first."""
        with get_session() as session:
            filters = (Task.user_id == user_id, Task.deleted_at.is_(None))
            count_statement = select(func.count()).select_from(Task).where(*filters)
            total = session.execute(count_statement).scalar()

            statement = (
                select(Task)
                .where(*filters)
                .order_by(Task.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            tasks = session.execute(statement).scalars().all()

            return list(tasks), total

    @staticmethod
    def update_task(task_id: str, **fields) -> Task:
        """Persist arbitrary field updates on a task.

        Status and branch name have dedicated methods and are rejected here.
        """
        if "status" in fields or "branch_name" in fields:
            raise ValueError("Use transition() or assign_branch_name()")

        with get_session() as session:
            task = _load_task(session, task_id, include_deleted=True)
            for name, value in fields.items():
                setattr(task, name, value)
            task.updated_at = datetime.now(UTC)
            session.add(task)
            session.commit()
            session.refresh(task)
            return task

    @staticmethod
    def transition(
        task_id: str, status: TaskStatus, error: str | None = None
    ) -> Task:
        """Move a task along an allowed status edge.

        The write only applies while the task is still in the status that was
        checked, so a concurrent transition is never overwritten.

        Raises:
            InvalidTransitionError: If the edge is not allowed
        """
        status = TaskStatus(status)
        with get_session() as session:
            task = _load_task(session, task_id, include_deleted=True)
            current = TaskStatus(task.status)
            if status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Cannot move task {task_id} from {current.value} to {status.value}"
                )

            now = datetime.now(UTC)
            values = {"status": status, "updated_at": now}
            if error is not None:
                values["error"] = error
            if status == TaskStatus.COMPLETED:
                values["completed_at"] = now
                values["progress"] = 100

            if not _update_if_status(session, task_id, current, values):
                session.refresh(task)
                raise InvalidTransitionError(
                    f"Cannot move task {task_id} from {TaskStatus(task.status).value} "
                    f"to {status.value}"
                )

            session.commit()
            session.refresh(task)
            logger.info(f"Task {task_id}: {current.value} -> {status.value}")
            return task

    @staticmethod
    def assign_branch_name(task_id: str, branch_name: str) -> str:
        """Set the task's branch name once.

        Returns the branch name actually stored, which is the existing one
        when the task already has a branch.
        """
        with get_session() as session:
            task = _load_task(session, task_id, include_deleted=True)
            if task.branch_name:
                if task.branch_name != branch_name:
                    logger.warning(
                        f"Task {task_id} already has branch {task.branch_name}, "
                        f"keeping it"
                    )
                return task.branch_name

            task.branch_name = branch_name
            task.updated_at = datetime.now(UTC)
            session.add(task)
            session.commit()
            return branch_name

    @staticmethod
    def append_logs(
        task_id: str, entries: list[dict], progress: int | None = None
    ) -> None:
        """Append log entries and optionally raise the progress value."""
        with get_session() as session:
            task = session.get(Task, task_id)
            if task is None:
                raise NotFoundError(f"Task with id {task_id} not found")

            # Reassign so the JSON column is flagged as modified
            task.logs = [*(task.logs or []), *entries]
            if progress is not None:
                task.progress = max(task.progress or 0, min(progress, 100))
            task.updated_at = datetime.now(UTC)
            session.add(task)
            session.commit()

    @staticmethod
    def clear_logs(task_id: str, user_id: str | None = None) -> Task:
        with get_session() as session:
            task = _load_task(session, task_id, user_id)
            task.logs = []
            task.updated_at = datetime.now(UTC)
            session.add(task)
            session.commit()
            session.refresh(task)
            return task

    @staticmethod
    def list_sandbox_tasks(user_id: str) -> list[Task]:
        """A user's non-deleted tasks that hold a sandbox, newest first."""
        with get_session() as session:
            statement = (
                select(Task)
                .where(
                    Task.user_id == user_id,
                    Task.deleted_at.is_(None),
                    Task.sandbox_id.is_not(None),
                )
                .order_by(Task.created_at.desc())
            )
            return list(session.execute(statement).scalars().all())

    @staticmethod
    def request_cancel(task_id: str, user_id: str | None = None) -> Task:
        """Request cooperative cancellation.

        A pending task is cancelled immediately; a processing task is
        flagged and the runner stops at its next checkpoint.
        """
        with get_session() as session:
            task = _load_task(session, task_id, user_id)
            while True:
                status = TaskStatus(task.status)
                if status in TERMINAL_STATUSES:
                    raise InvalidTransitionError(
                        f"Task {task_id} is already {status.value}"
                    )

                now = datetime.now(UTC)
                values = {"cancel_requested_at": now, "updated_at": now}
                if status == TaskStatus.PENDING:
                    values["status"] = TaskStatus.CANCELLED
                if _update_if_status(session, task_id, status, values):
                    break
                # Status moved on since it was read
                session.refresh(task)

            session.commit()
            session.refresh(task)
            return task

    @staticmethod
    def is_cancel_requested(task_id: str) -> bool:
        """True once cancellation was requested or the task was deleted."""
        with get_session() as session:
            task = session.get(Task, task_id)
            if task is None:
                return True
            return task.cancel_requested_at is not None or task.deleted_at is not None

    @staticmethod
    def soft_delete(task_id: str, user_id: str | None = None) -> Task:
        """Mark a task as deleted. The caller tears down its sandbox first."""
        with get_session() as session:
            task = _load_task(session, task_id, user_id)
            now = datetime.now(UTC)
            task.deleted_at = now
            task.updated_at = now
            task.sandbox_id = None
            task.sandbox_url = None
            session.add(task)
            session.commit()
            session.refresh(task)
            return task

    @staticmethod
    def create_retry_task(task_id: str, user_id: str) -> Task:
        """Create and schedule a new task repeating a failed or cancelled one."""
        original = TaskService.get_task_by_id(task_id, user_id)
        if TaskStatus(original.status) not in (TaskStatus.ERROR, TaskStatus.CANCELLED):
            raise InvalidTransitionError(
                f"Only failed or cancelled tasks can be retried "
                f"(task {task_id} is {original.status})"
            )

        return TaskService.create_task(
            user_id=user_id,
            prompt=original.prompt,
            repo_url=original.repo_url,
            selected_agent=original.selected_agent,
            selected_model=original.selected_model,
            install_dependencies=original.install_dependencies,
            max_duration=original.max_duration,
            keep_alive=original.keep_alive,
            mcp_connector_ids=original.mcp_connector_ids,
            branch_name=original.branch_name,
            parent_task_id=original.id,
        )

    @staticmethod
    def continue_task(
        task_id: str, user_id: str, instruction: str, model: str | None = None
    ) -> TaskMessage:
        """Record a follow-up instruction and schedule it on the task's sandbox."""
        if not instruction or not instruction.strip():
            raise ValidationError("Message is required")

        task = TaskService.get_task_by_id(task_id, user_id)
        if not task.keep_alive or not task.sandbox_id:
            raise ValidationError(
                "Follow-up messages require a kept-alive task with a running sandbox"
            )

        message = TaskService.create_message(
            task_id, MessageRole.USER, instruction, is_follow_up=True
        )

        from builder.tasks import continue_builder_task

        continue_builder_task.delay(task_id, instruction, model)
        return message

    @staticmethod
    def create_message(
        task_id: str,
        role: MessageRole,
        content: str = "",
        is_follow_up: bool = False,
    ) -> TaskMessage:
        """Append a message to a task's transcript."""
        with get_session() as session:
            message = TaskMessage(
                task_id=task_id,
                role=MessageRole(role),
                content=content,
                is_follow_up=is_follow_up,
            )
            session.add(message)
            session.commit()
            session.refresh(message)
            return message

    @staticmethod
    def update_message_content(message_id: str, content: str) -> None:
        """Replace the content of a streaming agent message."""
        with get_session() as session:
            message = session.get(TaskMessage, message_id)
            if message is None:
                raise NotFoundError(f"Message with id {message_id} not found")
            message.content = content
            message.updated_at = datetime.now(UTC)
            session.add(message)
            session.commit()

    @staticmethod
    def list_messages(task_id: str) -> list[TaskMessage]:
        """Return a task's messages in creation order."""
        with get_session() as session:
            statement = (
                select(TaskMessage)
                .where(TaskMessage.task_id == task_id)
                .order_by(TaskMessage.created_at.asc())
            )
            return list(session.execute(statement).scalars().all())
