"""Drives a task from PENDING to a terminal state."""

import logging
from collections.abc import Callable

from builder.core.errors import (
    AgentExecutionError,
    BranchNameError,
    InvalidTransitionError,
    NotFoundError,
    SandboxProvisionError,
    ValidationError,
)
from builder.models import TERMINAL_STATUSES, MessageRole, Task, TaskStatus
from builder.services.agent_execution import AgentExecutionService
from builder.services.branch_names import BranchNameService
from builder.services.connectors import ConnectorService
from builder.services.credentials import CredentialService, Credentials
from builder.services.dependencies import DependencyService
from builder.services.git import GitError, GitService, commit_message_for
from builder.services.sandbox import (
    SandboxHandle,
    SandboxRegistry,
    SandboxService,
    sandbox_registry,
)
from builder.services.task import TaskService
from builder.services.task_logger import TaskLogger

logger = logging.getLogger(__name__)

PROVISION_ATTEMPTS = 2
DEFAULT_RESOURCES = {"vcpus": 4}


class TaskCancelled(Exception):
    """Raised inside the runner when a cancellation checkpoint trips."""


class TaskRunner:
    """Runs one task: credentials, branch, sandbox, agent, push.

    Every state change is persisted as it happens. The runner never raises
    for task failures; they end the task in ERROR instead.
    """

    def __init__(
        self,
        task_id: str,
        registry: SandboxRegistry = sandbox_registry,
        cancellation_check: Callable[[], bool] | None = None,
    ):
        self.task_id = task_id
        self.registry = registry
        self.cancellation_check = cancellation_check or (
            lambda: TaskService.is_cancel_requested(task_id)
        )
        self.task_logger = TaskLogger(task_id)
        self.handle: SandboxHandle | None = None

    def _checkpoint(self, stage: str) -> None:
        if self.cancellation_check():
            self.task_logger.info(f"Task was cancelled {stage}")
            raise TaskCancelled(stage)

    def run(self) -> TaskStatus:
        """Execute the task and return its final status."""
        task = TaskService.get_task_by_id(self.task_id)
        status = TaskStatus(task.status)

        if status == TaskStatus.PROCESSING:
            # Redelivered after a worker died mid-run
            self.recover(task)
            return TaskStatus.ERROR
        if status != TaskStatus.PENDING:
            logger.info(f"Task {self.task_id} is {status.value}, not running it")
            return status

        try:
            TaskService.transition(self.task_id, TaskStatus.PROCESSING)
        except InvalidTransitionError as e:
            # Cancelled between the read above and the transition
            logger.info(f"Task {self.task_id} not started: {e}")
            return TaskStatus(TaskService.get_task_by_id(self.task_id).status)
        self.task_logger.update_progress(5, "Initializing task execution...")
        TaskService.create_message(self.task_id, MessageRole.USER, task.prompt)

        final = TaskStatus.ERROR
        try:
            final = self._execute(task)
        except TaskCancelled:
            final = TaskStatus.CANCELLED
            self._finish(TaskStatus.CANCELLED, "Task was cancelled")
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.exception(f"Task {self.task_id} failed")
            self._finish(TaskStatus.ERROR, message, error=message)
        finally:
            self._release(keep=self._should_keep(task, final))

        return final

    def _should_keep(self, task: Task, final: TaskStatus) -> bool:
        """Keep-alive sandboxes survive unless the task was cancelled or deleted."""
        if not task.keep_alive or final == TaskStatus.CANCELLED:
            return False
        return not TaskService.is_cancel_requested(self.task_id)

    def _execute(self, task: Task) -> TaskStatus:
        credentials = CredentialService.resolve(task.user_id)
        CredentialService.validate_for_agent(credentials, task.selected_agent)
        SandboxService.connection_config()
        self.task_logger.info("Environment variables validated")

        branch_name = self._branch_name(task, credentials)

        self._checkpoint("before sandbox creation")
        self.task_logger.update_progress(15, "Creating sandbox environment")
        self.handle = self._provision(task, credentials, branch_name)
        self.registry.register(self.handle)
        TaskService.update_task(
            self.task_id,
            sandbox_id=self.handle.sandbox_id,
            sandbox_url=self.handle.url,
        )
        self.task_logger.update_progress(30, "Sandbox created")
        self._checkpoint("after sandbox creation")

        if task.install_dependencies:
            self.task_logger.update_progress(35, "Installing dependencies...")
            try:
                DependencyService.install(self.handle, self.task_logger)
            except Exception as e:
                self.task_logger.info(f"Warning: dependency installation failed: {e}")
        else:
            self.task_logger.info("Skipping dependency installation as requested")

        self._checkpoint("before agent execution")
        self.task_logger.update_progress(40, "Sandbox ready, executing agent")
        result = AgentExecutionService.execute(
            self.handle,
            task.prompt,
            task.selected_agent,
            credentials,
            self.task_logger,
            model=task.selected_model,
            connectors=ConnectorService.load_for_task(
                task.user_id, task.mcp_connector_ids
            ),
            cancellation_check=self.cancellation_check,
            task_id=self.task_id,
        )
        if result.cancelled:
            raise TaskCancelled("during agent execution")
        if not result.success:
            raise AgentExecutionError(result.error or "Agent execution failed")
        if result.output:
            self.task_logger.info(result.output)

        self._checkpoint("before committing changes")
        self.task_logger.update_progress(70, "Applying git operations")
        push = GitService.push_changes(
            self.handle, branch_name, commit_message_for(task.prompt)
        )
        if push.push_failed:
            raise GitError(
                "Failed to push changes to repository. Commit was created locally."
            )
        if push.error:
            raise GitError(push.error)
        if push.pushed:
            self.task_logger.success(f"Changes pushed to {branch_name}")
        else:
            self.task_logger.info("No changes to commit")

        if task.keep_alive:
            self._start_dev_server()

        self.task_logger.update_progress(95, "Finalizing task")
        TaskService.update_task(self.task_id, agent_session_id=result.session_id)
        self.task_logger.update_progress(100, "Task completed successfully")
        TaskService.transition(self.task_id, TaskStatus.COMPLETED)
        self.task_logger.success("Task completed successfully")
        return TaskStatus.COMPLETED

    def _branch_name(self, task: Task, credentials: Credentials) -> str:
        if task.branch_name:
            self.task_logger.info(f"Using existing branch {task.branch_name}")
            return task.branch_name

        try:
            name = BranchNameService.generate(
                task.prompt,
                repo_name=GitService.repo_name(task.repo_url),
                api_key=credentials.ai_gateway_api_key,
            )
        except BranchNameError as e:
            logger.warning(f"Branch name generation failed for {self.task_id}: {e}")
            name = BranchNameService.fallback(self.task_id)

        name = TaskService.assign_branch_name(self.task_id, name)
        self.task_logger.update_progress(10, f"Using branch {name}")
        return name

    def _provision(
        self, task: Task, credentials: Credentials, branch_name: str
    ) -> SandboxHandle:
        for attempt in range(1, PROVISION_ATTEMPTS + 1):
            try:
                return SandboxService.provision(
                    task_id=self.task_id,
                    repo_url=task.repo_url,
                    credentials=credentials,
                    timeout_minutes=task.max_duration,
                    resources=DEFAULT_RESOURCES,
                    branch_name=branch_name,
                    task_logger=self.task_logger,
                )
            except SandboxProvisionError as e:
                if attempt == PROVISION_ATTEMPTS:
                    raise
                self.task_logger.info(f"Sandbox creation failed ({e}), retrying...")
        raise SandboxProvisionError("Failed to initialize sandbox")

    def _start_dev_server(self) -> None:
        self.task_logger.info("Keep alive enabled, attempting to start development server.")
        try:
            manager = DependencyService.detect_package_manager(self.handle)
            if SandboxService.start_dev_server(self.handle, manager):
                self.task_logger.info("Development server started inside sandbox.")
            else:
                self.task_logger.info("No dev script found; skipping dev server startup.")
        except Exception as e:
            logger.warning(f"Failed to start dev server for {self.task_id}: {e}")
            self.task_logger.info(
                "Unable to start development server. You can run it manually inside the sandbox."
            )

    def _finish(self, status: TaskStatus, message: str, error: str | None = None):
        try:
            self.task_logger.update_status(status, message, error=error)
        except (InvalidTransitionError, NotFoundError) as e:
            logger.error(f"Could not mark task {self.task_id} {status.value}: {e}")

    def _release(self, keep: bool) -> None:
        """Tear down the sandbox unless it is kept alive for follow-ups."""
        if self.handle is None:
            return
        if keep:
            self.task_logger.info("Sandbox kept alive for follow-up instructions.")
            return

        self.registry.unregister(self.task_id)
        SandboxService.stop(self.handle)
        try:
            TaskService.update_task(self.task_id, sandbox_id=None, sandbox_url=None)
        except NotFoundError as e:
            logger.error(f"Could not clear sandbox of task {self.task_id}: {e}")
        self.handle = None

    def recover(self, task: Task) -> None:
        """Fail a task left PROCESSING by a crashed worker and free its sandbox."""
        message = "Task execution was interrupted before completion"
        self._finish(TaskStatus.ERROR, message, error=message)

        if task.keep_alive or not task.sandbox_id:
            return
        handle = SandboxService.resolve(self.task_id, task.sandbox_id, self.registry)
        if handle is not None:
            self.handle = handle
            self._release(keep=False)
        else:
            TaskService.update_task(self.task_id, sandbox_id=None, sandbox_url=None)

    def start_sandbox(self) -> Task:
        """Provision a fresh sandbox for a finished keep-alive task.

        The sandbox checks out the task's existing branch and starts the dev
        server, so follow-ups can resume where the last run stopped.

        Raises:
            ValidationError: If keep-alive is off or a sandbox is still running
            InvalidTransitionError: If the task has not finished yet
            SandboxProvisionError: If the sandbox cannot be created
        """
        task = TaskService.get_task_by_id(self.task_id)
        if not task.keep_alive:
            raise ValidationError("Keep-alive is not enabled for this task")
        if TaskStatus(task.status) not in TERMINAL_STATUSES:
            raise InvalidTransitionError(
                f"Task {self.task_id} is still {TaskStatus(task.status).value}"
            )
        if task.sandbox_id:
            if SandboxService.resolve(self.task_id, task.sandbox_id, self.registry):
                raise ValidationError("Sandbox is already running")
            TaskService.update_task(self.task_id, sandbox_id=None, sandbox_url=None)

        credentials = CredentialService.resolve(task.user_id)
        self.task_logger.info("Creating sandbox environment")
        self.handle = self._provision(task, credentials, task.branch_name)
        self.registry.register(self.handle)

        if task.install_dependencies:
            try:
                DependencyService.install(self.handle, self.task_logger)
            except Exception as e:
                self.task_logger.info(f"Warning: dependency installation failed: {e}")
        self._start_dev_server()

        return TaskService.update_task(
            self.task_id, sandbox_id=self.handle.sandbox_id, sandbox_url=self.handle.url
        )

    def run_follow_up(self, instruction: str, model: str | None = None) -> bool:
        """Run a follow-up instruction in the task's kept-alive sandbox.

        The task status is left unchanged; the outcome is recorded in logs
        and messages.
        """
        task = TaskService.get_task_by_id(self.task_id)
        handle = SandboxService.resolve(self.task_id, task.sandbox_id, self.registry)
        if handle is None:
            self.task_logger.error(
                "Sandbox is no longer available. Start a new task to continue."
            )
            TaskService.update_task(self.task_id, sandbox_id=None, sandbox_url=None)
            return False

        try:
            credentials = CredentialService.resolve(task.user_id)
            CredentialService.validate_for_agent(credentials, task.selected_agent)

            self.task_logger.info("Processing follow-up instruction")
            result = AgentExecutionService.execute(
                handle,
                instruction,
                task.selected_agent,
                credentials,
                self.task_logger,
                model=model or task.selected_model,
                connectors=ConnectorService.load_for_task(
                    task.user_id, task.mcp_connector_ids
                ),
                resume=True,
                session_id=task.agent_session_id,
                task_id=self.task_id,
            )
            if not result.success:
                raise AgentExecutionError(result.error or "Agent execution failed")

            push = GitService.push_changes(
                handle, task.branch_name, commit_message_for(instruction)
            )
            if push.push_failed:
                raise GitError(
                    "Failed to push changes to repository. Commit was created locally."
                )
            if push.error:
                raise GitError(push.error)

            if result.session_id:
                TaskService.update_task(self.task_id, agent_session_id=result.session_id)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.exception(f"Follow-up for task {self.task_id} failed")
            self.task_logger.error(message)
            TaskService.create_message(self.task_id, MessageRole.SYSTEM, message)
            return False

        self.task_logger.success("Follow-up completed successfully")
        return True
