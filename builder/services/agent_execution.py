"""Agent execution service with business logic."""

import logging
from collections.abc import Callable

from builder.models import AgentType, MessageRole
from builder.services.agents import (
    AGENT_BACKENDS,
    AgentContext,
    AgentExecutionResult,
    sanitize_instruction,
)
from builder.services.connectors import ConnectorConfig
from builder.services.credentials import Credentials, credential_scope
from builder.services.sandbox import SandboxHandle
from builder.services.task import TaskService

logger = logging.getLogger(__name__)


class AgentExecutionService:
    """Runs a coding agent inside a task's sandbox."""

    @staticmethod
    def execute(
        handle: SandboxHandle,
        instruction: str,
        agent_type: AgentType,
        credentials: Credentials,
        task_logger,
        model: str | None = None,
        connectors: list[ConnectorConfig] | None = None,
        cancellation_check: Callable[[], bool] | None = None,
        resume: bool = False,
        session_id: str | None = None,
        task_id: str | None = None,
        timeout: int | None = None,
    ) -> AgentExecutionResult:
        """Execute an agent and report the outcome.

        Never raises: backend errors become failure results. The agent's
        credentials are visible to sandbox commands only for the duration of
        this call.

        Args:
            handle: Sandbox the repository is checked out in
            instruction: Raw user instruction, sanitized before use
            agent_type: Backend to dispatch to
            credentials: Resolved credentials; only the agent's subset is exposed
            task_id: When given, an agent message is created and streamed into
        """
        cli_name = AgentType(agent_type).value

        if cancellation_check and cancellation_check():
            task_logger.info("Task was cancelled before agent execution")
            return AgentExecutionResult(
                success=False,
                cli_name=cli_name,
                error="Task was cancelled",
                cancelled=True,
            )

        backend = AGENT_BACKENDS.get(AgentType(agent_type))
        if backend is None:
            return AgentExecutionResult(
                success=False, cli_name=cli_name, error=f"Unknown agent type: {cli_name}"
            )

        message_id = None
        on_output = None
        if task_id:
            message_id = TaskService.create_message(task_id, MessageRole.AGENT, "").id

            def on_output(content: str) -> None:
                try:
                    TaskService.update_message_content(message_id, content)
                except Exception as e:
                    logger.error(f"Failed to update agent message {message_id}: {e}")

        context = AgentContext(
            handle=handle,
            instruction=sanitize_instruction(instruction),
            task_logger=task_logger,
            model=model,
            connectors=connectors or [],
            resume=resume,
            session_id=session_id,
            on_output=on_output,
            timeout=timeout,
        )

        try:
            with credential_scope(credentials.env_for_agent(agent_type)):
                result = backend.run(context)
        except Exception as e:
            logger.exception(f"{cli_name} backend raised for sandbox {handle.sandbox_id}")
            task_logger.error(str(e) or f"Failed to execute {cli_name} CLI in sandbox")
            result = AgentExecutionResult(
                success=False,
                cli_name=cli_name,
                error=str(e) or f"Failed to execute {cli_name} CLI in sandbox",
            )

        if message_id:
            final = result.agent_response or result.error or result.output or ""
            on_output(final)

        logger.info(
            f"Agent {cli_name} finished in sandbox {handle.sandbox_id} "
            f"(success={result.success})"
        )
        return result
