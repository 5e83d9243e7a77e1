"""Cursor agent CLI backend."""

from builder.core.config import settings
from builder.services.agents.base import AgentBackend, AgentContext, AgentExecutionResult
from builder.services.sandbox import SandboxService


class CursorBackend(AgentBackend):
    name = "cursor"
    label = "Cursor"

    def run(self, context: AgentContext) -> AgentExecutionResult:
        error = self.ensure_cli(
            context, "cursor-agent", "curl -fsSL https://cursor.com/install | bash"
        )
        if error:
            return self.failure(error)

        context.task_logger.info("Executing Cursor CLI instruction...")
        execution = SandboxService.run_command(
            context.handle,
            "cursor-agent",
            ["exec", context.instruction, "--dangerously-apply-changes"],
            timeout=context.timeout or settings.agent_timeout,
        )
        if context.on_output and execution.stdout:
            context.on_output(execution.stdout)

        return self.completed(context, execution)
