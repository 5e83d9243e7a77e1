"""Common types for coding-agent backends."""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from builder.services.connectors import ConnectorConfig
from builder.services.git import GitService
from builder.services.sandbox import CommandResult, SandboxHandle, SandboxService
from builder.services.task_logger import redact_sensitive_info

logger = logging.getLogger(__name__)


def sanitize_instruction(instruction: str) -> str:
    """Strip shell metacharacters and keep lines from being read as CLI flags."""
    cleaned = instruction.replace("`", "'").replace("$", "").replace("\\", "")
    return re.sub(r"^-+", " -", cleaned, flags=re.MULTILINE)


@dataclass
class AgentExecutionResult:
    """Outcome of one agent run."""

    success: bool
    cli_name: str
    output: str | None = None
    agent_response: str | None = None
    changes_detected: bool = False
    error: str | None = None
    session_id: str | None = None
    cancelled: bool = False


@dataclass
class AgentContext:
    """Everything a backend needs for one run."""

    handle: SandboxHandle
    instruction: str
    task_logger: object
    model: str | None = None
    connectors: list[ConnectorConfig] = field(default_factory=list)
    resume: bool = False
    session_id: str | None = None
    on_output: Callable[[str], None] | None = None
    timeout: int | None = None


class AgentBackend:
    """Base class for agent CLIs run inside a sandbox.

    Subclasses implement run() and return an AgentExecutionResult. Provider
    credentials are read from the current credential scope by
    SandboxService.run_command.
    """

    name: str = ""
    label: str = ""

    def run(self, context: AgentContext) -> AgentExecutionResult:
        raise NotImplementedError

    def failure(self, error: str, **kwargs) -> AgentExecutionResult:
        return AgentExecutionResult(success=False, cli_name=self.name, error=error, **kwargs)

    def run_logged(
        self, context: AgentContext, command: str, args: list[str] | None = None, **kwargs
    ) -> CommandResult:
        """Run a command and mirror it and its output to the task log."""
        display = " ".join([command, *(args or [])])
        context.task_logger.command(redact_sensitive_info(display))
        result = SandboxService.run_command(context.handle, command, args, **kwargs)
        if result.stdout.strip():
            context.task_logger.info(redact_sensitive_info(result.stdout.strip()))
        if not result.success and result.stderr.strip():
            context.task_logger.error(redact_sensitive_info(result.stderr.strip()))
        return result

    def ensure_cli(
        self, context: AgentContext, binary: str, install_command: str
    ) -> str | None:
        """Install the CLI when missing. Returns an error message on failure."""
        check = SandboxService.run_command(context.handle, "which", [binary])
        if check.success and binary in check.stdout:
            context.task_logger.info(f"{self.label} CLI already installed")
            return None

        context.task_logger.info(f"Installing {self.label} CLI...")
        install = self.run_logged(context, "sh", ["-c", install_command])
        if not install.success:
            return f"Failed to install {self.label} CLI: {install.stderr.strip() or 'Unknown error'}"
        return None

    def completed(
        self,
        context: AgentContext,
        execution: CommandResult,
        agent_response: str | None = None,
        session_id: str | None = None,
    ) -> AgentExecutionResult:
        """Build the result of a finished CLI run.

        Changes are checked regardless of the exit code.
        """
        changes = GitService.has_changes(context.handle)
        response = agent_response if agent_response is not None else execution.stdout
        if execution.success:
            suffix = " (Changes detected)" if changes else " (No changes made)"
            return AgentExecutionResult(
                success=True,
                cli_name=self.name,
                output=f"{self.label} CLI executed successfully{suffix}",
                agent_response=response or f"{self.label} CLI completed the task",
                changes_detected=changes,
                session_id=session_id,
            )

        return self.failure(
            f"{self.label} CLI failed (exit code {execution.exit_code}): "
            f"{execution.stderr.strip() or 'Unknown error'}",
            agent_response=response,
            changes_detected=changes,
            session_id=session_id,
        )
