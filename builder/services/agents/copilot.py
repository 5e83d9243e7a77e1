"""GitHub Copilot CLI backend."""

from builder.core.config import settings
from builder.services.agents.base import AgentBackend, AgentContext, AgentExecutionResult
from builder.services.credentials import current_credential_env
from builder.services.sandbox import SandboxService


class CopilotBackend(AgentBackend):
    name = "copilot"
    label = "Copilot"

    def run(self, context: AgentContext) -> AgentExecutionResult:
        env = current_credential_env()
        token = env.get("GH_TOKEN") or env.get("GITHUB_TOKEN")
        if not token:
            return self.failure(
                "GitHub token not available. Connect your GitHub account before using Copilot."
            )

        error = self.ensure_cli(context, "copilot", "npm install -g @github/copilot")
        if error:
            return self.failure(error)

        args = ["exec", "--dangerously-allow-file-modifications", "--no-prompt"]
        if context.model:
            args += ["--model", context.model]

        context.task_logger.info("Executing GitHub Copilot CLI instruction...")
        execution = SandboxService.run_command(
            context.handle,
            "copilot",
            [*args, context.instruction],
            timeout=context.timeout or settings.agent_timeout,
            envs={"GH_TOKEN": token, "GITHUB_TOKEN": token},
        )
        if context.on_output and execution.stdout:
            context.on_output(execution.stdout)

        return self.completed(context, execution)
