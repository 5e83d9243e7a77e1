"""Placeholder backends for agents without an integration yet."""

from builder.services.agents.base import AgentBackend, AgentContext, AgentExecutionResult


class UnavailableBackend(AgentBackend):
    """Returns a structured failure without touching the sandbox."""

    def __init__(self, name: str, label: str):
        self.name = name
        self.label = label

    def run(self, context: AgentContext) -> AgentExecutionResult:
        context.task_logger.info(
            f"{self.label} agent not yet implemented. "
            f"Instruction: {context.instruction[:120]}..."
        )
        return self.failure(f"{self.label} agent integration is not yet available.")
