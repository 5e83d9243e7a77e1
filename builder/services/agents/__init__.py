"""Coding-agent backends keyed by agent type."""

from builder.models import AgentType

from .base import AgentBackend, AgentContext, AgentExecutionResult, sanitize_instruction
from .claude import ClaudeBackend
from .codex import CodexBackend
from .copilot import CopilotBackend
from .cursor import CursorBackend
from .unavailable import UnavailableBackend

AGENT_BACKENDS: dict[AgentType, AgentBackend] = {
    AgentType.CLAUDE: ClaudeBackend(),
    AgentType.CODEX: CodexBackend(),
    AgentType.COPILOT: CopilotBackend(),
    AgentType.CURSOR: CursorBackend(),
    AgentType.GEMINI: UnavailableBackend("gemini", "Gemini"),
    AgentType.OPENCODE: UnavailableBackend("opencode", "OpenCode"),
    AgentType.AMP: UnavailableBackend("amp", "Amp"),
    AgentType.DROID: UnavailableBackend("droid", "Droid"),
}

__all__ = [
    "AGENT_BACKENDS",
    "AgentBackend",
    "AgentContext",
    "AgentExecutionResult",
    "sanitize_instruction",
]
