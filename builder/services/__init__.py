"""Business logic services."""

from .agent_execution import AgentExecutionService
from .branch_names import BranchNameService
from .connectors import ConnectorService
from .credentials import CredentialService
from .pull_request import PullRequestService
from .rate_limit import RateLimitService
from .sandbox import SandboxService, sandbox_registry
from .task import TaskService
from .task_runner import TaskRunner

__all__ = [
    "AgentExecutionService",
    "BranchNameService",
    "ConnectorService",
    "CredentialService",
    "PullRequestService",
    "RateLimitService",
    "SandboxService",
    "TaskRunner",
    "TaskService",
    "sandbox_registry",
]
