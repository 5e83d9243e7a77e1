"""Database models."""

from .credentials import ApiProvider, Connector, UserApiKey, UserQuota
from .task import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    AgentType,
    PullRequestStatus,
    Task,
    TaskStatus,
)
from .task_message import MessageRole, TaskMessage

__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "AgentType",
    "ApiProvider",
    "Connector",
    "MessageRole",
    "PullRequestStatus",
    "Task",
    "TaskMessage",
    "TaskStatus",
    "UserApiKey",
    "UserQuota",
]
