"""Task model for agent execution."""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import JSON, Column, DateTime, String, Text
from sqlmodel import Field, SQLModel

from builder.core.ids import generate_id


class TaskStatus(str, Enum):
    """Lifecycle states of a task."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.ERROR, TaskStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING, TaskStatus.CANCELLED}),
    TaskStatus.PROCESSING: TERMINAL_STATUSES,
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.ERROR: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class AgentType(str, Enum):
    """Supported coding-agent backends."""

    CLAUDE = "claude"
    CODEX = "codex"
    COPILOT = "copilot"
    CURSOR = "cursor"
    GEMINI = "gemini"
    OPENCODE = "opencode"
    AMP = "amp"
    DROID = "droid"


class PullRequestStatus(str, Enum):
    """Recorded pull-request states."""

    OPEN = "OPEN"
    CLOSED = "CLOSED"
    MERGED = "MERGED"


class Task(SQLModel, table=True):
    """Task for agent execution."""

    __tablename__ = "tasks"

    # Primary key and timestamps
    id: str = Field(
        default_factory=generate_id,
        primary_key=True,
        description="Opaque task identifier (may be assigned by the client)",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True), index=True),
        description="Timestamp when the task was created",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True)),
        description="Timestamp when the task was last updated",
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
        description="Timestamp when the task completed successfully",
    )
    deleted_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
        description="Soft-delete timestamp",
    )
    cancel_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
        description="Set when the user asks to cancel a running task",
    )

    # Request fields
    user_id: str = Field(index=True, description="Owning user")
    prompt: str = Field(
        sa_column=Column(Text, nullable=False),
        description="Natural language instruction for the agent",
    )
    repo_url: str = Field(description="Repository URL to clone and work on")
    selected_agent: AgentType = Field(
        default=AgentType.CLAUDE,
        sa_column=Column(String, nullable=False),
        description="Coding agent backend",
    )
    selected_model: str | None = Field(default=None, description="Model hint")
    install_dependencies: bool = Field(default=False)
    max_duration: int = Field(default=300, description="Maximum duration in minutes")
    keep_alive: bool = Field(
        default=False, description="Keep the sandbox running after completion"
    )
    mcp_connector_ids: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
        description="Connector ids made available to the agent",
    )
    parent_task_id: str | None = Field(
        default=None,
        foreign_key="tasks.id",
        description="Original task when this task is a retry",
    )

    # Execution state
    status: TaskStatus = Field(
        default=TaskStatus.PENDING,
        sa_column=Column(String, index=True, nullable=False),
        description="PENDING, PROCESSING, COMPLETED, ERROR or CANCELLED",
    )
    progress: int = Field(default=0, description="Progress percentage")
    logs: list[dict] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
        description="Ordered log entries {level, message, timestamp}",
    )
    error: str | None = Field(
        default=None, sa_column=Column(Text), description="Last error message"
    )
    branch_name: str | None = Field(default=None, description="Working branch")
    sandbox_id: str | None = Field(
        default=None, description="ID of the live sandbox, if any"
    )
    sandbox_url: str | None = Field(
        default=None, description="Externally reachable sandbox URL"
    )
    agent_session_id: str | None = Field(
        default=None, description="Agent session ID for resumption"
    )

    # Pull request
    pr_url: str | None = Field(default=None)
    pr_number: int | None = Field(default=None)
    pr_status: PullRequestStatus | None = Field(
        default=None, sa_column=Column(String)
    )
    pr_merge_commit_sha: str | None = Field(default=None)
    preview_url: str | None = Field(default=None)
