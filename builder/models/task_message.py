"""Conversation messages attached to a task."""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, String, Text
from sqlmodel import Field, SQLModel

from builder.core.ids import generate_id


class MessageRole(str, Enum):
    """Author of a task message."""

    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class TaskMessage(SQLModel, table=True):
    """Transcript entry for a task.

    Agent messages are created empty and updated in place while output streams.
    """

    __tablename__ = "task_messages"

    id: str = Field(default_factory=generate_id, primary_key=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True), index=True),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True)),
    )

    task_id: str = Field(
        sa_column=Column(ForeignKey("tasks.id", ondelete="CASCADE"), index=True),
        description="ID of the task this message belongs to",
    )
    role: MessageRole = Field(
        sa_column=Column(String, index=True, nullable=False),
        description="user, agent or system",
    )
    content: str = Field(default="", sa_column=Column(Text, nullable=False))
    is_follow_up: bool = Field(
        default=False,
        description="True for user instructions sent after the task was created",
    )
