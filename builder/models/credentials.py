"""Per-user stored credentials, connectors and quotas."""

from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import Column, DateTime, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel

from builder.core.ids import generate_id


class ApiProvider(str, Enum):
    """Providers a user can store a credential for."""

    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    CURSOR = "cursor"
    GEMINI = "gemini"
    AIGATEWAY = "aigateway"
    GITHUB = "github"


class UserApiKey(SQLModel, table=True):
    """Encrypted provider API key or git-hosting token owned by a user."""

    __tablename__ = "user_api_keys"
    __table_args__ = (UniqueConstraint("user_id", "provider"),)

    id: str = Field(default_factory=generate_id, primary_key=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True)),
    )
    user_id: str = Field(index=True)
    provider: ApiProvider = Field(sa_column=Column(String, nullable=False))
    value: str = Field(
        sa_column=Column(Text, nullable=False), description="Fernet ciphertext"
    )


class Connector(SQLModel, table=True):
    """MCP-style tool server a user has connected."""

    __tablename__ = "connectors"

    id: str = Field(default_factory=generate_id, primary_key=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True)),
    )
    user_id: str = Field(index=True)
    name: str
    description: str | None = Field(default=None)
    mode: str = Field(default="remote", description="local or remote")
    base_url: str | None = Field(default=None)
    command: str | None = Field(default=None)
    oauth_client_id: str | None = Field(default=None)
    oauth_client_secret: str | None = Field(
        default=None, sa_column=Column(Text), description="Encrypted"
    )
    env: str | None = Field(
        default=None, sa_column=Column(Text), description="Encrypted JSON object"
    )
    status: str = Field(default="connected", description="connected or disconnected")


class UserQuota(SQLModel, table=True):
    """Per-user override of the daily task/message limit."""

    __tablename__ = "user_quotas"

    user_id: str = Field(primary_key=True)
    daily_limit: int
