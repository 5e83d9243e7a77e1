"""Application configuration."""

import os

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Environment
    env: str = os.getenv("APP_ENV", "development")
    api_secret_key: str = os.getenv("API_SECRET_KEY", "dev-secret-key")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Database
    # Default uses local socket connection with trust auth (no password needed in sandboxes)
    database_url: str = os.getenv(
        "DATABASE_URL", "postgresql:///builder?user=postgres"
    )

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379")

    # Encryption key for stored credentials (Fernet, base64-encoded 32 bytes)
    encryption_key: str | None = os.getenv("ENCRYPTION_KEY")

    # Sandbox provider (E2B protocol, e.g. Novita)
    sandbox_api_key: str | None = os.getenv("SANDBOX_API_KEY")
    sandbox_domain: str | None = os.getenv("SANDBOX_DOMAIN", "sandbox.novita.ai")
    sandbox_template: str | None = os.getenv("SANDBOX_TEMPLATE", "builder-agent-v1")
    sandbox_max_timeout: int = int(os.getenv("SANDBOX_MAX_TIMEOUT", "2700"))  # 45 minutes
    sandbox_port: int = int(os.getenv("SANDBOX_PORT", "3000"))
    max_sandbox_duration: int = int(os.getenv("MAX_SANDBOX_DURATION", "300"))  # minutes

    # System-wide provider credentials (fallback when a user has none stored)
    system_anthropic_api_key: str | None = os.getenv("SYSTEM_ANTHROPIC_API_KEY")
    system_openai_api_key: str | None = os.getenv("SYSTEM_OPENAI_API_KEY")
    system_cursor_api_key: str | None = os.getenv("SYSTEM_CURSOR_API_KEY")
    system_gemini_api_key: str | None = os.getenv("SYSTEM_GEMINI_API_KEY")
    system_ai_gateway_api_key: str | None = os.getenv("SYSTEM_AI_GATEWAY_API_KEY")
    system_github_token: str | None = os.getenv("SYSTEM_GITHUB_TOKEN")

    # Branch naming
    ai_gateway_base_url: str = os.getenv(
        "AI_GATEWAY_BASE_URL", "https://ai-gateway.vercel.sh/v1"
    )
    branch_name_model: str = os.getenv("BRANCH_NAME_MODEL", "openai/gpt-5-nano")

    # GitHub
    github_api_url: str = os.getenv("GITHUB_API_URL", "https://api.github.com")

    # Git author used for agent commits
    git_author_name: str = os.getenv("GIT_AUTHOR_NAME", "Builder Agent")
    git_author_email: str = os.getenv("GIT_AUTHOR_EMAIL", "agent@builder.dev")

    # Rate limiting
    max_messages_per_day: int = int(os.getenv("MAX_MESSAGES_PER_DAY", "50"))

    # Timeouts (in seconds)
    agent_timeout: int = int(os.getenv("AGENT_TIMEOUT", "1800"))  # 30 minutes
    command_timeout: int = int(os.getenv("COMMAND_TIMEOUT", "300"))  # 5 minutes


settings = Settings()
