"""Credential resolution and context-scoped injection."""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime

from cryptography.fernet import InvalidToken
from sqlmodel import select

from builder.core.config import settings
from builder.core.database import get_session
from builder.core.encryption import decrypt_secret, encrypt_secret
from builder.core.errors import CredentialValidationError, NotFoundError
from builder.models import AgentType, ApiProvider, UserApiKey

logger = logging.getLogger(__name__)

# Environment variables visible to sandbox commands issued from the current
# context. Set only through credential_scope().
_credential_env: ContextVar[dict[str, str]] = ContextVar("credential_env", default={})


def current_credential_env() -> dict[str, str]:
    """Return a copy of the credential variables of the current scope."""
    return dict(_credential_env.get())


@contextmanager
def credential_scope(env: dict[str, str]):
    """Expose env to sandbox commands for the duration of the block.

    Scopes nest; the previous scope is restored on every exit path.
    """
    token = _credential_env.set({**_credential_env.get(), **env})
    try:
        yield
    finally:
        _credential_env.reset(token)


_SYSTEM_KEYS = {
    ApiProvider.ANTHROPIC: "system_anthropic_api_key",
    ApiProvider.OPENAI: "system_openai_api_key",
    ApiProvider.CURSOR: "system_cursor_api_key",
    ApiProvider.GEMINI: "system_gemini_api_key",
    ApiProvider.AIGATEWAY: "system_ai_gateway_api_key",
    ApiProvider.GITHUB: "system_github_token",
}


@dataclass
class Credentials:
    """Resolved credentials for one task run."""

    github_token: str | None = None
    anthropic_api_key: str | None = None
    openai_api_key: str | None = None
    cursor_api_key: str | None = None
    gemini_api_key: str | None = None
    ai_gateway_api_key: str | None = None

    def env_for_agent(self, agent: AgentType) -> dict[str, str]:
        """Environment variables an agent CLI needs, omitting unset values."""
        agent = AgentType(agent)
        env = {}
        if self.github_token:
            env["GITHUB_TOKEN"] = self.github_token
            env["GH_TOKEN"] = self.github_token

        if agent == AgentType.CLAUDE:
            env["ANTHROPIC_API_KEY"] = self.anthropic_api_key
        elif agent == AgentType.CODEX:
            env["AI_GATEWAY_API_KEY"] = self.ai_gateway_api_key
            env["OPENAI_API_KEY"] = self.openai_api_key or self.ai_gateway_api_key
        elif agent == AgentType.CURSOR:
            env["CURSOR_API_KEY"] = self.cursor_api_key
        elif agent == AgentType.GEMINI:
            env["GEMINI_API_KEY"] = self.gemini_api_key
        elif agent == AgentType.OPENCODE:
            env["AI_GATEWAY_API_KEY"] = self.ai_gateway_api_key
            env["ANTHROPIC_API_KEY"] = self.anthropic_api_key

        return {key: value for key, value in env.items() if value}


class CredentialService:
    """Looks up user credentials with system-wide fallbacks."""

    @staticmethod
    def get_user_key(user_id: str, provider: ApiProvider) -> str | None:
        """Return the user's decrypted key for a provider, if stored."""
        with get_session() as session:
            statement = select(UserApiKey).where(
                UserApiKey.user_id == user_id,
                UserApiKey.provider == ApiProvider(provider).value,
            )
            row = session.execute(statement).scalar_one_or_none()
            if row is None:
                return None
            return decrypt_secret(row.value)

    @staticmethod
    def get_api_key(user_id: str, provider: ApiProvider) -> str | None:
        """User key first, then the system key from settings."""
        provider = ApiProvider(provider)
        try:
            value = CredentialService.get_user_key(user_id, provider)
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Could not decrypt {provider.value} key for {user_id}: {e}")
            value = None
        return value or getattr(settings, _SYSTEM_KEYS[provider])

    @staticmethod
    def get_github_token(user_id: str) -> str | None:
        return CredentialService.get_api_key(user_id, ApiProvider.GITHUB)

    @staticmethod
    def resolve(user_id: str) -> Credentials:
        """Resolve every credential a task may need."""
        return Credentials(
            github_token=CredentialService.get_github_token(user_id),
            anthropic_api_key=CredentialService.get_api_key(
                user_id, ApiProvider.ANTHROPIC
            ),
            openai_api_key=CredentialService.get_api_key(user_id, ApiProvider.OPENAI),
            cursor_api_key=CredentialService.get_api_key(user_id, ApiProvider.CURSOR),
            gemini_api_key=CredentialService.get_api_key(user_id, ApiProvider.GEMINI),
            ai_gateway_api_key=CredentialService.get_api_key(
                user_id, ApiProvider.AIGATEWAY
            ),
        )

    @staticmethod
    def validate_for_agent(credentials: Credentials, agent: AgentType) -> None:
        """Check the credentials required to run an agent are present.

        Raises:
            CredentialValidationError: Listing every missing credential
        """
        agent = AgentType(agent)
        missing = []

        if agent == AgentType.CLAUDE and not credentials.anthropic_api_key:
            missing.append("ANTHROPIC_API_KEY is required for Claude CLI")
        elif agent == AgentType.CURSOR and not credentials.cursor_api_key:
            missing.append("CURSOR_API_KEY is required for Cursor CLI")
        elif agent == AgentType.CODEX:
            key = credentials.ai_gateway_api_key or credentials.openai_api_key
            if not key:
                missing.append("AI_GATEWAY_API_KEY is required for Codex CLI")
            elif not key.startswith(("vck_", "sk-")):
                missing.append(
                    "Codex CLI key must be an AI Gateway key (vck_) "
                    "or an OpenAI key (sk-)"
                )
        elif agent == AgentType.GEMINI and not credentials.gemini_api_key:
            missing.append("GEMINI_API_KEY is required for Gemini CLI")
        elif agent == AgentType.OPENCODE and not (
            credentials.ai_gateway_api_key or credentials.anthropic_api_key
        ):
            missing.append(
                "AI_GATEWAY_API_KEY or ANTHROPIC_API_KEY is required for opencode"
            )

        if not credentials.github_token:
            missing.append("A GitHub token is required to clone and push")

        if missing:
            raise CredentialValidationError("; ".join(missing))

    @staticmethod
    def list_providers(user_id: str) -> list[ApiProvider]:
        """Providers the user has stored keys for."""
        with get_session() as session:
            statement = select(UserApiKey.provider).where(UserApiKey.user_id == user_id)
            return [ApiProvider(p) for p in session.execute(statement).scalars().all()]

    @staticmethod
    def save_key(user_id: str, provider: ApiProvider, value: str) -> None:
        """Encrypt and store (or replace) a user's key."""
        provider = ApiProvider(provider)
        encrypted = encrypt_secret(value)
        with get_session() as session:
            statement = select(UserApiKey).where(
                UserApiKey.user_id == user_id, UserApiKey.provider == provider.value
            )
            row = session.execute(statement).scalar_one_or_none()
            if row is None:
                row = UserApiKey(user_id=user_id, provider=provider, value=encrypted)
            else:
                row.value = encrypted
                row.updated_at = datetime.now(UTC)
            session.add(row)
            session.commit()

    @staticmethod
    def delete_key(user_id: str, provider: ApiProvider) -> None:
        with get_session() as session:
            statement = select(UserApiKey).where(
                UserApiKey.user_id == user_id,
                UserApiKey.provider == ApiProvider(provider).value,
            )
            row = session.execute(statement).scalar_one_or_none()
            if row is None:
                raise NotFoundError(f"No {provider} key stored")
            session.delete(row)
            session.commit()
