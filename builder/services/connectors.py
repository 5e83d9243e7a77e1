"""User connectors (MCP tool servers) handed to agent backends."""

import json
import logging
import re
from dataclasses import dataclass, field

from cryptography.fernet import InvalidToken
from sqlmodel import select

from builder.core.database import get_session
from builder.core.encryption import decrypt_secret, encrypt_secret
from builder.core.errors import ValidationError
from builder.models import Connector

logger = logging.getLogger(__name__)


@dataclass
class ConnectorConfig:
    """Decrypted connector settings for one agent run."""

    id: str
    name: str
    mode: str = "remote"
    base_url: str | None = None
    command: str | None = None
    oauth_client_id: str | None = None
    oauth_client_secret: str | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def server_name(self) -> str:
        """Name safe for CLI arguments and config sections."""
        return re.sub(r"[^a-z0-9]", "-", self.name.lower())


def _decrypt_optional(value: str | None, what: str, connector_id: str) -> str | None:
    if not value:
        return None
    try:
        return decrypt_secret(value)
    except (InvalidToken, ValueError) as e:
        logger.error(f"Failed to decrypt {what} of connector {connector_id}: {e}")
        return None


class ConnectorService:
    """Service for connector storage and lookup."""

    @staticmethod
    def create_connector(
        user_id: str,
        name: str,
        mode: str = "remote",
        base_url: str | None = None,
        command: str | None = None,
        description: str | None = None,
        oauth_client_id: str | None = None,
        oauth_client_secret: str | None = None,
        env: dict[str, str] | None = None,
    ) -> Connector:
        if mode not in ("local", "remote"):
            raise ValidationError("Connector mode must be 'local' or 'remote'")
        if mode == "local" and not command:
            raise ValidationError("Local connectors require a command")
        if mode == "remote" and not base_url:
            raise ValidationError("Remote connectors require a base URL")

        with get_session() as session:
            connector = Connector(
                user_id=user_id,
                name=name,
                description=description,
                mode=mode,
                base_url=base_url,
                command=command,
                oauth_client_id=oauth_client_id,
                oauth_client_secret=(
                    encrypt_secret(oauth_client_secret) if oauth_client_secret else None
                ),
                env=encrypt_secret(json.dumps(env)) if env else None,
            )
            session.add(connector)
            session.commit()
            session.refresh(connector)
            return connector

    @staticmethod
    def load_for_task(user_id: str, connector_ids: list[str]) -> list[ConnectorConfig]:
        """Decrypt the user's connected connectors among connector_ids.

        Connectors whose secrets cannot be decrypted are passed on without them.
        """
        if not connector_ids:
            return []

        with get_session() as session:
            statement = (
                select(Connector)
                .where(
                    Connector.user_id == user_id,
                    Connector.id.in_(connector_ids),
                    Connector.status == "connected",
                )
                .order_by(Connector.name)
            )
            records = session.execute(statement).scalars().all()

        configs = []
        for record in records:
            env_json = _decrypt_optional(record.env, "env", record.id)
            configs.append(
                ConnectorConfig(
                    id=record.id,
                    name=record.name,
                    mode=record.mode,
                    base_url=record.base_url,
                    command=record.command,
                    oauth_client_id=record.oauth_client_id,
                    oauth_client_secret=_decrypt_optional(
                        record.oauth_client_secret, "client secret", record.id
                    ),
                    env=json.loads(env_json) if env_json else {},
                )
            )
        return configs
