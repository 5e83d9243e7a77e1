"""AI-generated git branch names with a deterministic fallback."""

import logging
import re
import secrets
import string
from datetime import UTC, datetime

import httpx

from builder.core.config import settings
from builder.core.errors import BranchNameError

logger = logging.getLogger(__name__)

BRANCH_NAME_RE = re.compile(r"^[a-z0-9-/]+$")
MAX_BRANCH_NAME_LENGTH = 50
SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
SUFFIX_LENGTH = 6


def _build_prompt(description: str, repo_name: str | None, context: str | None) -> str:
    lines = [
        "Generate a concise, descriptive Git branch name for the following task:",
        f"Description: {description}",
    ]
    if repo_name:
        lines.append(f"Repository: {repo_name}")
    if context:
        lines.append(f"Additional context: {context}")
    lines += [
        "",
        "Requirements:",
        "- Use lowercase letters, numbers, and hyphens only",
        f"- Keep it under {MAX_BRANCH_NAME_LENGTH} characters",
        "- Be descriptive but concise",
        "- Use conventional prefixes like feature/, fix/, chore/, docs/ when appropriate",
        "- Make it readable and meaningful",
        "",
        "Return ONLY the branch name, nothing else.",
    ]
    return "\n".join(lines)


def validate_branch_name(name: str) -> str:
    """Strip surrounding quotes and check the allowed character set and length.

    Raises:
        BranchNameError: If the name is empty, too long or has invalid characters
    """
    name = name.strip().strip("\"'").strip()
    if not name or not BRANCH_NAME_RE.match(name):
        raise BranchNameError(f"Generated branch name contains invalid characters: {name}")
    if len(name) > MAX_BRANCH_NAME_LENGTH:
        raise BranchNameError("Generated branch name is too long")
    return name


def random_suffix(length: int = SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(SUFFIX_ALPHABET) for _ in range(length))


class BranchNameService:
    """Names the working branch of a task."""

    @staticmethod
    def generate(
        description: str,
        repo_name: str | None = None,
        context: str | None = None,
        api_key: str | None = None,
        client: httpx.Client | None = None,
    ) -> str:
        """Ask the AI gateway for a branch name and append a random suffix.

        Raises:
            BranchNameError: On missing key, HTTP failure or an invalid name
        """
        api_key = api_key or settings.system_ai_gateway_api_key
        if not api_key:
            raise BranchNameError(
                "AI_GATEWAY_API_KEY is required to generate AI branch names."
            )

        should_close = client is None
        if client is None:
            client = httpx.Client(base_url=settings.ai_gateway_base_url, timeout=30.0)

        try:
            response = client.post(
                "/chat/completions",
                headers={"Authorization": f"Bearer {api_key}"},
                json={
                    "model": settings.branch_name_model,
                    "messages": [
                        {
                            "role": "user",
                            "content": _build_prompt(description, repo_name, context),
                        }
                    ],
                    "temperature": 0.3,
                },
            )
            response.raise_for_status()
            text = response.json()["choices"][0]["message"]["content"] or ""
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            raise BranchNameError(f"Branch name generation failed: {e}") from e
        finally:
            if should_close:
                client.close()

        return f"{validate_branch_name(text)}-{random_suffix()}"

    @staticmethod
    def fallback(task_id: str, now: datetime | None = None) -> str:
        """Deterministic name from the time and the first 8 characters of the id.

        Task ids are lowercase alphanumeric with at least 8 characters, so the
        prefix is used as is. Never fails.
        """
        now = now or datetime.now(UTC)
        timestamp = now.strftime("%Y-%m-%dT%H-%M-%S")
        return f"agent/{timestamp}-{task_id[:8]}"
