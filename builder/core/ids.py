"""Identifier generation."""

import re
import secrets
import string

ID_ALPHABET = string.ascii_lowercase + string.digits

# Client-assigned task ids share the alphabet of generated ones
TASK_ID_PATTERN = r"^[a-z0-9]{8,64}$"
TASK_ID_RE = re.compile(TASK_ID_PATTERN)


def generate_id(length: int = 12) -> str:
    """Generate a random lowercase alphanumeric identifier."""
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def is_valid_task_id(task_id: str) -> bool:
    return bool(TASK_ID_RE.match(task_id))
