"""Structured task logs persisted on the task row."""

import logging
import re
from datetime import UTC, datetime
from enum import Enum

from builder.models import TaskStatus

logger = logging.getLogger(__name__)


class LogLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"
    COMMAND = "command"


_SECRET_PATTERNS = [
    # Tokens embedded in clone URLs: https://<token>:x-oauth-basic@github.com/...
    re.compile(r"https://([^\s:@/]{8,})(?::[^\s@/]*)?@github\.com"),
    re.compile(r"Bearer\s+([A-Za-z0-9_\-.]{8,})"),
    re.compile(r"\b(sk-ant-[A-Za-z0-9_-]{8,})"),
    re.compile(r"\b(sk-[A-Za-z0-9_-]{20,})"),
    re.compile(r"\b(gh[phosru]_[A-Za-z0-9_]{16,})"),
    re.compile(r"\b(vck_[A-Za-z0-9_-]{8,})"),
    re.compile(
        r"[A-Z_]*(?:KEY|TOKEN|SECRET|PASSWORD)[A-Z_]*[=:\s]+[\"']?([A-Za-z0-9_\-.]{8,})",
        re.IGNORECASE,
    ),
]


def _mask(value: str) -> str:
    if len(value) <= 8:
        return "*" * len(value)
    return f"{value[:4]}{'*' * max(8, len(value) - 8)}{value[-4:]}"


def redact_sensitive_info(message: str) -> str:
    """Mask API keys and tokens in a log message."""
    redacted = message
    for pattern in _SECRET_PATTERNS:
        redacted = pattern.sub(
            lambda m: m.group(0).replace(m.group(1), _mask(m.group(1))), redacted
        )
    return redacted


def create_log_entry(
    level: LogLevel, message: str, timestamp: datetime | None = None
) -> dict:
    """Build a redacted log entry."""
    timestamp = timestamp or datetime.now(UTC)
    return {
        "level": level.value,
        "message": redact_sensitive_info(message),
        "timestamp": timestamp.isoformat(),
    }


class TaskLogger:
    """Appends log entries, progress and status changes to a task.

    Persistence failures are reported to the process log and never raised,
    so logging cannot break a task run.
    """

    def __init__(self, task_id: str):
        self.task_id = task_id

    def _append(self, level: LogLevel, message: str, progress: int | None = None):
        from builder.services.task import TaskService

        entry = create_log_entry(level, message)
        logger.log(
            logging.ERROR if level == LogLevel.ERROR else logging.INFO,
            f"[task {self.task_id}] {entry['message']}",
        )
        try:
            TaskService.append_logs(self.task_id, [entry], progress=progress)
        except Exception as e:
            logger.error(f"Failed to append log for task {self.task_id}: {e}")

    def info(self, message: str) -> None:
        self._append(LogLevel.INFO, message)

    def success(self, message: str) -> None:
        self._append(LogLevel.SUCCESS, message)

    def error(self, message: str) -> None:
        self._append(LogLevel.ERROR, message)

    def command(self, command: str) -> None:
        self._append(LogLevel.COMMAND, f"$ {command}")

    def update_progress(self, progress: int, message: str) -> None:
        """Record a progress percentage along with a log message."""
        self._append(LogLevel.INFO, message, progress=progress)

    def update_status(
        self, status: TaskStatus, message: str | None = None, error: str | None = None
    ) -> None:
        """Move the task to a new status and log the optional message."""
        from builder.services.task import TaskService

        if message:
            self._append(
                LogLevel.ERROR if status == TaskStatus.ERROR else LogLevel.INFO,
                message,
            )
        TaskService.transition(self.task_id, status, error=error)
