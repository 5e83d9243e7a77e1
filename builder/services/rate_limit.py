"""Daily task and message quota per user."""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from sqlalchemy import func
from sqlmodel import select

from builder.core.config import settings
from builder.core.database import get_session
from builder.models import MessageRole, Task, TaskMessage, UserQuota

logger = logging.getLogger(__name__)


@dataclass
class RateLimitStatus:
    allowed: bool
    remaining: int
    total: int
    reset_at: datetime


def start_of_utc_day(now: datetime) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    now = now.astimezone(UTC)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class RateLimitService:
    """Counts tasks created plus follow-up messages sent during the UTC day."""

    @staticmethod
    def daily_limit(user_id: str) -> int:
        with get_session() as session:
            quota = session.get(UserQuota, user_id)
            if quota is not None:
                return quota.daily_limit
        return settings.max_messages_per_day

    @staticmethod
    def check(user_id: str, now: datetime | None = None) -> RateLimitStatus:
        """Return whether the user may create another task or message."""
        day_start = start_of_utc_day(now or datetime.now(UTC))
        day_end = day_start + timedelta(days=1)
        limit = RateLimitService.daily_limit(user_id)

        with get_session() as session:
            task_count = session.execute(
                select(func.count())
                .select_from(Task)
                .where(
                    Task.user_id == user_id,
                    Task.created_at >= day_start,
                    Task.created_at < day_end,
                )
            ).scalar()
            message_count = session.execute(
                select(func.count())
                .select_from(TaskMessage)
                .join(Task, Task.id == TaskMessage.task_id)
                .where(
                    Task.user_id == user_id,
                    TaskMessage.role == MessageRole.USER.value,
                    TaskMessage.is_follow_up.is_(True),
                    TaskMessage.created_at >= day_start,
                    TaskMessage.created_at < day_end,
                )
            ).scalar()

        used = (task_count or 0) + (message_count or 0)
        return RateLimitStatus(
            allowed=used < limit,
            remaining=max(limit - used, 0),
            total=limit,
            reset_at=day_end,
        )
