import logging
from typing import Protocol
from uuid import UUID

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    async def notify(self, user_id: UUID, task_id: UUID) -> None: ...


class LoggingNotifier:
    """Default notifier: records the reminder in the log. Swap in email/push delivery here."""

    async def notify(self, user_id: UUID, task_id: UUID) -> None:
        logger.info(f"Notifying user {user_id} about overdue task {task_id}")
