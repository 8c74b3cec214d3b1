"""
Batch worker that drains the outbound email queue.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from src.database.connection import utcnow
from src.database.models import EmailQueueItem, QUEUE_FAILED, QUEUE_PENDING
from src.database.repository import AlertHistoryRepository, EmailQueueRepository
from src.notifiers.base import EmailMessage, EmailProvider

logger = logging.getLogger(__name__)


@dataclass
class QueueRunResult:
    """Counters for one queue pass."""

    processed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0


class DeliveryQueue:
    """
    Sends pending queue items with bounded retries.

    A failed attempt increments retry_count. Once it reaches max_retries the
    item becomes terminally failed; before that it stays pending and is not
    eligible again until next_attempt_at, which backs off exponentially from
    backoff_base_seconds up to backoff_max_seconds. Sent and failed items are
    never selected again.
    """

    def __init__(
        self,
        provider: EmailProvider,
        queue_repo: EmailQueueRepository,
        alert_repo: AlertHistoryRepository,
        max_retries: int = 3,
        backoff_base_seconds: int = 60,
        backoff_max_seconds: int = 3600,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.provider = provider
        self.queue_repo = queue_repo
        self.alert_repo = alert_repo
        self.max_retries = max_retries
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.clock = clock

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before the next attempt after `retry_count` failures."""
        seconds = self.backoff_base_seconds * (2 ** max(retry_count - 1, 0))
        return timedelta(seconds=min(seconds, self.backoff_max_seconds))

    def process_queue(self, batch_size: int = 50) -> QueueRunResult:
        """Attempt up to `batch_size` due items, oldest first."""
        result = QueueRunResult()
        items = self.queue_repo.get_due(batch_size, self.clock())
        logger.info(f"Processing {len(items)} queued emails")

        for item in items:
            result.processed += 1
            try:
                self._process_item(item, result)
            except Exception as e:
                logger.error(f"Unexpected error processing email {item.id}: {e}")

        return result

    def _process_item(self, item: EmailQueueItem, result: QueueRunResult) -> None:
        message = EmailMessage(
            to=item.email,
            subject=item.subject,
            html=item.html_content,
            text=item.text_content,
        )
        outcome = self.provider.send(message)
        now = self.clock()

        if outcome.success:
            self.queue_repo.mark_sent(item.id, now)
            if item.alert_id is not None:
                self.alert_repo.mark_delivered(item.alert_id, ["email"], now)
            result.sent += 1
            logger.info(f"Email {item.id} sent to {item.email}")
            return

        self._record_failure(item, outcome.error or "Unknown error", now, result)

    def _record_failure(
        self,
        item: EmailQueueItem,
        error: str,
        now: datetime,
        result: QueueRunResult,
    ) -> None:
        retry_count = item.retry_count + 1
        if retry_count >= self.max_retries:
            status = QUEUE_FAILED
            next_attempt_at = now
            result.failed += 1
            logger.error(f"Email {item.id} failed permanently after {retry_count} attempts: {error}")
        else:
            status = QUEUE_PENDING
            next_attempt_at = now + self.backoff(retry_count)
            result.retried += 1
            logger.warning(
                f"Email {item.id} attempt {retry_count} failed, retrying after "
                f"{next_attempt_at.isoformat()}: {error}"
            )
        self.queue_repo.record_failure(
            item.id,
            retry_count=retry_count,
            status=status,
            error_message=error,
            next_attempt_at=next_attempt_at,
        )

