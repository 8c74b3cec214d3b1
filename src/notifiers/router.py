"""
Channel routing for freshly created alerts.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from src.database.connection import utcnow
from src.database.models import AlertHistory, AlertRule, EmailQueueItem, User
from src.database.repository import (
    AlertHistoryRepository,
    EmailQueueRepository,
    PreferenceRepository,
)
from .base import EmailMessage, EmailProvider
from .templates import render_alert_email

logger = logging.getLogger(__name__)


@dataclass
class RouteOutcome:
    """What the router did with one alert."""

    sent_now: bool = False
    queued: bool = False
    channels_used: list[str] = field(default_factory=list)


class NotificationRouter:
    """Sends high-priority alerts immediately and queues everything else."""

    def __init__(
        self,
        provider: Optional[EmailProvider],
        alert_repo: AlertHistoryRepository,
        queue_repo: EmailQueueRepository,
        pref_repo: PreferenceRepository,
        app_url: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.provider = provider
        self.alert_repo = alert_repo
        self.queue_repo = queue_repo
        self.pref_repo = pref_repo
        self.app_url = app_url
        self.clock = clock

    def route(self, rule: AlertRule, alert: AlertHistory, user: User) -> RouteOutcome:
        """Deliver or enqueue an alert on each of the rule's channels."""
        outcome = RouteOutcome()
        channels = rule.notification_channels or ["email"]
        pref = self.pref_repo.get(user.id)

        for channel in channels:
            if channel == "email":
                if pref is not None and not pref.email_enabled:
                    logger.info(f"Email disabled for user {user.id}, alert {alert.id} not mailed")
                    continue
                self._route_email(alert, user, outcome)
            elif channel == "push":
                logger.info("Push notifications are not supported, skipping channel")
            else:
                logger.warning(f"Unknown notification channel '{channel}' on rule {rule.id}")

        if outcome.channels_used:
            self.alert_repo.mark_delivered(alert.id, outcome.channels_used, self.clock())
        return outcome

    def _route_email(self, alert: AlertHistory, user: User, outcome: RouteOutcome) -> None:
        message = render_alert_email(
            alert, to=user.email, app_url=self.app_url, user_name=user.name
        )

        if alert.priority == "high":
            if self.provider is None:
                logger.warning("Email provider not configured, queueing high-priority alert")
            else:
                result = self.provider.send(message)
                if result.success:
                    logger.info(f"Email sent to {user.email} for alert {alert.id}")
                    outcome.sent_now = True
                    outcome.channels_used.append("email")
                    return
                logger.warning(
                    f"Immediate send failed for alert {alert.id}, queueing for retry: {result.error}"
                )

        self.enqueue(message, user_id=user.id, alert_id=alert.id)
        outcome.queued = True

    def enqueue(
        self,
        message: EmailMessage,
        user_id: Optional[int],
        alert_id: Optional[int] = None,
    ) -> EmailQueueItem:
        """Write a pending queue item due now."""
        item = EmailQueueItem(
            user_id=user_id,
            email=message.to,
            subject=message.subject,
            html_content=message.html,
            text_content=message.text,
            alert_id=alert_id,
            scheduled_at=self.clock(),
        )
        return self.queue_repo.enqueue(item)
