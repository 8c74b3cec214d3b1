"""
Periodic digest emails built from each user's recent alert history.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from src.database.connection import utcnow
from src.database.models import DigestRun, EmailQueueItem, NotificationPreference
from src.database.repository import (
    AlertHistoryRepository,
    DigestRunRepository,
    DuplicateRecordError,
    EmailQueueRepository,
    NotFoundError,
    PreferenceRepository,
    UserRepository,
)
from src.notifiers.templates import render_digest_email

logger = logging.getLogger(__name__)

PERIODS = ("daily", "weekly")
LOOKBACK = {"daily": timedelta(days=1), "weekly": timedelta(days=7)}


@dataclass
class DigestRunResult:
    """Counters for one digest pass."""

    considered: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0


def js_weekday(moment: datetime) -> int:
    """Weekday numbered 0 = Sunday through 6 = Saturday."""
    return moment.isoweekday() % 7


class DigestScheduler:
    """
    Enqueues one digest per user and due window.

    The window for a preference is today's digest_time in the configured
    timezone (weekly digests only on digest_day). A digest is due once that
    time has passed and no DigestRun exists for the window, so any later
    invocation on the same day still delivers it.
    """

    def __init__(
        self,
        pref_repo: PreferenceRepository,
        user_repo: UserRepository,
        alert_repo: AlertHistoryRepository,
        queue_repo: EmailQueueRepository,
        run_repo: DigestRunRepository,
        timezone_name: str = "Asia/Shanghai",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.pref_repo = pref_repo
        self.user_repo = user_repo
        self.alert_repo = alert_repo
        self.queue_repo = queue_repo
        self.run_repo = run_repo
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock

    def window_start(
        self, pref: NotificationPreference, period: str, now: datetime
    ) -> Optional[datetime]:
        """Start of the window due at `now`, or None if nothing is due yet."""
        local_now = now.astimezone(self.tz)
        if period == "weekly" and js_weekday(local_now) != pref.digest_day:
            return None

        slot = local_now.replace(
            hour=pref.digest_hour,
            minute=pref.digest_minute,
            second=0,
            microsecond=0,
        )
        if local_now < slot:
            return None
        return slot.astimezone(timezone.utc)

    def send_digests(self, period: str) -> DigestRunResult:
        """Enqueue digests for every user whose `period` digest is due."""
        if period not in PERIODS:
            raise ValueError(f"Unknown digest period: {period}")

        now = self.clock()
        result = DigestRunResult()

        for pref in self.pref_repo.list_by_frequency(period):
            result.considered += 1
            try:
                if self._send_one(pref, period, now):
                    result.sent += 1
                else:
                    result.skipped += 1
            except Exception as e:
                result.errors += 1
                logger.error(f"Digest for user {pref.user_id} failed: {e}")

        return result

    def _send_one(self, pref: NotificationPreference, period: str, now: datetime) -> bool:
        window = self.window_start(pref, period, now)
        if window is None:
            return False
        if self.run_repo.exists(pref.user_id, period, window):
            return False
        if not pref.email_enabled:
            logger.info(f"Email disabled for user {pref.user_id}, no {period} digest")
            return False

        try:
            user = self.user_repo.require(pref.user_id)
        except NotFoundError as e:
            logger.info(f"Skipping {period} digest: {e}")
            return False

        alerts = self.alert_repo.get_user_alerts_since(user.id, now - LOOKBACK[period])
        if not alerts:
            logger.info(f"No alerts for user {user.id}, no {period} digest")
            return False

        message = render_digest_email(alerts, period, to=user.email, tz=self.tz)
        item = EmailQueueItem(
            user_id=user.id,
            email=user.email,
            subject=message.subject,
            html_content=message.html,
            text_content=message.text,
            scheduled_at=now,
        )
        run = DigestRun(
            user_id=user.id,
            period=period,
            window_start=window,
            alert_count=len(alerts),
            created_at=now,
        )
        try:
            self.run_repo.record_with_email(run, item, self.queue_repo)
        except DuplicateRecordError:
            logger.info(f"{period} digest for user {user.id} already queued by another run")
            return False

        logger.info(f"{period} digest queued for {user.email} ({len(alerts)} alerts)")
        return True
