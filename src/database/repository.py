"""
Repository classes for CRUD operations.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Optional

from .connection import Database, from_db, to_db, utcnow
from .models import (
    AlertHistory,
    AlertRule,
    DigestRun,
    EmailQueueItem,
    MarketSnapshot,
    NotificationPreference,
    User,
    QUEUE_PENDING,
    QUEUE_SENT,
)

logger = logging.getLogger(__name__)


def _load_conditions(row):
    """
    Decode a rule's conditions column.

    Malformed JSON is returned as the raw text so that parse_conditions
    rejects it and the rule never triggers.
    """
    raw = row["conditions"]
    try:
        return json.loads(raw or "{}")
    except ValueError:
        logger.error(f"Rule {row['id']} has malformed conditions: {raw!r}")
        return raw


def _load_channels(row) -> list[str]:
    try:
        return json.loads(row["notification_channels"] or "[]")
    except ValueError:
        logger.error(f"Rule {row['id']} has malformed channels, using email")
        return ["email"]


class NotFoundError(Exception):
    """Raised when a referenced user, rule or record does not exist."""

    pass


class DuplicateRecordError(Exception):
    """Raised when an insert collides with an idempotency key."""

    pass


class UserRepository:
    """Lookups against the user directory."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, user: User) -> User:
        """Create a new user."""
        user.created_at = user.created_at or utcnow()
        cursor = self.db.connection.cursor()
        cursor.execute(
            "INSERT INTO users (email, name, created_at) VALUES (?, ?, ?)",
            (user.email, user.name, to_db(user.created_at)),
        )
        self.db.connection.commit()
        user.id = cursor.lastrowid
        return user

    def get_by_id(self, user_id: int) -> Optional[User]:
        """Get user by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def require(self, user_id: Optional[int]) -> User:
        """Get a user that has an email address, or raise NotFoundError."""
        user = self.get_by_id(user_id) if user_id is not None else None
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        if not user.email:
            raise NotFoundError(f"User {user_id} has no email address")
        return user

    def list_all(self) -> list[User]:
        """List all users."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM users ORDER BY id")
        return [self._row_to_user(row) for row in cursor.fetchall()]

    def _row_to_user(self, row) -> User:
        return User(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            created_at=from_db(row["created_at"]),
        )


class RuleRepository:
    """CRUD operations for alert rules."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, rule: AlertRule) -> AlertRule:
        """Create a new rule."""
        rule.created_at = rule.created_at or utcnow()
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO alert_rules
            (user_id, symbol, rule_type, conditions, is_active,
             notification_channels, name, description, trigger_count,
             last_triggered_at, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                rule.user_id,
                rule.symbol,
                rule.rule_type,
                json.dumps(rule.conditions),
                1 if rule.is_active else 0,
                json.dumps(rule.notification_channels),
                rule.name,
                rule.description,
                rule.trigger_count,
                to_db(rule.last_triggered_at),
                to_db(rule.created_at),
            ),
        )
        self.db.connection.commit()
        rule.id = cursor.lastrowid
        return rule

    def get_by_id(self, rule_id: int) -> Optional[AlertRule]:
        """Get rule by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM alert_rules WHERE id = ?", (rule_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    def list_all(self, user_id: Optional[int] = None) -> list[AlertRule]:
        """List rules, optionally for one user."""
        cursor = self.db.connection.cursor()
        if user_id is None:
            cursor.execute("SELECT * FROM alert_rules ORDER BY id")
        else:
            cursor.execute(
                "SELECT * FROM alert_rules WHERE user_id = ? ORDER BY id",
                (user_id,),
            )
        return [self._row_to_rule(row) for row in cursor.fetchall()]

    def get_active_rules_for_symbol(self, symbol: str) -> list[AlertRule]:
        """Get active rules for a symbol plus market-wide rules."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM alert_rules
            WHERE is_active = 1 AND (symbol = ? OR symbol IS NULL)
            ORDER BY id
            """,
            (symbol,),
        )
        return [self._row_to_rule(row) for row in cursor.fetchall()]

    def get_active_symbols(self) -> list[str]:
        """Distinct symbols referenced by active symbol-specific rules."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT DISTINCT symbol FROM alert_rules
            WHERE is_active = 1 AND symbol IS NOT NULL
            ORDER BY symbol
            """
        )
        return [row["symbol"] for row in cursor.fetchall()]

    def set_active(self, rule_id: int, is_active: bool) -> None:
        """Pause or resume a rule. Rules are deactivated, never deleted."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "UPDATE alert_rules SET is_active = ? WHERE id = ?",
            (1 if is_active else 0, rule_id),
        )
        self.db.connection.commit()
        if cursor.rowcount == 0:
            raise NotFoundError(f"Rule {rule_id} not found")

    def record_trigger(self, rule_id: int, triggered_at: datetime) -> int:
        """
        Atomically bump the trigger counter and stamp last_triggered_at.

        Returns:
            The new trigger count
        """
        connection = self.db.connection
        cursor = connection.cursor()
        try:
            cursor.execute(
                """
                UPDATE alert_rules
                SET trigger_count = trigger_count + 1, last_triggered_at = ?
                WHERE id = ?
                """,
                (to_db(triggered_at), rule_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Rule {rule_id} not found")
            cursor.execute(
                "SELECT trigger_count FROM alert_rules WHERE id = ?", (rule_id,)
            )
            count = cursor.fetchone()["trigger_count"]
        except Exception:
            connection.rollback()
            raise
        connection.commit()
        return count

    def _row_to_rule(self, row) -> AlertRule:
        return AlertRule(
            id=row["id"],
            user_id=row["user_id"],
            symbol=row["symbol"],
            rule_type=row["rule_type"],
            conditions=_load_conditions(row),
            is_active=bool(row["is_active"]),
            notification_channels=_load_channels(row),
            name=row["name"],
            description=row["description"],
            trigger_count=row["trigger_count"],
            last_triggered_at=from_db(row["last_triggered_at"]),
            created_at=from_db(row["created_at"]),
        )


class AlertHistoryRepository:
    """CRUD operations for alert history."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, alert: AlertHistory) -> AlertHistory:
        """
        Create a new alert history entry.

        Raises:
            DuplicateRecordError: If an alert with the same dedup_key exists
        """
        alert.created_at = alert.created_at or utcnow()
        cursor = self.db.connection.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO alert_history
                (rule_id, user_id, symbol, alert_type, title, message, data,
                 priority, is_read, sent_via, delivered_at, dedup_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alert.rule_id,
                    alert.user_id,
                    alert.symbol,
                    alert.alert_type,
                    alert.title,
                    alert.message,
                    json.dumps(alert.data, ensure_ascii=False),
                    alert.priority,
                    1 if alert.is_read else 0,
                    json.dumps(alert.sent_via),
                    to_db(alert.delivered_at),
                    alert.dedup_key,
                    to_db(alert.created_at),
                ),
            )
        except sqlite3.IntegrityError as e:
            self.db.connection.rollback()
            if "dedup_key" in str(e):
                raise DuplicateRecordError(
                    f"Alert already recorded for {alert.dedup_key}"
                ) from e
            raise
        self.db.connection.commit()
        alert.id = cursor.lastrowid
        return alert

    def get_by_id(self, alert_id: int) -> Optional[AlertHistory]:
        """Get alert by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM alert_history WHERE id = ?", (alert_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_alert(row)

    def mark_delivered(
        self, alert_id: int, channels: list[str], delivered_at: datetime
    ) -> None:
        """Record the channels actually used to deliver an alert."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE alert_history
            SET sent_via = ?, delivered_at = ?
            WHERE id = ?
            """,
            (json.dumps(channels), to_db(delivered_at), alert_id),
        )
        self.db.connection.commit()

    def get_user_alerts_since(
        self, user_id: int, since: datetime
    ) -> list[AlertHistory]:
        """Get a user's alerts created at or after `since`, newest first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM alert_history
            WHERE user_id = ? AND created_at >= ?
            ORDER BY created_at DESC, id DESC
            """,
            (user_id, to_db(since)),
        )
        return [self._row_to_alert(row) for row in cursor.fetchall()]

    def get_user_history(
        self, user_id: int, limit: int = 50
    ) -> list[AlertHistory]:
        """Get alert history for a user."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM alert_history
            WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (user_id, limit),
        )
        return [self._row_to_alert(row) for row in cursor.fetchall()]

    def list_for_rule(self, rule_id: int) -> list[AlertHistory]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM alert_history WHERE rule_id = ? ORDER BY id",
            (rule_id,),
        )
        return [self._row_to_alert(row) for row in cursor.fetchall()]

    def _row_to_alert(self, row) -> AlertHistory:
        return AlertHistory(
            id=row["id"],
            rule_id=row["rule_id"],
            user_id=row["user_id"],
            symbol=row["symbol"],
            alert_type=row["alert_type"],
            title=row["title"],
            message=row["message"],
            data=json.loads(row["data"] or "{}"),
            priority=row["priority"],
            is_read=bool(row["is_read"]),
            sent_via=json.loads(row["sent_via"] or "[]"),
            delivered_at=from_db(row["delivered_at"]),
            dedup_key=row["dedup_key"],
            created_at=from_db(row["created_at"]),
        )


class EmailQueueRepository:
    """Persistence for the outbound email queue."""

    def __init__(self, db: Database):
        self.db = db

    def enqueue(self, item: EmailQueueItem, commit: bool = True) -> EmailQueueItem:
        """Insert a pending queue item. It is due immediately unless told otherwise."""
        item.scheduled_at = item.scheduled_at or utcnow()
        item.next_attempt_at = item.next_attempt_at or item.scheduled_at
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO email_queue
            (user_id, email, subject, html_content, text_content, alert_id,
             status, retry_count, scheduled_at, next_attempt_at, sent_at,
             error_message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.user_id,
                item.email,
                item.subject,
                item.html_content,
                item.text_content,
                item.alert_id,
                item.status,
                item.retry_count,
                to_db(item.scheduled_at),
                to_db(item.next_attempt_at),
                to_db(item.sent_at),
                item.error_message,
            ),
        )
        if commit:
            self.db.connection.commit()
        item.id = cursor.lastrowid
        return item

    def get_by_id(self, item_id: int) -> Optional[EmailQueueItem]:
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM email_queue WHERE id = ?", (item_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_item(row)

    def get_due(self, batch_size: int, now: datetime) -> list[EmailQueueItem]:
        """Pending items whose next attempt is due, oldest schedule first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM email_queue
            WHERE status = ? AND next_attempt_at <= ?
            ORDER BY scheduled_at ASC, id ASC
            LIMIT ?
            """,
            (QUEUE_PENDING, to_db(now), batch_size),
        )
        return [self._row_to_item(row) for row in cursor.fetchall()]

    def mark_sent(self, item_id: int, sent_at: datetime) -> None:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE email_queue
            SET status = ?, sent_at = ?
            WHERE id = ? AND status = ?
            """,
            (QUEUE_SENT, to_db(sent_at), item_id, QUEUE_PENDING),
        )
        self.db.connection.commit()

    def record_failure(
        self,
        item_id: int,
        retry_count: int,
        status: str,
        error_message: str,
        next_attempt_at: datetime,
    ) -> None:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE email_queue
            SET status = ?, retry_count = ?, error_message = ?, next_attempt_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                status,
                retry_count,
                error_message,
                to_db(next_attempt_at),
                item_id,
                QUEUE_PENDING,
            ),
        )
        self.db.connection.commit()

    def count_by_status(self) -> dict[str, int]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT status, COUNT(*) AS n FROM email_queue GROUP BY status"
        )
        return {row["status"]: row["n"] for row in cursor.fetchall()}

    def list_all(self) -> list[EmailQueueItem]:
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM email_queue ORDER BY id")
        return [self._row_to_item(row) for row in cursor.fetchall()]

    def _row_to_item(self, row) -> EmailQueueItem:
        return EmailQueueItem(
            id=row["id"],
            user_id=row["user_id"],
            email=row["email"],
            subject=row["subject"],
            html_content=row["html_content"],
            text_content=row["text_content"],
            alert_id=row["alert_id"],
            status=row["status"],
            retry_count=row["retry_count"],
            scheduled_at=from_db(row["scheduled_at"]),
            next_attempt_at=from_db(row["next_attempt_at"]),
            sent_at=from_db(row["sent_at"]),
            error_message=row["error_message"],
        )


class PreferenceRepository:
    """Notification preferences (read-only to the pipeline)."""

    def __init__(self, db: Database):
        self.db = db

    def upsert(self, pref: NotificationPreference) -> NotificationPreference:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO notification_preferences
            (user_id, digest_frequency, digest_day, digest_time, email_enabled)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                digest_frequency = excluded.digest_frequency,
                digest_day = excluded.digest_day,
                digest_time = excluded.digest_time,
                email_enabled = excluded.email_enabled
            """,
            (
                pref.user_id,
                pref.digest_frequency,
                pref.digest_day,
                pref.digest_time,
                1 if pref.email_enabled else 0,
            ),
        )
        self.db.connection.commit()
        return pref

    def get(self, user_id: int) -> Optional[NotificationPreference]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM notification_preferences WHERE user_id = ?", (user_id,)
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_pref(row)

    def list_by_frequency(self, frequency: str) -> list[NotificationPreference]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM notification_preferences
            WHERE digest_frequency = ?
            ORDER BY user_id
            """,
            (frequency,),
        )
        return [self._row_to_pref(row) for row in cursor.fetchall()]

    def _row_to_pref(self, row) -> NotificationPreference:
        return NotificationPreference(
            user_id=row["user_id"],
            digest_frequency=row["digest_frequency"],
            digest_day=row["digest_day"],
            digest_time=row["digest_time"],
            email_enabled=bool(row["email_enabled"]),
        )


class DigestRunRepository:
    """Per-user record of digest windows already handled."""

    def __init__(self, db: Database):
        self.db = db

    def exists(self, user_id: int, period: str, window_start: datetime) -> bool:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT 1 FROM digest_runs
            WHERE user_id = ? AND period = ? AND window_start = ?
            """,
            (user_id, period, to_db(window_start)),
        )
        return cursor.fetchone() is not None

    def record_with_email(
        self,
        run: DigestRun,
        item: EmailQueueItem,
        queue_repo: EmailQueueRepository,
    ) -> DigestRun:
        """
        Claim a digest window and enqueue its email in one transaction.

        Raises:
            DuplicateRecordError: If the window was already claimed
        """
        connection = self.db.connection
        run.created_at = run.created_at or utcnow()
        cursor = connection.cursor()
        try:
            cursor.execute(
                """
                INSERT INTO digest_runs
                (user_id, period, window_start, alert_count, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    run.user_id,
                    run.period,
                    to_db(run.window_start),
                    run.alert_count,
                    to_db(run.created_at),
                ),
            )
            run.id = cursor.lastrowid
            queue_repo.enqueue(item, commit=False)
            cursor.execute(
                "UPDATE digest_runs SET queue_item_id = ? WHERE id = ?",
                (item.id, run.id),
            )
        except sqlite3.IntegrityError as e:
            connection.rollback()
            if "UNIQUE" not in str(e):
                raise
            raise DuplicateRecordError(
                f"Digest already sent for user {run.user_id} at {run.window_start}"
            ) from e
        except Exception:
            connection.rollback()
            raise
        connection.commit()
        run.queue_item_id = item.id
        return run


class SnapshotRepository:
    """Last observed market state per symbol, plus externally ingested valuation."""

    def __init__(self, db: Database):
        self.db = db

    def get(self, symbol: str) -> Optional[MarketSnapshot]:
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM market_snapshots WHERE symbol = ?", (symbol,))
        row = cursor.fetchone()
        if row is None:
            return None
        return MarketSnapshot(
            symbol=row["symbol"],
            price=row["price"],
            rating=row["rating"],
            target_price=row["target_price"],
            pe_ratio=row["pe_ratio"],
            earnings_date=row["earnings_date"],
            updated_at=from_db(row["updated_at"]),
        )

    def upsert(self, snapshot: MarketSnapshot) -> None:
        snapshot.updated_at = snapshot.updated_at or utcnow()
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO market_snapshots
            (symbol, price, rating, target_price, pe_ratio, earnings_date, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(symbol) DO UPDATE SET
                price = excluded.price,
                rating = excluded.rating,
                target_price = excluded.target_price,
                pe_ratio = excluded.pe_ratio,
                earnings_date = excluded.earnings_date,
                updated_at = excluded.updated_at
            """,
            (
                snapshot.symbol,
                snapshot.price,
                snapshot.rating,
                snapshot.target_price,
                snapshot.pe_ratio,
                snapshot.earnings_date,
                to_db(snapshot.updated_at),
            ),
        )
        self.db.connection.commit()

    def get_pe_percentile(self, symbol: str) -> Optional[float]:
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT pe_percentile FROM company_valuation WHERE symbol = ?", (symbol,)
        )
        row = cursor.fetchone()
        return row["pe_percentile"] if row else None

    def set_valuation(
        self, symbol: str, pe_ratio: Optional[float], pe_percentile: Optional[float]
    ) -> None:
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO company_valuation (symbol, pe_ratio, pe_percentile, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(symbol) DO UPDATE SET
                pe_ratio = excluded.pe_ratio,
                pe_percentile = excluded.pe_percentile,
                updated_at = excluded.updated_at
            """,
            (symbol, pe_ratio, pe_percentile, to_db(utcnow())),
        )
        self.db.connection.commit()
