"""
Data models for the alert pipeline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any


RULE_TYPES = (
    "rating_change",
    "target_price",
    "valuation_anomaly",
    "earnings_date",
    "price_threshold",
)
CHANNELS = ("email", "push")
PRIORITIES = ("low", "medium", "high")

QUEUE_PENDING = "pending"
QUEUE_SENT = "sent"
QUEUE_FAILED = "failed"

DIGEST_FREQUENCIES = ("none", "daily", "weekly")


@dataclass
class User:
    """Entry in the user directory."""

    id: Optional[int] = None
    email: Optional[str] = None
    name: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class AlertRule:
    """A standing watch condition owned by a user or the whole market."""

    rule_type: str
    conditions: dict[str, Any] = field(default_factory=dict)
    user_id: Optional[int] = None  # None = market-wide rule
    symbol: Optional[str] = None  # None = applies to every symbol
    is_active: bool = True
    notification_channels: list[str] = field(default_factory=lambda: ["email"])
    name: Optional[str] = None
    description: Optional[str] = None
    trigger_count: int = 0
    last_triggered_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class AlertHistory:
    """A materialized notification event produced by one trigger."""

    rule_id: int
    alert_type: str
    title: str
    message: str
    user_id: Optional[int] = None
    symbol: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)
    priority: str = "medium"
    is_read: bool = False
    sent_via: list[str] = field(default_factory=list)
    delivered_at: Optional[datetime] = None
    dedup_key: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class EmailQueueItem:
    """Durable outbound email job."""

    email: str
    subject: str
    html_content: str
    text_content: str
    user_id: Optional[int] = None
    alert_id: Optional[int] = None  # None for digests
    status: str = QUEUE_PENDING
    retry_count: int = 0
    scheduled_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error_message: Optional[str] = None
    id: Optional[int] = None


@dataclass
class NotificationPreference:
    """Per-user delivery policy."""

    user_id: int
    digest_frequency: str = "none"  # "none", "daily", "weekly"
    digest_day: int = 1  # 0 = Sunday, only used for weekly digests
    digest_time: str = "09:00:00"
    email_enabled: bool = True

    @property
    def digest_hour(self) -> int:
        return int(self.digest_time.split(":")[0])

    @property
    def digest_minute(self) -> int:
        parts = self.digest_time.split(":")
        return int(parts[1]) if len(parts) > 1 else 0


@dataclass
class DigestRun:
    """Record of a digest sent for one user and window."""

    user_id: int
    period: str
    window_start: datetime
    alert_count: int = 0
    queue_item_id: Optional[int] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class MarketSnapshot:
    """Last observed market state for a symbol."""

    symbol: str
    price: Optional[float] = None
    rating: Optional[str] = None
    target_price: Optional[float] = None
    pe_ratio: Optional[float] = None
    earnings_date: Optional[str] = None
    updated_at: Optional[datetime] = None
