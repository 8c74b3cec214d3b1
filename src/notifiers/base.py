"""
Base notifier classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from src.config import EmailConfig


class ProviderError(Exception):
    """Raised when the email provider rejects or fails a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class EmailMessage:
    """A rendered email ready to hand to a provider."""

    to: str
    subject: str
    html: str
    text: str


@dataclass
class NotificationResult:
    """Result of a notification attempt."""

    success: bool
    channel: str
    error: Optional[str] = None
    message_id: Optional[str] = None


class EmailProvider(ABC):
    """Abstract base class for outbound email providers."""

    @abstractmethod
    def send(self, message: EmailMessage) -> NotificationResult:
        """
        Send a single email.

        Args:
            message: Rendered email

        Returns:
            NotificationResult indicating success or failure
        """
        pass

    def send_batch(self, messages: list[EmailMessage]) -> list[NotificationResult]:
        """
        Send multiple emails.

        Args:
            messages: List of rendered emails

        Returns:
            List of NotificationResult for each email
        """
        return [self.send(message) for message in messages]


class NotifierFactory:
    """Factory for creating email providers."""

    @staticmethod
    def create(config: EmailConfig) -> Optional[EmailProvider]:
        """
        Create the email provider from configuration.

        Returns:
            A provider, or None when no API key is configured
        """
        if not config.api_key:
            return None

        from .email import ResendEmailNotifier

        return ResendEmailNotifier(
            api_key=config.api_key,
            from_address=config.from_address,
            from_name=config.from_name,
            api_url=config.api_url,
            timeout=config.timeout_seconds,
        )
