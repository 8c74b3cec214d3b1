"""
Resend HTTP email notifier.
"""

import logging
import time
from typing import Any

import requests

from .base import EmailMessage, EmailProvider, NotificationResult, ProviderError

logger = logging.getLogger(__name__)


class ResendEmailNotifier(EmailProvider):
    """Sends email through the Resend REST API."""

    def __init__(
        self,
        api_key: str,
        from_address: str,
        from_name: str = "Earnlytics",
        api_url: str = "https://api.resend.com/emails",
        timeout: int = 10,
    ):
        """
        Initialize Resend notifier.

        Args:
            api_key: Resend API key, sent as a bearer token
            from_address: Sender email address
            from_name: Sender display name
            api_url: Emails endpoint
            timeout: Request timeout in seconds
        """
        self.api_key = api_key
        self.from_address = from_address
        self.from_name = from_name
        self.api_url = api_url
        self.timeout = timeout

    def send(self, message: EmailMessage) -> NotificationResult:
        """Send an email. Provider failures are reported, not raised."""
        try:
            response = self._deliver(self._create_payload(message))
        except ProviderError as e:
            logger.warning(f"Email to {message.to} failed: {e}")
            return NotificationResult(success=False, channel="email", error=str(e))

        message_id = None
        try:
            message_id = response.json().get("id")
        except ValueError:
            pass
        return NotificationResult(success=True, channel="email", message_id=message_id)

    def _deliver(self, payload: dict[str, Any]) -> requests.Response:
        """
        POST the payload, retrying once on rate limiting.

        Raises:
            ProviderError: On connection failures or non-2xx responses
        """
        try:
            response = self._post(payload)

            if response.status_code == 429:
                try:
                    retry_after = float(response.headers.get("Retry-After", "1"))
                except ValueError:
                    retry_after = 1.0
                time.sleep(min(max(retry_after, 0.0), self.timeout))
                response = self._post(payload)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"Connection error: {e}") from e

        if not response.ok:
            raise ProviderError(
                f"Resend API error: HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        return response

    def _post(self, payload: dict[str, Any]) -> requests.Response:
        return requests.post(
            self.api_url,
            json=payload,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
        )

    def _create_payload(self, message: EmailMessage) -> dict[str, Any]:
        return {
            "from": f"{self.from_name} <{self.from_address}>",
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
            "text": message.text,
        }
