"""Outbound email for order notifications.

Why is this its own module?
- Keeps the notification templates free of transport details.
- Makes it easy to swap the mail provider in one place.

Two senders:
- HttpMailer posts to an HTTP mail API (used when MAIL_API_URL is set).
- LogMailer only writes the email to the log, for development.
"""

from __future__ import annotations

import logging

import httpx

from .config import MAIL_API_KEY, MAIL_API_URL, MAIL_FROM
from .errors import MailDeliveryError

logger = logging.getLogger(__name__)


class LogMailer:
    """Writes emails to the log instead of sending them."""

    def send(self, to: str, subject: str, text: str) -> None:
        logger.info("[Mailer] Email to %s\nSubject: %s\n%s", to, subject, text)


class HttpMailer:
    """Sends emails through an HTTP mail API.

    The API receives `{"from", "to", "subject", "text"}` as JSON with a bearer
    token, which is the common shape of transactional mail providers.
    """

    def __init__(
        self,
        url: str,
        api_key: str = "",
        sender: str = MAIL_FROM,
        transport: httpx.BaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.sender = sender
        self._transport = transport

    def send(self, to: str, subject: str, text: str) -> None:
        """Post one email.

        Raises:
            MailDeliveryError on connection failures, timeouts, or non-2xx status.
        """
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        payload = {"from": self.sender, "to": to, "subject": subject, "text": text}

        # One short-lived client per email; notification volume is low.
        try:
            with httpx.Client(timeout=10.0, transport=self._transport) as client:
                resp = client.post(self.url, json=payload, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise MailDeliveryError(f"sending to {to} failed: {e}") from e

        logger.info("[Mailer] Sent %r to %s", subject, to)


def get_mailer() -> HttpMailer | LogMailer:
    """Return the configured mail sender."""
    if MAIL_API_URL:
        return HttpMailer(MAIL_API_URL, MAIL_API_KEY)
    logger.warning("[Mailer] MAIL_API_URL is not set; emails will only be logged")
    return LogMailer()
