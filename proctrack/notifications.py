"""
proctrack/notifications.py

Outbound notifier used by the reminder sweep.

Contract: `send(to, subject, body) -> bool`. False (or an exception) means "not delivered";
the reminder then stays pending and is retried by the next sweep.

- ResendNotifier: Resend HTTP API through a shared requests.Session.
- LogNotifier: development fallback when no API key is configured; only logs.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

logger = logging.getLogger(__name__)


class LogNotifier:
    def send(self, to: str, subject: str, body: str) -> bool:
        logger.info("Notification (not delivered, no provider configured) to=%s subject=%s", to, subject)
        return True


class ResendNotifier:
    """Send email through the Resend HTTP API."""

    def __init__(self, api_key: str, sender: str, url: str = "https://api.resend.com/emails", timeout=(5, 30)):
        self._api_key = api_key
        self._sender = sender
        self._url = url
        self._timeout = timeout
        self._session: Optional[requests.Session] = None

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update(
                {
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                }
            )
        return self._session

    def send(self, to: str, subject: str, body: str) -> bool:
        try:
            response = self._get_session().post(
                self._url,
                json={"from": self._sender, "to": [to], "subject": subject, "html": body},
                timeout=self._timeout,
            )
        except requests.RequestException:
            logger.warning("Email delivery to %s failed", to, exc_info=True)
            return False

        if not response.ok:
            logger.warning("Email delivery to %s rejected: HTTP %s", to, response.status_code)
            return False
        return True


def build_notifier(config) -> LogNotifier | ResendNotifier:
    api_key = config.get("RESEND_API_KEY")
    if not api_key:
        return LogNotifier()
    return ResendNotifier(
        api_key=api_key,
        sender=config.get("NOTIFY_FROM", "noreply@proctrack.local"),
        url=config.get("RESEND_API_URL", "https://api.resend.com/emails"),
    )
