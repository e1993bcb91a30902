from __future__ import annotations

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_FROM_EMAIL = "noreply@gigradar.app"
LOGGER = logging.getLogger("gigradar.emailer")


class EmailDeliveryError(RuntimeError):
    pass


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str


class EmailSender(ABC):
    @abstractmethod
    def send(self, to: str, subject: str, html: str) -> str:
        """Deliver one HTML message and return the provider message id."""


class LoggingEmailSender(EmailSender):
    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []

    def send(self, to: str, subject: str, html: str) -> str:
        self.sent.append(EmailMessage(to=to, subject=subject, html=html))
        LOGGER.info(json.dumps({"event": "email_logged", "to": to, "subject": subject}))
        return f"logged-{len(self.sent)}"


class ResendEmailSender(EmailSender):
    def __init__(
        self,
        api_key: str,
        *,
        from_email: str = DEFAULT_FROM_EMAIL,
        api_url: str = RESEND_API_URL,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.api_url = api_url
        self.timeout = timeout
        self.transport = transport

    def send(self, to: str, subject: str, html: str) -> str:
        payload = {"from": self.from_email, "to": [to], "subject": subject, "html": html}
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(
                    self.api_url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json=payload,
                )
        except httpx.RequestError as exc:
            raise EmailDeliveryError(f"Email provider is unavailable: {exc}") from exc

        try:
            response_payload = response.json()
        except ValueError:
            response_payload = {}
        if not isinstance(response_payload, dict):
            response_payload = {}

        if response.status_code >= 400:
            detail = response_payload.get("message", "request rejected")
            raise EmailDeliveryError(
                f"Email provider returned {response.status_code}: {detail}"
            )

        message_id = str(response_payload.get("id", ""))
        LOGGER.info(
            json.dumps(
                {"event": "email_sent", "to": to, "subject": subject, "message_id": message_id}
            )
        )
        return message_id


def build_email_sender(
    *,
    api_key: str | None = None,
    from_email: str | None = None,
) -> EmailSender:
    resolved_api_key = (api_key or os.getenv("RESEND_API_KEY", "")).strip()
    resolved_from = (from_email or os.getenv("FROM_EMAIL", "")).strip() or DEFAULT_FROM_EMAIL
    if not resolved_api_key:
        LOGGER.warning(json.dumps({"event": "email_sender_unconfigured"}))
        return LoggingEmailSender()
    return ResendEmailSender(resolved_api_key, from_email=resolved_from)
