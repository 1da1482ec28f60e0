"""Transactional mail relay connector (JSON over HTTP)."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from ..services import Notifier
from .base import BaseConnector
from .registry import register

if TYPE_CHECKING:
    from ..config import Settings


@register
class MailApiConnector(BaseConnector, Notifier):
    """Sends email through a relay exposing ``POST <base>/send``.

    Required settings: MAIL_API_URL, MAIL_API_KEY
    Optional: MAIL_FROM

    Notifications go out as plain emails to every recipient with an address.
    """

    service_name = "mail"
    concern = "mailer"

    def __init__(self, base_url: str, api_key: str, sender: str, http_client: httpx.AsyncClient) -> None:
        super().__init__(http_client)
        self._base = base_url.rstrip("/")
        self._sender = sender
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> MailApiConnector:
        return cls(settings.mail_api_url or "", settings.mail_api_key or "", settings.mail_from, http_client)

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        return bool(settings.mail_api_url and settings.mail_api_key)

    async def send_email(self, to: list[str], subject: str, message: str) -> None:
        resp = await self._request(
            "POST",
            f"{self._base}/send",
            headers=self._headers,
            json={"from": self._sender, "to": to, "subject": subject, "text": message},
        )
        self._check_error(resp, "send_email")

    async def send_notification(self, recipients: list[dict[str, Any]], message: str, context: dict[str, Any]) -> None:
        to = [r["email"] for r in recipients if r.get("email")]
        if not to:
            self._fail("No recipient has an email address", "precondition_failed")
        subject = f"Update on {context.get('entity_type', 'entity')} #{context.get('entity_id', '?')}"
        await self.send_email(to, subject, message)
