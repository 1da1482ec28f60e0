"""Slack Web API connector for helpdesk notifications."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from ..services import Notifier, ServiceError
from .base import BaseConnector
from .registry import register

if TYPE_CHECKING:
    from ..config import Settings

_SLACK_API = "https://slack.com/api"


@register
class SlackConnector(BaseConnector, Notifier):
    """Posts notifications to a Slack channel, mentioning recipients by email lookup.

    Required settings: SLACK_BOT_TOKEN (xoxb-...)
    Optional: SLACK_DEFAULT_CHANNEL (defaults to "#helpdesk")
    Scopes needed: chat:write, users:read, users:read.email
    """

    service_name = "slack"
    concern = "notifier"

    def __init__(self, bot_token: str, channel: str, http_client: httpx.AsyncClient) -> None:
        super().__init__(http_client)
        self._channel = channel
        self._headers = {
            "Authorization": f"Bearer {bot_token}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> SlackConnector:
        return cls(settings.slack_bot_token or "", settings.slack_default_channel, http_client)

    @classmethod
    def is_configured(cls, settings: Settings) -> bool:
        return bool(settings.slack_bot_token)

    # ------------------------------------------------------------------
    # Notifier
    # ------------------------------------------------------------------

    async def send_notification(self, recipients: list[dict[str, Any]], message: str, context: dict[str, Any]) -> None:
        mentions = [await self._mention(recipient) for recipient in recipients]
        entity = f"{context.get('entity_type', 'entity')} #{context.get('entity_id', '?')}"
        text = f"{' '.join(mentions)} [{entity}] {message}".strip()

        resp = await self._request(
            "POST",
            f"{_SLACK_API}/chat.postMessage",
            headers=self._headers,
            json={"channel": self._channel, "text": text},
        )
        data = resp.json()
        if not data.get("ok"):
            self._map_error(data.get("error", "unknown"))

    async def send_email(self, to: list[str], subject: str, message: str) -> None:
        raise ServiceError("Slack cannot deliver email", "unsupported")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _mention(self, recipient: dict[str, Any]) -> str:
        """``<@USERID>`` when the email resolves to a Slack user, the plain name otherwise."""
        name = recipient.get("name") or recipient.get("email") or "someone"
        email = recipient.get("email")
        if not email:
            return name

        resp = await self._request(
            "GET",
            f"{_SLACK_API}/users.lookupByEmail",
            headers=self._headers,
            params={"email": email},
        )
        data = resp.json()
        if not data.get("ok"):
            return name
        return f"<@{data['user']['id']}>"

    def _map_error(self, error_code: str) -> None:
        mapping: dict[str, tuple[str, str]] = {
            "ratelimited": ("Slack rate limit hit", "rate_limit"),
            "not_in_channel": ("Bot is not in the channel", "permission_denied"),
            "channel_not_found": ("Channel not found", "not_found"),
            "missing_scope": ("Bot missing required Slack scope", "permission_denied"),
            "invalid_auth": ("Slack token rejected", "permission_denied"),
        }
        msg, etype = mapping.get(error_code, (f"Slack API error: {error_code}", "connector_error"))
        raise ServiceError(msg, etype)
