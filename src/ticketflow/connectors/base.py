"""Base interface for all real service connectors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

import httpx

from ..services import ServiceError
from ..workflow.errors import SuspendedStepError

if TYPE_CHECKING:
    from ..config import Settings


class BaseConnector(ABC):
    """Abstract base for HTTP-backed collaborators.

    Each connector serves one ``concern`` of the service layer (``notifier``,
    ``mailer`` or ``classifier``) and implements that concern's interface from
    ``ticketflow.services``. Transport failures surface as
    ``SuspendedStepError``; error responses surface as ``ServiceError``.
    """

    service_name: str = ""
    concern: str = ""

    def __init__(self, http_client: httpx.AsyncClient) -> None:
        self.http = http_client

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise SuspendedStepError(f"{self.service_name} unavailable: {e}") from e

    def _check_error(self, resp: httpx.Response, action: str) -> None:
        if resp.status_code in (200, 201, 202, 204):
            return
        if resp.status_code == 401:
            self._fail(f"{self.service_name} {action}: unauthorized", "permission_denied")
        if resp.status_code == 403:
            self._fail(f"{self.service_name} {action}: forbidden", "permission_denied")
        if resp.status_code == 404:
            self._fail(f"{self.service_name} {action}: not found", "not_found")
        if resp.status_code == 429:
            self._fail(f"{self.service_name} rate limit hit", "rate_limit")
        if resp.status_code >= 500:
            raise SuspendedStepError(f"{self.service_name} {action} failed ({resp.status_code})")
        self._fail(f"{self.service_name} {action} failed ({resp.status_code}): {resp.text[:200]}")

    def _fail(self, message: str, error_type: str = "connector_error") -> None:
        raise ServiceError(message, error_type)

    @classmethod
    @abstractmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> BaseConnector:
        """Construct this connector from application Settings."""
        ...

    @classmethod
    @abstractmethod
    def is_configured(cls, settings: Settings) -> bool:
        """Return True if all required credentials are present in settings."""
        ...
