"""Connector package: real HTTP collaborators with transparent simulator fallback.

Usage:
    from ticketflow.connectors import create_service_layer, close_service_layer

    services = create_service_layer(settings)
    try:
        ...
    finally:
        await close_service_layer(services)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import httpx

from ..services import Notifier, ServiceLayer
from ..simulator import create_simulator
from ..simulator.failures import FailureConfig
from ..simulator.state import HelpdeskState
from .registry import ConnectorRegistry, configured_concerns

if TYPE_CHECKING:
    from ..config import Settings

# Import all built-in connectors to trigger @register decoration
from . import classifier, mail, slack  # noqa: E402, F401


# Concerns that must have a real connector in "real" mode.
REQUIRED_IN_REAL_MODE = ("mailer", "classifier")


class ConnectorConfigError(RuntimeError):
    """``real`` connector mode was requested without the credentials it needs."""


class RoutedNotifier(Notifier):
    """Sends chat notifications and emails through separate backends."""

    def __init__(self, notifications: Notifier, email: Notifier) -> None:
        self.notifications = notifications
        self.email = email

    async def send_notification(self, recipients: list[dict[str, Any]], message: str, context: dict[str, Any]) -> None:
        await self.notifications.send_notification(recipients, message, context)

    async def send_email(self, to: list[str], subject: str, message: str) -> None:
        await self.email.send_email(to, subject, message)


def create_service_layer(
    settings: Settings,
    failure_config: FailureConfig | None = None,
) -> ServiceLayer:
    """Create the engine's collaborators with hybrid real+simulator routing.

    Modes (controlled by settings.connector_mode):
      "simulator": always the in-memory simulator (default)
      "hybrid":    a real connector per concern when its credentials are set,
                   the simulator collaborator otherwise
      "real":      hybrid routing, but mail and classifier connectors are
                   mandatory; missing credentials raise ConnectorConfigError

    Entities and the user directory are held in memory, seeded from
    ``settings.seed_path`` when it is set.
    """
    if settings.connector_mode == "real":
        missing = sorted(set(REQUIRED_IN_REAL_MODE) - configured_concerns(settings))
        if missing:
            raise ConnectorConfigError(f"connector_mode=real but no connector is configured for: {', '.join(missing)}")

    state = HelpdeskState.from_file(settings.seed_path) if settings.seed_path else None
    services = create_simulator(failure_config=failure_config, state=state)
    if settings.connector_mode == "simulator":
        return services

    http_client = httpx.AsyncClient(timeout=30.0)
    registry = ConnectorRegistry(settings, http_client)

    chat = registry.get("notifier")
    mailer = registry.get("mailer")
    if chat is not None or mailer is not None:
        services.notifier = RoutedNotifier(
            notifications=chat or mailer or services.notifier,
            email=mailer or services.notifier,
        )

    model = registry.get("classifier")
    if model is not None:
        services.classifier = model

    # Kept on the layer so close_service_layer can always close it.
    services.http_client = http_client
    return services


async def close_service_layer(services: ServiceLayer) -> None:
    """Close the shared AsyncClient attached by create_service_layer, if any."""
    if isinstance(services.http_client, httpx.AsyncClient):
        await services.http_client.aclose()
        services.http_client = None
