"""Connector registry: maps service-layer concerns to connector classes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Type

import httpx

from .base import BaseConnector

if TYPE_CHECKING:
    from ..config import Settings


# Built-in connector classes by concern, populated via @register
_BUILTIN_REGISTRY: dict[str, list[Type[BaseConnector]]] = {}


def register(cls: Type[BaseConnector]) -> Type[BaseConnector]:
    """Class decorator that registers a connector for its concern."""
    _BUILTIN_REGISTRY.setdefault(cls.concern, []).append(cls)
    return cls


class ConnectorRegistry:
    """Instantiates the first configured connector for each concern."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http_client
        self._cache: dict[str, BaseConnector] = {}

    def get(self, concern: str) -> BaseConnector | None:
        """Return a live connector for ``concern``, or None if none is configured."""
        if concern in self._cache:
            return self._cache[concern]

        for cls in _BUILTIN_REGISTRY.get(concern, []):
            if cls.is_configured(self._settings):
                instance = cls.from_settings(self._settings, self._http)
                self._cache[concern] = instance
                return instance
        return None

    def list_available(self) -> list[str]:
        """Service names of every registered connector."""
        return sorted(cls.service_name for classes in _BUILTIN_REGISTRY.values() for cls in classes)


def configured_concerns(settings: Settings) -> set[str]:
    """Concerns with at least one connector whose credentials are present."""
    return {
        concern
        for concern, classes in _BUILTIN_REGISTRY.items()
        if any(cls.is_configured(settings) for cls in classes)
    }
