"""Interfaces for the collaborators the engine drives.

The engine never talks to a database, mail server or model provider directly;
it goes through these seams. In-memory implementations live in
``ticketflow.simulator`` and HTTP-backed ones in ``ticketflow.connectors``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from .workflow.conditions import resolve_field
from .workflow.schema import EntityRef


# Zero-argument callable returning the current UTC time.
Clock = Callable[[], datetime]


class ServiceError(Exception):
    """Raised when a collaborator cannot fulfil a request."""

    def __init__(self, message: str, error_type: str = "precondition_failed"):
        self.error_type = error_type
        super().__init__(message)


class EntityStore(ABC):
    """Typed field access on tickets, users and other entities."""

    @abstractmethod
    def load(self, ref: EntityRef) -> Optional[dict[str, Any]]:
        """Return the entity's fields, or None when it does not exist."""
        ...

    @abstractmethod
    def update(self, ref: EntityRef, fields: dict[str, Any]) -> None:
        """Persist ``fields`` onto the entity. Each call is its own transaction."""
        ...

    @abstractmethod
    def create(self, entity_type: str, fields: dict[str, Any]) -> Any:
        """Insert a new entity and return its id."""
        ...

    @abstractmethod
    def put(self, ref: EntityRef, fields: dict[str, Any]) -> dict[str, Any]:
        """Create or replace the entity at ``ref`` and return its stored fields."""
        ...

    @abstractmethod
    def list_ids(self, entity_type: str) -> list[Any]:
        ...

    def get(self, ref: EntityRef, field_path: str) -> Any:
        return resolve_field(self.load(ref) or {}, field_path)


class Directory(ABC):
    """User and department lookups used for assignment and recipient resolution."""

    @abstractmethod
    def get_user(self, user_id: Any) -> Optional[dict[str, Any]]:
        ...

    @abstractmethod
    def users_in_department(self, department_id: Any) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    def department_managers(self, department_id: Any) -> list[dict[str, Any]]:
        ...


class Classifier(ABC):
    @abstractmethod
    async def categorize(self, subject: str, body: str) -> dict[str, Any]:
        """Return ``{category, department, priority, confidence}``."""
        ...

    @abstractmethod
    async def suggest_responses(self, entity: dict[str, Any]) -> list[str]:
        ...

    @abstractmethod
    async def predict_escalation(self, entity: dict[str, Any]) -> float:
        ...


class Notifier(ABC):
    """Delivers chat notifications and emails.

    The dispatcher calls it from background tasks, so implementations may wait
    on the network and raise on failure without holding up an execution.
    """

    @abstractmethod
    async def send_notification(self, recipients: list[dict[str, Any]], message: str, context: dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def send_email(self, to: list[str], subject: str, message: str) -> None:
        ...


class AuditSink(ABC):
    """Append-only store of structured audit events."""

    @abstractmethod
    def record(self, execution_id: str, action_id: Optional[str], event: str, payload: dict[str, Any]) -> None:
        ...


@dataclass
class ServiceLayer:
    """The set of collaborators one engine instance runs against."""

    entities: EntityStore
    directory: Directory
    classifier: Classifier
    notifier: Notifier
    state: Any = None
    failure_config: Any = None
    http_client: Any = field(default=None, repr=False)
