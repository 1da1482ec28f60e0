"""Shared in-memory helpdesk state backing the simulated collaborators."""

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, Field


class HelpdeskState(BaseModel):
    """Mutable state shared across all simulated collaborators."""

    tickets: dict[int, dict] = {}
    users: dict[int, dict] = {}
    departments: dict[int, dict] = {}  # {id, name, member_ids, manager_ids}
    knowledge_articles: dict[int, dict] = {}
    notifications: list[dict] = []
    emails: list[dict] = []

    @classmethod
    def from_file(cls, path: Path) -> "HelpdeskState":
        """Load a seed file: a JSON object with ``tickets``, ``users`` and ``departments`` tables keyed by id."""
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class DeliveryRecord(BaseModel):
    """A notification or email handed to the simulated notifier."""

    channel: str  # "notification" | "email"
    recipients: list[str]
    subject: str | None = None
    message: str
    context: dict = {}
    timestamp: datetime = Field(default_factory=datetime.now)
