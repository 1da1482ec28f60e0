"""Simulated collaborators backed by ``HelpdeskState``."""

from __future__ import annotations

from typing import Any, Optional

from ..services import AuditSink, Classifier, Directory, EntityStore, Notifier, ServiceError
from ..workflow.errors import SuspendedStepError
from ..workflow.schema import EntityRef
from .state import DeliveryRecord, HelpdeskState


class InMemoryEntityStore(EntityStore):
    """Entity store over the simulator's ticket/user/department tables."""

    def __init__(self, state: HelpdeskState):
        self.state = state

    def _table(self, entity_type: str) -> dict[int, dict]:
        tables = {
            "ticket": self.state.tickets,
            "user": self.state.users,
            "department": self.state.departments,
            "knowledge_article": self.state.knowledge_articles,
        }
        table = tables.get(entity_type)
        if table is None:
            raise ServiceError(f"Unknown entity type: {entity_type}", "unknown_entity_type")
        return table

    @staticmethod
    def _key(entity_id: Any) -> Any:
        if isinstance(entity_id, str) and entity_id.isdigit():
            return int(entity_id)
        return entity_id

    def load(self, ref: EntityRef) -> Optional[dict[str, Any]]:
        record = self._table(ref.entity_type).get(self._key(ref.entity_id))
        return dict(record) if record is not None else None

    def update(self, ref: EntityRef, fields: dict[str, Any]) -> None:
        record = self._table(ref.entity_type).get(self._key(ref.entity_id))
        if record is None:
            raise ServiceError(f"{ref.entity_type} {ref.entity_id} not found", "not_found")
        record.update(fields)

    def create(self, entity_type: str, fields: dict[str, Any]) -> Any:
        table = self._table(entity_type)
        new_id = max(table, default=0) + 1
        table[new_id] = {**fields, "id": new_id}
        return new_id

    def put(self, ref: EntityRef, fields: dict[str, Any]) -> dict[str, Any]:
        key = self._key(ref.entity_id)
        record = {**fields, "id": key}
        self._table(ref.entity_type)[key] = record
        return dict(record)

    def list_ids(self, entity_type: str) -> list[Any]:
        return sorted(self._table(entity_type))


class InMemoryDirectory(Directory):
    def __init__(self, state: HelpdeskState):
        self.state = state

    def get_user(self, user_id: Any) -> Optional[dict[str, Any]]:
        if user_id is None:
            return None
        return self.state.users.get(int(user_id)) if str(user_id).isdigit() else None

    def users_in_department(self, department_id: Any) -> list[dict[str, Any]]:
        department = self._department(department_id)
        if department is None:
            return []
        return [self.state.users[uid] for uid in department.get("member_ids", []) if uid in self.state.users]

    def department_managers(self, department_id: Any) -> list[dict[str, Any]]:
        department = self._department(department_id)
        if department is None:
            return []
        return [self.state.users[uid] for uid in department.get("manager_ids", []) if uid in self.state.users]

    def _department(self, department_id: Any) -> Optional[dict]:
        if department_id is None:
            return None
        if str(department_id).isdigit():
            return self.state.departments.get(int(department_id))
        # Allow lookup by department name as well as id
        for department in self.state.departments.values():
            if str(department.get("name", "")).lower() == str(department_id).lower():
                return department
        return None


class RecordingNotifier(Notifier):
    """Stores every delivery request in state instead of sending it."""

    def __init__(self, state: HelpdeskState):
        self.state = state
        self.deliveries: list[DeliveryRecord] = []

    async def send_notification(self, recipients: list[dict[str, Any]], message: str, context: dict[str, Any]) -> None:
        record = DeliveryRecord(
            channel="notification",
            recipients=[str(r.get("email") or r.get("id")) for r in recipients],
            message=message,
            context=context,
        )
        self.deliveries.append(record)
        self.state.notifications.append(record.model_dump(mode="json"))

    async def send_email(self, to: list[str], subject: str, message: str) -> None:
        record = DeliveryRecord(channel="email", recipients=list(to), subject=subject, message=message)
        self.deliveries.append(record)
        self.state.emails.append(record.model_dump(mode="json"))


class SimulatedClassifier(Classifier):
    """Keyword-based classifier; results can be scripted for deterministic runs."""

    def __init__(
        self,
        categorization: Optional[dict[str, Any]] = None,
        suggestions: Optional[list[str]] = None,
        escalation_probability: float = 0.5,
        available: bool = True,
    ):
        self.categorization = categorization
        self.suggestions = suggestions or []
        self.escalation_probability = escalation_probability
        self.available = available
        self.calls: list[str] = []

    def _check_available(self) -> None:
        if not self.available:
            raise SuspendedStepError("Classifier unavailable")

    async def categorize(self, subject: str, body: str) -> dict[str, Any]:
        self.calls.append("categorize")
        self._check_available()
        if self.categorization is not None:
            return dict(self.categorization)

        text = f"{subject} {body}".lower()
        department = "general"
        if "bug" in text or "error" in text:
            department = "technical"
        elif "bill" in text or "payment" in text:
            department = "billing"
        return {
            "category": "question",
            "department": department,
            "priority": "normal",
            "confidence": 0.3,
        }

    async def suggest_responses(self, entity: dict[str, Any]) -> list[str]:
        self.calls.append("suggest_responses")
        self._check_available()
        return list(self.suggestions)

    async def predict_escalation(self, entity: dict[str, Any]) -> float:
        self.calls.append("predict_escalation")
        self._check_available()
        return self.escalation_probability


class MemoryAuditSink(AuditSink):
    def __init__(self):
        self.events: list[dict[str, Any]] = []

    def record(self, execution_id: str, action_id: Optional[str], event: str, payload: dict[str, Any]) -> None:
        self.events.append(
            {"execution_id": execution_id, "action_id": action_id, "event": event, "payload": payload}
        )
