"""Maps action descriptors and AI sub-types to side-effecting handlers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

from ..services import ServiceError, ServiceLayer
from .conditions import NULL_OPERATORS, OPERATORS
from .schema import (
    AICategorizeAction,
    AIPredictEscalationAction,
    AISuggestResponseAction,
    Action,
    AssignTicketAction,
    CreateKnowledgeArticleAction,
    EntityRef,
    SendEmailAction,
    SendNotificationAction,
    UpdateTicketAction,
)

logger = logging.getLogger(__name__)

# Categorisations above this confidence are written back onto the ticket.
AI_CONFIDENCE_THRESHOLD = 0.8

PRIORITY_IDS = {"low": 1, "normal": 2, "high": 3, "urgent": 4, "critical": 5}
DEPARTMENT_IDS = {"technical": 1, "billing": 2, "support": 3}

CONDITION_FIELDS = ["priority_id", "status", "department_id", "subject", "description", "created_at"]


class ActionResult(BaseModel):
    """Outcome of one dispatch. ``kind`` tells unknown types apart from handler failures."""

    success: bool
    data: dict[str, Any] = {}
    error: Optional[str] = None
    kind: str = "handler"  # handler | dispatch

    @classmethod
    def ok(cls, **data: Any) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, kind: str = "handler") -> "ActionResult":
        return cls(success=False, error=error, kind=kind)


class NotificationOutbox:
    """Hands notifier calls to background tasks.

    Actions only report how many recipients they addressed; delivery happens
    afterwards, and a delivery failure is logged without touching the
    execution that queued it.
    """

    def __init__(self) -> None:
        self._pending: set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def submit(self, description: str, deliver: Callable[[], Awaitable[Any]]) -> None:
        task = asyncio.create_task(self._deliver(description, deliver))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every queued delivery to finish."""
        while self._pending:
            await asyncio.wait(set(self._pending))

    async def _deliver(self, description: str, deliver: Callable[[], Awaitable[Any]]) -> None:
        try:
            await deliver()
        except Exception as e:
            logger.error("Notification delivery failed: %s error=%s", description, e)


Handler = Callable[[Any, EntityRef], Awaitable[ActionResult]]


class ActionDispatcher:
    """A closed table of action handlers over the engine's collaborators."""

    def __init__(self, services: ServiceLayer):
        self.entities = services.entities
        self.directory = services.directory
        self.classifier = services.classifier
        self.notifier = services.notifier
        self.failure_config = services.failure_config
        self.outbox = NotificationOutbox()

        self._handlers: dict[str, Handler] = {
            "assign_ticket": self._assign_ticket,
            "update_ticket": self._update_ticket,
            "send_notification": self._send_notification,
            "send_email": self._send_email,
            "ai_categorize": self._ai_categorize,
            "ai_suggest_response": self._ai_suggest_response,
            "ai_predict_escalation": self._ai_predict_escalation,
            "create_knowledge_article": self._create_knowledge_article,
        }
        self._ai_actions: dict[str, Callable[[], Any]] = {
            "categorize": AICategorizeAction,
            "suggest_response": AISuggestResponseAction,
            "predict_escalation": AIPredictEscalationAction,
        }

    async def dispatch(self, action: Action, ref: EntityRef) -> ActionResult:
        handler = self._handlers.get(action.type)
        if handler is None:
            return ActionResult.fail(f"Unknown action type: {action.type}", kind="dispatch")
        self._inject_failure(action.type)
        return await handler(action, ref)

    async def dispatch_ai(self, sub_type: str, ref: EntityRef) -> ActionResult:
        """Run an AI node's sub-type (``categorize``, ``suggest_response``, ``predict_escalation``)."""
        factory = self._ai_actions.get(sub_type)
        if factory is None:
            return ActionResult.fail(f"Unknown AI action: {sub_type}", kind="dispatch")
        self._inject_failure(f"ai:{sub_type}")
        action = factory()
        return await self._handlers[action.type](action, ref)

    def _inject_failure(self, key: str) -> None:
        if self.failure_config is None:
            return
        rule = self.failure_config.should_fail(key)
        if rule:
            raise ServiceError(f"[{rule.error_type}] {rule.message}", rule.error_type)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _assign_ticket(self, action: AssignTicketAction, ref: EntityRef) -> ActionResult:
        if ref.entity_type != "ticket":
            return ActionResult.fail("Entity is not a ticket")

        if action.assign_to_user_id is not None:
            user = self.directory.get_user(action.assign_to_user_id)
            if user:
                self.entities.update(ref, {"assigned_to": user["id"]})
                return ActionResult.ok(assigned_to=user.get("name"), user_id=user["id"])

        if action.assign_to_department is not None:
            agents = self.directory.users_in_department(action.assign_to_department)
            if agents:
                agent = agents[0]
                self.entities.update(ref, {"assigned_to": agent["id"]})
                return ActionResult.ok(assigned_to=agent.get("name"), user_id=agent["id"])

        return ActionResult.fail("No suitable agent found for assignment")

    async def _update_ticket(self, action: UpdateTicketAction, ref: EntityRef) -> ActionResult:
        if ref.entity_type != "ticket":
            return ActionResult.fail("Entity is not a ticket")
        self.entities.update(ref, dict(action.updates))
        return ActionResult.ok(updates=action.updates)

    async def _send_notification(self, action: SendNotificationAction, ref: EntityRef) -> ActionResult:
        recipients = self._recipients(action.recipient_type, ref, action.recipient_email)
        if recipients:
            context = {"entity_type": ref.entity_type, "entity_id": ref.entity_id}
            self.outbox.submit(
                f"notification for {ref.key}",
                lambda: self.notifier.send_notification(recipients, action.message, context),
            )
        return ActionResult.ok(recipients_count=len(recipients))

    async def _send_email(self, action: SendEmailAction, ref: EntityRef) -> ActionResult:
        if action.recipient_email:
            addresses = [action.recipient_email]
        else:
            recipients = self._recipients(action.recipient_type or "assigned_user", ref, None)
            addresses = [r["email"] for r in recipients if r.get("email")]
        if addresses:
            self.outbox.submit(
                f"email for {ref.key}",
                lambda: self.notifier.send_email(addresses, action.subject, action.message),
            )
        return ActionResult.ok(recipient=", ".join(addresses), recipients_count=len(addresses))

    async def _ai_categorize(self, action: AICategorizeAction, ref: EntityRef) -> ActionResult:
        if ref.entity_type != "ticket":
            return ActionResult.fail("Entity is not a ticket")
        ticket = self._require(ref)
        result = await self.classifier.categorize(
            str(ticket.get("subject") or ""), str(ticket.get("description") or "")
        )

        applied: dict[str, Any] = {}
        if float(result.get("confidence") or 0) > AI_CONFIDENCE_THRESHOLD:
            priority_id = PRIORITY_IDS.get(str(result.get("priority", "")).lower())
            department_id = DEPARTMENT_IDS.get(str(result.get("department", "")).lower())
            if priority_id is not None:
                applied["priority_id"] = priority_id
            if department_id is not None:
                applied["department_id"] = department_id
            if applied:
                self.entities.update(ref, applied)

        return ActionResult.ok(**result, applied=applied)

    async def _ai_suggest_response(self, action: AISuggestResponseAction, ref: EntityRef) -> ActionResult:
        if ref.entity_type != "ticket":
            return ActionResult.fail("Entity is not a ticket")
        suggestions = await self.classifier.suggest_responses(self._require(ref))
        return ActionResult.ok(suggestions=list(suggestions))

    async def _ai_predict_escalation(self, action: AIPredictEscalationAction, ref: EntityRef) -> ActionResult:
        if ref.entity_type != "ticket":
            return ActionResult.fail("Entity is not a ticket")
        probability = await self.classifier.predict_escalation(self._require(ref))
        return ActionResult.ok(escalation_probability=float(probability))

    async def _create_knowledge_article(self, action: CreateKnowledgeArticleAction, ref: EntityRef) -> ActionResult:
        source = self.entities.load(ref) or {}
        title = action.title or str(source.get("subject") or "Untitled article")
        article_id = self.entities.create(
            "knowledge_article",
            {
                "title": title,
                "content": action.content or str(source.get("description") or ""),
                "category": action.category,
                "source_entity_type": ref.entity_type,
                "source_entity_id": ref.entity_id,
            },
        )
        return ActionResult.ok(article_id=article_id, title=title)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require(self, ref: EntityRef) -> dict[str, Any]:
        entity = self.entities.load(ref)
        if entity is None:
            raise ServiceError(f"{ref.entity_type} {ref.entity_id} not found", "not_found")
        return entity

    def _recipients(self, recipient_type: str, ref: EntityRef, explicit: Optional[str]) -> list[dict[str, Any]]:
        if explicit:
            return [{"email": explicit}]

        entity = self.entities.load(ref) or {}
        if recipient_type in ("assigned_user", "created_by"):
            if ref.entity_type != "ticket":
                return []
            field = "assigned_to" if recipient_type == "assigned_user" else "created_by"
            user = self.directory.get_user(entity.get(field))
            return [user] if user else []
        if recipient_type == "department_managers":
            return self.directory.department_managers(entity.get("department_id"))

        logger.warning("Unknown notification recipient type: %s", recipient_type)
        return []


def available_actions() -> list[str]:
    return [
        "assign_ticket",
        "update_ticket",
        "send_notification",
        "send_email",
        "ai_categorize",
        "ai_suggest_response",
        "ai_predict_escalation",
        "create_knowledge_article",
    ]


def available_conditions() -> dict[str, list[str]]:
    return {"operators": list(OPERATORS), "rule_operators": list(NULL_OPERATORS), "fields": CONDITION_FIELDS}
