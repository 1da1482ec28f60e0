"""Pydantic models for workflow graphs, rules, actions and execution records."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    model_validator,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _type_tag(known: frozenset[str]):
    """Build a discriminator that routes unrecognised ``type`` values to ``unknown``."""

    def tag(value: Any) -> str:
        if isinstance(value, dict):
            kind = value.get("type")
        else:
            kind = getattr(value, "type", None)
        return kind if kind in known else "unknown"

    return tag


# ---------------------------------------------------------------------------
# Action descriptors
# ---------------------------------------------------------------------------


class AssignTicketAction(BaseModel):
    """Assign the ticket to an explicit user or to any member of a department."""

    type: Literal["assign_ticket"] = "assign_ticket"
    assign_to_user_id: Optional[Union[int, str]] = None
    assign_to_department: Optional[Union[int, str]] = None


class UpdateTicketAction(BaseModel):
    type: Literal["update_ticket"] = "update_ticket"
    updates: dict[str, Any] = {}


class SendNotificationAction(BaseModel):
    type: Literal["send_notification"] = "send_notification"
    recipient_type: str = "assigned_user"  # assigned_user | created_by | department_managers | email
    recipient_email: Optional[str] = None
    message: str = "Workflow notification"


class SendEmailAction(BaseModel):
    type: Literal["send_email"] = "send_email"
    recipient_email: str = ""
    recipient_type: Optional[str] = None
    subject: str = "Workflow Email"
    message: str = "Workflow email message"


class AICategorizeAction(BaseModel):
    type: Literal["ai_categorize"] = "ai_categorize"


class AISuggestResponseAction(BaseModel):
    type: Literal["ai_suggest_response"] = "ai_suggest_response"


class AIPredictEscalationAction(BaseModel):
    type: Literal["ai_predict_escalation"] = "ai_predict_escalation"


class CreateKnowledgeArticleAction(BaseModel):
    type: Literal["create_knowledge_article"] = "create_knowledge_article"
    title: str = ""
    content: str = ""
    category: Optional[str] = None


class UnknownAction(BaseModel):
    """An action whose type the dispatcher does not know; kept so dispatch can report it."""

    model_config = ConfigDict(extra="allow")

    type: str = "unknown"


ACTION_TYPES = frozenset(
    {
        "assign_ticket",
        "update_ticket",
        "send_notification",
        "send_email",
        "ai_categorize",
        "ai_suggest_response",
        "ai_predict_escalation",
        "create_knowledge_article",
    }
)

Action = Annotated[
    Union[
        Annotated[AssignTicketAction, Tag("assign_ticket")],
        Annotated[UpdateTicketAction, Tag("update_ticket")],
        Annotated[SendNotificationAction, Tag("send_notification")],
        Annotated[SendEmailAction, Tag("send_email")],
        Annotated[AICategorizeAction, Tag("ai_categorize")],
        Annotated[AISuggestResponseAction, Tag("ai_suggest_response")],
        Annotated[AIPredictEscalationAction, Tag("ai_predict_escalation")],
        Annotated[CreateKnowledgeArticleAction, Tag("create_knowledge_article")],
        Annotated[UnknownAction, Tag("unknown")],
    ],
    Discriminator(_type_tag(ACTION_TYPES)),
]


# ---------------------------------------------------------------------------
# Graph nodes and edges
# ---------------------------------------------------------------------------


class ConditionData(BaseModel):
    field: str = ""
    operator: str = "="
    value: Any = ""
    true_path: Optional[str] = None
    false_path: Optional[str] = None


class AINodeData(BaseModel):
    action: str = "categorize"  # categorize | suggest_response | predict_escalation


class DelayData(BaseModel):
    """Either a direct ``seconds`` value or a ``duration`` + ``unit`` pair."""

    seconds: Optional[float] = None
    duration: Optional[float] = None
    unit: Optional[str] = None


class StartNode(BaseModel):
    id: str
    type: Literal["start"] = "start"
    data: dict[str, Any] = {}


class ActionNode(BaseModel):
    id: str
    type: Literal["action"] = "action"
    data: Action = Field(default_factory=UnknownAction)


class ConditionNode(BaseModel):
    id: str
    type: Literal["condition"] = "condition"
    data: ConditionData = Field(default_factory=ConditionData)


class AINode(BaseModel):
    id: str
    type: Literal["ai"] = "ai"
    data: AINodeData = Field(default_factory=AINodeData)


class DelayNode(BaseModel):
    id: str
    type: Literal["delay"] = "delay"
    data: DelayData = Field(default_factory=DelayData)


class EndNode(BaseModel):
    id: str
    type: Literal["end"] = "end"
    data: dict[str, Any] = {}


class UnknownNode(BaseModel):
    """A node of a type this engine does not know; executed as a no-op terminal."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str = "unknown"
    data: dict[str, Any] = {}


NODE_TYPES = frozenset({"start", "action", "condition", "ai", "delay", "end"})

Node = Annotated[
    Union[
        Annotated[StartNode, Tag("start")],
        Annotated[ActionNode, Tag("action")],
        Annotated[ConditionNode, Tag("condition")],
        Annotated[AINode, Tag("ai")],
        Annotated[DelayNode, Tag("delay")],
        Annotated[EndNode, Tag("end")],
        Annotated[UnknownNode, Tag("unknown")],
    ],
    Discriminator(_type_tag(NODE_TYPES)),
]


class WorkflowEdge(BaseModel):
    """A directed edge, serialised with the ``from``/``to`` keys."""

    model_config = ConfigDict(populate_by_name=True)

    source: str = Field(alias="from")
    target: str = Field(alias="to")


class WorkflowGraph(BaseModel):
    nodes: list[Node] = []
    edges: list[WorkflowEdge] = Field(
        default_factory=list,
        validation_alias=AliasChoices("edges", "connections"),
    )


class ConditionClause(BaseModel):
    field: str
    operator: str = "="
    value: Any = ""


class Workflow(WorkflowGraph):
    """A stored, user-authored workflow graph.

    ``automatic`` workflows also run when an entity of ``entity_type`` is
    evaluated and every clause of ``trigger_conditions`` holds on it.
    """

    id: str
    name: str
    description: str = ""
    entity_type: str = "ticket"
    trigger_type: Literal["manual", "automatic", "schedule", "webhook"] = "manual"
    trigger_conditions: list[ConditionClause] = []
    is_active: bool = True
    version: int = 1

    def graph_snapshot(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class RuleConditions(BaseModel):
    operator: str = "and"  # and | or
    rules: list[ConditionClause] = []


class RuleSchedule(BaseModel):
    """Time gate for scheduled rules; every populated field must pass."""

    time: Optional[str] = None  # "HH:MM"
    days: Optional[list[str]] = None  # lowercase weekday names
    frequency: Optional[str] = None  # hourly | daily | weekly | monthly
    cron: Optional[str] = None


class WorkflowRule(BaseModel):
    id: str
    name: str
    description: str = ""
    entity_type: str
    conditions: RuleConditions = Field(default_factory=RuleConditions)
    actions: list[Action] = []
    schedule: Optional[RuleSchedule] = None
    is_active: bool = True
    priority: int = 0
    execution_limit: Optional[int] = None
    execution_count: int = 0
    last_executed_at: Optional[datetime] = None

    @property
    def is_scheduled(self) -> bool:
        return self.schedule is not None

    def limit_reached(self, fired: int = 0) -> bool:
        return bool(self.execution_limit) and self.execution_count + fired >= self.execution_limit


# ---------------------------------------------------------------------------
# Entities and execution records
# ---------------------------------------------------------------------------


class EntityRef(BaseModel):
    entity_type: str
    entity_id: Union[int, str]

    @property
    def key(self) -> str:
        return f"{self.entity_type}:{self.entity_id}"


ExecutionStatus = Literal["running", "completed", "failed", "cancelled", "suspended"]
ActionStatus = Literal["pending", "started", "completed", "failed"]

TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


class Execution(BaseModel):
    """One run of a workflow graph or a rule's action list against an entity."""

    id: str = Field(default_factory=_new_id)
    workflow_id: Optional[str] = None
    rule_id: Optional[str] = None
    entity_type: str
    entity_id: Union[int, str]
    status: ExecutionStatus = "running"
    definition: dict[str, Any] = {}
    entity_data: dict[str, Any] = {}
    triggered_by: Optional[Union[int, str]] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    resume_at: Optional[datetime] = None
    resume_state: Optional[dict[str, Any]] = None

    @model_validator(mode="after")
    def _one_definition(self) -> "Execution":
        if (self.workflow_id is None) == (self.rule_id is None):
            raise ValueError("an execution references exactly one of workflow_id or rule_id")
        return self

    @property
    def entity_ref(self) -> EntityRef:
        return EntityRef(entity_type=self.entity_type, entity_id=self.entity_id)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def execution_time(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class ActionRecord(BaseModel):
    """Audit/status record for one dispatched action within an execution."""

    id: str = Field(default_factory=_new_id)
    execution_id: str
    node_id: Optional[str] = None
    action_type: str
    input_data: dict[str, Any] = {}
    status: ActionStatus = "pending"
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    @property
    def execution_time(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()
