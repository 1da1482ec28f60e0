"""API models for the ticketflow trigger API."""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class TriggerRequest(BaseModel):
    """Request to run a workflow or rule against one entity."""

    entity_type: str = Field("ticket", description="Entity type, e.g. ticket or user")
    entity_id: Union[int, str] = Field(..., description="Primary key of the target entity")
    triggered_by: Optional[Union[int, str]] = Field(None, description="User id that caused the trigger")
    wait: bool = Field(True, description="Return only once the execution has settled")


class EvaluateRequest(BaseModel):
    """Request to evaluate every active rule for an entity."""

    triggered_by: Optional[Union[int, str]] = None
    wait: bool = True


class ClockRequest(BaseModel):
    """Scheduling and resume passes; ``now`` defaults to the server clock."""

    now: Optional[datetime] = None


class ExecutionResponse(BaseModel):
    execution_id: str
    status: str
    error: Optional[str] = None


class EvaluateResponse(BaseModel):
    execution_ids: list[str]
    workflow_execution_ids: list[str] = []


class ScheduledRulesResponse(BaseModel):
    rules_checked: int
    rules_executed: int
    executions_created: int


class ResumeResponse(BaseModel):
    resumed: list[str]


class ValidationResponse(BaseModel):
    """Outcome of structural validation of a workflow graph."""

    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None


class CatalogResponse(BaseModel):
    actions: list[str]
    conditions: dict[str, Any]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    service: str = "ticketflow"
