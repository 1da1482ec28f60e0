"""Execution and action record lifecycle, with audit emission and timing."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ..services import AuditSink
from .errors import ImmutableExecutionError
from .executions import ExecutionStore
from .schema import ActionRecord, EntityRef, Execution, Workflow, WorkflowRule, utcnow

logger = logging.getLogger(__name__)


class ExecutionRecorder:
    """The only writer of Execution and ActionRecord state.

    Every transition is persisted immediately and mirrored to the audit sink.
    Terminal executions and action records reject further mutation.
    """

    def __init__(
        self,
        store: ExecutionStore,
        audit: Optional[AuditSink] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def start_workflow_execution(
        self,
        workflow: Workflow,
        ref: EntityRef,
        entity_data: dict[str, Any],
        triggered_by: Any = None,
    ) -> Execution:
        execution = Execution(
            workflow_id=workflow.id,
            entity_type=ref.entity_type,
            entity_id=ref.entity_id,
            definition=workflow.graph_snapshot(),
            entity_data=entity_data,
            triggered_by=triggered_by,
            started_at=self.clock(),
        )
        self._persist(execution, "execution.started", {"workflow_id": workflow.id, "entity": ref.key})
        logger.info(
            "Workflow execution started: workflow=%s execution=%s entity=%s",
            workflow.id,
            execution.id,
            ref.key,
        )
        return execution

    def start_rule_execution(
        self,
        rule: WorkflowRule,
        ref: EntityRef,
        entity_data: dict[str, Any],
        triggered_by: Any = None,
    ) -> Execution:
        execution = Execution(
            rule_id=rule.id,
            entity_type=ref.entity_type,
            entity_id=ref.entity_id,
            definition=rule.model_dump(mode="json", by_alias=True),
            entity_data=entity_data,
            triggered_by=triggered_by,
            started_at=self.clock(),
        )
        self._persist(execution, "execution.started", {"rule_id": rule.id, "entity": ref.key})
        logger.info(
            "Rule execution started: rule=%s execution=%s entity=%s",
            rule.id,
            execution.id,
            ref.key,
        )
        return execution

    def complete(self, execution: Execution) -> Execution:
        self._guard(execution)
        execution.status = "completed"
        execution.completed_at = self.clock()
        execution.result = {"actions_executed": len(self.store.list_actions(execution.id))}
        execution.resume_at = None
        execution.resume_state = None
        self._persist(execution, "execution.completed", execution.result)
        logger.info("Execution completed: execution=%s duration=%.3fs", execution.id, execution.execution_time)
        return execution

    def fail(self, execution: Execution, error: str) -> Execution:
        self._guard(execution)
        execution.status = "failed"
        execution.completed_at = self.clock()
        execution.error = error
        execution.resume_at = None
        execution.resume_state = None
        self._persist(execution, "execution.failed", {"error": error})
        logger.error("Execution failed: execution=%s error=%s", execution.id, error)
        return execution

    def cancel(self, execution: Execution) -> Execution:
        self._guard(execution)
        execution.status = "cancelled"
        execution.completed_at = self.clock()
        execution.resume_at = None
        execution.resume_state = None
        self._persist(execution, "execution.cancelled", {})
        logger.info("Execution cancelled: execution=%s", execution.id)
        return execution

    def suspend(self, execution: Execution, resume_at: datetime, state: dict[str, Any]) -> Execution:
        self._guard(execution)
        execution.status = "suspended"
        execution.resume_at = resume_at
        execution.resume_state = state
        self._persist(execution, "execution.suspended", {"resume_at": resume_at.isoformat()})
        logger.info("Execution suspended: execution=%s resume_at=%s", execution.id, resume_at.isoformat())
        return execution

    def resume(self, execution: Execution) -> Execution:
        self._guard(execution)
        execution.status = "running"
        execution.resume_at = None
        self._persist(execution, "execution.resumed", {})
        return execution

    # ------------------------------------------------------------------
    # Action records
    # ------------------------------------------------------------------

    def begin_action(
        self,
        execution: Execution,
        action_type: str,
        input_data: dict[str, Any],
        node_id: Optional[str] = None,
    ) -> ActionRecord:
        """Create a pending record and move it straight to ``started``."""
        self._guard(execution)
        record = ActionRecord(
            execution_id=execution.id,
            node_id=node_id,
            action_type=action_type,
            input_data=input_data,
            created_at=self.clock(),
        )
        self._persist_action(record, "action.pending", {"action_type": action_type})

        record.status = "started"
        record.started_at = self.clock()
        self._persist_action(record, "action.started", {})
        return record

    def complete_action(self, record: ActionRecord, result: dict[str, Any]) -> ActionRecord:
        self._guard_action(record)
        record.status = "completed"
        record.result = result
        record.completed_at = self.clock()
        self._persist_action(record, "action.completed", result)
        return record

    def fail_action(self, record: ActionRecord, error: str) -> ActionRecord:
        self._guard_action(record)
        record.status = "failed"
        record.error = error
        record.completed_at = self.clock()
        self._persist_action(record, "action.failed", {"error": error})
        return record

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _guard(execution: Execution) -> None:
        if execution.is_terminal:
            raise ImmutableExecutionError(f"Execution {execution.id} is already {execution.status}")

    @staticmethod
    def _guard_action(record: ActionRecord) -> None:
        if record.is_terminal:
            raise ImmutableExecutionError(f"Action record {record.id} is already {record.status}")

    def _persist(self, execution: Execution, event: str, payload: dict[str, Any]) -> None:
        self.store.save_execution(execution)
        if self.audit is not None:
            self.audit.record(execution.id, None, event, payload)

    def _persist_action(self, record: ActionRecord, event: str, payload: dict[str, Any]) -> None:
        self.store.save_action(record)
        if self.audit is not None:
            self.audit.record(record.execution_id, record.id, event, payload)
