"""Execution reports with markdown rendering, and aggregate execution stats."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from .schema import ActionRecord, Execution


class ActionSummary(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0

    @classmethod
    def from_records(cls, records: list[ActionRecord]) -> "ActionSummary":
        completed = sum(1 for r in records if r.status == "completed")
        failed = sum(1 for r in records if r.status == "failed")
        return cls(
            total=len(records),
            completed=completed,
            failed=failed,
            pending=len(records) - completed - failed,
        )


class ExecutionStats(BaseModel):
    """Aggregate outcome of all executions of one workflow or rule."""

    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    success_rate: float = 0.0  # percent
    average_execution_time: Optional[float] = None  # seconds, finished executions only
    last_execution: Optional[datetime] = None

    @classmethod
    def from_executions(cls, executions: list[Execution]) -> "ExecutionStats":
        total = len(executions)
        successful = sum(1 for e in executions if e.status == "completed")
        durations = [e.execution_time for e in executions if e.execution_time is not None]
        return cls(
            total_executions=total,
            successful_executions=successful,
            failed_executions=sum(1 for e in executions if e.status == "failed"),
            success_rate=successful / total * 100 if total else 0.0,
            average_execution_time=sum(durations) / len(durations) if durations else None,
            last_execution=max((e.started_at for e in executions), default=None),
        )


class ExecutionReport(BaseModel):
    """An execution together with its action records, in dispatch order."""

    execution: Execution
    actions: list[ActionRecord] = []

    @property
    def summary(self) -> ActionSummary:
        return ActionSummary.from_records(self.actions)

    @property
    def execution_time(self) -> Optional[float]:
        return self.execution.execution_time

    def to_markdown(self) -> str:
        execution = self.execution
        summary = self.summary
        if execution.workflow_id is not None:
            definition = f"Workflow `{execution.workflow_id}`"
        else:
            definition = f"Rule `{execution.rule_id}`"

        lines = [
            f"# Execution Report: {execution.id}",
            "",
            f"**Definition:** {definition}",
            f"**Entity:** `{execution.entity_ref.key}`",
            f"**Status:** {execution.status}",
            f"**Actions:** {summary.total} total, {summary.completed} completed, "
            f"{summary.failed} failed, {summary.pending} pending",
            "",
        ]

        if execution.error:
            lines.append(f"**Error:** {execution.error}")
            lines.append("")

        lines.append("## Actions")
        lines.append("")
        lines.append("| # | Node | Action | Status | Detail |")
        lines.append("|---|------|--------|--------|--------|")

        for i, record in enumerate(self.actions, 1):
            detail = ""
            if record.status == "completed" and record.result:
                detail = ", ".join(f"{k}={v}" for k, v in record.result.items())
            elif record.error:
                detail = record.error
            status_icon = {"completed": "OK", "failed": "FAIL"}.get(record.status, record.status)
            lines.append(f"| {i} | `{record.node_id or '-'}` | {record.action_type} | {status_icon} | {detail} |")

        lines.append("")
        if self.execution_time is not None:
            lines.append(f"**Duration:** {self.execution_time:.2f}s")

        return "\n".join(lines)

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data["summary"] = self.summary.model_dump()
        data["execution_time"] = self.execution_time
        return data
