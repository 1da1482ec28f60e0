"""Rule matching and the schedule gate deciding whether a rule may fire now."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from croniter import croniter

from .conditions import evaluate_condition, evaluate_rule_conditions, resolve_field
from .schema import Workflow, WorkflowRule

FREQUENCY_MINUTES = {
    "hourly": 60,
    "daily": 24 * 60,
    "weekly": 7 * 24 * 60,
    "monthly": 30 * 24 * 60,
}


def rule_matches(rule: WorkflowRule, entity_type: str, entity: dict[str, Any]) -> bool:
    """An active rule for this entity type whose conditions hold on ``entity``."""
    if not rule.is_active or rule.entity_type != entity_type:
        return False
    return evaluate_rule_conditions(rule.conditions, entity)


def should_run_now(rule: WorkflowRule, now: datetime) -> bool:
    """Execution-limit and schedule gate.

    Unscheduled rules pass whenever their limit allows. For scheduled rules
    every populated schedule field must pass.
    """
    if rule.limit_reached():
        return False

    schedule = rule.schedule
    if schedule is None:
        return True

    if schedule.time is not None and now.strftime("%H:%M") != schedule.time:
        return False

    if schedule.days is not None:
        if now.strftime("%A").lower() not in [day.lower() for day in schedule.days]:
            return False

    last_run = rule.last_executed_at
    if schedule.frequency is not None and last_run is not None:
        required = FREQUENCY_MINUTES.get(schedule.frequency, 60)
        if (now - last_run).total_seconds() / 60 < required:
            return False

    if schedule.cron is not None:
        # Due when a scheduled fire time falls after the last run.
        previous_fire = croniter(schedule.cron, now).get_prev(datetime)
        if last_run is not None and previous_fire <= last_run:
            return False

    return True


def by_priority(rules: Iterable[WorkflowRule], descending: bool = True) -> list[WorkflowRule]:
    """Order rules by priority; ties keep their input order."""
    return sorted(rules, key=lambda rule: rule.priority, reverse=descending)


def workflow_triggers(workflow: Workflow, entity_type: str, entity: dict[str, Any]) -> bool:
    """An active automatic workflow for this entity type whose trigger conditions all hold.

    A clause whose field is absent from the entity never holds.
    """
    if not workflow.is_active or workflow.trigger_type != "automatic" or workflow.entity_type != entity_type:
        return False
    for clause in workflow.trigger_conditions:
        actual = resolve_field(entity, clause.field)
        if actual is None or not evaluate_condition(actual, clause.operator, clause.value):
            return False
    return True
