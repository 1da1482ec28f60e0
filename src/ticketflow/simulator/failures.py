"""Failure injection configuration for dispatched actions."""

import random

from pydantic import BaseModel


class FailureRule(BaseModel):
    """Defines how a specific action type should fail."""

    error_type: str  # "rate_limit" | "permission_denied" | "unavailable"
    message: str
    probability: float = 1.0  # 1.0 = always fail, 0.5 = 50% chance
    times: int | None = None  # stop failing after this many injected failures


class FailureConfig(BaseModel):
    """Maps action types (``assign_ticket``, ``ai:categorize``...) to failure rules."""

    rules: dict[str, FailureRule] = {}
    injected: dict[str, int] = {}

    def should_fail(self, action_type: str) -> FailureRule | None:
        """Check if an action should fail. Returns the rule if it triggers."""
        rule = self.rules.get(action_type)
        if rule is None:
            return None
        count = self.injected.get(action_type, 0)
        if rule.times is not None and count >= rule.times:
            return None
        if random.random() <= rule.probability:
            self.injected[action_type] = count + 1
            return rule
        return None
