"""Executors for workflow graphs (abort on first failure) and rule action lists (isolated actions)."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, defaultdict
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncContextManager, Awaitable, Callable, Optional

from ..services import EntityStore
from .conditions import evaluate_condition
from .dispatcher import ActionDispatcher, ActionResult
from .errors import CycleLimitError, DispatchError, ExecutionCancelled, HandlerError
from .recorder import ExecutionRecorder
from .schema import (
    ActionNode,
    AINode,
    ConditionNode,
    DelayData,
    DelayNode,
    EndNode,
    EntityRef,
    Execution,
    StartNode,
    WorkflowGraph,
    WorkflowRule,
    utcnow,
)
from .validator import validate_graph

logger = logging.getLogger(__name__)

DELAY_UNITS = {"seconds": 1, "minutes": 60, "hours": 3600}

# Opens a block during which the execution gives up its hold on the entity.
Pause = Callable[[], AsyncContextManager[None]]


class ExecutionMode(str, Enum):
    """How an executor reacts to a failed action."""

    ABORT_ON_FAILURE = "abort_on_failure"
    ISOLATED_ACTIONS = "isolated_actions"


class CancellationToken:
    """Cooperative cancellation flag checked between steps, never mid-action."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ExecutionCancelled("Execution was cancelled")


class ExecutionSuspended(Exception):
    """Raised inside a graph run to park the execution until ``resume_at``."""

    def __init__(self, resume_at: datetime, state: dict[str, Any]):
        self.resume_at = resume_at
        self.state = state
        super().__init__(f"Execution suspended until {resume_at.isoformat()}")


def delay_seconds(data: DelayData) -> float:
    """Wait duration of a delay node; an unrecognised unit means no wait."""
    if data.seconds is not None:
        return max(float(data.seconds), 0.0)
    if data.duration is not None and data.unit is not None:
        return max(float(data.duration) * DELAY_UNITS.get(data.unit, 0), 0.0)
    return 0.0


class StepRunner:
    """Runs one dispatch inside an ActionRecord (pending -> started -> completed|failed)."""

    def __init__(self, dispatcher: ActionDispatcher, recorder: ExecutionRecorder):
        self.dispatcher = dispatcher
        self.recorder = recorder

    async def run(
        self,
        execution: Execution,
        action_type: str,
        input_data: dict[str, Any],
        call: Callable[[], Awaitable[ActionResult]],
        node_id: Optional[str] = None,
    ) -> ActionResult:
        record = self.recorder.begin_action(execution, action_type, input_data, node_id=node_id)
        try:
            result = await call()
            if not result.success:
                error_cls = DispatchError if result.kind == "dispatch" else HandlerError
                raise error_cls(result.error or "Action failed")
        except Exception as e:
            self.recorder.fail_action(record, str(e))
            raise
        self.recorder.complete_action(record, result.data)
        return result


class WorkflowExecutor:
    """Walks a workflow graph depth-first from its start node.

    Traversal uses an explicit work-list over a pre-indexed node table. Any
    action or AI failure aborts the whole run. Each node may execute at most
    ``max_node_visits`` times per execution, which bounds cyclic graphs.
    A sleeping delay runs inside ``pause()`` when one is given, so other
    executions for the same entity can proceed meanwhile.
    """

    mode = ExecutionMode.ABORT_ON_FAILURE

    def __init__(
        self,
        dispatcher: ActionDispatcher,
        recorder: ExecutionRecorder,
        entities: EntityStore,
        *,
        max_node_visits: int = 25,
        delay_mode: str = "sleep",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.recorder = recorder
        self.dispatcher = dispatcher
        self.entities = entities
        self.runner = StepRunner(dispatcher, recorder)
        self.max_node_visits = max_node_visits
        self.delay_mode = delay_mode
        self.sleep = sleep
        self.clock = clock

    async def run(
        self,
        graph: WorkflowGraph,
        execution: Execution,
        token: Optional[CancellationToken] = None,
        resume_state: Optional[dict[str, Any]] = None,
        pause: Optional[Pause] = None,
    ) -> Execution:
        """Execute and finalise ``execution``; never raises for run-time failures."""
        try:
            await self.execute(graph, execution, token, resume_state, pause)
        except ExecutionSuspended as e:
            return self.recorder.suspend(execution, e.resume_at, e.state)
        except ExecutionCancelled:
            return self.recorder.cancel(execution)
        except Exception as e:
            return self.recorder.fail(execution, str(e))
        return self.recorder.complete(execution)

    async def execute(
        self,
        graph: WorkflowGraph,
        execution: Execution,
        token: Optional[CancellationToken] = None,
        resume_state: Optional[dict[str, Any]] = None,
        pause: Optional[Pause] = None,
    ) -> None:
        validate_graph(graph)
        ref = execution.entity_ref

        node_map: dict[str, Any] = {}
        for node in graph.nodes:
            node_map.setdefault(node.id, node)
        successors: dict[str, list[str]] = defaultdict(list)
        for edge in graph.edges:
            successors[edge.source].append(edge.target)

        if resume_state:
            stack = list(resume_state.get("stack", []))
            visits = Counter(resume_state.get("visits", {}))
        else:
            start = next(node for node in graph.nodes if node.type == "start")
            stack = [start.id]
            visits = Counter()

        while stack:
            if token is not None:
                token.raise_if_cancelled()

            node = node_map.get(stack.pop())
            if node is None:
                # Condition paths may name ids outside the graph; that branch just ends.
                continue

            visits[node.id] += 1
            if visits[node.id] > self.max_node_visits:
                raise CycleLimitError(node.id, self.max_node_visits)

            next_ids = await self._step(node, successors[node.id], ref, execution)
            stack.extend(reversed(next_ids))

            if isinstance(node, DelayNode):
                await self._wait(delay_seconds(node.data), stack, visits, pause)

    async def _step(self, node: Any, successors: list[str], ref: EntityRef, execution: Execution) -> list[str]:
        """Apply one node's effect and return the ids to visit next, in order."""
        if isinstance(node, (StartNode, DelayNode)):
            return successors

        if isinstance(node, ActionNode):
            action = node.data
            await self.runner.run(
                execution,
                action.type,
                action.model_dump(mode="json"),
                lambda: self.dispatcher.dispatch(action, ref),
                node_id=node.id,
            )
            return successors

        if isinstance(node, ConditionNode):
            data = node.data
            actual = self.entities.get(ref, data.field)
            matched = evaluate_condition(actual, data.operator, data.value)
            target = data.true_path if matched else data.false_path
            logger.debug(
                "Condition %s: %r %s %r -> %s (next=%s)",
                node.id,
                actual,
                data.operator,
                data.value,
                matched,
                target,
            )
            return [target] if target else []

        if isinstance(node, AINode):
            sub_type = node.data.action
            await self.runner.run(
                execution,
                "ai_process",
                node.data.model_dump(mode="json"),
                lambda: self.dispatcher.dispatch_ai(sub_type, ref),
                node_id=node.id,
            )
            return successors

        if isinstance(node, EndNode):
            return []

        logger.warning(
            "Unknown node type encountered: type=%s node=%s execution=%s",
            node.type,
            node.id,
            execution.id,
        )
        return []

    async def _wait(self, seconds: float, stack: list[str], visits: Counter, pause: Optional[Pause]) -> None:
        if seconds <= 0:
            return
        if self.delay_mode == "suspend":
            raise ExecutionSuspended(
                self.clock() + timedelta(seconds=seconds),
                {"stack": list(stack), "visits": dict(visits)},
            )
        if pause is None:
            await self.sleep(seconds)
            return
        async with pause():
            await self.sleep(seconds)


class RuleExecutor:
    """Runs a rule's actions in order; a failed action never stops its siblings."""

    mode = ExecutionMode.ISOLATED_ACTIONS

    def __init__(self, dispatcher: ActionDispatcher, recorder: ExecutionRecorder):
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.runner = StepRunner(dispatcher, recorder)

    async def run(
        self,
        rule: WorkflowRule,
        execution: Execution,
        token: Optional[CancellationToken] = None,
    ) -> Execution:
        """Execute and finalise ``execution``; per-action failures leave it ``completed``."""
        try:
            await self.execute(rule, execution, token)
        except ExecutionCancelled:
            return self.recorder.cancel(execution)
        except Exception as e:
            return self.recorder.fail(execution, str(e))
        return self.recorder.complete(execution)

    async def execute(
        self,
        rule: WorkflowRule,
        execution: Execution,
        token: Optional[CancellationToken] = None,
    ) -> None:
        ref = execution.entity_ref
        for action in rule.actions:
            if token is not None:
                token.raise_if_cancelled()
            try:
                await self.runner.run(
                    execution,
                    action.type,
                    action.model_dump(mode="json"),
                    lambda action=action: self.dispatcher.dispatch(action, ref),
                )
            except Exception as e:
                logger.error("Action execution failed: rule=%s action=%s error=%s", rule.id, action.type, e)
