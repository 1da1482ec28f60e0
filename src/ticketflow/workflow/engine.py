"""Trigger API: runs workflows and rules against entities as independent tasks."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from ..config import Settings
from ..services import AuditSink, Clock, ServiceLayer
from .dispatcher import ActionDispatcher
from .errors import EntityNotFound, ExecutionNotFound, StructuralError
from .executions import ExecutionStore, SqliteAuditSink
from .executor import CancellationToken, Pause, RuleExecutor, WorkflowExecutor
from .recorder import ExecutionRecorder
from .report import ExecutionReport, ExecutionStats
from .rules import by_priority, rule_matches, should_run_now, workflow_triggers
from .schema import EntityRef, Execution, Workflow, WorkflowGraph, WorkflowRule, utcnow
from .store import DefinitionStore
from .validator import validate_graph

logger = logging.getLogger(__name__)

Body = Callable[[CancellationToken, Optional[Pause]], Awaitable[Execution]]


class EntityLocks:
    """Per-entity asyncio locks that exist only while some execution holds or awaits one."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: Counter = Counter()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._checkout(key)
        try:
            async with lock:
                yield
        finally:
            self._checkin(key)

    @asynccontextmanager
    async def released(self, key: str) -> AsyncIterator[None]:
        """Give up a held lock for the duration of the block, then queue for it again."""
        lock = self._locks[key]
        lock.release()
        try:
            yield
        finally:
            await lock.acquire()

    def _checkout(self, key: str) -> asyncio.Lock:
        # asyncio locks belong to one event loop; start afresh when the loop changes.
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._locks = {}
            self._users = Counter()
            self._loop = loop
        self._users[key] += 1
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _checkin(self, key: str) -> None:
        self._users[key] -= 1
        if self._users[key] <= 0:
            del self._users[key]
            self._locks.pop(key, None)


class WorkflowEngine:
    """Entry point for running workflows and rules.

    Every execution runs in its own asyncio task. When ``serialize_per_entity``
    is set, executions targeting the same entity take turns on a per-entity
    lock; executions for different entities never wait on each other, and a
    workflow sleeping in a delay node lets the entity's other executions run.

    Trigger methods validate the definition and load the entity before an
    execution exists, so structural problems and missing entities surface to
    the caller instead of as failed executions. With ``wait=True`` (default)
    they return once the execution has reached a resting status.
    """

    def __init__(
        self,
        definitions: DefinitionStore,
        executions: ExecutionStore,
        services: ServiceLayer,
        *,
        audit: Optional[AuditSink] = None,
        delay_mode: str = "sleep",
        max_node_visits: int = 25,
        serialize_per_entity: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Clock = utcnow,
    ):
        self.definitions = definitions
        self.executions = executions
        self.services = services
        self.clock = clock
        self.serialize_per_entity = serialize_per_entity

        self.recorder = ExecutionRecorder(executions, audit=audit, clock=clock)
        self.dispatcher = ActionDispatcher(services)
        self.workflow_executor = WorkflowExecutor(
            self.dispatcher,
            self.recorder,
            services.entities,
            max_node_visits=max_node_visits,
            delay_mode=delay_mode,
            sleep=sleep,
            clock=clock,
        )
        self.rule_executor = RuleExecutor(self.dispatcher, self.recorder)

        self.entity_locks = EntityLocks()
        self._tasks: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._rule_of: dict[str, str] = {}

    @classmethod
    def from_settings(cls, settings: Settings, services: ServiceLayer) -> "WorkflowEngine":
        executions = ExecutionStore(settings.resolved_database_path)
        return cls(
            DefinitionStore(settings.data_dir),
            executions,
            services,
            audit=SqliteAuditSink(executions),
            delay_mode=settings.delay_mode,
            max_node_visits=settings.max_node_visits,
            serialize_per_entity=settings.serialize_per_entity,
        )

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    async def run_workflow(
        self,
        workflow_id: str,
        ref: EntityRef,
        triggered_by: Any = None,
        wait: bool = True,
    ) -> str:
        """Run a stored workflow against an entity and return the execution id."""
        workflow = self.definitions.get_workflow(workflow_id)
        validate_graph(workflow)
        entity = self._load_entity(ref)

        execution_id = self._start_workflow(workflow, ref, entity, triggered_by)
        if wait:
            await self.wait_for(execution_id)
        return execution_id

    async def run_rule(
        self,
        rule_id: str,
        ref: EntityRef,
        triggered_by: Any = None,
        wait: bool = True,
    ) -> str:
        """Run a rule's actions against an entity without checking its conditions."""
        rule = self.definitions.get_rule(rule_id)
        entity = self._load_entity(ref)
        execution_id = self._start_rule(rule, ref, entity, triggered_by)
        self.definitions.record_firings(rule.id, 1, self.clock())
        if wait:
            await self.wait_for(execution_id)
        return execution_id

    async def evaluate_rules_for(
        self,
        ref: EntityRef,
        triggered_by: Any = None,
        wait: bool = True,
    ) -> list[str]:
        """Fire every active rule of the entity's type that matches it, highest priority first."""
        entity = self._load_entity(ref)
        now = self.clock()
        rules = by_priority(self.definitions.list_rules(entity_type=ref.entity_type, active=True))

        execution_ids: list[str] = []
        for rule in rules:
            try:
                if not rule_matches(rule, ref.entity_type, entity) or not should_run_now(rule, now):
                    continue
                execution_ids.append(self._start_rule(rule, ref, entity, triggered_by))
                self.definitions.record_firings(rule.id, 1, now)
            except Exception as e:
                logger.error("Rule evaluation failed: rule=%s entity=%s error=%s", rule.id, ref.key, e)

        if wait:
            for execution_id in execution_ids:
                await self.wait_for(execution_id)
        return execution_ids

    async def trigger_workflows_for(
        self,
        ref: EntityRef,
        triggered_by: Any = None,
        wait: bool = True,
    ) -> list[str]:
        """Run every active ``automatic`` workflow whose trigger conditions hold on the entity.

        A structurally broken workflow is logged and skipped so it cannot
        block the others.
        """
        entity = self._load_entity(ref)

        execution_ids: list[str] = []
        for workflow in self.definitions.list_workflows(active=True):
            if not workflow_triggers(workflow, ref.entity_type, entity):
                continue
            try:
                validate_graph(workflow)
            except StructuralError as e:
                logger.error("Automatic workflow skipped: workflow=%s entity=%s error=%s", workflow.id, ref.key, e)
                continue
            execution_ids.append(self._start_workflow(workflow, ref, entity, triggered_by))

        if wait:
            for execution_id in execution_ids:
                await self.wait_for(execution_id)
        return execution_ids

    async def process_scheduled_rules(
        self,
        now: Optional[datetime] = None,
        wait: bool = True,
    ) -> dict[str, int]:
        """Scheduling pass over active scheduled rules, lowest priority value first.

        A rule that passes its schedule gate counts as executed, then fires
        once per matching entity until its execution limit is reached; the
        counter increment for the whole batch is applied in one atomic update.
        """
        now = now or self.clock()
        rules = by_priority(self.definitions.list_rules(active=True, scheduled=True), descending=False)

        rules_executed = 0
        execution_ids: list[str] = []
        for rule in rules:
            fired = 0
            try:
                if not should_run_now(rule, now):
                    continue
                rules_executed += 1
                for entity_id in self.services.entities.list_ids(rule.entity_type):
                    if rule.limit_reached(fired):
                        break
                    ref = EntityRef(entity_type=rule.entity_type, entity_id=entity_id)
                    entity = self.services.entities.load(ref)
                    if entity is None or not rule_matches(rule, rule.entity_type, entity):
                        continue
                    execution_ids.append(self._start_rule(rule, ref, entity, None))
                    fired += 1
            except Exception as e:
                logger.error("Scheduled rule evaluation failed: rule=%s error=%s", rule.id, e)
            if fired:
                self.definitions.record_firings(rule.id, fired, now)

        if wait:
            for execution_id in execution_ids:
                await self.wait_for(execution_id)

        logger.info(
            "Scheduled rules processed: checked=%d executed=%d executions=%d",
            len(rules),
            rules_executed,
            len(execution_ids),
        )
        return {
            "rules_checked": len(rules),
            "rules_executed": rules_executed,
            "executions_created": len(execution_ids),
        }

    async def resume_due(self, now: Optional[datetime] = None, wait: bool = True) -> list[str]:
        """Continue suspended executions whose resume time has passed."""
        now = now or self.clock()
        resumed: list[str] = []
        for execution in self.executions.due_suspended(now):
            if execution.id in self._tasks:
                continue
            graph = WorkflowGraph.model_validate(execution.definition)
            state = execution.resume_state or {}
            self.recorder.resume(execution)
            self._launch(
                execution,
                lambda token, pause, graph=graph, execution=execution, state=state: self.workflow_executor.run(
                    graph, execution, token, resume_state=state, pause=pause
                ),
            )
            resumed.append(execution.id)

        if wait:
            for execution_id in resumed:
                await self.wait_for(execution_id)
        return resumed

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self, execution_id: str) -> Execution:
        """Request cancellation of an execution.

        A running execution stops before its next step; a suspended one is
        cancelled immediately. Terminal executions are returned unchanged.
        """
        token = self._tokens.get(execution_id)
        if token is not None:
            token.cancel()
            return self.get_execution(execution_id)

        execution = self.get_execution(execution_id)
        if execution.status == "suspended":
            return self.recorder.cancel(execution)
        return execution

    def deactivate_rule(self, rule_id: str) -> WorkflowRule:
        """Deactivate a rule and cancel its in-flight executions."""
        rule = self.definitions.set_rule_active(rule_id, False)
        for execution_id, owner in list(self._rule_of.items()):
            if owner == rule_id and execution_id in self._tokens:
                self._tokens[execution_id].cancel()
        logger.info("Rule deactivated: rule=%s", rule_id)
        return rule

    async def wait_for(self, execution_id: str) -> Execution:
        """Wait for an execution's task; an error escaping the task is re-raised here."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait({task})
            task.result()
        return self.get_execution(execution_id)

    async def join(self) -> None:
        """Wait until every in-flight execution and queued notification has settled."""
        while self._tasks:
            await asyncio.wait(set(self._tasks.values()))
        await self.dispatcher.outbox.drain()

    async def close(self) -> None:
        await self.join()
        self.executions.close()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_execution(self, execution_id: str) -> Execution:
        execution = self.executions.load_execution(execution_id)
        if execution is None:
            raise ExecutionNotFound(f"Execution not found: {execution_id}")
        return execution

    def report(self, execution_id: str) -> ExecutionReport:
        execution = self.get_execution(execution_id)
        return ExecutionReport(execution=execution, actions=self.executions.list_actions(execution_id))

    def history(
        self,
        *,
        workflow_id: Optional[str] = None,
        rule_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
    ) -> list[Execution]:
        return self.executions.list_executions(workflow_id=workflow_id, rule_id=rule_id, status=status, limit=limit)

    def stats(self, *, workflow_id: Optional[str] = None, rule_id: Optional[str] = None) -> ExecutionStats:
        """Success counts and timings over every execution of a workflow or rule."""
        executions = self.executions.list_executions(workflow_id=workflow_id, rule_id=rule_id, limit=None)
        return ExecutionStats.from_executions(executions)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load_entity(self, ref: EntityRef) -> dict[str, Any]:
        entity = self.services.entities.load(ref)
        if entity is None:
            raise EntityNotFound(f"Entity not found: {ref.key}")
        return entity

    def _start_workflow(self, workflow: Workflow, ref: EntityRef, entity: dict[str, Any], triggered_by: Any) -> str:
        execution = self.recorder.start_workflow_execution(workflow, ref, entity, triggered_by)
        self._launch(execution, lambda token, pause: self.workflow_executor.run(workflow, execution, token, pause=pause))
        return execution.id

    def _start_rule(self, rule: WorkflowRule, ref: EntityRef, entity: dict[str, Any], triggered_by: Any) -> str:
        execution = self.recorder.start_rule_execution(rule, ref, entity, triggered_by)
        self._rule_of[execution.id] = rule.id
        self._launch(execution, lambda token, pause: self.rule_executor.run(rule, execution, token))
        return execution.id

    def _launch(self, execution: Execution, body: Body) -> None:
        token = CancellationToken()
        self._tokens[execution.id] = token
        task = asyncio.create_task(self._guarded(execution, body, token))
        self._tasks[execution.id] = task
        task.add_done_callback(lambda done, execution_id=execution.id: self._forget(execution_id, done))

    async def _guarded(self, execution: Execution, body: Body, token: CancellationToken) -> Execution:
        if not self.serialize_per_entity:
            return await body(token, None)
        key = execution.entity_ref.key
        async with self.entity_locks.hold(key):
            return await body(token, lambda: self.entity_locks.released(key))

    def _forget(self, execution_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(execution_id, None)
        self._tokens.pop(execution_id, None)
        self._rule_of.pop(execution_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Execution task crashed: execution=%s error=%r", execution_id, task.exception())
