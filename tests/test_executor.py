import asyncio
import shutil
import sys
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from ticketflow.simulator import create_simulator
from ticketflow.simulator.failures import FailureConfig, FailureRule
from ticketflow.simulator.services import MemoryAuditSink, SimulatedClassifier
from ticketflow.simulator.state import HelpdeskState
from ticketflow.workflow.dispatcher import ActionDispatcher
from ticketflow.workflow.errors import ImmutableExecutionError
from ticketflow.workflow.executions import ExecutionStore
from ticketflow.workflow.executor import CancellationToken, RuleExecutor, WorkflowExecutor, delay_seconds
from ticketflow.workflow.recorder import ExecutionRecorder
from ticketflow.workflow.schema import DelayData, EntityRef, Workflow, WorkflowRule

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
TICKET = EntityRef(entity_type="ticket", entity_id=1)


def _workflow(nodes, edges) -> Workflow:
    return Workflow.model_validate({"id": "wf-1", "name": "Test", "nodes": nodes, "edges": edges})


def _update(status: str) -> dict:
    return {"type": "update_ticket", "updates": {"status": status}}


class ExecutorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp_dir = Path(tempfile.mkdtemp(prefix="executor-tests-"))
        self.store = ExecutionStore(self.tmp_dir / "executions.db")
        self.audit = MemoryAuditSink()
        self.recorder = ExecutionRecorder(self.store, audit=self.audit, clock=lambda: NOW)
        self.sleeps: list[float] = []

    def tearDown(self) -> None:
        self.store.close()
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def _services(self, failure_config=None, classifier=None, priority_id=5):
        state = HelpdeskState(
            tickets={1: {"id": 1, "subject": "Login error", "description": "", "priority_id": priority_id}}
        )
        return create_simulator(failure_config=failure_config, classifier=classifier, state=state)

    def _executor(self, services, **kwargs) -> WorkflowExecutor:
        async def fake_sleep(seconds):
            self.sleeps.append(seconds)

        kwargs.setdefault("sleep", fake_sleep)
        return WorkflowExecutor(
            ActionDispatcher(services),
            self.recorder,
            services.entities,
            clock=lambda: NOW,
            **kwargs,
        )

    def _run(self, workflow, services, **kwargs):
        executor = self._executor(services, **kwargs)
        execution = self.recorder.start_workflow_execution(workflow, TICKET, services.entities.load(TICKET))
        return asyncio.run(executor.run(workflow, execution))


class WorkflowExecutorTests(ExecutorTestCase):
    def test_fan_out_runs_actions_in_edge_order(self):
        workflow = _workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "first", "type": "action", "data": _update("pending")},
                {"id": "second", "type": "action", "data": _update("resolved")},
                {"id": "end", "type": "end"},
            ],
            [
                {"from": "start", "to": "first"},
                {"from": "start", "to": "second"},
                {"from": "first", "to": "end"},
                {"from": "second", "to": "end"},
            ],
        )
        services = self._services()

        execution = self._run(workflow, services)

        self.assertEqual(execution.status, "completed")
        records = self.store.list_actions(execution.id)
        self.assertEqual([r.node_id for r in records], ["first", "second"])
        self.assertEqual([r.status for r in records], ["completed", "completed"])
        self.assertEqual(services.state.tickets[1]["status"], "resolved")
        self.assertEqual(execution.result, {"actions_executed": 2})

    def _condition_workflow(self, true_path="high", false_path="low") -> Workflow:
        return _workflow(
            [
                {"id": "start", "type": "start"},
                {
                    "id": "check",
                    "type": "condition",
                    "data": {
                        "field": "priority_id",
                        "operator": ">",
                        "value": 3,
                        "true_path": true_path,
                        "false_path": false_path,
                    },
                },
                {"id": "high", "type": "action", "data": _update("escalated")},
                {"id": "low", "type": "action", "data": _update("queued")},
                {"id": "end", "type": "end"},
            ],
            [
                {"from": "start", "to": "check"},
                {"from": "check", "to": "high"},
                {"from": "check", "to": "low"},
                {"from": "high", "to": "end"},
                {"from": "low", "to": "end"},
            ],
        )

    def test_condition_follows_true_path(self):
        services = self._services(priority_id=5)
        execution = self._run(self._condition_workflow(), services)
        self.assertEqual([r.node_id for r in self.store.list_actions(execution.id)], ["high"])
        self.assertEqual(services.state.tickets[1]["status"], "escalated")

    def test_condition_follows_false_path(self):
        services = self._services(priority_id=2)
        execution = self._run(self._condition_workflow(), services)
        self.assertEqual([r.node_id for r in self.store.list_actions(execution.id)], ["low"])

    def test_condition_with_absent_path_ends_branch_quietly(self):
        services = self._services(priority_id=5)
        execution = self._run(self._condition_workflow(true_path="nowhere"), services)
        self.assertEqual(execution.status, "completed")
        self.assertEqual(self.store.list_actions(execution.id), [])

    def test_failure_aborts_remaining_nodes(self):
        workflow = _workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "one", "type": "action", "data": _update("pending")},
                {"id": "two", "type": "action", "data": {"type": "assign_ticket", "assign_to_user_id": 404}},
                {"id": "three", "type": "action", "data": _update("resolved")},
                {"id": "end", "type": "end"},
            ],
            [
                {"from": "start", "to": "one"},
                {"from": "one", "to": "two"},
                {"from": "two", "to": "three"},
                {"from": "three", "to": "end"},
            ],
        )
        services = self._services()

        execution = self._run(workflow, services)

        self.assertEqual(execution.status, "failed")
        self.assertIn("No suitable agent", execution.error)
        records = self.store.list_actions(execution.id)
        self.assertEqual([r.status for r in records], ["completed", "failed"])
        self.assertEqual(services.state.tickets[1]["status"], "pending")

    def test_unknown_action_type_fails_at_dispatch(self):
        workflow = _workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "odd", "type": "action", "data": {"type": "fax_ticket"}},
                {"id": "end", "type": "end"},
            ],
            [{"from": "start", "to": "odd"}, {"from": "odd", "to": "end"}],
        )
        execution = self._run(workflow, self._services())
        self.assertEqual(execution.status, "failed")
        self.assertEqual(execution.error, "Unknown action type: fax_ticket")

    def test_unknown_node_type_is_a_quiet_terminal(self):
        workflow = _workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "hook", "type": "webhook"},
                {"id": "after", "type": "action", "data": _update("never")},
                {"id": "end", "type": "end"},
            ],
            [{"from": "start", "to": "hook"}, {"from": "hook", "to": "after"}, {"from": "after", "to": "end"}],
        )
        services = self._services()
        with self.assertLogs("ticketflow.workflow.executor", level="WARNING"):
            execution = self._run(workflow, services)
        self.assertEqual(execution.status, "completed")
        self.assertEqual(self.store.list_actions(execution.id), [])

    def test_cycle_is_bounded(self):
        workflow = _workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "loop", "type": "action", "data": _update("looping")},
                {"id": "end", "type": "end"},
            ],
            [{"from": "start", "to": "loop"}, {"from": "loop", "to": "loop"}],
        )
        execution = self._run(workflow, self._services(), max_node_visits=3)
        self.assertEqual(execution.status, "failed")
        self.assertIn("visit limit of 3", execution.error)
        self.assertEqual(len(self.store.list_actions(execution.id)), 3)

    def test_diamond_runs_join_once_per_path(self):
        workflow = _workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "left", "type": "action", "data": _update("left")},
                {"id": "right", "type": "action", "data": _update("right")},
                {"id": "join", "type": "action", "data": _update("joined")},
                {"id": "end", "type": "end"},
            ],
            [
                {"from": "start", "to": "left"},
                {"from": "start", "to": "right"},
                {"from": "left", "to": "join"},
                {"from": "right", "to": "join"},
                {"from": "join", "to": "end"},
            ],
        )
        execution = self._run(workflow, self._services())
        self.assertEqual(
            [r.node_id for r in self.store.list_actions(execution.id)],
            ["left", "join", "right", "join"],
        )

    def test_ai_node_records_ai_process(self):
        classifier = SimulatedClassifier(
            categorization={"category": "incident", "department": "technical", "priority": "urgent", "confidence": 0.9}
        )
        services = self._services(classifier=classifier)
        workflow = _workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "classify", "type": "ai", "data": {"action": "categorize"}},
                {"id": "end", "type": "end"},
            ],
            [{"from": "start", "to": "classify"}, {"from": "classify", "to": "end"}],
        )

        execution = self._run(workflow, services)

        record = self.store.list_actions(execution.id)[0]
        self.assertEqual(record.action_type, "ai_process")
        self.assertEqual(record.status, "completed")
        self.assertEqual(services.state.tickets[1]["priority_id"], 4)
        self.assertEqual(services.state.tickets[1]["department_id"], 1)

    def test_unavailable_classifier_fails_execution(self):
        services = self._services(classifier=SimulatedClassifier(available=False))
        workflow = _workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "predict", "type": "ai", "data": {"action": "predict_escalation"}},
                {"id": "end", "type": "end"},
            ],
            [{"from": "start", "to": "predict"}, {"from": "predict", "to": "end"}],
        )
        execution = self._run(workflow, services)
        self.assertEqual(execution.status, "failed")
        self.assertEqual(execution.error, "Classifier unavailable")

    def _delay_workflow(self) -> Workflow:
        return _workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "wait", "type": "delay", "data": {"duration": 2, "unit": "minutes"}},
                {"id": "after", "type": "action", "data": _update("followed_up")},
                {"id": "end", "type": "end"},
            ],
            [{"from": "start", "to": "wait"}, {"from": "wait", "to": "after"}, {"from": "after", "to": "end"}],
        )

    def test_delay_sleeps_in_place(self):
        services = self._services()
        execution = self._run(self._delay_workflow(), services)
        self.assertEqual(execution.status, "completed")
        self.assertEqual(self.sleeps, [120.0])
        self.assertEqual(services.state.tickets[1]["status"], "followed_up")

    def test_delay_suspends_and_resumes(self):
        services = self._services()
        workflow = self._delay_workflow()

        execution = self._run(workflow, services, delay_mode="suspend")

        self.assertEqual(execution.status, "suspended")
        self.assertEqual(execution.resume_at, NOW + timedelta(seconds=120))
        self.assertEqual(execution.resume_state["stack"], ["after"])
        self.assertNotIn("status", services.state.tickets[1])

        stored = self.store.load_execution(execution.id)
        self.assertEqual(stored.status, "suspended")
        self.assertEqual(self.store.due_suspended(NOW), [])
        self.assertEqual([e.id for e in self.store.due_suspended(NOW + timedelta(minutes=5))], [execution.id])

        self.recorder.resume(stored)
        executor = self._executor(services, delay_mode="suspend")
        finished = asyncio.run(executor.run(workflow, stored, resume_state=stored.resume_state))

        self.assertEqual(finished.status, "completed")
        self.assertEqual(services.state.tickets[1]["status"], "followed_up")

    def test_cancelled_token_stops_before_next_step(self):
        token = CancellationToken()
        token.cancel()
        services = self._services()
        workflow = self._delay_workflow()
        executor = self._executor(services)
        execution = self.recorder.start_workflow_execution(workflow, TICKET, {})

        finished = asyncio.run(executor.run(workflow, execution, token))

        self.assertEqual(finished.status, "cancelled")
        self.assertEqual(self.store.list_actions(execution.id), [])
        with self.assertRaises(ImmutableExecutionError):
            self.recorder.complete(finished)

    def test_delay_seconds(self):
        self.assertEqual(delay_seconds(DelayData(duration=2, unit="minutes")), 120)
        self.assertEqual(delay_seconds(DelayData(duration=1, unit="hours")), 3600)
        self.assertEqual(delay_seconds(DelayData(duration=5, unit="bogus")), 0)
        self.assertEqual(delay_seconds(DelayData(seconds=7)), 7)
        self.assertEqual(delay_seconds(DelayData()), 0)

    def test_audit_trail_follows_lifecycle(self):
        workflow = _workflow(
            [
                {"id": "start", "type": "start"},
                {"id": "one", "type": "action", "data": _update("pending")},
                {"id": "end", "type": "end"},
            ],
            [{"from": "start", "to": "one"}, {"from": "one", "to": "end"}],
        )
        self._run(workflow, self._services())
        self.assertEqual(
            [event["event"] for event in self.audit.events],
            ["execution.started", "action.pending", "action.started", "action.completed", "execution.completed"],
        )


class RuleExecutorTests(ExecutorTestCase):
    def _rule(self, actions) -> WorkflowRule:
        return WorkflowRule.model_validate({"id": "rule-1", "name": "Triage", "entity_type": "ticket", "actions": actions})

    def test_failed_action_does_not_stop_siblings(self):
        services = self._services()
        rule = self._rule(
            [_update("pending"), {"type": "assign_ticket", "assign_to_user_id": 404}, _update("resolved")]
        )
        execution = self.recorder.start_rule_execution(rule, TICKET, services.entities.load(TICKET))

        with self.assertLogs("ticketflow.workflow.executor", level="ERROR"):
            finished = asyncio.run(RuleExecutor(ActionDispatcher(services), self.recorder).run(rule, execution))

        self.assertEqual(finished.status, "completed")
        self.assertIsNone(finished.error)
        records = self.store.list_actions(execution.id)
        self.assertEqual([r.status for r in records], ["completed", "failed", "completed"])
        self.assertEqual(services.state.tickets[1]["status"], "resolved")

    def test_injected_failure_is_recorded_per_action(self):
        config = FailureConfig(rules={"send_email": FailureRule(error_type="unavailable", message="smtp down")})
        services = self._services(failure_config=config)
        rule = self._rule([{"type": "send_email", "recipient_email": "a@example.com"}, _update("notified")])
        execution = self.recorder.start_rule_execution(rule, TICKET, {})

        with self.assertLogs("ticketflow.workflow.executor", level="ERROR"):
            finished = asyncio.run(RuleExecutor(ActionDispatcher(services), self.recorder).run(rule, execution))

        records = self.store.list_actions(execution.id)
        self.assertEqual(finished.status, "completed")
        self.assertEqual(records[0].error, "[unavailable] smtp down")
        self.assertEqual(records[1].status, "completed")


if __name__ == "__main__":
    unittest.main()
