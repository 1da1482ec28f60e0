import os
import shutil
import sys
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

# Keep the module-level engine in main away from the working directory.
os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="ticketflow-api-data-"))

from ticketflow import main
from ticketflow.simulator import create_simulator
from ticketflow.simulator.state import HelpdeskState
from ticketflow.workflow.engine import WorkflowEngine
from ticketflow.workflow.executions import ExecutionStore, SqliteAuditSink
from ticketflow.workflow.store import DefinitionStore

WORKFLOW = {
    "id": "ack",
    "name": "Acknowledge",
    "nodes": [
        {"id": "start", "type": "start"},
        {"id": "ack", "type": "action", "data": {"type": "update_ticket", "updates": {"status": "acknowledged"}}},
        {"id": "end", "type": "end"},
    ],
    "edges": [{"from": "start", "to": "ack"}, {"from": "ack", "to": "end"}],
}


class TriggerApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp_dir = Path(tempfile.mkdtemp(prefix="api-tests-"))
        self._old_engine = main.engine

        self.services = create_simulator(
            state=HelpdeskState(
                tickets={
                    1: {"id": 1, "subject": "VPN", "status": "open", "priority_id": 4},
                    2: {"id": 2, "subject": "Mouse", "status": "open", "priority_id": 1},
                }
            )
        )
        executions = ExecutionStore(self.tmp_dir / "executions.db")
        main.engine = WorkflowEngine(
            DefinitionStore(self.tmp_dir),
            executions,
            self.services,
            audit=SqliteAuditSink(executions),
        )
        self.client = TestClient(main.app)

    def tearDown(self) -> None:
        main.engine.executions.close()
        main.engine = self._old_engine
        shutil.rmtree(self.tmp_dir, ignore_errors=True)

    def test_health_and_catalog(self):
        self.assertEqual(self.client.get("/api/health").json()["status"], "ok")
        catalog = self.client.get("/api/catalog").json()
        self.assertIn("assign_ticket", catalog["actions"])

    def test_validate_reports_first_structural_violation(self):
        resp = self.client.post("/api/workflows/validate", json=WORKFLOW)
        self.assertEqual(resp.status_code, 200)
        self.assertTrue(resp.json()["valid"])

        resp = self.client.post("/api/workflows/validate", json={"nodes": [{"id": "s", "type": "start"}], "edges": []})
        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["reason"], "missing_end")
        self.assertFalse(resp.json()["valid"])

    def test_run_workflow_and_inspect_execution(self):
        self.assertEqual(self.client.post("/api/workflows", json=WORKFLOW).status_code, 200)

        resp = self.client.post("/api/workflows/ack/run", json={"entity_type": "ticket", "entity_id": 1})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "completed")
        self.assertEqual(self.services.state.tickets[1]["status"], "acknowledged")

        detail = self.client.get(f"/api/executions/{body['execution_id']}").json()
        self.assertEqual(detail["execution"]["workflow_id"], "ack")
        self.assertEqual([a["status"] for a in detail["actions"]], ["completed"])
        self.assertEqual(detail["summary"], {"total": 1, "completed": 1, "failed": 0, "pending": 0})

        history = self.client.get("/api/workflows/ack/executions").json()
        self.assertEqual([e["id"] for e in history], [body["execution_id"]])

        report = self.client.get(f"/api/executions/{body['execution_id']}/report").json()
        self.assertIn("# Execution Report", report["markdown"])

    def test_not_found_mapping(self):
        self.client.post("/api/workflows", json=WORKFLOW)
        self.assertEqual(self.client.post("/api/workflows/nope/run", json={"entity_id": 1}).status_code, 404)
        self.assertEqual(self.client.post("/api/workflows/ack/run", json={"entity_id": 99}).status_code, 404)
        self.assertEqual(self.client.get("/api/executions/nope").status_code, 404)
        self.assertEqual(self.client.post("/api/executions/nope/cancel").status_code, 404)
        self.assertEqual(self.client.get("/api/workflows/nope/executions").status_code, 404)
        self.assertEqual(self.client.post("/api/rules/nope/run", json={"entity_id": 1}).status_code, 404)

    def test_structurally_broken_workflow_is_rejected_on_run(self):
        broken = dict(WORKFLOW, id="broken", edges=[])
        self.client.post("/api/workflows", json=broken)

        resp = self.client.post("/api/workflows/broken/run", json={"entity_id": 1})

        self.assertEqual(resp.status_code, 422)
        self.assertEqual(resp.json()["detail"]["reason"], "no_edges")

    def test_rules_evaluate_and_scheduled_pass(self):
        urgent = {
            "id": "urgent",
            "name": "Urgent tickets",
            "entity_type": "ticket",
            "conditions": {"rules": [{"field": "priority_id", "operator": ">=", "value": 4}]},
            "actions": [{"type": "update_ticket", "updates": {"flagged": True}}],
        }
        self.assertEqual(self.client.post("/api/rules", json=urgent).status_code, 200)

        resp = self.client.post("/api/entities/ticket/1/evaluate")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(resp.json()["execution_ids"]), 1)
        self.assertTrue(self.services.state.tickets[1]["flagged"])

        resp = self.client.post("/api/entities/ticket/2/evaluate", json={"triggered_by": 5})
        self.assertEqual(resp.json()["execution_ids"], [])

        sweep = dict(urgent, id="sweep", schedule={"time": "09:30"}, conditions={})
        self.client.post("/api/rules", json=sweep)

        resp = self.client.post("/api/automation/scheduled-rules", json={"now": "2026-03-02T09:30:00Z"})
        self.assertEqual(resp.json(), {"rules_checked": 1, "rules_executed": 1, "executions_created": 2})

        resp = self.client.post("/api/automation/scheduled-rules", json={"now": "2026-03-02T09:31:00Z"})
        self.assertEqual(resp.json()["executions_created"], 0)

        rule_history = self.client.get("/api/rules/sweep/executions").json()
        self.assertEqual(len(rule_history), 2)

    def test_deactivate_rule(self):
        self.client.post("/api/rules", json={"id": "r", "name": "r", "entity_type": "ticket"})
        resp = self.client.post("/api/rules/r/deactivate")
        self.assertFalse(resp.json()["is_active"])
        self.assertEqual(self.client.post("/api/entities/ticket/1/evaluate").json()["execution_ids"], [])

    def test_resume_and_cancel_terminal_execution(self):
        self.assertEqual(self.client.post("/api/automation/resume").json(), {"resumed": []})

        self.client.post("/api/workflows", json=WORKFLOW)
        execution_id = self.client.post("/api/workflows/ack/run", json={"entity_id": 2}).json()["execution_id"]

        resp = self.client.post(f"/api/executions/{execution_id}/cancel")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "completed")

    def test_execution_stats(self):
        self.client.post("/api/workflows", json=WORKFLOW)
        for entity_id in (1, 2):
            self.client.post("/api/workflows/ack/run", json={"entity_id": entity_id})

        stats = self.client.get("/api/workflows/ack/stats").json()
        self.assertEqual(stats["total_executions"], 2)
        self.assertEqual(stats["successful_executions"], 2)
        self.assertEqual(stats["success_rate"], 100.0)
        self.assertIsNotNone(stats["last_execution"])

        self.client.post("/api/rules", json={"id": "r", "name": "r", "entity_type": "ticket"})
        self.assertEqual(self.client.get("/api/rules/r/stats").json()["total_executions"], 0)
        self.assertEqual(self.client.get("/api/workflows/nope/stats").status_code, 404)
        self.assertEqual(self.client.get("/api/rules/nope/stats").status_code, 404)

    def test_upserted_entity_triggers_automatic_workflow(self):
        resp = self.client.put("/api/entities/ticket/3", json={"subject": "Outage", "status": "open", "priority_id": 5})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["id"], 3)

        automatic = dict(
            WORKFLOW,
            id="auto-ack",
            trigger_type="automatic",
            trigger_conditions=[{"field": "priority_id", "operator": ">=", "value": 5}],
        )
        self.client.post("/api/workflows", json=automatic)

        body = self.client.post("/api/entities/ticket/3/evaluate").json()
        self.assertEqual(body["execution_ids"], [])
        self.assertEqual(len(body["workflow_execution_ids"]), 1)
        self.assertEqual(self.services.state.tickets[3]["status"], "acknowledged")

        body = self.client.post("/api/entities/ticket/1/evaluate").json()
        self.assertEqual(body["workflow_execution_ids"], [])

        self.assertEqual(self.client.put("/api/entities/spaceship/1", json={}).status_code, 400)


if __name__ == "__main__":
    unittest.main()
