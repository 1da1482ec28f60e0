import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from ticketflow.workflow.errors import StructuralError
from ticketflow.workflow.schema import (
    ActionNode,
    AssignTicketAction,
    UnknownAction,
    UnknownNode,
    Workflow,
    WorkflowGraph,
)
from ticketflow.workflow.validator import is_valid_graph, parse_graph, validate_graph


def _graph(nodes, edges) -> WorkflowGraph:
    return WorkflowGraph.model_validate({"nodes": nodes, "edges": edges})


class ValidatorTests(unittest.TestCase):
    def _reason(self, graph: WorkflowGraph) -> str:
        with self.assertRaises(StructuralError) as ctx:
            validate_graph(graph)
        return ctx.exception.reason

    def test_minimal_graph_is_valid(self):
        graph = _graph(
            [{"id": "s", "type": "start"}, {"id": "e", "type": "end"}],
            [{"from": "s", "to": "e"}],
        )
        validate_graph(graph)
        self.assertTrue(is_valid_graph(graph))

    def test_missing_start_reported_before_missing_end(self):
        graph = _graph([{"id": "a", "type": "action", "data": {"type": "update_ticket"}}], [])
        self.assertEqual(self._reason(graph), "missing_start")

    def test_missing_end(self):
        graph = _graph([{"id": "s", "type": "start"}], [{"from": "s", "to": "s"}])
        self.assertEqual(self._reason(graph), "missing_end")

    def test_no_edges(self):
        graph = _graph([{"id": "s", "type": "start"}, {"id": "e", "type": "end"}], [])
        self.assertEqual(self._reason(graph), "no_edges")

    def test_start_without_edges_reported_before_dead_end(self):
        graph = _graph(
            [
                {"id": "s", "type": "start"},
                {"id": "a", "type": "action", "data": {"type": "update_ticket"}},
                {"id": "e", "type": "end"},
            ],
            [{"from": "a", "to": "e"}],
        )
        self.assertEqual(self._reason(graph), "start_without_edges")

    def test_dead_end(self):
        graph = _graph(
            [
                {"id": "s", "type": "start"},
                {"id": "a", "type": "action", "data": {"type": "update_ticket"}},
                {"id": "e", "type": "end"},
            ],
            [{"from": "s", "to": "a"}],
        )
        self.assertEqual(self._reason(graph), "dead_end")

    def test_dangling_edge(self):
        graph = _graph(
            [{"id": "s", "type": "start"}, {"id": "e", "type": "end"}],
            [{"from": "s", "to": "e"}, {"from": "s", "to": "ghost"}],
        )
        self.assertEqual(self._reason(graph), "dangling_edge")
        self.assertFalse(is_valid_graph(graph))

    def test_connections_alias_and_typed_nodes(self):
        workflow = Workflow.model_validate(
            {
                "id": "wf",
                "name": "Assign",
                "nodes": [
                    {"id": "s", "type": "start"},
                    {"id": "a", "type": "action", "data": {"type": "assign_ticket", "assign_to_user_id": 7}},
                    {"id": "x", "type": "webhook", "data": {"url": "https://example.com"}},
                    {"id": "e", "type": "end"},
                ],
                "connections": [{"from": "s", "to": "a"}, {"from": "a", "to": "x"}, {"from": "x", "to": "e"}],
            }
        )
        validate_graph(workflow)
        self.assertIsInstance(workflow.nodes[1], ActionNode)
        self.assertIsInstance(workflow.nodes[1].data, AssignTicketAction)
        self.assertIsInstance(workflow.nodes[2], UnknownNode)
        self.assertEqual(workflow.nodes[2].type, "webhook")

        snapshot = workflow.graph_snapshot()
        self.assertEqual(snapshot["edges"][0], {"from": "s", "to": "a"})

    def test_unknown_action_type_is_preserved(self):
        graph = _graph(
            [
                {"id": "s", "type": "start"},
                {"id": "a", "type": "action", "data": {"type": "escalate_to_cto"}},
                {"id": "e", "type": "end"},
            ],
            [{"from": "s", "to": "a"}, {"from": "a", "to": "e"}],
        )
        self.assertIsInstance(graph.nodes[1].data, UnknownAction)
        self.assertEqual(graph.nodes[1].data.type, "escalate_to_cto")

    def test_parse_graph_rejects_malformed_parameters(self):
        with self.assertRaises(StructuralError) as ctx:
            parse_graph(
                {
                    "nodes": [
                        {"id": "s", "type": "start"},
                        {"id": "d", "type": "delay", "data": {"duration": "soon"}},
                        {"id": "e", "type": "end"},
                    ],
                    "edges": [{"from": "s", "to": "d"}, {"from": "d", "to": "e"}],
                }
            )
        self.assertEqual(ctx.exception.reason, "invalid_definition")

    def test_parse_graph_runs_structural_checks(self):
        with self.assertRaises(StructuralError) as ctx:
            parse_graph({"nodes": [{"id": "e", "type": "end"}], "edges": []})
        self.assertEqual(ctx.exception.reason, "missing_start")


if __name__ == "__main__":
    unittest.main()
