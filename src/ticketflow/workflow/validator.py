"""Structural validation of workflow graphs.

Validation is pure and runs before any node executes. Checks are applied in a
fixed order and the first violation is reported:

1. at least one ``start`` node and one ``end`` node
2. the edge list is non-empty
3. every ``start`` node has an outgoing edge
4. every non-``end`` node has an outgoing edge
5. every edge references existing node ids

Cycles are not rejected here; the executor bounds node revisits instead.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from .errors import StructuralError
from .schema import WorkflowGraph


def validate_graph(graph: WorkflowGraph) -> None:
    """Raise ``StructuralError`` for the first violated structural rule."""
    node_types = [node.type for node in graph.nodes]

    if "start" not in node_types:
        raise StructuralError("missing_start", "Workflow has no start node")
    if "end" not in node_types:
        raise StructuralError("missing_end", "Workflow has no end node")

    if not graph.edges:
        raise StructuralError("no_edges", "Workflow has no edges")

    sources = {edge.source for edge in graph.edges}

    for node in graph.nodes:
        if node.type == "start" and node.id not in sources:
            raise StructuralError(
                "start_without_edges", f"Start node {node.id} has no outgoing edge"
            )

    for node in graph.nodes:
        if node.type != "end" and node.id not in sources:
            raise StructuralError(
                "dead_end", f"Node {node.id} ({node.type}) has no outgoing edge"
            )

    node_ids = {node.id for node in graph.nodes}
    for edge in graph.edges:
        if edge.source not in node_ids or edge.target not in node_ids:
            raise StructuralError(
                "dangling_edge",
                f"Edge {edge.source} -> {edge.target} references an unknown node",
            )


def is_valid_graph(graph: WorkflowGraph) -> bool:
    try:
        validate_graph(graph)
    except StructuralError:
        return False
    return True


def parse_graph(data: dict[str, Any], model: type[WorkflowGraph] = WorkflowGraph) -> WorkflowGraph:
    """Parse and validate a raw graph definition.

    Malformed node or action parameters surface as ``StructuralError`` with
    reason ``invalid_definition``.
    """
    try:
        graph = model.model_validate(data)
    except ValidationError as e:
        raise StructuralError("invalid_definition", str(e)) from e
    validate_graph(graph)
    return graph
