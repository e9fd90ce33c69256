"""High-level read-only queries over the impact graph."""

from __future__ import annotations

from collections import deque
from pathlib import PurePosixPath

from sikg.graph.models import Node, NodeKind
from sikg.graph.store import GraphStore


class GraphQuery:
    """Query helpers for the impact graph.

    Provides listings of changed/impacted nodes, bounded test lookup for a
    code element, and the visualization export.
    """

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def get_changed_nodes(self) -> list[Node]:
        return [n for n in self.store.nodes() if n.changed]

    def get_impacted_nodes(self) -> list[Node]:
        """Changed nodes plus tests impacted by them."""
        return [n for n in self.store.nodes() if n.changed or n.impacted]

    def tests_for_code(self, code_node_id: str, max_depth: int) -> list[Node]:
        """Find tests whose outgoing paths reach `code_node_id` within `max_depth` hops."""
        result = []
        with self.store.lock.read():
            for test in self.store.test_nodes():
                visited = {test.id}
                queue = deque([(test.id, 0)])
                while queue:
                    node_id, depth = queue.popleft()
                    if node_id == code_node_id:
                        result.append(test)
                        break
                    if depth >= max_depth:
                        continue
                    for target, _etype, _w in self.store.successors(node_id):
                        if target not in visited:
                            visited.add(target)
                            queue.append((target, depth + 1))
        return result

    def export_for_visualization(self) -> dict:
        """Export nodes and links in a D3-friendly shape."""
        nodes = []
        for node in self.store.nodes():
            nodes.append({
                "id": node.id,
                "label": node.name or node.id,
                "type": node.kind.value,
                "impact": node.impact_score,
                "changed": node.changed,
                "impacted": node.impacted,
                "semanticChangeType": (
                    node.semantic_change_type.value if node.semantic_change_type else None
                ),
                "fileName": PurePosixPath(node.file_path).name if node.file_path else "",
                "filePath": node.file_path,
            })
        links = [
            {
                "source": edge.source,
                "target": edge.target,
                "type": edge.type.value,
                "weight": edge.weight,
            }
            for edge in self.store.edges()
        ]
        return {"nodes": nodes, "links": links}

    def get_stats(self) -> dict:
        tests = self.store.node_ids(NodeKind.TEST_CASE)
        return {
            "total_nodes": self.store.node_count,
            "total_edges": self.store.edge_count,
            "tests": len(tests),
            "code_elements": self.store.node_count - len(tests),
            "changed": len(self.get_changed_nodes()),
            "impacted": sum(1 for n in self.store.nodes() if n.impacted),
        }
