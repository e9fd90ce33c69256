"""Owned, synchronized storage for the impact graph.

The store is the only holder of node and edge state. Components receive a
handle to it and go through its API; getters hand out copies so callers
cannot mutate graph state behind the lock. Edge weights are clamped into
[min_weight, max_weight] by every mutator.

Persistence is a JSON snapshot with two ordered lists, node entries
``[id, node]`` and edge entries ``[composite_key, edge]``, written to a temp
file and renamed into place.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import networkx as nx
from pydantic import ValidationError

from sikg.config import GraphConfig
from sikg.exceptions import GraphLoadError, UnknownNodeError
from sikg.graph.locks import ReadWriteLock
from sikg.graph.models import Edge, EdgeKey, EdgeType, Node, NodeKind

logger = logging.getLogger("sikg.graph")

SNAPSHOT_VERSION = 1

# (neighbor_id, edge_type, weight)
Neighbor = tuple[str, EdgeType, float]


def atomic_write_text(path: Path, text: str) -> None:
    """Write `text` to a temp file beside `path`, then rename it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(text)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class GraphStore:
    """In-memory impact graph backed by a NetworkX multigraph.

    Nodes carry their model under the ``node`` attribute; parallel edges
    between the same pair are keyed by edge type, so ``(source, type,
    target)`` identifies at most one edge.
    """

    def __init__(self, config: GraphConfig | None = None) -> None:
        self.config = config or GraphConfig()
        self._graph = nx.MultiDiGraph()
        self._edges: dict[EdgeKey, Edge] = {}
        self._lock = ReadWriteLock()
        self.metadata: dict[str, Any] = {}

    @property
    def lock(self) -> ReadWriteLock:
        return self._lock

    # ------------------------------------------------------------------
    # Weight bounds
    # ------------------------------------------------------------------

    def clamp_weight(self, weight: float) -> float:
        return max(self.config.min_weight, min(self.config.max_weight, weight))

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def add_node(self, node: Node) -> None:
        """Insert or replace a node. Existing edges are kept."""
        with self._lock.write():
            self._graph.add_node(node.id, node=node.model_copy(deep=True))

    def update_node(self, node_id: str, **changes: Any) -> Node:
        """Shallow-merge field changes into an existing node."""
        with self._lock.write():
            if not self._graph.has_node(node_id):
                raise UnknownNodeError(node_id)
            current: Node = self._graph.nodes[node_id]["node"]
            updated = current.model_copy(update=changes, deep=True)
            self._graph.nodes[node_id]["node"] = updated
            return updated.model_copy(deep=True)

    def has_node(self, node_id: str) -> bool:
        with self._lock.read():
            return self._graph.has_node(node_id)

    def get_node(self, node_id: str) -> Node | None:
        with self._lock.read():
            if not self._graph.has_node(node_id):
                return None
            return self._graph.nodes[node_id]["node"].model_copy(deep=True)

    def nodes(self, kind: NodeKind | None = None) -> list[Node]:
        with self._lock.read():
            return [
                data["node"].model_copy(deep=True)
                for _, data in self._graph.nodes(data=True)
                if kind is None or data["node"].kind == kind
            ]

    def node_ids(self, kind: NodeKind | None = None) -> list[str]:
        with self._lock.read():
            return [
                nid for nid, data in self._graph.nodes(data=True)
                if kind is None or data["node"].kind == kind
            ]

    def test_nodes(self) -> list[Node]:
        return self.nodes(NodeKind.TEST_CASE)

    def code_nodes(self) -> list[Node]:
        return self.nodes(NodeKind.CODE_ELEMENT)

    def get_nodes_by_file_path(self, file_path: str) -> list[Node]:
        with self._lock.read():
            return [
                data["node"].model_copy(deep=True)
                for _, data in self._graph.nodes(data=True)
                if data["node"].file_path == file_path
            ]

    def file_paths(self, kind: NodeKind | None = None) -> set[str]:
        with self._lock.read():
            return {
                data["node"].file_path
                for _, data in self._graph.nodes(data=True)
                if data["node"].file_path and (kind is None or data["node"].kind == kind)
            }

    @property
    def node_count(self) -> int:
        return self._graph.number_of_nodes()

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_edge(self, edge: Edge) -> Edge:
        """Insert an edge keyed by (source, type, target); re-adding replaces it."""
        with self._lock.write():
            for endpoint in (edge.source, edge.target):
                if not self._graph.has_node(endpoint):
                    raise UnknownNodeError(endpoint)
            stored = edge.model_copy(update={"weight": self.clamp_weight(edge.weight)}, deep=True)
            self._graph.add_edge(stored.source, stored.target, key=stored.type.value, edge=stored)
            self._edges[stored.key] = stored
            return stored.model_copy(deep=True)

    def get_edge(self, key: EdgeKey) -> Edge | None:
        with self._lock.read():
            edge = self._edges.get(key)
            return edge.model_copy(deep=True) if edge else None

    def has_edge(self, key: EdgeKey) -> bool:
        with self._lock.read():
            return key in self._edges

    def edges(self) -> list[Edge]:
        with self._lock.read():
            return [e.model_copy(deep=True) for e in self._edges.values()]

    def edge_keys(self) -> list[EdgeKey]:
        with self._lock.read():
            return list(self._edges)

    def get_outgoing_edges(self, node_id: str) -> list[Edge]:
        with self._lock.read():
            if not self._graph.has_node(node_id):
                return []
            return [
                data["edge"].model_copy(deep=True)
                for _, _, data in self._graph.out_edges(node_id, data=True)
            ]

    def get_incoming_edges(self, node_id: str) -> list[Edge]:
        with self._lock.read():
            if not self._graph.has_node(node_id):
                return []
            return [
                data["edge"].model_copy(deep=True)
                for _, _, data in self._graph.in_edges(node_id, data=True)
            ]

    def get_edges_between(self, source_id: str, target_id: str) -> list[Edge]:
        with self._lock.read():
            if not self._graph.has_edge(source_id, target_id):
                return []
            return [
                data["edge"].model_copy(deep=True)
                for data in self._graph.get_edge_data(source_id, target_id).values()
            ]

    def successors(self, node_id: str) -> list[Neighbor]:
        """Lightweight outgoing adjacency for traversals."""
        with self._lock.read():
            if not self._graph.has_node(node_id):
                return []
            return [
                (tgt, data["edge"].type, data["edge"].weight)
                for _, tgt, data in self._graph.out_edges(node_id, data=True)
            ]

    def predecessors(self, node_id: str) -> list[Neighbor]:
        """Lightweight incoming adjacency for traversals."""
        with self._lock.read():
            if not self._graph.has_node(node_id):
                return []
            return [
                (src, data["edge"].type, data["edge"].weight)
                for src, _, data in self._graph.in_edges(node_id, data=True)
            ]

    def set_edge_weight(self, key: EdgeKey, weight: float) -> float:
        """Set an edge's weight (clamped). Returns the stored value."""
        with self._lock.write():
            edge = self._edges.get(key)
            if edge is None:
                raise KeyError(f"Unknown edge: {key.as_string()}")
            edge.weight = self.clamp_weight(weight)
            return edge.weight

    def weights(self) -> dict[EdgeKey, float]:
        with self._lock.read():
            return {key: edge.weight for key, edge in self._edges.items()}

    @property
    def edge_count(self) -> int:
        return len(self._edges)

    # ------------------------------------------------------------------
    # Analysis state
    # ------------------------------------------------------------------

    def reset_analysis_state(self) -> int:
        """Clear changed/impacted flags on every node. Returns how many were set."""
        reset = 0
        with self._lock.write():
            for _, data in self._graph.nodes(data=True):
                node: Node = data["node"]
                if node.changed or node.impacted:
                    reset += 1
                node.changed = False
                node.impacted = False
                node.semantic_change_type = None
                node.initial_impact_score = None
                node.impact_score = 0.0
                node.impacted_by = []
        if reset:
            logger.debug(f"Reset change status for {reset} nodes")
        return reset

    def clear(self) -> None:
        with self._lock.write():
            self._graph.clear()
            self._edges.clear()
            self.metadata = {}

    # ------------------------------------------------------------------
    # Snapshot / persistence
    # ------------------------------------------------------------------

    def to_snapshot(self) -> dict[str, Any]:
        with self._lock.read():
            return {
                "version": SNAPSHOT_VERSION,
                "metadata": dict(self.metadata),
                "nodes": [
                    [nid, data["node"].model_dump(mode="json")]
                    for nid, data in self._graph.nodes(data=True)
                ],
                "edges": [
                    [key.as_string(), edge.model_dump(mode="json")]
                    for key, edge in self._edges.items()
                ],
            }

    @classmethod
    def from_snapshot(cls, data: dict[str, Any], config: GraphConfig | None = None) -> GraphStore:
        """Rebuild a store from a snapshot dict. Raises on malformed entries."""
        store = cls(config)
        store.metadata = dict(data.get("metadata") or {})
        for node_id, node_data in data["nodes"]:
            node = Node.model_validate(node_data)
            if node.id != node_id:
                raise ValueError(f"Node entry key '{node_id}' does not match node id '{node.id}'")
            store._graph.add_node(node.id, node=node)
        for _key, edge_data in data["edges"]:
            edge = Edge.model_validate(edge_data)
            for endpoint in (edge.source, edge.target):
                if not store._graph.has_node(endpoint):
                    raise UnknownNodeError(endpoint)
            edge.weight = store.clamp_weight(edge.weight)
            store._graph.add_edge(edge.source, edge.target, key=edge.type.value, edge=edge)
            store._edges[edge.key] = edge
        return store

    def save(self, path: str | Path, metadata: dict[str, Any] | None = None) -> None:
        """Atomically write the snapshot to `path`."""
        path = Path(path)
        if metadata:
            self.metadata.update(metadata)
        atomic_write_text(path, json.dumps(self.to_snapshot(), indent=2))
        logger.info(f"Graph saved to {path} ({self.node_count} nodes, {self.edge_count} edges)")

    @classmethod
    def load(cls, path: str | Path, config: GraphConfig | None = None) -> GraphStore | None:
        """Load a snapshot.

        Returns None when no snapshot exists (caller should build fresh).
        Raises GraphLoadError when the file exists but cannot be used.
        """
        path = Path(path)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
            store = cls.from_snapshot(data, config)
        except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError,
                ValidationError, UnknownNodeError) as e:
            logger.error(f"Failed to load graph snapshot {path}: {e}")
            raise GraphLoadError(str(path), str(e)) from e
        logger.info(f"Loaded graph with {store.node_count} nodes and {store.edge_count} edges")
        return store

    def copy(self) -> GraphStore:
        return GraphStore.from_snapshot(self.to_snapshot(), self.config)
