"""Build the impact graph from parser-collaborator records."""

from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path

from pydantic import BaseModel, Field

from sikg.config import GraphConfig
from sikg.exceptions import UnknownNodeError
from sikg.graph.models import (
    Edge,
    EdgeType,
    Node,
    NodeKind,
    SourceRange,
    make_node_id,
    make_test_id,
)
from sikg.graph.store import GraphStore

logger = logging.getLogger("sikg.graph")


class Relation(BaseModel):
    """An outgoing relationship reported by the code parser."""

    target_id: str
    type: EdgeType
    weight: float | None = None


class CodeElementRecord(BaseModel):
    """One parsed code element (function, class, method, module, ...)."""

    id: str = ""
    name: str
    kind: str = "function"
    file_path: str
    signature: str = ""
    loc: SourceRange = Field(default_factory=SourceRange)
    relations: list[Relation] = Field(default_factory=list)

    def model_post_init(self, __context: object) -> None:
        if not self.id:
            self.id = make_node_id(self.kind, self.name, self.file_path, self.loc.start_line)


class Coverage(BaseModel):
    """A code element exercised by a test."""

    target_id: str
    weight: float | None = None


class TestCaseRecord(BaseModel):
    """One parsed test case and the elements it covers."""

    __test__ = False

    id: str = ""
    name: str
    test_type: str = "unknown"
    file_path: str
    loc: SourceRange = Field(default_factory=SourceRange)
    execution_time: float = 0.0
    covered_elements: list[Coverage] = Field(default_factory=list)

    def model_post_init(self, __context: object) -> None:
        if not self.id:
            self.id = make_test_id(self.name, self.file_path, self.loc.start_line)


def load_records(path: str | Path, model: type[BaseModel]) -> list:
    """Read a JSON list of parser records from disk."""
    data = json.loads(Path(path).read_text())
    return [model.model_validate(item) for item in data]


class GraphBuilder:
    """Folds code and test records into a GraphStore.

    Code elements become CodeElement nodes with one edge per relation.
    Tests become TestCase nodes linked to covered elements with a TESTS edge
    and a reverse IS_TESTED_BY edge of the same weight.
    """

    def __init__(self, config: GraphConfig | None = None) -> None:
        self.config = config or GraphConfig()
        self.store = GraphStore(self.config)
        self._skipped_relations = 0

    def build(
        self,
        code: list[CodeElementRecord],
        tests: list[TestCaseRecord],
    ) -> GraphStore:
        """Full rebuild into a fresh store."""
        self.store = GraphStore(self.config)
        self._skipped_relations = 0
        self._fold(code, tests)
        logger.info(
            f"Built graph with {self.store.node_count} nodes and "
            f"{self.store.edge_count} edges from {len(code)} code elements "
            f"and {len(tests)} tests"
        )
        return self.store

    def incremental_update(
        self,
        store: GraphStore,
        code: list[CodeElementRecord],
        tests: list[TestCaseRecord],
    ) -> list[str]:
        """Add records from files the graph does not cover yet.

        Existing nodes and edges are left untouched.

        Returns:
            Sorted list of newly added file paths.
        """
        self.store = store
        self._skipped_relations = 0
        known_code = store.file_paths(NodeKind.CODE_ELEMENT)
        known_tests = store.file_paths(NodeKind.TEST_CASE)

        new_code = [r for r in code if r.file_path not in known_code]
        new_tests = [r for r in tests if r.file_path not in known_tests]
        if not new_code and not new_tests:
            return []

        self._fold(new_code, new_tests)
        added = sorted({r.file_path for r in new_code} | {r.file_path for r in new_tests})
        logger.info(
            f"Incremental update added {len(new_code)} code elements and "
            f"{len(new_tests)} tests from {len(added)} new files"
        )
        return added

    def _fold(self, code: list[CodeElementRecord], tests: list[TestCaseRecord]) -> None:
        default = self.config.default_edge_weight
        with self.store.lock.write():
            for rec in code:
                self.store.add_node(Node(
                    id=rec.id,
                    kind=NodeKind.CODE_ELEMENT,
                    name=rec.name,
                    file_path=rec.file_path,
                    signature=rec.signature,
                    loc=rec.loc,
                    element_kind=rec.kind,
                ))
            for rec in tests:
                self.store.add_node(Node(
                    id=rec.id,
                    kind=NodeKind.TEST_CASE,
                    name=rec.name,
                    file_path=rec.file_path,
                    loc=rec.loc,
                    test_type=rec.test_type,
                    execution_time=rec.execution_time,
                ))

            # Edges after all nodes so forward references resolve
            for rec in code:
                for rel in rec.relations:
                    weight = rel.weight if rel.weight is not None else default
                    self._add_edge(Edge(
                        source=rec.id, target=rel.target_id, type=rel.type, weight=weight,
                    ))
            for rec in tests:
                for cov in rec.covered_elements:
                    weight = cov.weight if cov.weight is not None else default
                    self._add_edge(Edge(
                        source=rec.id, target=cov.target_id, type=EdgeType.TESTS, weight=weight,
                    ))
                    self._add_edge(Edge(
                        source=cov.target_id, target=rec.id, type=EdgeType.IS_TESTED_BY,
                        weight=weight,
                    ))

    def _add_edge(self, edge: Edge) -> None:
        try:
            self.store.add_edge(edge)
        except UnknownNodeError as e:
            self._skipped_relations += 1
            logger.warning(
                f"Skipping {edge.type.value} edge {edge.source} -> {edge.target}: "
                f"unknown node {e.node_id}"
            )

    def get_stats(self) -> dict:
        """Get statistics about the built graph."""
        node_kinds = Counter(n.kind.value for n in self.store.nodes())
        edge_types = Counter(e.type.value for e in self.store.edges())
        return {
            "code_elements": node_kinds.get(NodeKind.CODE_ELEMENT.value, 0),
            "tests": node_kinds.get(NodeKind.TEST_CASE.value, 0),
            "files": len(self.store.file_paths()),
            "total_nodes": self.store.node_count,
            "total_edges": self.store.edge_count,
            "skipped_relations": self._skipped_relations,
            "edge_types": dict(edge_types),
        }
