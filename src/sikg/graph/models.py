"""Data models for graph nodes, edges, changes, impacts and test outcomes."""

from __future__ import annotations

import hashlib
from enum import Enum
from typing import Any, NamedTuple

from pydantic import BaseModel, Field


class NodeKind(str, Enum):
    """Types of graph nodes."""

    CODE_ELEMENT = "CodeElement"
    TEST_CASE = "TestCase"


class EdgeType(str, Enum):
    """Types of relationships between nodes."""

    CALLS = "CALLS"
    IMPORTS = "IMPORTS"
    INHERITS_FROM = "INHERITS_FROM"
    BELONGS_TO = "BELONGS_TO"
    USES = "USES"
    TESTS = "TESTS"
    IS_TESTED_BY = "IS_TESTED_BY"
    DEPENDS_ON = "DEPENDS_ON"


class SemanticChangeType(str, Enum):
    """Coarse category of a code edit."""

    BUG_FIX = "BUG_FIX"
    FEATURE_ADDITION = "FEATURE_ADDITION"
    REFACTORING_SIGNATURE = "REFACTORING_SIGNATURE"
    REFACTORING_LOGIC = "REFACTORING_LOGIC"
    DEPENDENCY_UPDATE = "DEPENDENCY_UPDATE"
    PERFORMANCE_OPT = "PERFORMANCE_OPT"
    UNKNOWN = "UNKNOWN"


class TestStatus(str, Enum):
    """Outcome of one test execution."""

    __test__ = False  # not a pytest class

    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


# Actual outcome used for prediction error: a failure is a revealed fault.
OUTCOME_VALUES: dict[TestStatus, float] = {
    TestStatus.FAILED: 1.0,
    TestStatus.PASSED: 0.0,
    TestStatus.SKIPPED: 0.5,
}


def outcome_value(status: TestStatus) -> float:
    """Map a test status onto the [0, 1] actual-impact scale."""
    return OUTCOME_VALUES.get(status, 0.5)


class SourceRange(BaseModel):
    """Line/column span of a node in its file."""

    start_line: int = 0
    start_column: int = 0
    end_line: int = 0
    end_column: int = 0


class ExecutionRecord(BaseModel):
    """One entry of a test node's execution-history ring."""

    timestamp: float
    status: TestStatus
    execution_time: float = 0.0
    changed_node_ids: list[str] = Field(default_factory=list)
    weighted: bool = False  # already folded into edge weights


class Node(BaseModel):
    """A code element or test case in the graph."""

    id: str
    kind: NodeKind
    name: str
    file_path: str = ""
    signature: str = ""
    loc: SourceRange = Field(default_factory=SourceRange)
    element_kind: str = ""  # e.g. function, class, method
    test_type: str = ""  # unit, integration, e2e, unknown
    # Analysis state, reset at the start of every cycle
    changed: bool = False
    impacted: bool = False
    semantic_change_type: SemanticChangeType | None = None
    initial_impact_score: float | None = None
    impact_score: float = 0.0
    impacted_by: list[str] = Field(default_factory=list)
    # Outcome ingestion
    last_status: TestStatus | None = None
    last_run: float | None = None
    execution_time: float = 0.0
    history: list[ExecutionRecord] = Field(default_factory=list)
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_test(self) -> bool:
        return self.kind == NodeKind.TEST_CASE


class EdgeKey(NamedTuple):
    """Identity of an edge: at most one edge per (source, type, target)."""

    source: str
    type: EdgeType
    target: str

    def as_string(self) -> str:
        return f"{self.source}-{self.type.value}-{self.target}"


class Edge(BaseModel):
    """A weighted, typed relationship between two nodes."""

    source: str
    target: str
    type: EdgeType
    weight: float = 1.0
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> EdgeKey:
        return EdgeKey(self.source, self.type, self.target)


class SemanticChangeInfo(BaseModel):
    """A classified change to one node, supplied by change analysis."""

    node_id: str
    semantic_type: SemanticChangeType = SemanticChangeType.UNKNOWN
    initial_impact_score: float = Field(default=0.5, ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ContributingChange(BaseModel):
    """Best contribution of one change to one test's impact score."""

    node_id: str
    semantic_type: SemanticChangeType
    contribution: float


class TestImpact(BaseModel):
    """Predicted fault-revealing impact of a change set on one test."""

    __test__ = False

    test_id: str
    test_name: str = ""
    test_path: str = ""
    impact_score: float = Field(default=0.0, ge=0.0, le=1.0)
    contributing_changes: list[ContributingChange] = Field(default_factory=list)


class TestResult(BaseModel):
    """Outcome of one executed test, supplied by the execution collaborator."""

    __test__ = False

    test_id: str
    status: TestStatus
    execution_time: float = 0.0  # milliseconds
    predicted_impact: float | None = None
    changed_node_ids: list[str] = Field(default_factory=list)
    error_message: str = ""
    timestamp: float | None = None


def _normalize_path(file_path: str) -> str:
    return file_path.replace("\\", "/").removeprefix("./").lower()


def make_node_id(kind: str, name: str, file_path: str, line: int = 0) -> str:
    """Derive a stable node id from kind, name and location."""
    raw = f"{kind}:{name}:{_normalize_path(file_path)}:{line}"
    digest = hashlib.sha256(raw.encode()).hexdigest()[:16]
    return f"{kind}_{digest}"


def make_test_id(name: str, file_path: str, line: int = 0) -> str:
    """Derive a stable test node id from name and location."""
    raw = f"test:{name}:{_normalize_path(file_path)}:{line}"
    digest = hashlib.sha256(raw.encode()).hexdigest()[:16]
    return f"test_{digest}"
