"""Shared test fixtures for SIKG."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from sikg.graph.builder import CodeElementRecord, Coverage, Relation, TestCaseRecord
from sikg.graph.models import Edge, EdgeType, Node, NodeKind
from sikg.graph.store import GraphStore


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_code_node(node_id: str, file_path: str = "src/app.py") -> Node:
    return Node(id=node_id, kind=NodeKind.CODE_ELEMENT, name=node_id, file_path=file_path)


def make_test_node(node_id: str, file_path: str = "tests/test_app.py") -> Node:
    return Node(id=node_id, kind=NodeKind.TEST_CASE, name=node_id, file_path=file_path)


@pytest.fixture
def scenario_store() -> GraphStore:
    """funcA --CALLS--> funcB; testX --TESTS--> funcA (0.8)."""
    store = GraphStore()
    store.add_node(make_code_node("funcA"))
    store.add_node(make_code_node("funcB"))
    store.add_node(make_test_node("testX"))
    store.add_edge(Edge(source="funcA", target="funcB", type=EdgeType.CALLS, weight=1.0))
    store.add_edge(Edge(source="testX", target="funcA", type=EdgeType.TESTS, weight=0.8))
    return store


@pytest.fixture
def layered_store() -> GraphStore:
    """A small project: two unit tests, one integration test, a call chain.

    test_login   --TESTS--> login --CALLS--> hash_pw --CALLS--> crypto
    test_hash    --TESTS--> hash_pw
    test_checkout(integration) --TESTS--> checkout --CALLS--> login
    test_report  --TESTS--> report
    """
    store = GraphStore()
    for name, path in [
        ("login", "src/auth.py"),
        ("hash_pw", "src/auth.py"),
        ("crypto", "src/crypto.py"),
        ("checkout", "src/shop.py"),
        ("report", "src/report.py"),
    ]:
        store.add_node(make_code_node(name, path))
    store.add_node(make_test_node("test_login", "tests/unit/test_auth.py"))
    store.add_node(make_test_node("test_hash", "tests/unit/test_auth.py"))
    store.add_node(make_test_node("test_checkout", "tests/integration/test_shop.py"))
    store.add_node(make_test_node("test_report", "tests/unit/test_report.py"))

    for source, target, etype, weight in [
        ("login", "hash_pw", EdgeType.CALLS, 1.0),
        ("hash_pw", "crypto", EdgeType.CALLS, 1.0),
        ("checkout", "login", EdgeType.CALLS, 1.0),
        ("test_login", "login", EdgeType.TESTS, 1.0),
        ("test_hash", "hash_pw", EdgeType.TESTS, 1.0),
        ("test_checkout", "checkout", EdgeType.TESTS, 1.0),
        ("test_report", "report", EdgeType.TESTS, 1.0),
    ]:
        store.add_edge(Edge(source=source, target=target, type=etype, weight=weight))
    return store


@pytest.fixture
def code_records() -> list[CodeElementRecord]:
    return [
        CodeElementRecord(
            id="login", name="login", file_path="src/auth.py",
            relations=[Relation(target_id="hash_pw", type=EdgeType.CALLS)],
        ),
        CodeElementRecord(
            id="hash_pw", name="hash_pw", file_path="src/auth.py",
            relations=[Relation(target_id="crypto", type=EdgeType.CALLS, weight=0.7)],
        ),
        CodeElementRecord(id="crypto", name="crypto", file_path="src/crypto.py"),
        CodeElementRecord(
            id="checkout", name="checkout", file_path="src/shop.py",
            relations=[Relation(target_id="login", type=EdgeType.CALLS)],
        ),
    ]


@pytest.fixture
def test_case_records() -> list[TestCaseRecord]:
    return [
        TestCaseRecord(
            id="test_login", name="test_login", test_type="unit",
            file_path="tests/unit/test_auth.py",
            covered_elements=[Coverage(target_id="login")],
        ),
        TestCaseRecord(
            id="test_hash", name="test_hash", test_type="unit",
            file_path="tests/unit/test_auth.py",
            covered_elements=[Coverage(target_id="hash_pw", weight=0.9)],
        ),
        TestCaseRecord(
            id="test_checkout", name="test_checkout", test_type="integration",
            file_path="tests/integration/test_shop.py",
            covered_elements=[Coverage(target_id="checkout")],
        ),
    ]


@pytest.fixture
def tmp_project(tmp_path: Path, code_records, test_case_records) -> Path:
    """A project directory with parser records and a change set on disk."""
    (tmp_path / "code.json").write_text(
        json.dumps([r.model_dump(mode="json") for r in code_records], indent=2)
    )
    (tmp_path / "tests.json").write_text(
        json.dumps([r.model_dump(mode="json") for r in test_case_records], indent=2)
    )
    (tmp_path / "changes.json").write_text(json.dumps([
        {"node_id": "hash_pw", "semantic_type": "BUG_FIX", "initial_impact_score": 0.9,
         "metadata": {"file_path": "src/auth.py"}},
    ]))
    return tmp_path
