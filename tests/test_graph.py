"""Tests for the impact graph: store, persistence, builder and queries."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from sikg.config import GraphConfig
from sikg.exceptions import GraphLoadError, UnknownNodeError
from sikg.graph.builder import CodeElementRecord, GraphBuilder, TestCaseRecord, load_records
from sikg.graph.locks import ReadWriteLock
from sikg.graph.models import (
    Edge,
    EdgeKey,
    EdgeType,
    Node,
    NodeKind,
    SemanticChangeType,
    make_node_id,
)
from sikg.graph.query import GraphQuery
from sikg.graph.store import GraphStore


class TestGraphStore:
    def test_add_and_get_node(self, scenario_store: GraphStore):
        node = scenario_store.get_node("funcA")
        assert node is not None
        assert node.kind == NodeKind.CODE_ELEMENT
        assert scenario_store.get_node("missing") is None
        assert scenario_store.node_count == 3

    def test_get_node_returns_copy(self, scenario_store: GraphStore):
        node = scenario_store.get_node("funcA")
        node.changed = True
        assert scenario_store.get_node("funcA").changed is False

    def test_update_node_shallow_merge(self, scenario_store: GraphStore):
        updated = scenario_store.update_node("funcA", signature="def funcA(x)", changed=True)
        assert updated.signature == "def funcA(x)"
        assert updated.changed is True
        assert updated.name == "funcA"

    def test_update_unknown_node(self, scenario_store: GraphStore):
        with pytest.raises(UnknownNodeError):
            scenario_store.update_node("nope", changed=True)

    def test_edge_identity_is_triple(self, scenario_store: GraphStore):
        scenario_store.add_edge(
            Edge(source="testX", target="funcA", type=EdgeType.TESTS, weight=1.5)
        )
        edges = scenario_store.get_edges_between("testX", "funcA")
        assert len(edges) == 1
        assert edges[0].weight == 1.5

        scenario_store.add_edge(
            Edge(source="testX", target="funcA", type=EdgeType.USES, weight=0.5)
        )
        assert len(scenario_store.get_edges_between("testX", "funcA")) == 2
        assert scenario_store.edge_count == 3

    def test_add_edge_requires_endpoints(self, scenario_store: GraphStore):
        with pytest.raises(UnknownNodeError):
            scenario_store.add_edge(Edge(source="funcA", target="ghost", type=EdgeType.CALLS))

    @pytest.mark.parametrize("weight,expected", [(5.0, 2.0), (0.0, 0.1), (-3.0, 0.1), (1.3, 1.3)])
    def test_weights_clamped_on_add(self, scenario_store: GraphStore, weight, expected):
        stored = scenario_store.add_edge(
            Edge(source="funcB", target="funcA", type=EdgeType.DEPENDS_ON, weight=weight)
        )
        assert stored.weight == pytest.approx(expected)

    def test_set_edge_weight_clamped(self, scenario_store: GraphStore):
        key = EdgeKey("testX", EdgeType.TESTS, "funcA")
        assert scenario_store.set_edge_weight(key, 10.0) == 2.0
        assert scenario_store.set_edge_weight(key, 0.01) == 0.1
        with pytest.raises(KeyError):
            scenario_store.set_edge_weight(EdgeKey("funcB", EdgeType.CALLS, "funcA"), 1.0)

    def test_custom_bounds(self):
        store = GraphStore(GraphConfig(min_weight=0.5, max_weight=1.5))
        store.add_node(Node(id="a", kind=NodeKind.CODE_ELEMENT, name="a"))
        store.add_node(Node(id="b", kind=NodeKind.CODE_ELEMENT, name="b"))
        assert store.add_edge(Edge(source="a", target="b", type=EdgeType.CALLS, weight=3)).weight == 1.5

    def test_incoming_outgoing(self, scenario_store: GraphStore):
        outgoing = scenario_store.get_outgoing_edges("funcA")
        incoming = scenario_store.get_incoming_edges("funcA")
        assert [(e.target, e.type) for e in outgoing] == [("funcB", EdgeType.CALLS)]
        assert [(e.source, e.type) for e in incoming] == [("testX", EdgeType.TESTS)]
        assert scenario_store.get_outgoing_edges("missing") == []

    def test_nodes_by_file_path(self, layered_store: GraphStore):
        names = {n.name for n in layered_store.get_nodes_by_file_path("src/auth.py")}
        assert names == {"login", "hash_pw"}

    def test_reset_analysis_state(self, scenario_store: GraphStore):
        scenario_store.update_node(
            "funcA", changed=True, semantic_change_type=SemanticChangeType.BUG_FIX
        )
        scenario_store.update_node("testX", impacted=True, impact_score=0.4)
        assert scenario_store.reset_analysis_state() == 2
        for node in scenario_store.nodes():
            assert not node.changed
            assert not node.impacted
            assert node.impact_score == 0.0
            assert node.semantic_change_type is None


class TestPersistence:
    def test_round_trip(self, layered_store: GraphStore, tmp_path: Path):
        layered_store.set_edge_weight(EdgeKey("login", EdgeType.CALLS, "hash_pw"), 1.37)
        path = tmp_path / ".sikg" / "graph.json"
        layered_store.save(path, metadata={"built_at": 1.0})

        loaded = GraphStore.load(path)
        assert loaded is not None
        assert {n.id for n in loaded.nodes()} == {n.id for n in layered_store.nodes()}
        assert loaded.weights() == layered_store.weights()
        assert loaded.metadata["built_at"] == 1.0
        for node_id in layered_store.node_ids():
            assert sorted(loaded.successors(node_id)) == sorted(layered_store.successors(node_id))

    def test_snapshot_layout(self, scenario_store: GraphStore):
        snapshot = scenario_store.to_snapshot()
        assert [entry[0] for entry in snapshot["nodes"]] == ["funcA", "funcB", "testX"]
        keys = [entry[0] for entry in snapshot["edges"]]
        assert "testX-TESTS-funcA" in keys
        assert "funcA-CALLS-funcB" in keys

    def test_missing_file_returns_none(self, tmp_path: Path):
        assert GraphStore.load(tmp_path / "nothing.json") is None

    def test_corrupt_file_raises(self, tmp_path: Path):
        path = tmp_path / "graph.json"
        path.write_text("{ truncated")
        with pytest.raises(GraphLoadError):
            GraphStore.load(path)

    def test_dangling_edge_raises(self, scenario_store: GraphStore, tmp_path: Path):
        snapshot = scenario_store.to_snapshot()
        snapshot["nodes"] = [entry for entry in snapshot["nodes"] if entry[0] != "funcB"]
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(snapshot))
        with pytest.raises(GraphLoadError):
            GraphStore.load(path)

    def test_save_leaves_no_temp_files(self, scenario_store: GraphStore, tmp_path: Path):
        scenario_store.save(tmp_path / "graph.json")
        assert [p.name for p in tmp_path.iterdir()] == ["graph.json"]

    def test_copy_is_independent(self, scenario_store: GraphStore):
        clone = scenario_store.copy()
        clone.set_edge_weight(EdgeKey("testX", EdgeType.TESTS, "funcA"), 1.9)
        assert scenario_store.get_edge(EdgeKey("testX", EdgeType.TESTS, "funcA")).weight == 0.8


class TestReadWriteLock:
    def test_writer_reenters(self):
        lock = ReadWriteLock()
        with lock.write():
            with lock.write():
                with lock.read():
                    pass

    def test_readers_share(self):
        lock = ReadWriteLock()
        inside = threading.Barrier(2, timeout=5)

        def reader():
            with lock.read():
                inside.wait()

        threads = [threading.Thread(target=reader) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)
        assert not any(t.is_alive() for t in threads)

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        events = []
        started = threading.Event()

        def reader():
            started.set()
            with lock.read():
                events.append("read")

        with lock.write():
            t = threading.Thread(target=reader)
            t.start()
            started.wait(timeout=5)
            events.append("write")
        t.join(timeout=5)
        assert events == ["write", "read"]


class TestGraphBuilder:
    def test_build(self, code_records, test_case_records):
        builder = GraphBuilder()
        store = builder.build(code_records, test_case_records)

        assert store.node_count == 7
        assert store.has_edge(EdgeKey("test_login", EdgeType.TESTS, "login"))
        assert store.has_edge(EdgeKey("login", EdgeType.IS_TESTED_BY, "test_login"))
        assert store.get_edge(EdgeKey("hash_pw", EdgeType.CALLS, "crypto")).weight == 0.7
        assert store.get_edge(EdgeKey("hash_pw", EdgeType.IS_TESTED_BY, "test_hash")).weight == 0.9

    def test_stats(self, code_records, test_case_records):
        builder = GraphBuilder()
        builder.build(code_records, test_case_records)
        stats = builder.get_stats()

        assert stats["code_elements"] == 4
        assert stats["tests"] == 3
        assert stats["edge_types"]["TESTS"] == 3
        assert stats["edge_types"]["IS_TESTED_BY"] == 3
        assert stats["edge_types"]["CALLS"] == 3
        assert stats["skipped_relations"] == 0

    def test_unknown_relation_target_skipped(self, code_records):
        code_records.append(CodeElementRecord(
            id="orphan", name="orphan", file_path="src/orphan.py",
            relations=[{"target_id": "ghost", "type": "CALLS"}],
        ))
        builder = GraphBuilder()
        store = builder.build(code_records, [])
        assert store.has_node("orphan")
        assert builder.get_stats()["skipped_relations"] == 1

    def test_rebuild_resets_state(self, code_records, test_case_records):
        """Reusing a builder must not accumulate stale nodes."""
        builder = GraphBuilder()
        builder.build(code_records, test_case_records)
        store = builder.build(code_records[:1], [])
        assert store.node_ids() == ["login"]

    def test_incremental_update_adds_new_files_only(self, code_records, test_case_records):
        builder = GraphBuilder()
        store = builder.build(code_records, test_case_records)
        store.set_edge_weight(EdgeKey("login", EdgeType.CALLS, "hash_pw"), 1.6)

        extra = CodeElementRecord(
            id="audit", name="audit", file_path="src/audit.py",
            relations=[{"target_id": "login", "type": "USES"}],
        )
        changed_login = CodeElementRecord(id="login", name="login_v2", file_path="src/auth.py")
        added = builder.incremental_update(store, [changed_login, extra], [])

        assert added == ["src/audit.py"]
        assert store.get_node("login").name == "login"
        assert store.get_edge(EdgeKey("login", EdgeType.CALLS, "hash_pw")).weight == 1.6
        assert store.has_edge(EdgeKey("audit", EdgeType.USES, "login"))

    def test_generated_ids_are_stable(self):
        a = CodeElementRecord(name="f", file_path="./Src\\mod.py")
        b = CodeElementRecord(name="f", file_path="src/mod.py")
        assert a.id == b.id == make_node_id("function", "f", "src/mod.py", 0)
        t = TestCaseRecord(name="test_f", file_path="tests/test_mod.py")
        assert t.id.startswith("test_")

    def test_load_records(self, tmp_project: Path):
        records = load_records(tmp_project / "code.json", CodeElementRecord)
        assert [r.id for r in records] == ["login", "hash_pw", "crypto", "checkout"]


class TestGraphQuery:
    def test_tests_for_code(self, layered_store: GraphStore):
        query = GraphQuery(layered_store)
        found = {n.id for n in query.tests_for_code("hash_pw", max_depth=3)}
        assert found == {"test_login", "test_hash", "test_checkout"}

        shallow = {n.id for n in query.tests_for_code("hash_pw", max_depth=1)}
        assert shallow == {"test_hash"}

    def test_changed_and_impacted(self, scenario_store: GraphStore):
        scenario_store.update_node("funcA", changed=True)
        scenario_store.update_node("testX", impacted=True)
        query = GraphQuery(scenario_store)
        assert [n.id for n in query.get_changed_nodes()] == ["funcA"]
        assert {n.id for n in query.get_impacted_nodes()} == {"funcA", "testX"}

    def test_export_for_visualization(self, scenario_store: GraphStore):
        data = GraphQuery(scenario_store).export_for_visualization()
        assert len(data["nodes"]) == 3
        assert len(data["links"]) == 2
        node = next(n for n in data["nodes"] if n["id"] == "testX")
        assert node["type"] == "TestCase"
        assert node["fileName"] == "test_app.py"
        link = next(l for l in data["links"] if l["source"] == "testX")
        assert link == {"source": "testX", "target": "funcA", "type": "TESTS", "weight": 0.8}

    def test_stats(self, layered_store: GraphStore):
        stats = GraphQuery(layered_store).get_stats()
        assert stats["tests"] == 4
        assert stats["code_elements"] == 5
        assert stats["total_edges"] == 7
