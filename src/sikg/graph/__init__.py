"""Impact graph: models, owned store, builder and queries."""

from sikg.graph.builder import CodeElementRecord, GraphBuilder, TestCaseRecord
from sikg.graph.query import GraphQuery
from sikg.graph.store import GraphStore

__all__ = ["CodeElementRecord", "GraphBuilder", "GraphQuery", "GraphStore", "TestCaseRecord"]
