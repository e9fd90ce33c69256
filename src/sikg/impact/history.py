"""Enrich test edge weights with evidence from execution history.

Every test node keeps a ring of recent outcomes, each tagged with the
changed nodes that were in play when it ran. For an edge between a test T
and a code node C the ring yields

    empirical strength   failures with C changed / (runs with C changed + 1)
    co-change frequency  runs with C changed / runs
    fault correlation    failures with C changed / (failures + 1)

and the edge is re-weighted as

    w' = clamp(0.4 * w + scale * (0.3 * strength + 0.2 * co_change + 0.1 * fault))

where `scale` is the graph's maximum weight, so consistent failures push
an edge toward the top of the range and consistent passes pull it down.
A test's edges are revisited only when its ring holds records that have
not been folded in yet; evidence is then taken from the whole ring.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from sikg.graph.models import Edge, ExecutionRecord, NodeKind, TestStatus
from sikg.graph.store import GraphStore

logger = logging.getLogger("sikg.impact")

# structural weight, empirical strength, co-change frequency, fault correlation
COEFFICIENTS = (0.4, 0.3, 0.2, 0.1)


@dataclass(frozen=True)
class EdgeEvidence:
    runs: int
    changed_runs: int
    changed_failures: int
    failures: int

    @property
    def empirical_strength(self) -> float:
        return self.changed_failures / (self.changed_runs + 1)

    @property
    def co_change_frequency(self) -> float:
        return self.changed_runs / self.runs if self.runs else 0.0

    @property
    def fault_correlation(self) -> float:
        return self.changed_failures / (self.failures + 1)


@dataclass
class HistoryEnhancementReport:
    # edge key string -> (old weight, new weight)
    updates: dict[str, tuple[float, float]] = field(default_factory=dict)
    tests_processed: int = 0
    records_used: int = 0


def gather_evidence(history: Iterable[ExecutionRecord], node_id: str) -> EdgeEvidence:
    """Count how a test's recorded runs relate to changes of `node_id`."""
    runs = changed_runs = changed_failures = failures = 0
    for record in history:
        runs += 1
        failed = record.status == TestStatus.FAILED
        failures += failed
        if node_id in record.changed_node_ids:
            changed_runs += 1
            changed_failures += failed
    return EdgeEvidence(runs, changed_runs, changed_failures, failures)


class HistoryEnhancer:
    """Folds recorded test outcomes into the weights of test edges."""

    def __init__(self, store: GraphStore) -> None:
        self.store = store

    def enhanced_weight(self, weight: float, evidence: EdgeEvidence) -> float:
        structural, strength, co_change, fault = COEFFICIENTS
        empirical = (
            strength * evidence.empirical_strength
            + co_change * evidence.co_change_frequency
            + fault * evidence.fault_correlation
        )
        scale = self.store.config.max_weight
        return self.store.clamp_weight(structural * weight + scale * empirical)

    def enhance(self) -> HistoryEnhancementReport:
        report = HistoryEnhancementReport()
        with self.store.lock.write():
            for test in self.store.test_nodes():
                if all(record.weighted for record in test.history):
                    continue
                for edge in self._code_edges(test.id):
                    other = edge.target if edge.source == test.id else edge.source
                    evidence = gather_evidence(test.history, other)
                    if evidence.changed_runs == 0:
                        continue
                    new = self.store.set_edge_weight(
                        edge.key, self.enhanced_weight(edge.weight, evidence)
                    )
                    report.updates[edge.key.as_string()] = (edge.weight, new)
                    logger.debug(
                        f"History weight {edge.key.as_string()}: {edge.weight:.3f} -> {new:.3f} "
                        f"(strength {evidence.empirical_strength:.3f}, "
                        f"co-change {evidence.co_change_frequency:.3f}, "
                        f"fault {evidence.fault_correlation:.3f})"
                    )
                report.records_used += sum(1 for r in test.history if not r.weighted)
                report.tests_processed += 1
                self.store.update_node(
                    test.id,
                    history=[r.model_copy(update={"weighted": True}) for r in test.history],
                )

        if report.tests_processed:
            logger.info(
                f"Enhanced {len(report.updates)} edge weights from "
                f"{report.records_used} new execution records"
            )
        return report

    def _code_edges(self, test_id: str) -> list[Edge]:
        edges = self.store.get_outgoing_edges(test_id) + self.store.get_incoming_edges(test_id)
        result = []
        for edge in edges:
            other = self.store.get_node(edge.target if edge.source == test_id else edge.source)
            if other is not None and other.kind == NodeKind.CODE_ELEMENT:
                result.append(edge)
        return result
