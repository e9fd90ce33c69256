"""Change marking and test impact scoring.

Algorithm:
  1. Reset every node's changed/impacted state, then mark the nodes named
     by the change set. The result is returned as an immutable ChangeSet.
  2. For every test, a depth-bounded BFS over outgoing edges finds which
     changed nodes it reaches; reached tests are marked impacted.
  3. Scoring enumerates simple paths test -> changed node of length
     <= max_path_length. A path of length L contributes

         initial_impact(change) * prod(edge weights) * 1 / (L + 1)

     and a test's score is the max (or clamped sum) of its best
     per-change contributions. Tests with no path score 0 and are omitted.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping

from sikg.config import PropagationConfig
from sikg.graph.models import (
    ContributingChange,
    NodeKind,
    SemanticChangeInfo,
    TestImpact,
)
from sikg.graph.store import GraphStore

logger = logging.getLogger("sikg.impact")


@dataclass(frozen=True)
class ChangeSet:
    """The outcome of one marking pass."""

    changes: tuple[SemanticChangeInfo, ...]
    changed_ids: frozenset[str]
    impacted_tests: Mapping[str, frozenset[str]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    skipped: tuple[str, ...] = ()

    @property
    def impacted_test_ids(self) -> frozenset[str]:
        return frozenset(self.impacted_tests)


def rank_impacts(impacts: Mapping[str, TestImpact]) -> list[TestImpact]:
    """Order impacts by descending score, ties broken by test id."""
    return sorted(impacts.values(), key=lambda i: (-i.impact_score, i.test_id))


def select_tests(impacts: Mapping[str, TestImpact], threshold: float) -> list[str]:
    """Ids of tests scoring at least `threshold`, highest first."""
    return [i.test_id for i in rank_impacts(impacts) if i.impact_score >= threshold]


class ImpactPropagator:
    """Marks changed/impacted nodes and scores tests against a change set."""

    def __init__(self, store: GraphStore, config: PropagationConfig | None = None) -> None:
        self.store = store
        self.config = config or PropagationConfig()

    # ------------------------------------------------------------------
    # Marking
    # ------------------------------------------------------------------

    def mark_changed(self, changes: Iterable[SemanticChangeInfo]) -> ChangeSet:
        changes = tuple(changes)
        skipped: list[str] = []
        changed_ids: set[str] = set()
        impacted: dict[str, frozenset[str]] = {}

        with self.store.lock.write():
            self.store.reset_analysis_state()

            for change in changes:
                node = self.store.get_node(change.node_id)
                if node is None:
                    logger.warning(f"Change references unknown node {change.node_id}, skipping")
                    skipped.append(change.node_id)
                    continue
                properties = dict(node.properties)
                if change.metadata:
                    properties["change_metadata"] = dict(change.metadata)
                self.store.update_node(
                    change.node_id,
                    changed=True,
                    semantic_change_type=change.semantic_type,
                    initial_impact_score=change.initial_impact_score,
                    properties=properties,
                )
                changed_ids.add(change.node_id)
                logger.debug(
                    f"Marked node as changed: {node.name} ({change.node_id}) - "
                    f"{change.semantic_type.value}"
                )

            if changed_ids:
                for test_id in self.store.node_ids(NodeKind.TEST_CASE):
                    reached = self._reachable_changed(
                        test_id, changed_ids, max_depth=self.config.max_bfs_depth
                    )
                    if reached:
                        self.store.update_node(test_id, impacted=True, impacted_by=sorted(reached))
                        impacted[test_id] = frozenset(reached)

        logger.info(
            f"Marked {len(changed_ids)} changed nodes, {len(impacted)} impacted tests"
            + (f" ({len(skipped)} unknown nodes skipped)" if skipped else "")
        )
        return ChangeSet(
            changes=changes,
            changed_ids=frozenset(changed_ids),
            impacted_tests=MappingProxyType(impacted),
            skipped=tuple(skipped),
        )

    def _reachable_changed(self, start: str, changed: set[str], *, max_depth: int) -> set[str]:
        """All changed nodes reachable from `start` over outgoing edges within `max_depth` hops."""
        reached: set[str] = set()
        visited = {start}
        queue = deque([(start, 0)])
        while queue:
            node_id, depth = queue.popleft()
            if node_id in changed:
                reached.add(node_id)
            if depth >= max_depth:
                continue
            for target, _etype, _w in self.store.successors(node_id):
                if target not in visited:
                    visited.add(target)
                    queue.append((target, depth + 1))
        return reached

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score_test_impact(
        self,
        changes: Iterable[SemanticChangeInfo],
        tests: Iterable[str] | None = None,
    ) -> dict[str, TestImpact]:
        """Score tests against a change set. Returns impacts ranked by score."""
        by_node: dict[str, SemanticChangeInfo] = {}
        for change in changes:
            if not self.store.has_node(change.node_id):
                logger.warning(f"Change references unknown node {change.node_id}, skipping")
                continue
            prev = by_node.get(change.node_id)
            if prev is None or change.initial_impact_score > prev.initial_impact_score:
                by_node[change.node_id] = change

        impacts: dict[str, TestImpact] = {}
        if not by_node:
            return impacts

        with self.store.lock.read():
            for test in self._resolve_tests(tests):
                best = self._best_attenuated_paths(
                    test.id,
                    set(by_node),
                    max_length=self.config.max_path_length,
                    max_paths=self.config.max_paths_per_test,
                )
                if not best:
                    continue
                contributing = sorted(
                    (
                        ContributingChange(
                            node_id=node_id,
                            semantic_type=by_node[node_id].semantic_type,
                            contribution=min(1.0, by_node[node_id].initial_impact_score * weight),
                        )
                        for node_id, weight in best.items()
                    ),
                    key=lambda c: (-c.contribution, c.node_id),
                )
                if self.config.aggregation == "sum":
                    score = min(1.0, sum(c.contribution for c in contributing))
                else:
                    score = contributing[0].contribution
                if score <= 0.0:
                    continue
                impacts[test.id] = TestImpact(
                    test_id=test.id,
                    test_name=test.name,
                    test_path=test.file_path,
                    impact_score=score,
                    contributing_changes=contributing,
                )

        with self.store.lock.write():
            for impact in impacts.values():
                self.store.update_node(impact.test_id, impact_score=impact.impact_score)

        ranked = {i.test_id: i for i in rank_impacts(impacts)}
        logger.info(f"Scored {len(ranked)} impacted tests against {len(by_node)} changes")
        return ranked

    def _resolve_tests(self, tests: Iterable[str] | None):
        if tests is None:
            return self.store.test_nodes()
        resolved = []
        for test_id in tests:
            node = self.store.get_node(test_id)
            if node is None or not node.is_test:
                logger.warning(f"Unknown test {test_id}, skipping")
                continue
            resolved.append(node)
        return resolved

    def _best_attenuated_paths(
        self,
        start: str,
        targets: set[str],
        *,
        max_length: int,
        max_paths: int,
    ) -> dict[str, float]:
        """Best attenuated path weight from `start` to each reachable target.

        Enumerates simple paths over outgoing edges one length at a time,
        so shorter paths are always seen before longer ones. Once
        `max_paths` target hits have been counted, the current length is
        finished and no longer paths are explored.
        """
        best: dict[str, float] = {}
        if start in targets:
            best[start] = 1.0
        found = 0
        # (node, product of weights, nodes on path) for every path of the current length
        frontier: list[tuple[str, float, frozenset[str]]] = [(start, 1.0, frozenset({start}))]
        length = 0
        while frontier and length < max_length and found < max_paths:
            length += 1
            next_frontier = []
            for node_id, product, on_path in frontier:
                for target, _etype, weight in self.store.successors(node_id):
                    if target in on_path:
                        continue
                    new_product = product * weight
                    if target in targets:
                        attenuated = new_product / (length + 1)
                        if attenuated > best.get(target, 0.0):
                            best[target] = attenuated
                        found += 1
                    next_frontier.append((target, new_product, on_path | {target}))
            frontier = next_frontier
        return best

    # ------------------------------------------------------------------
    # Ranking helpers
    # ------------------------------------------------------------------

    def select_tests(self, impacts: Mapping[str, TestImpact], threshold: float) -> list[str]:
        return select_tests(impacts, threshold)

    def prioritize(self, impacts: Mapping[str, TestImpact], limit: int | None = None) -> list[TestImpact]:
        ranked = rank_impacts(impacts)
        if limit and 0 < limit < len(ranked):
            return ranked[:limit]
        return ranked

    def categorize(self, impacts: Mapping[str, TestImpact]) -> dict[str, list[TestImpact]]:
        """Split impacts into high / medium / low bands by configured thresholds."""
        bands: dict[str, list[TestImpact]] = {"high": [], "medium": [], "low": []}
        for impact in rank_impacts(impacts):
            if impact.impact_score >= self.config.high_impact_threshold:
                bands["high"].append(impact)
            elif impact.impact_score >= self.config.low_impact_threshold:
                bands["medium"].append(impact)
            else:
                bands["low"].append(impact)
        return bands
