"""Edge weight learning from prediction errors.

For every significant error (|predicted - actual| above the significance
threshold) the engine collects the edges on short paths around the test
node and moves each one by

    w' = clamp(w + learning_rate * error * contribution)

where a direct edge contributes 1.0 and an edge found at depth d
contributes path_weight / (d + 1). Afterwards every weight far from 1.0
decays toward it and outliers beyond two standard deviations are pulled
toward the mean.
"""

from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Mapping

from sikg.config import WeightUpdateConfig
from sikg.graph.models import EdgeKey, TestResult, outcome_value
from sikg.graph.store import GraphStore

logger = logging.getLogger("sikg.learning")

HISTORY_LIMIT = 100
DECAY_TOLERANCE = 0.1


@dataclass(frozen=True)
class PredictionError:
    test_id: str
    predicted: float
    actual: float
    error: float
    significant: bool


@dataclass(frozen=True)
class EdgeContribution:
    key: EdgeKey
    contribution: float
    depth: int
    path_weight: float


@dataclass
class WeightUpdateReport:
    """What one update pass changed."""

    errors: list[PredictionError] = field(default_factory=list)
    # edge key string -> (old weight, new weight) from the learning step
    updates: dict[str, tuple[float, float]] = field(default_factory=dict)
    decayed: int = 0
    regularized: int = 0

    @property
    def significant_errors(self) -> list[PredictionError]:
        return [e for e in self.errors if e.significant]


class WeightUpdateEngine:
    """Adapts edge weights of a store from observed test outcomes."""

    def __init__(self, store: GraphStore, config: WeightUpdateConfig | None = None) -> None:
        self.store = store
        self.config = (config or WeightUpdateConfig()).model_copy()
        self._history: dict[str, list[float]] = {}

    @property
    def learning_rate(self) -> float:
        return self.config.learning_rate

    def configure(self, **changes) -> None:
        """Override hyperparameters (e.g. learning_rate) pushed down by the coordinator."""
        self.config = self.config.model_copy(update=changes)
        logger.debug(f"Weight update config changed: {changes}")

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def calculate_prediction_errors(
        self,
        results: list[TestResult],
        predicted: Mapping[str, float],
    ) -> list[PredictionError]:
        errors = []
        for result in results:
            if result.test_id in predicted:
                value = predicted[result.test_id]
            elif result.predicted_impact is not None:
                value = result.predicted_impact
            else:
                value = 0.0
            actual = outcome_value(result.status)
            error = value - actual
            errors.append(PredictionError(
                test_id=result.test_id,
                predicted=value,
                actual=actual,
                error=error,
                significant=abs(error) > self.config.significance_threshold,
            ))
        return errors

    # ------------------------------------------------------------------
    # Contributing paths
    # ------------------------------------------------------------------

    def find_contributing_edges(self, test_id: str) -> list[EdgeContribution]:
        """Edges on short paths into and out of `test_id`, nearest first.

        At most `max_candidate_paths` candidates are explored and
        `max_applied_paths` distinct edges returned.
        """
        candidates: list[EdgeContribution] = []
        limit = self.config.max_candidate_paths
        for incoming in (True, False):
            candidates.extend(self._walk(test_id, incoming=incoming, limit=limit - len(candidates)))
            if len(candidates) >= limit:
                break

        best: dict[EdgeKey, EdgeContribution] = {}
        for candidate in candidates:
            current = best.get(candidate.key)
            if current is None or candidate.contribution > current.contribution:
                best[candidate.key] = candidate
        ordered = sorted(best.values(), key=lambda c: (c.depth, -c.contribution, c.key.as_string()))
        selected = ordered[: self.config.max_applied_paths]
        logger.debug(f"Found {len(candidates)} contributing paths for test {test_id}")
        return selected

    def _walk(self, test_id: str, *, incoming: bool, limit: int) -> list[EdgeContribution]:
        found: list[EdgeContribution] = []
        if limit <= 0:
            return found
        visited = {test_id}
        queued: set[str] = set()
        # (node, depth of the edges already on the path, product of their weights)
        queue = deque([(test_id, 0, 1.0)])
        while queue and len(found) < limit:
            node_id, depth, product = queue.popleft()
            if depth >= self.config.max_path_length:
                continue
            neighbours = self.store.predecessors(node_id) if incoming else self.store.successors(node_id)
            for other, etype, weight in neighbours:
                if other in visited:
                    continue
                key = EdgeKey(other, etype, node_id) if incoming else EdgeKey(node_id, etype, other)
                path_weight = product * weight
                contribution = 1.0 if depth == 0 else path_weight / (depth + 1)
                found.append(EdgeContribution(key, contribution, depth + 1, path_weight))
                if len(found) >= limit:
                    break
                if other not in queued:
                    queued.add(other)
                    queue.append((other, depth + 1, path_weight))
            visited.update(o for o, _, _ in neighbours)
        return found

    # ------------------------------------------------------------------
    # Weight mutation
    # ------------------------------------------------------------------

    def update_edge_weight(self, current: float, error: float, contribution: float) -> float:
        return self.store.clamp_weight(current + self.config.learning_rate * error * contribution)

    def update_weights(
        self,
        results: list[TestResult],
        predicted: Mapping[str, float],
    ) -> WeightUpdateReport:
        """Run one learning pass followed by decay and regularization."""
        report = WeightUpdateReport(errors=self.calculate_prediction_errors(results, predicted))
        significant = report.significant_errors
        if not significant:
            logger.debug("No significant prediction errors found, skipping weight updates")
            return report

        logger.info(f"Found {len(significant)} significant prediction errors")
        with self.store.lock.write():
            for error in significant:
                if not self.store.has_node(error.test_id):
                    logger.warning(f"Prediction error for unknown test {error.test_id}, skipping")
                    continue
                for contribution in self.find_contributing_edges(error.test_id):
                    edge = self.store.get_edge(contribution.key)
                    if edge is None:
                        continue
                    new_weight = self.update_edge_weight(edge.weight, error.error, contribution.contribution)
                    stored = self.store.set_edge_weight(contribution.key, new_weight)
                    edge_id = contribution.key.as_string()
                    old = report.updates[edge_id][0] if edge_id in report.updates else edge.weight
                    report.updates[edge_id] = (old, stored)
                    self._record(edge_id, stored)
                    logger.debug(
                        f"Updated edge {edge_id}: {edge.weight:.3f} -> {stored:.3f} "
                        f"(error: {error.error:.3f})"
                    )

            report.decayed = self.apply_weight_decay()
            report.regularized = self.apply_regularization()

        logger.info(f"Completed weight updates: {len(report.updates)} edge weights modified")
        return report

    def apply_weight_decay(self) -> int:
        """Pull weights more than 0.1 away from 1.0 back toward it."""
        factor = self.config.decay_factor
        decayed = 0
        with self.store.lock.write():
            for key, weight in self.store.weights().items():
                if abs(weight - 1.0) <= DECAY_TOLERANCE:
                    continue
                new_weight = self.store.set_edge_weight(key, weight * factor + (1.0 - factor))
                if abs(new_weight - weight) > 0.001:
                    decayed += 1
        if decayed:
            logger.debug(f"Applied weight decay to {decayed} edges")
        return decayed

    def apply_regularization(self) -> int:
        """Pull weights beyond two standard deviations 10% toward the mean."""
        with self.store.lock.write():
            weights = self.store.weights()
            if not weights:
                return 0
            mean = sum(weights.values()) / len(weights)
            std = math.sqrt(sum((w - mean) ** 2 for w in weights.values()) / len(weights))
            if std <= self.config.regularization_min_std:
                return 0
            regularized = 0
            for key, weight in weights.items():
                if abs(weight - mean) > 2 * std:
                    self.store.set_edge_weight(key, weight + (mean - weight) * 0.1)
                    regularized += 1
        if regularized:
            logger.debug(f"Applied regularization to {regularized} edges (std: {std:.3f})")
        return regularized

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def _record(self, edge_id: str, weight: float) -> None:
        history = self._history.setdefault(edge_id, [])
        history.append(weight)
        if len(history) > HISTORY_LIMIT:
            del history[: len(history) - HISTORY_LIMIT]

    def edge_history(self, edge_id: str) -> list[float]:
        return list(self._history.get(edge_id, []))

    def get_statistics(self) -> dict:
        total_change = 0.0
        change_count = 0
        volatility: list[tuple[str, float]] = []
        for edge_id, history in self._history.items():
            if len(history) < 2:
                continue
            mean = sum(history) / len(history)
            volatility.append((edge_id, math.sqrt(sum((w - mean) ** 2 for w in history) / len(history))))
            total_change += abs(history[-1] - history[-2])
            change_count += 1
        volatility.sort(key=lambda item: -item[1])
        return {
            "total_edges_tracked": len(self._history),
            "average_weight_change": total_change / change_count if change_count else 0.0,
            "most_volatile_edges": [edge_id for edge_id, _ in volatility[:5]],
        }

    def reset_history(self) -> None:
        self._history.clear()
        logger.debug("Weight update history reset")
