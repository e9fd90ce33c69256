"""MDP abstraction of a selection cycle: state, action, reward."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Iterable, Mapping

from pydantic import BaseModel, Field

from sikg.graph.models import SemanticChangeInfo, SemanticChangeType, TestImpact, TestResult, TestStatus
from sikg.impact.propagator import rank_impacts

logger = logging.getLogger("sikg.learning")

# Change types treated as structurally risky when estimating complexity
COMPLEX_CHANGE_TYPES = frozenset({
    SemanticChangeType.BUG_FIX,
    SemanticChangeType.FEATURE_ADDITION,
    SemanticChangeType.REFACTORING_SIGNATURE,
})

REWARD_WEIGHTS = (0.4, 0.3, 0.3)  # fault detection, efficiency, accuracy
STATE_HISTORY_LIMIT = 50
STATE_MAX_AGE_S = 7 * 24 * 60 * 60


class ActionType(str, Enum):
    SELECT_TESTS = "SELECT_TESTS"
    PRIORITIZE_TESTS = "PRIORITIZE_TESTS"
    ADJUST_THRESHOLD = "ADJUST_THRESHOLD"


class TestExecutionHistory(BaseModel):
    __test__ = False

    test_id: str
    execution_time: float = 0.0
    status: TestStatus
    timestamp: float
    change_context: list[str] = Field(default_factory=list)


class MDPState(BaseModel):
    id: str
    change_types: list[SemanticChangeType] = Field(default_factory=list)
    impacted_files: list[str] = Field(default_factory=list)
    test_history: list[TestExecutionHistory] = Field(default_factory=list)
    code_complexity: float = Field(default=0.0, ge=0.0, le=1.0)
    timestamp: float = 0.0


class MDPAction(BaseModel):
    action_type: ActionType = ActionType.SELECT_TESTS
    selected_tests: list[str] = Field(default_factory=list)
    priority_order: list[str] = Field(default_factory=list)
    selection_threshold: float = 0.5
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class MDPReward(BaseModel):
    fault_detection_score: float
    efficiency_score: float
    accuracy_score: float
    total_reward: float

    @classmethod
    def combine(cls, fault_detection: float, efficiency: float, accuracy: float) -> MDPReward:
        wf, we, wa = REWARD_WEIGHTS
        return cls(
            fault_detection_score=fault_detection,
            efficiency_score=efficiency,
            accuracy_score=accuracy,
            total_reward=wf * fault_detection + we * efficiency + wa * accuracy,
        )


def file_count_bucket(count: int) -> int:
    """Logarithmic bucket: 0, 1, 2-3, 4-7, 8-15, ..."""
    return count.bit_length()


def selection_f1(selected: Iterable[str], results: Iterable[TestResult]) -> float:
    """F1 of the selected set against failed tests; 0.5 when undefined."""
    results = list(results)
    if not results:
        return 0.5
    selected = set(selected)
    failed = {r.test_id for r in results if r.status == TestStatus.FAILED}
    tp = sum(1 for r in results if r.test_id in selected and r.test_id in failed)
    fp = sum(1 for r in results if r.test_id in selected and r.test_id not in failed)
    fn = sum(1 for r in results if r.test_id not in selected and r.test_id in failed)
    precision = tp / max(1, tp + fp)
    recall = tp / max(1, tp + fn)
    if precision + recall == 0:
        return 0.5
    return min(1.0, 2 * precision * recall / (precision + recall))


class MDPFramework:
    """Maps cycles onto states/actions/rewards and keeps bounded history."""

    def __init__(self, clock: Callable[[], float] = time.time, max_states: int = 1000) -> None:
        self.clock = clock
        self.max_states = max_states
        self._states: dict[str, MDPState] = {}
        self._actions: list[MDPAction] = []
        self._rewards: list[MDPReward] = []
        self.current_state: MDPState | None = None

    def create_state(
        self,
        changes: list[SemanticChangeInfo],
        test_history: list[TestResult] | None = None,
        impacted_files: Iterable[str] | None = None,
    ) -> MDPState:
        change_types = sorted((c.semantic_type for c in changes), key=lambda t: t.value)
        if impacted_files is None:
            impacted_files = (c.metadata.get("file_path", "") for c in changes)
        files = sorted({f for f in impacted_files if f})

        now = self.clock()
        history = [
            TestExecutionHistory(
                test_id=r.test_id,
                execution_time=r.execution_time,
                status=r.status,
                timestamp=r.timestamp if r.timestamp is not None else now,
                change_context=list(r.changed_node_ids),
            )
            for r in (test_history or [])[-STATE_HISTORY_LIMIT:]
        ]

        complexity = self.code_complexity(len(files), changes)
        state = MDPState(
            id=self.state_id(change_types, len(files), complexity),
            change_types=change_types,
            impacted_files=files,
            test_history=history,
            code_complexity=complexity,
            timestamp=now,
        )
        self._states[state.id] = state
        if len(self._states) > self.max_states:
            oldest = min(self._states.values(), key=lambda s: s.timestamp)
            del self._states[oldest.id]
        self.current_state = state
        logger.debug(f"Created MDP state {state.id} with {len(change_types)} change types")
        return state

    @staticmethod
    def state_id(change_types: list[SemanticChangeType], file_count: int, complexity: float) -> str:
        signature = "|".join(sorted(t.value for t in change_types))
        return f"{signature}_f{file_count_bucket(file_count)}_c{int(complexity * 10)}"

    @staticmethod
    def code_complexity(file_count: int, changes: list[SemanticChangeInfo]) -> float:
        complex_changes = sum(1 for c in changes if c.semantic_type in COMPLEX_CHANGE_TYPES)
        raw = file_count * 0.1 + len(changes) * 0.2 + complex_changes * 0.3
        return min(1.0, raw / 10)

    def get_state(self, state_id: str) -> MDPState | None:
        return self._states.get(state_id)

    @property
    def state_count(self) -> int:
        return len(self._states)

    def create_action(
        self,
        impacts: Mapping[str, TestImpact],
        threshold: float,
        action_type: ActionType = ActionType.SELECT_TESTS,
        limit: int | None = None,
    ) -> MDPAction:
        ranked = rank_impacts(impacts)
        selected = [i.test_id for i in ranked if i.impact_score >= threshold]
        if limit and 0 < limit < len(selected):
            selected = selected[:limit]
        action = MDPAction(
            action_type=action_type,
            selected_tests=selected,
            priority_order=[i.test_id for i in ranked],
            selection_threshold=threshold,
            confidence=self.action_confidence([i.impact_score for i in ranked], threshold),
        )
        self._actions.append(action)
        logger.debug(f"Created MDP action {action_type.value} selecting {len(selected)} tests")
        return action

    @staticmethod
    def action_confidence(scores: list[float], threshold: float) -> float:
        """Clear separation around the threshold and high scores mean high confidence."""
        if not scores:
            return 0.5
        above = sum(1 for s in scores if s >= threshold)
        below = len(scores) - above
        separation = abs(above - below) / len(scores)
        mean = sum(scores) / len(scores)
        return min(1.0, separation * 0.6 + mean * 0.4)

    def calculate_reward(
        self,
        action: MDPAction,
        results: list[TestResult],
        total_execution_time: float,
        target_execution_time: float = 300_000,
    ) -> MDPReward:
        failed = sum(1 for r in results if r.status == TestStatus.FAILED)
        selected = len(action.selected_tests)

        fault_detection = min(1.0, failed / max(1, selected * 0.1))
        if target_execution_time > 0:
            efficiency = max(0.0, 1 - total_execution_time / target_execution_time)
        else:
            efficiency = 0.5
        accuracy = selection_f1(action.selected_tests, results)

        reward = MDPReward.combine(fault_detection, efficiency, accuracy)
        self._rewards.append(reward)
        logger.debug(
            f"Calculated reward {reward.total_reward:.3f} (fault: {fault_detection:.3f}, "
            f"efficiency: {efficiency:.3f}, accuracy: {accuracy:.3f})"
        )
        return reward

    def action_history(self, limit: int = 100) -> list[MDPAction]:
        return self._actions[-limit:]

    def reward_history(self, limit: int = 100) -> list[MDPReward]:
        return self._rewards[-limit:]

    def average_reward(self, window: int = 20) -> float:
        recent = self._rewards[-window:]
        if not recent:
            return 0.5
        return sum(r.total_reward for r in recent) / len(recent)

    def cleanup_history(self, max_history_size: int = 1000) -> None:
        """Trim action/reward history and evict states older than seven days."""
        if len(self._actions) > max_history_size:
            self._actions = self._actions[-max_history_size:] if max_history_size else []
        if len(self._rewards) > max_history_size:
            self._rewards = self._rewards[-max_history_size:] if max_history_size else []
        cutoff = self.clock() - STATE_MAX_AGE_S
        for state_id in [sid for sid, s in self._states.items() if s.timestamp < cutoff]:
            del self._states[state_id]
        logger.debug(
            f"Cleaned up MDP history: {len(self._actions)} actions, {len(self._rewards)} rewards"
        )

    def reset(self) -> None:
        self._states.clear()
        self._actions.clear()
        self._rewards.clear()
        self.current_state = None
