"""Reinforcement-learning coordinator.

Sequences one learning cycle over a single graph:

    start_session    policy-adjust impacts, build state/action, open session
    process_feedback score the session, compute reward, update policy,
                     tune system hyperparameters, update edge weights

and holds the system-level learning/exploration rates, which are distinct
from the per-policy parameters.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Mapping

from pydantic import BaseModel, Field, ValidationError

from sikg.config import ProjectConfig
from sikg.exceptions import PolicyStateError, SIKGError
from sikg.graph.models import SemanticChangeInfo, TestImpact, TestResult
from sikg.graph.store import GraphStore
from sikg.learning.feedback import FeedbackProcessor, ProcessedFeedback, SessionPerformanceMetrics
from sikg.learning.mdp import ActionType, MDPAction, MDPFramework, MDPReward, MDPState
from sikg.learning.policy import PolicyDecision, PolicyManager
from sikg.learning.weights import WeightUpdateEngine, WeightUpdateReport

logger = logging.getLogger("sikg.learning")

STATE_VERSION = 1
TARGET_F1 = 0.7


class RLSystemState(BaseModel):
    enabled: bool = True
    current_performance: SessionPerformanceMetrics | None = None
    total_adaptations: int = 0
    last_adaptation: float = 0.0
    average_reward: float = 0.5
    system_stability: float = Field(default=0.8, ge=0.0, le=1.0)


@dataclass
class SessionStart:
    """What `start_session` hands back to the caller."""

    session_id: str | None
    impacts: dict[str, TestImpact]
    selected_tests: list[str]
    selection_threshold: float
    state: MDPState | None = None
    action: MDPAction | None = None
    decision: PolicyDecision | None = None


@dataclass
class FeedbackOutcome:
    feedback: ProcessedFeedback
    reward: MDPReward
    adaptations: int
    weight_report: WeightUpdateReport | None


class RLCoordinator:
    """Owns the learning components for one graph."""

    def __init__(
        self,
        store: GraphStore,
        config: ProjectConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.config = config or ProjectConfig()
        self.clock = clock
        rl = self.config.rl

        self.learning_rate = rl.learning_rate
        self.exploration_rate = rl.exploration_rate
        self.mdp = MDPFramework(clock=clock, max_states=rl.max_history_size)
        self.feedback = FeedbackProcessor(self.config.feedback, clock=clock)
        self.policy = PolicyManager(
            self.config.policy,
            default_threshold=self.config.propagation.high_impact_threshold * 0.8,
            clock=clock,
        )
        self.weights = WeightUpdateEngine(store, self.config.weights)
        self.weights.configure(learning_rate=self.learning_rate)
        self.system = RLSystemState(enabled=rl.enabled)

    @property
    def enabled(self) -> bool:
        return self.system.enabled

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def start_session(
        self,
        changes: list[SemanticChangeInfo],
        impacts: Mapping[str, TestImpact],
        time_constraints: float | None = None,
        test_history: list[TestResult] | None = None,
        limit: int | None = None,
    ) -> SessionStart:
        """Apply the policy to raw impacts and open a feedback session.

        `limit` caps the selection recorded on the session, so feedback is
        scored against the tests that actually ran. When learning is
        disabled, impacts pass through unchanged and no session is opened.
        """
        threshold = self.policy.parameters.selection_threshold
        if not self.enabled:
            logger.debug("RL disabled, returning unadjusted impacts")
            return self._passthrough(impacts, threshold, limit)

        context = self.policy.build_context(changes, impacts, time_constraints)
        decision = self.policy.apply_policy(impacts, changes, context)
        state = self.mdp.create_state(
            changes,
            test_history=test_history,
            impacted_files=self.changed_files(changes),
        )
        action = self.mdp.create_action(
            decision.adjusted_impacts,
            decision.selection_threshold,
            ActionType.SELECT_TESTS,
            limit=limit,
        )
        session_id = self.feedback.start_session(state, action, decision.adjusted_impacts)
        logger.info(
            f"Started RL session {session_id} with {len(action.selected_tests)} selected tests "
            f"(threshold {decision.selection_threshold:.3f})"
        )
        return SessionStart(
            session_id=session_id,
            impacts={tid: decision.adjusted_impacts[tid] for tid in action.priority_order},
            selected_tests=list(action.selected_tests),
            selection_threshold=decision.selection_threshold,
            state=state,
            action=action,
            decision=decision,
        )

    def changed_files(self, changes: list[SemanticChangeInfo]) -> list[str]:
        """Files touched by the change set, from change metadata or the changed node."""
        files = []
        for change in changes:
            file_path = change.metadata.get("file_path")
            if not file_path:
                node = self.store.get_node(change.node_id)
                file_path = node.file_path if node else ""
            if file_path:
                files.append(file_path)
        return files

    @staticmethod
    def _passthrough(
        impacts: Mapping[str, TestImpact], threshold: float, limit: int | None = None
    ) -> SessionStart:
        ranked = sorted(impacts.values(), key=lambda i: (-i.impact_score, i.test_id))
        selected = [i.test_id for i in ranked if i.impact_score >= threshold]
        if limit and 0 < limit < len(selected):
            selected = selected[:limit]
        return SessionStart(
            session_id=None,
            impacts={i.test_id: i for i in ranked},
            selected_tests=selected,
            selection_threshold=threshold,
        )

    def process_feedback(self, session_id: str, results: list[TestResult]) -> FeedbackOutcome | None:
        """Score a session and feed the policy and weight learners.

        Returns None when learning is disabled or the session is unknown or
        expired; graph and policy are then left untouched.
        """
        if not self.enabled:
            logger.debug("RL disabled, skipping feedback processing")
            return None

        session = self.feedback.get_session(session_id)
        feedback = self.feedback.process_test_results(session_id, results)
        if feedback is None or session is None:
            return None

        total_time = sum(r.execution_time for r in results)
        reward = self.mdp.calculate_reward(
            session.action, results, total_time, self.config.rl.target_execution_time_ms
        )
        self._update_system_state(feedback, reward)
        adaptations = self.policy.update_policy(feedback.learning_signals, feedback.performance_metrics)
        self._check_and_adapt(feedback)

        try:
            report = self.weights.update_weights(results, feedback.predicted_impacts)
        except (SIKGError, KeyError, ValueError) as e:
            logger.error(f"Weight update failed for session {session_id}, keeping prior weights: {e}")
            report = None

        self.mdp.cleanup_history(self.config.rl.max_history_size)
        logger.info(
            f"Processed RL feedback for {session_id}: reward={reward.total_reward:.3f}, "
            f"F1={feedback.performance_metrics.f1_score:.3f}"
        )
        return FeedbackOutcome(feedback=feedback, reward=reward, adaptations=adaptations, weight_report=report)

    def _update_system_state(self, feedback: ProcessedFeedback, reward: MDPReward) -> None:
        system = self.system
        system.current_performance = feedback.performance_metrics
        system.average_reward = system.average_reward * 0.9 + reward.total_reward * 0.1
        delta = 0.05 if abs(feedback.performance_metrics.f1_score - TARGET_F1) < 0.1 else -0.02
        system.system_stability = max(0.0, min(1.0, system.system_stability + delta))

    def _check_and_adapt(self, feedback: ProcessedFeedback) -> bool:
        now = self.clock()
        if now - self.system.last_adaptation < self.config.rl.adaptation_interval_s:
            return False
        performance = feedback.performance_metrics
        if not (
            performance.f1_score < self.config.rl.performance_threshold
            or len(feedback.learning_signals) > 3
        ):
            return False

        if self.system.system_stability < 0.5:
            self.learning_rate *= 0.9
            logger.debug("Reduced learning rate due to instability")
        elif performance.f1_score > 0.8 and self.system.system_stability > 0.8:
            self.learning_rate = min(0.05, self.learning_rate * 1.05)
            logger.debug("Increased learning rate due to stable good performance")

        if performance.recall < 0.5:
            self.exploration_rate = min(0.3, self.exploration_rate * 1.1)
            logger.debug("Increased exploration rate to improve recall")
        elif performance.precision > 0.9:
            self.exploration_rate = max(0.05, self.exploration_rate * 0.95)
            logger.debug("Decreased exploration rate due to high precision")

        self.weights.configure(
            learning_rate=self.learning_rate,
            significance_threshold=0.15 if performance.f1_score < 0.5 else 0.2,
        )
        self.system.last_adaptation = now
        self.system.total_adaptations += 1
        logger.info(f"Applied system adaptations #{self.system.total_adaptations}")
        return True

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        recent = self.feedback.get_average_performance_metrics(10)
        return {
            **self.system.model_dump(),
            "learning_rate": self.learning_rate,
            "exploration_rate": self.exploration_rate,
            "active_sessions": self.feedback.active_session_count,
            "policy_statistics": self.policy.get_statistics(),
            "weight_statistics": self.weights.get_statistics(),
            "recent_performance": recent.model_dump() if recent else None,
        }

    def get_recommendations(self) -> list[str]:
        # Fall back to the persisted policy snapshot when this process has no feedback yet
        recent = self.feedback.get_average_performance_metrics(5) or self.policy.state.performance
        if recent is None:
            return ["No recent performance data available"]
        recommendations = self.policy.get_recommendations(recent)
        if self.system.average_reward < 0.4:
            recommendations.append("Low average reward - consider adjusting selection strategy")
        if self.system.system_stability < 0.5:
            recommendations.append("System instability detected - reduce adaptation frequency")
        if recent.execution_time_ms > 600_000:
            recommendations.append("Long execution times - consider more aggressive test selection")
        return recommendations

    def set_enabled(self, enabled: bool) -> None:
        self.system.enabled = enabled
        if enabled:
            logger.info("RL system enabled")
        else:
            dropped = self.feedback.discard_all()
            logger.info(f"RL system disabled ({dropped} open sessions dropped)")

    def reset(self) -> None:
        self.mdp.reset()
        self.feedback.reset()
        self.policy.reset()
        self.weights.reset_history()
        self.learning_rate = self.config.rl.learning_rate
        self.exploration_rate = self.config.rl.exploration_rate
        self.weights.configure(
            learning_rate=self.learning_rate,
            significance_threshold=self.config.weights.significance_threshold,
        )
        self.system = RLSystemState(enabled=self.system.enabled)
        logger.info("RL system reset")

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def export_state(self) -> dict:
        return {
            "version": STATE_VERSION,
            "learning_rate": self.learning_rate,
            "exploration_rate": self.exploration_rate,
            "significance_threshold": self.weights.config.significance_threshold,
            "system": self.system.model_dump(),
            "policy": self.policy.export_state(),
        }

    def import_state(self, data: object) -> bool:
        """Restore exported state; malformed input falls back to defaults."""
        try:
            if not isinstance(data, dict):
                raise PolicyStateError(f"Expected a mapping, got {type(data).__name__}")
            system = RLSystemState.model_validate(data.get("system") or {})
            learning_rate = float(data.get("learning_rate", self.config.rl.learning_rate))
            exploration_rate = float(data.get("exploration_rate", self.config.rl.exploration_rate))
            significance = float(
                data.get("significance_threshold", self.config.weights.significance_threshold)
            )
        except (PolicyStateError, ValidationError, TypeError, ValueError) as e:
            logger.error(f"Failed to import RL state, falling back to defaults: {e}")
            self.reset()
            return False

        self.system = system
        self.learning_rate = learning_rate
        self.exploration_rate = exploration_rate
        self.weights.configure(learning_rate=learning_rate, significance_threshold=significance)
        policy_ok = self.policy.import_state(data.get("policy") or {})
        logger.info("Imported RL state")
        return policy_ok
