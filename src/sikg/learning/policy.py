"""Adaptive selection policy.

Holds the tunable selection parameters, adjusts impact scores and the
selection threshold for the current context, and applies learning
signals behind three safeguards: a confidence floor, an instability
guard for strong signals, and a rolling rate limit.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Mapping

from pydantic import BaseModel, Field, ValidationError

from sikg.config import PolicyConfig
from sikg.exceptions import PolicyStateError
from sikg.graph.models import SemanticChangeInfo, SemanticChangeType, TestImpact
from sikg.learning.feedback import Direction, LearningSignal, SessionPerformanceMetrics, SignalType
from sikg.learning.mdp import COMPLEX_CHANGE_TYPES

logger = logging.getLogger("sikg.learning")

# Relative risk of each change type; scaled by priority_boost_factor
CHANGE_TYPE_RISK: dict[SemanticChangeType, float] = {
    SemanticChangeType.BUG_FIX: 0.3,
    SemanticChangeType.FEATURE_ADDITION: 0.2,
    SemanticChangeType.REFACTORING_SIGNATURE: 0.25,
    SemanticChangeType.REFACTORING_LOGIC: 0.1,
    SemanticChangeType.DEPENDENCY_UPDATE: 0.15,
    SemanticChangeType.PERFORMANCE_OPT: 0.05,
    SemanticChangeType.UNKNOWN: 0.2,
}

# Signal target -> parameter name
SIGNAL_TARGETS = {
    "selection_sensitivity": "selection_threshold",
    "selection_threshold": "selection_threshold",
    "priority_boost": "priority_boost_factor",
    "risk_tolerance": "risk_tolerance",
    "diversity_weight": "diversity_weight",
}

THRESHOLD_BOUNDS = (0.05, 0.95)
STABILITY_WINDOW_S = 60 * 60


class PolicyParameters(BaseModel):
    selection_threshold: float = Field(default=0.56, ge=0.0, le=1.0)
    priority_boost_factor: float = Field(default=0.2, ge=0.0, le=1.0)
    diversity_weight: float = Field(default=0.1, ge=0.0, le=1.0)
    risk_tolerance: float = Field(default=0.6, ge=0.0, le=1.0)
    adaptation_rate: float = Field(default=0.1, ge=0.0, le=1.0)
    context_sensitivity: float = Field(default=0.7, ge=0.0, le=1.0)


class PolicyAdaptation(BaseModel):
    timestamp: float
    parameter: str
    old_value: float
    new_value: float
    reason: str = ""
    expected_improvement: float = 0.0


class AdaptivePolicyState(BaseModel):
    parameters: PolicyParameters = Field(default_factory=PolicyParameters)
    performance: SessionPerformanceMetrics | None = None
    adaptation_history: list[PolicyAdaptation] = Field(default_factory=list)
    last_update: float = 0.0
    stability: float = Field(default=0.8, ge=0.0, le=1.0)


class PolicyContext(BaseModel):
    semantic_changes: list[SemanticChangeInfo] = Field(default_factory=list)
    change_complexity: float = 0.0
    time_constraints: float | None = None  # milliseconds available; None = no pressure
    historical_success: float = 0.7
    test_suite_size: int = 0


class PolicyDecision(BaseModel):
    adjusted_impacts: dict[str, TestImpact]
    selection_threshold: float
    priority_boosts: dict[str, float] = Field(default_factory=dict)
    reasoning: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)


class PolicyManager:
    """Owns one adaptive policy and the rules for changing it."""

    def __init__(
        self,
        config: PolicyConfig | None = None,
        default_threshold: float = 0.56,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or PolicyConfig()
        self.default_threshold = default_threshold
        self.clock = clock
        self.adaptation_count = 0
        self.state = self._default_state()

    def _default_state(self) -> AdaptivePolicyState:
        return AdaptivePolicyState(
            parameters=PolicyParameters(selection_threshold=self.default_threshold),
            last_update=self.clock(),
        )

    @property
    def parameters(self) -> PolicyParameters:
        return self.state.parameters

    # ------------------------------------------------------------------
    # Applying the policy
    # ------------------------------------------------------------------

    def build_context(
        self,
        changes: list[SemanticChangeInfo],
        impacts: Mapping[str, TestImpact],
        time_constraints: float | None = None,
    ) -> PolicyContext:
        complex_changes = sum(1 for c in changes if c.semantic_type in COMPLEX_CHANGE_TYPES)
        performance = self.state.performance
        return PolicyContext(
            semantic_changes=list(changes),
            change_complexity=min(1.0, complex_changes / max(1, len(changes))),
            time_constraints=time_constraints,
            historical_success=performance.f1_score if performance else 0.7,
            test_suite_size=len(impacts),
        )

    def apply_policy(
        self,
        impacts: Mapping[str, TestImpact],
        changes: list[SemanticChangeInfo],
        context: PolicyContext | None = None,
    ) -> PolicyDecision:
        if context is None:
            context = self.build_context(changes, impacts)
        params = self.state.parameters
        reasoning: list[str] = []

        threshold = params.selection_threshold
        if context.time_constraints is not None and context.time_constraints < self.config.time_pressure_ms:
            threshold *= 1.2
            reasoning.append("Increased threshold due to time constraints")
        if context.change_complexity > 0.7:
            threshold *= 0.9
            reasoning.append("Decreased threshold due to high change complexity")
        performance = self.state.performance
        if performance is not None:
            if performance.recall < 0.6:
                threshold *= 0.85
                reasoning.append("Decreased threshold to improve recall")
            elif performance.precision < 0.6:
                threshold *= 1.15
                reasoning.append("Increased threshold to improve precision")
        threshold = max(0.0, min(1.0, threshold))

        type_boosts = self.change_type_boosts()
        adjusted: dict[str, TestImpact] = {}
        boosts: dict[str, float] = {}
        for test_id, impact in impacts.items():
            boost = 1.0
            for change in impact.contributing_changes:
                boost *= type_boosts.get(change.semantic_type, 1.0)
            if "integration" in impact.test_path.lower():
                boost *= 1 + params.diversity_weight * 0.1
                reasoning.append(f"Applied integration test boost to {test_id}")
            if params.risk_tolerance < 0.5 and impact.impact_score > 0.8:
                boost *= 1.1
            boosts[test_id] = boost
            adjusted[test_id] = impact.model_copy(
                update={"impact_score": min(1.0, impact.impact_score * boost)}
            )

        decision = PolicyDecision(
            adjusted_impacts=adjusted,
            selection_threshold=threshold,
            priority_boosts=boosts,
            reasoning=reasoning,
            confidence=self.decision_confidence(context, adjusted),
        )
        logger.debug(
            f"Applied policy: threshold {threshold:.3f}, {len(adjusted)} impacts, "
            f"confidence {decision.confidence:.3f}"
        )
        return decision

    def change_type_boosts(self) -> dict[SemanticChangeType, float]:
        factor = self.state.parameters.priority_boost_factor
        return {t: 1.0 + factor * risk for t, risk in CHANGE_TYPE_RISK.items()}

    def decision_confidence(
        self, context: PolicyContext, adjusted: Mapping[str, TestImpact]
    ) -> float:
        confidence = 0.7 + self.state.stability * 0.2
        if self.state.performance is not None:
            confidence += (self.state.performance.f1_score - 0.5) * 0.2
        scores = [i.impact_score for i in adjusted.values()]
        if scores:
            mean = sum(scores) / len(scores)
            variance = sum((s - mean) ** 2 for s in scores) / len(scores)
            if variance > 0.1:
                confidence += 0.1
        confidence -= context.change_complexity * 0.1
        return max(0.1, min(1.0, confidence))

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    def recent_adaptations(self, window_s: float) -> list[PolicyAdaptation]:
        cutoff = self.clock() - window_s
        return [a for a in self.state.adaptation_history if a.timestamp > cutoff]

    def should_apply(self, signal: LearningSignal) -> bool:
        if signal.confidence < self.config.signal_min_confidence:
            logger.debug(f"Skipping low-confidence signal {signal.signal_type.value}/{signal.target_component}")
            return False
        if signal.strength > self.config.strong_signal and self.state.stability < self.config.instability_floor:
            logger.debug(f"Skipping strong signal due to policy instability: {signal.signal_type.value}")
            return False
        if len(self.recent_adaptations(self.config.rate_limit_window_s)) >= self.config.rate_limit_max:
            logger.debug("Skipping signal due to too many recent adaptations")
            return False
        return True

    def update_policy(
        self,
        signals: list[LearningSignal],
        metrics: SessionPerformanceMetrics | None,
    ) -> int:
        """Apply eligible policy and threshold signals. Returns adaptations made."""
        applied = 0
        for signal_type in (SignalType.POLICY_ADJUSTMENT, SignalType.THRESHOLD_CHANGE):
            for signal in signals:
                if signal.signal_type != signal_type or not self.should_apply(signal):
                    continue
                if signal_type == SignalType.THRESHOLD_CHANGE:
                    parameter = "selection_threshold"
                else:
                    parameter = SIGNAL_TARGETS.get(signal.target_component)
                    if parameter is None:
                        logger.debug(f"Unknown policy parameter target: {signal.target_component}")
                        continue
                self._adapt(parameter, signal)
                applied += 1

        if metrics is not None:
            self.state.performance = metrics
        self.state.last_update = self.clock()
        self._update_stability()

        if applied:
            logger.info(f"Updated policy with {applied} adaptations based on {len(signals)} signals")
        return applied

    def _adapt(self, parameter: str, signal: LearningSignal) -> None:
        params = self.state.parameters
        old = getattr(params, parameter)
        amount = signal.strength * params.adaptation_rate
        if signal.direction == Direction.INCREASE:
            new = old + amount
        elif signal.direction == Direction.DECREASE:
            new = old - amount
        else:
            new = old
        low, high = THRESHOLD_BOUNDS if parameter == "selection_threshold" else (0.0, 1.0)
        new = max(low, min(high, new))
        setattr(params, parameter, new)

        now = self.clock()
        self.state.adaptation_history.append(PolicyAdaptation(
            timestamp=now,
            parameter=parameter,
            old_value=old,
            new_value=new,
            reason=signal.reason,
            expected_improvement=signal.strength * signal.confidence,
        ))
        cutoff = now - self.config.history_retention_s
        self.state.adaptation_history = [
            a for a in self.state.adaptation_history if a.timestamp > cutoff
        ]
        self.adaptation_count += 1
        logger.debug(f"Adapted {parameter}: {old:.3f} -> {new:.3f} ({signal.reason})")

    def _update_stability(self) -> None:
        frequency = len(self.recent_adaptations(STABILITY_WINDOW_S)) / 6
        score = max(0.0, 1 - frequency)
        if self.state.performance is not None:
            score += 0.2 if self.state.performance.f1_score > 0.6 else -0.1
        stability = self.state.stability * 0.8 + score * 0.2
        self.state.stability = max(0.0, min(1.0, stability))

    # ------------------------------------------------------------------
    # Reporting and persistence
    # ------------------------------------------------------------------

    def get_statistics(self) -> dict:
        return {
            "total_adaptations": self.adaptation_count,
            "current_stability": self.state.stability,
            "recent_performance": (
                self.state.performance.model_dump() if self.state.performance else None
            ),
            "parameters": self.state.parameters.model_dump(),
            "adaptation_frequency": len(self.recent_adaptations(STABILITY_WINDOW_S)),
        }

    def get_recommendations(self, metrics: SessionPerformanceMetrics) -> list[str]:
        recommendations = []
        if metrics.precision < 0.6:
            recommendations.append("Consider increasing selection threshold to reduce false positives")
        if metrics.recall < 0.6:
            recommendations.append("Consider decreasing selection threshold to reduce false negatives")
        if metrics.f1_score < 0.5:
            recommendations.append("Consider adjusting risk tolerance and priority boost factors")
        if self.state.stability < 0.4:
            recommendations.append("Policy is unstable - consider reducing adaptation rate")
        if metrics.fault_detection_rate > 0.2:
            recommendations.append("High fault detection suggests current policy is effective")
        return recommendations

    def export_state(self) -> dict:
        return {
            "parameters": self.state.parameters.model_dump(),
            "performance": self.state.performance.model_dump() if self.state.performance else None,
            "stability": self.state.stability,
            "last_update": self.state.last_update,
            "adaptation_count": self.adaptation_count,
            "adaptation_history": [a.model_dump() for a in self.state.adaptation_history],
        }

    def import_state(self, data: object) -> bool:
        """Restore exported state. Malformed input resets to defaults."""
        try:
            if not isinstance(data, dict):
                raise PolicyStateError(f"Expected a mapping, got {type(data).__name__}")
            parameters = self.state.parameters.model_dump()
            parameters.update(data.get("parameters") or {})
            state = AdaptivePolicyState(
                parameters=PolicyParameters(**parameters),
                performance=data.get("performance"),
                adaptation_history=data.get("adaptation_history") or [],
                last_update=data.get("last_update", self.clock()),
                stability=max(0.0, min(1.0, float(data.get("stability", self.state.stability)))),
            )
            count = int(data.get("adaptation_count", 0))
        except (PolicyStateError, ValidationError, TypeError, ValueError) as e:
            logger.error(f"Failed to import policy state, resetting to defaults: {e}")
            self.reset()
            return False
        self.state = state
        self.adaptation_count = count
        logger.info("Imported policy state")
        return True

    def reset(self) -> None:
        self.state = self._default_state()
        self.adaptation_count = 0
        logger.info("Policy manager reset to defaults")
