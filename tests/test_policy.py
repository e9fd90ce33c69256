"""Tests for the adaptive selection policy."""

from __future__ import annotations

import pytest

from sikg.graph.models import ContributingChange, SemanticChangeInfo, SemanticChangeType, TestImpact
from sikg.learning.feedback import Direction, LearningSignal, SessionPerformanceMetrics, SignalType
from sikg.learning.policy import PolicyContext, PolicyManager


def signal(
    signal_type: SignalType = SignalType.POLICY_ADJUSTMENT,
    strength: float = 0.4,
    direction: Direction = Direction.INCREASE,
    target: str = "selection_sensitivity",
    confidence: float = 0.9,
) -> LearningSignal:
    return LearningSignal(
        signal_type=signal_type,
        strength=strength,
        direction=direction,
        target_component=target,
        confidence=confidence,
    )


def impact(test_id: str, score: float, kind=None, path: str = "tests/unit/test_x.py") -> TestImpact:
    contributing = []
    if kind is not None:
        contributing.append(ContributingChange(node_id="n", semantic_type=kind, contribution=score))
    return TestImpact(test_id=test_id, test_path=path, impact_score=score, contributing_changes=contributing)


class TestApplyPolicy:
    def test_defaults(self, clock):
        policy = PolicyManager(clock=clock)
        decision = policy.apply_policy({}, [])
        assert decision.selection_threshold == pytest.approx(0.56)
        assert decision.adjusted_impacts == {}
        assert decision.reasoning == []

    def test_change_type_boost(self, clock):
        policy = PolicyManager(clock=clock)
        decision = policy.apply_policy(
            {
                "bug": impact("bug", 0.5, SemanticChangeType.BUG_FIX),
                "perf": impact("perf", 0.5, SemanticChangeType.PERFORMANCE_OPT),
                "none": impact("none", 0.5),
            },
            [],
        )
        assert decision.adjusted_impacts["bug"].impact_score == pytest.approx(0.5 * 1.06)
        assert decision.adjusted_impacts["perf"].impact_score == pytest.approx(0.5 * 1.01)
        assert decision.adjusted_impacts["none"].impact_score == pytest.approx(0.5)
        assert decision.priority_boosts["bug"] == pytest.approx(1.06)

    def test_boosted_score_is_clamped(self, clock):
        policy = PolicyManager(clock=clock)
        decision = policy.apply_policy({"a": impact("a", 0.99, SemanticChangeType.BUG_FIX)}, [])
        assert decision.adjusted_impacts["a"].impact_score == 1.0

    def test_integration_boost(self, clock):
        policy = PolicyManager(clock=clock)
        decision = policy.apply_policy(
            {"it": impact("it", 0.5, path="tests/integration/test_shop.py")}, []
        )
        assert decision.adjusted_impacts["it"].impact_score == pytest.approx(0.5 * 1.01)
        assert any("integration" in r for r in decision.reasoning)

    def test_low_risk_tolerance_boosts_high_scores(self, clock):
        policy = PolicyManager(clock=clock)
        policy.parameters.risk_tolerance = 0.3
        decision = policy.apply_policy({"a": impact("a", 0.85), "b": impact("b", 0.5)}, [])
        assert decision.adjusted_impacts["a"].impact_score == pytest.approx(0.935)
        assert decision.adjusted_impacts["b"].impact_score == pytest.approx(0.5)

    def test_time_pressure_raises_threshold(self, clock):
        policy = PolicyManager(clock=clock)
        tight = policy.apply_policy({}, [], PolicyContext(time_constraints=300_000))
        relaxed = policy.apply_policy({}, [], PolicyContext(time_constraints=900_000))
        assert tight.selection_threshold == pytest.approx(0.56 * 1.2)
        assert relaxed.selection_threshold == pytest.approx(0.56)

    def test_complex_changes_lower_threshold(self, clock):
        policy = PolicyManager(clock=clock)
        changes = [SemanticChangeInfo(node_id="x", semantic_type=SemanticChangeType.BUG_FIX)]
        context = policy.build_context(changes, {})
        assert context.change_complexity == 1.0
        decision = policy.apply_policy({}, changes, context)
        assert decision.selection_threshold == pytest.approx(0.56 * 0.9)

    def test_past_recall_lowers_threshold(self, clock):
        policy = PolicyManager(clock=clock)
        policy.state.performance = SessionPerformanceMetrics(precision=0.9, recall=0.4)
        assert policy.apply_policy({}, []).selection_threshold == pytest.approx(0.56 * 0.85)

        policy.state.performance = SessionPerformanceMetrics(precision=0.4, recall=0.9)
        assert policy.apply_policy({}, []).selection_threshold == pytest.approx(0.56 * 1.15)

    def test_confidence_is_bounded(self, clock):
        policy = PolicyManager(clock=clock)
        decision = policy.apply_policy({"a": impact("a", 0.5)}, [])
        # 0.7 + 0.8 * 0.2
        assert decision.confidence == pytest.approx(0.86)
        assert 0.1 <= decision.confidence <= 1.0


class TestUpdatePolicy:
    def test_adjustment_moves_threshold(self, clock):
        policy = PolicyManager(clock=clock)
        applied = policy.update_policy([signal(strength=0.4)], None)
        assert applied == 1
        assert policy.parameters.selection_threshold == pytest.approx(0.56 + 0.04)
        [adaptation] = policy.state.adaptation_history
        assert adaptation.parameter == "selection_threshold"
        assert adaptation.old_value == pytest.approx(0.56)

    def test_threshold_change_decrease(self, clock):
        policy = PolicyManager(clock=clock)
        policy.update_policy([signal(SignalType.THRESHOLD_CHANGE, 0.8, Direction.DECREASE, "selection_threshold")], None)
        assert policy.parameters.selection_threshold == pytest.approx(0.48)

    def test_threshold_stays_in_bounds(self, clock):
        policy = PolicyManager(default_threshold=0.07, clock=clock)
        policy.update_policy([signal(strength=0.4, direction=Direction.DECREASE)], None)
        assert policy.parameters.selection_threshold == pytest.approx(0.05)

    def test_other_parameters_stay_in_unit_range(self, clock):
        policy = PolicyManager(clock=clock)
        policy.parameters.adaptation_rate = 1.0
        policy.update_policy([signal(strength=0.5, target="risk_tolerance")], None)
        assert policy.parameters.risk_tolerance == 1.0

    def test_low_confidence_rejected(self, clock):
        policy = PolicyManager(clock=clock)
        assert policy.update_policy([signal(confidence=0.5)], None) == 0
        assert policy.parameters.selection_threshold == pytest.approx(0.56)

    def test_strong_signal_rejected_when_unstable(self, clock):
        policy = PolicyManager(clock=clock)
        policy.state.stability = 0.2
        before = policy.parameters.model_copy()

        applied = policy.update_policy([signal(strength=0.6, confidence=0.9)], None)

        assert applied == 0
        assert policy.parameters == before
        assert policy.state.adaptation_history == []

    def test_weak_signal_allowed_when_unstable(self, clock):
        policy = PolicyManager(clock=clock)
        policy.state.stability = 0.2
        assert policy.update_policy([signal(strength=0.3)], None) == 1

    def test_rate_limit(self, clock):
        policy = PolicyManager(clock=clock)
        for _ in range(5):
            assert policy.update_policy([signal(strength=0.1)], None) == 1
            policy.state.stability = 0.8
            clock.advance(10)
        assert policy.update_policy([signal(strength=0.1)], None) == 0

        clock.advance(10 * 60)
        assert policy.update_policy([signal(strength=0.1)], None) == 1

    def test_maintain_records_adaptation(self, clock):
        policy = PolicyManager(clock=clock)
        policy.update_policy(
            [signal(strength=0.4, direction=Direction.MAINTAIN, target="current_policy")], None
        )
        # current_policy maps to no parameter
        assert policy.adaptation_count == 0

        policy.update_policy([signal(strength=0.4, direction=Direction.MAINTAIN)], None)
        assert policy.adaptation_count == 1
        assert policy.parameters.selection_threshold == pytest.approx(0.56)

    def test_weight_signals_ignored(self, clock):
        policy = PolicyManager(clock=clock)
        assert policy.update_policy([signal(SignalType.WEIGHT_UPDATE, target="test_a")], None) == 0

    def test_metrics_recorded(self, clock):
        policy = PolicyManager(clock=clock)
        metrics = SessionPerformanceMetrics(f1_score=0.9)
        policy.update_policy([], metrics)
        assert policy.state.performance == metrics
        # no adaptations and good F1: 0.8 * 0.8 + 1.2 * 0.2
        assert policy.state.stability == pytest.approx(0.88)

    def test_frequent_adaptation_lowers_stability(self, clock):
        policy = PolicyManager(clock=clock)
        for _ in range(4):
            policy.update_policy([signal(strength=0.1)], None)
            clock.advance(20 * 60)
        assert policy.state.stability < 0.8


class TestPersistence:
    def test_round_trip(self, clock):
        policy = PolicyManager(clock=clock)
        policy.update_policy([signal(strength=0.4)], SessionPerformanceMetrics(f1_score=0.5))

        restored = PolicyManager(clock=clock)
        assert restored.import_state(policy.export_state())
        assert restored.parameters == policy.parameters
        assert restored.state.performance == policy.state.performance
        assert restored.adaptation_count == 1
        assert len(restored.state.adaptation_history) == 1

    @pytest.mark.parametrize("data", [
        "garbage",
        {"parameters": {"selection_threshold": 7}},
        {"parameters": ["not", "a", "dict"]},
        {"stability": "very"},
    ])
    def test_malformed_state_resets(self, clock, data):
        policy = PolicyManager(clock=clock)
        policy.update_policy([signal(strength=0.4)], None)

        assert policy.import_state(data) is False
        assert policy.parameters.selection_threshold == pytest.approx(0.56)
        assert policy.adaptation_count == 0

    def test_recommendations(self, clock):
        policy = PolicyManager(clock=clock)
        recommendations = policy.get_recommendations(
            SessionPerformanceMetrics(precision=0.3, recall=0.3, f1_score=0.3, fault_detection_rate=0.5)
        )
        assert len(recommendations) == 4
        assert any("increasing selection threshold" in r for r in recommendations)
        assert any("effective" in r for r in recommendations)

    def test_statistics(self, clock):
        policy = PolicyManager(clock=clock)
        policy.update_policy([signal()], None)
        stats = policy.get_statistics()
        assert stats["total_adaptations"] == 1
        assert stats["adaptation_frequency"] == 1
        assert stats["parameters"]["selection_threshold"] == pytest.approx(0.6)
