"""Turn one round of test outcomes into error analysis and learning signals.

Session lifecycle: active -> completed -> pruned. Active sessions older
than the timeout are dropped without feedback; completed history keeps
the most recent sessions only.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from enum import Enum
from typing import Callable, Mapping

from pydantic import BaseModel, Field

from sikg.config import FeedbackConfig
from sikg.graph.models import TestImpact, TestResult, TestStatus, outcome_value
from sikg.learning.evaluation import calculate_apfd, execution_order
from sikg.learning.mdp import MDPAction, MDPState

logger = logging.getLogger("sikg.learning")

WEIGHT_SIGNAL_ERROR = 0.3
MAX_WEIGHT_SIGNALS = 5


class ErrorType(str, Enum):
    ACCURATE = "ACCURATE"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    FALSE_NEGATIVE = "FALSE_NEGATIVE"
    INCONCLUSIVE = "INCONCLUSIVE"


class SignalType(str, Enum):
    WEIGHT_UPDATE = "WEIGHT_UPDATE"
    POLICY_ADJUSTMENT = "POLICY_ADJUSTMENT"
    THRESHOLD_CHANGE = "THRESHOLD_CHANGE"


class Direction(str, Enum):
    INCREASE = "INCREASE"
    DECREASE = "DECREASE"
    MAINTAIN = "MAINTAIN"


class PredictionErrorAnalysis(BaseModel):
    test_id: str
    predicted_impact: float
    actual_outcome: float
    prediction_error: float
    error_type: ErrorType
    confidence: float
    contributing_factors: list[str] = Field(default_factory=list)


class SessionPerformanceMetrics(BaseModel):
    total_tests: int = 0
    selected_tests: int = 0
    executed_tests: int = 0
    passed_tests: int = 0
    failed_tests: int = 0
    skipped_tests: int = 0
    fault_detection_rate: float = 0.0
    precision: float = 0.0
    recall: float = 0.0
    f1_score: float = 0.0
    execution_time_ms: float = 0.0
    selection_accuracy: float = 0.0
    apfd: float = 1.0


class LearningSignal(BaseModel):
    """Directional, confidence-scored hint proposing one adjustment."""

    signal_type: SignalType
    strength: float = Field(ge=0.0, le=1.0)
    direction: Direction
    target_component: str
    reason: str = ""
    confidence: float = Field(ge=0.0, le=1.0)


class TestSession(BaseModel):
    __test__ = False

    session_id: str
    start_time: float
    end_time: float | None = None
    state: MDPState
    action: MDPAction
    predicted_impacts: dict[str, TestImpact] = Field(default_factory=dict)
    test_results: list[TestResult] = Field(default_factory=list)
    is_completed: bool = False


class ProcessedFeedback(BaseModel):
    session_id: str
    timestamp: float
    test_results: list[TestResult]
    predicted_impacts: dict[str, float]
    actual_outcomes: dict[str, float]
    prediction_errors: list[PredictionErrorAnalysis]
    performance_metrics: SessionPerformanceMetrics
    learning_signals: list[LearningSignal]


def prediction_confidence(predicted: float, actual: float) -> float:
    return max(0.0, 1 - 2 * abs(predicted - actual))


class FeedbackProcessor:
    """Tracks test sessions and scores them when outcomes arrive."""

    def __init__(
        self,
        config: FeedbackConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or FeedbackConfig()
        self.clock = clock
        # Insertion order == start order, so the front is always the oldest
        self._active: OrderedDict[str, TestSession] = OrderedDict()
        self._completed: list[ProcessedFeedback] = []
        self._counter = 0

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(
        self,
        state: MDPState,
        action: MDPAction,
        predicted_impacts: Mapping[str, TestImpact],
    ) -> str:
        self.cleanup_expired_sessions()
        self._counter += 1
        now = self.clock()
        session_id = f"session_{self._counter}_{int(now * 1000)}"
        self._active[session_id] = TestSession(
            session_id=session_id,
            start_time=now,
            state=state,
            action=action,
            predicted_impacts=dict(predicted_impacts),
        )
        logger.info(
            f"Started test session {session_id} with {len(action.selected_tests)} selected tests"
        )
        return session_id

    def restore_session(self, session: TestSession) -> None:
        """Re-register an exported active session (e.g. from another process)."""
        self._active[session.session_id] = session
        self._active = OrderedDict(sorted(self._active.items(), key=lambda kv: kv[1].start_time))
        self.cleanup_expired_sessions()

    def get_session(self, session_id: str) -> TestSession | None:
        return self._active.get(session_id)

    def is_expired(self, session_id: str) -> bool:
        session = self._active.get(session_id)
        if session is None:
            return True
        return self.clock() - session.start_time > self.config.session_timeout_s

    def cleanup_expired_sessions(self) -> list[str]:
        now = self.clock()
        expired = []
        while self._active:
            session_id, session = next(iter(self._active.items()))
            if now - session.start_time <= self.config.session_timeout_s:
                break
            self._active.popitem(last=False)
            expired.append(session_id)
            logger.warning(f"Dropped expired session {session_id} without feedback")
        return expired

    def discard_session(self, session_id: str) -> bool:
        return self._active.pop(session_id, None) is not None

    def discard_all(self) -> int:
        count = len(self._active)
        self._active.clear()
        return count

    @property
    def active_session_count(self) -> int:
        return len(self._active)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def process_test_results(
        self, session_id: str, results: list[TestResult]
    ) -> ProcessedFeedback | None:
        self.cleanup_expired_sessions()
        session = self._active.pop(session_id, None)
        if session is None:
            logger.warning(f"Session not found or expired: {session_id}")
            return None

        session.test_results = list(results)
        session.end_time = self.clock()
        session.is_completed = True

        feedback = self._generate_feedback(session)
        self._completed.append(feedback)
        overflow = len(self._completed) - self.config.max_completed_sessions
        if overflow > 0:
            del self._completed[:overflow]

        logger.info(
            f"Processed feedback for session {session_id}: "
            f"F1 {feedback.performance_metrics.f1_score:.3f}, "
            f"{len(feedback.learning_signals)} learning signals"
        )
        return feedback

    def _generate_feedback(self, session: TestSession) -> ProcessedFeedback:
        predicted = {tid: imp.impact_score for tid, imp in session.predicted_impacts.items()}
        actual = {r.test_id: outcome_value(r.status) for r in session.test_results}

        errors = self.analyze_prediction_errors(predicted, actual, session.action)
        metrics = self.calculate_performance_metrics(session.test_results, session.action, predicted)
        signals = self.generate_learning_signals(errors, metrics)

        return ProcessedFeedback(
            session_id=session.session_id,
            timestamp=session.end_time or self.clock(),
            test_results=session.test_results,
            predicted_impacts=predicted,
            actual_outcomes=actual,
            prediction_errors=errors,
            performance_metrics=metrics,
            learning_signals=signals,
        )

    def analyze_prediction_errors(
        self,
        predicted: Mapping[str, float],
        actual: Mapping[str, float],
        action: MDPAction,
    ) -> list[PredictionErrorAnalysis]:
        selected = set(action.selected_tests)
        errors = []
        for test_id, predicted_value in predicted.items():
            if test_id not in actual:
                continue
            actual_value = actual[test_id]
            error = predicted_value - actual_value
            was_selected = test_id in selected
            if actual_value == 0.5:
                error_type = ErrorType.INCONCLUSIVE
            elif was_selected and actual_value <= 0.5:
                error_type = ErrorType.FALSE_POSITIVE
            elif not was_selected and actual_value > 0.5:
                error_type = ErrorType.FALSE_NEGATIVE
            else:
                error_type = ErrorType.ACCURATE

            errors.append(PredictionErrorAnalysis(
                test_id=test_id,
                predicted_impact=predicted_value,
                actual_outcome=actual_value,
                prediction_error=error,
                error_type=error_type,
                confidence=prediction_confidence(predicted_value, actual_value),
                contributing_factors=self._contributing_factors(test_id, error, action),
            ))
        return errors

    @staticmethod
    def _contributing_factors(test_id: str, error: float, action: MDPAction) -> list[str]:
        factors = []
        if abs(error) > 0.5:
            factors.append("large_prediction_error")
        if error > 0:
            factors.append("over_prediction")
        elif error < 0:
            factors.append("under_prediction")
        if test_id in action.selected_tests:
            if action.selected_tests.index(test_id) < len(action.selected_tests) * 0.2:
                factors.append("high_priority_selection")
        if action.confidence < 0.5:
            factors.append("low_action_confidence")
        return factors

    @staticmethod
    def calculate_performance_metrics(
        results: list[TestResult],
        action: MDPAction,
        predicted: Mapping[str, float],
    ) -> SessionPerformanceMetrics:
        selected = set(action.selected_tests)
        failed_ids = {r.test_id for r in results if r.status == TestStatus.FAILED}
        passed = sum(1 for r in results if r.status == TestStatus.PASSED)
        failed = sum(1 for r in results if r.status == TestStatus.FAILED)
        skipped = sum(1 for r in results if r.status == TestStatus.SKIPPED)

        tp = sum(1 for r in results if r.test_id in selected and r.test_id in failed_ids)
        fp = sum(1 for r in results if r.test_id in selected and r.test_id not in failed_ids)
        fn = max(0, failed - tp)

        precision = tp / max(1, tp + fp)
        recall = tp / max(1, tp + fn)
        f1 = 2 * precision * recall / (precision + recall) if precision + recall > 0 else 0.0
        order = execution_order(action.priority_order, (r.test_id for r in results))

        return SessionPerformanceMetrics(
            total_tests=len(predicted),
            selected_tests=len(action.selected_tests),
            executed_tests=len(results),
            passed_tests=passed,
            failed_tests=failed,
            skipped_tests=skipped,
            fault_detection_rate=failed / max(1, len(results)),
            precision=precision,
            recall=recall,
            f1_score=f1,
            execution_time_ms=sum(r.execution_time for r in results),
            selection_accuracy=tp / max(1, len(action.selected_tests)),
            apfd=calculate_apfd(order, failed_ids).apfd,
        )

    def generate_learning_signals(
        self,
        errors: list[PredictionErrorAnalysis],
        metrics: SessionPerformanceMetrics,
    ) -> list[LearningSignal]:
        signals: list[LearningSignal] = []

        if metrics.f1_score < 0.6:
            signals.append(LearningSignal(
                signal_type=SignalType.POLICY_ADJUSTMENT,
                strength=1.0 - metrics.f1_score,
                direction=Direction.INCREASE,
                target_component="selection_sensitivity",
                reason=f"Low F1 score ({metrics.f1_score:.3f}) indicates need for policy adjustment",
                confidence=0.8,
            ))

        if metrics.precision < 0.5 and metrics.recall > 0.8:
            signals.append(LearningSignal(
                signal_type=SignalType.THRESHOLD_CHANGE,
                strength=0.8,
                direction=Direction.INCREASE,
                target_component="selection_threshold",
                reason="Low precision with high recall suggests threshold too low",
                confidence=0.7,
            ))
        elif metrics.recall < 0.5 and metrics.precision > 0.8:
            signals.append(LearningSignal(
                signal_type=SignalType.THRESHOLD_CHANGE,
                strength=0.8,
                direction=Direction.DECREASE,
                target_component="selection_threshold",
                reason="Low recall with high precision suggests threshold too high",
                confidence=0.7,
            ))

        significant = sorted(
            (
                e for e in errors
                if abs(e.prediction_error) > WEIGHT_SIGNAL_ERROR
                and e.confidence >= self.config.min_confidence_threshold
            ),
            key=lambda e: -abs(e.prediction_error),
        )
        for error in significant[:MAX_WEIGHT_SIGNALS]:
            signals.append(LearningSignal(
                signal_type=SignalType.WEIGHT_UPDATE,
                strength=min(1.0, abs(error.prediction_error)),
                direction=(
                    Direction.DECREASE if error.error_type == ErrorType.FALSE_POSITIVE
                    else Direction.INCREASE
                ),
                target_component=error.test_id,
                reason=f"{error.error_type.value} with error {error.prediction_error:.3f}",
                confidence=error.confidence,
            ))

        if metrics.fault_detection_rate > 0.1:
            signals.append(LearningSignal(
                signal_type=SignalType.POLICY_ADJUSTMENT,
                strength=min(1.0, metrics.fault_detection_rate),
                direction=Direction.MAINTAIN,
                target_component="current_policy",
                reason=f"Good fault detection rate ({metrics.fault_detection_rate:.3f})",
                confidence=0.9,
            ))

        return signals[: self.config.max_learning_signals]

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def get_recent_feedback(self, limit: int = 20) -> list[ProcessedFeedback]:
        return self._completed[-limit:] if limit > 0 else []

    def get_aggregated_learning_signals(self, window: int = 10) -> dict[str, list[LearningSignal]]:
        aggregated: dict[str, list[LearningSignal]] = {}
        for feedback in self.get_recent_feedback(window):
            for signal in feedback.learning_signals:
                key = f"{signal.signal_type.value}_{signal.target_component}"
                aggregated.setdefault(key, []).append(signal)
        return aggregated

    def get_average_performance_metrics(self, window: int = 10) -> SessionPerformanceMetrics | None:
        recent = self.get_recent_feedback(window)
        if not recent:
            return None
        count = len(recent)
        fields = SessionPerformanceMetrics.model_fields
        totals = {name: 0.0 for name in fields}
        for feedback in recent:
            for name, value in feedback.performance_metrics.model_dump().items():
                totals[name] += value
        averaged = {}
        for name, total in totals.items():
            mean = total / count
            averaged[name] = round(mean) if fields[name].annotation is int else mean
        return SessionPerformanceMetrics(**averaged)

    def reset(self) -> None:
        self._active.clear()
        self._completed.clear()
        self._counter = 0
        logger.info("Feedback processor reset")
