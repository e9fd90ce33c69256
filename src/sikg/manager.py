"""System facade over one impact graph.

SIKGManager wires the store, propagator and learning coordinator together
for a project directory and enforces the single-writer contract: at most
one analysis cycle (select -> execute -> feedback) may be open per graph.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from sikg.config import GRAPH_FILE, RL_STATE_FILE, SESSION_FILE, ProjectConfig, get_sikg_dir
from sikg.exceptions import CycleInProgressError, SIKGError
from sikg.graph.builder import CodeElementRecord, GraphBuilder, TestCaseRecord
from sikg.graph.models import ExecutionRecord, SemanticChangeInfo, TestImpact, TestResult
from sikg.graph.query import GraphQuery
from sikg.graph.store import GraphStore, atomic_write_text
from sikg.impact.history import HistoryEnhancer
from sikg.impact.propagator import ChangeSet, ImpactPropagator
from sikg.learning.coordinator import FeedbackOutcome, RLCoordinator
from sikg.learning.feedback import TestSession

logger = logging.getLogger("sikg.manager")


@dataclass
class AnalysisResult:
    """Outcome of one `analyze_changes` call."""

    change_set: ChangeSet
    raw_impacts: dict[str, TestImpact]
    impacts: dict[str, TestImpact]
    selected_tests: list[str]
    selection_threshold: float
    session_id: str | None = None
    reasoning: list[str] = field(default_factory=list)
    confidence: float | None = None

    @property
    def ranked(self) -> list[TestImpact]:
        return list(self.impacts.values())


class SIKGManager:
    """Owns one graph and its learning state under `<root>/.sikg/`."""

    def __init__(
        self,
        root: Path,
        config: ProjectConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.root = Path(root)
        self.config = config or ProjectConfig(name=self.root.name, root_path=str(self.root))
        self.clock = clock
        self.store: GraphStore | None = None
        self.propagator: ImpactPropagator | None = None
        self.query: GraphQuery | None = None
        self.coordinator: RLCoordinator | None = None
        self.history: HistoryEnhancer | None = None
        self._active_session: str | None = None
        # Guards the check-and-claim of the single open cycle
        self._cycle_lock = threading.Lock()

    @property
    def sikg_dir(self) -> Path:
        return get_sikg_dir(self.root)

    @property
    def graph_path(self) -> Path:
        return self.sikg_dir / GRAPH_FILE

    @property
    def rl_state_path(self) -> Path:
        return self.sikg_dir / RL_STATE_FILE

    @property
    def session_path(self) -> Path:
        return self.sikg_dir / SESSION_FILE

    @property
    def is_initialized(self) -> bool:
        return self.store is not None

    @property
    def active_session(self) -> str | None:
        return self._active_session

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(
        self,
        code: list[CodeElementRecord] | None = None,
        tests: list[TestCaseRecord] | None = None,
        rebuild: bool = False,
    ) -> GraphStore:
        """Load the persisted graph or build it from records.

        An unreadable snapshot raises GraphLoadError. Records for files the
        loaded graph does not cover yet are folded in incrementally.
        """
        builder = GraphBuilder(self.config.graph)
        store = None if rebuild else GraphStore.load(self.graph_path, self.config.graph)
        loaded = store is not None
        if store is None:
            store = builder.build(code or [], tests or [])
            logger.info(f"Built fresh graph for {self.root}")
        elif code or tests:
            added = builder.incremental_update(store, code or [], tests or [])
            if added:
                logger.info(f"Added {len(added)} new files to the graph")

        self.store = store
        self.propagator = ImpactPropagator(store, self.config.propagation)
        self.query = GraphQuery(store)
        self.coordinator = RLCoordinator(store, self.config, clock=self.clock)
        self.history = HistoryEnhancer(store)
        self._active_session = None
        if loaded:
            self.enhance_with_history()
        self._load_rl_state()
        self._load_session()
        return store

    def _require_initialized(self) -> None:
        if self.store is None:
            raise SIKGError("SIKGManager.initialize() must be called first")

    def _load_rl_state(self) -> None:
        if not self.rl_state_path.exists():
            return
        try:
            data = json.loads(self.rl_state_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Corrupt RL state {self.rl_state_path}, starting from defaults: {e}")
            return
        self.coordinator.import_state(data)

    def _load_session(self) -> None:
        if not self.session_path.exists():
            return
        try:
            session = TestSession.model_validate_json(self.session_path.read_text())
        except (OSError, ValidationError) as e:
            logger.error(f"Discarding unreadable pending session {self.session_path}: {e}")
            self.session_path.unlink(missing_ok=True)
            return
        self.restore_session(session)

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def analyze_changes(
        self,
        changes: list[SemanticChangeInfo],
        time_constraints: float | None = None,
        limit: int | None = None,
    ) -> AnalysisResult:
        """Mark changes, score tests, apply the policy and open a session."""
        self._require_initialized()
        with self._cycle_lock:
            self._check_no_active_cycle()
            change_set = self.propagator.mark_changed(changes)
            raw = self.propagator.score_test_impact(change_set.changes)
            start = self.coordinator.start_session(
                list(change_set.changes),
                raw,
                time_constraints=time_constraints,
                test_history=self._recent_history(change_set.impacted_test_ids),
                limit=limit,
            )
            self._active_session = start.session_id

        impacts = start.impacts
        selected = start.selected_tests

        logger.info(
            f"Analyzed {len(change_set.changed_ids)} changes: {len(impacts)} impacted tests, "
            f"{len(selected)} selected"
            + (f" (session {start.session_id})" if start.session_id else "")
        )
        return AnalysisResult(
            change_set=change_set,
            raw_impacts=raw,
            impacts=impacts,
            selected_tests=selected,
            selection_threshold=start.selection_threshold,
            session_id=start.session_id,
            reasoning=start.decision.reasoning if start.decision else [],
            confidence=start.decision.confidence if start.decision else None,
        )

    def _check_no_active_cycle(self) -> None:
        if self._active_session is None:
            return
        if self.coordinator.feedback.is_expired(self._active_session):
            logger.warning(f"Dropping expired cycle {self._active_session} without feedback")
            self.coordinator.feedback.discard_session(self._active_session)
            self._active_session = None
            return
        raise CycleInProgressError(self._active_session)

    def _recent_history(self, test_ids) -> list[TestResult]:
        history = []
        for test_id in sorted(test_ids):
            node = self.store.get_node(test_id)
            if node is None:
                continue
            for record in node.history:
                history.append(TestResult(
                    test_id=test_id,
                    status=record.status,
                    execution_time=record.execution_time,
                    timestamp=record.timestamp,
                ))
        history.sort(key=lambda r: r.timestamp or 0.0)
        return history

    def ingest_results(self, results: list[TestResult]) -> FeedbackOutcome | None:
        """Record outcomes on test nodes and close the open cycle, if any."""
        self._require_initialized()
        known = self.record_outcomes(results)

        with self._cycle_lock:
            session_id, self._active_session = self._active_session, None
        if session_id is None:
            logger.debug("No open cycle, outcomes recorded without learning")
            outcome = None
        else:
            outcome = self.coordinator.process_feedback(session_id, known)
        self.enhance_with_history()
        return outcome

    def enhance_with_history(self) -> int:
        """Fold unconsumed execution history into test edge weights.

        Best effort: a failure is logged and the graph keeps its weights.
        Returns the number of edges updated.
        """
        if not self.config.graph.history_enhancement:
            return 0
        try:
            report = self.history.enhance()
        except (SIKGError, KeyError, ValueError) as e:
            logger.error(f"History enhancement failed, continuing without it: {e}")
            return 0
        return len(report.updates)

    def record_outcomes(self, results: list[TestResult]) -> list[TestResult]:
        """Append results to each test's history ring. Unknown tests are skipped."""
        now = self.clock()
        known = []
        size = self.config.graph.history_size
        with self.store.lock.write():
            for result in results:
                node = self.store.get_node(result.test_id)
                if node is None or not node.is_test:
                    logger.warning(f"Result for unknown test {result.test_id}, skipping")
                    continue
                timestamp = result.timestamp if result.timestamp is not None else now
                history = node.history + [ExecutionRecord(
                    timestamp=timestamp,
                    status=result.status,
                    execution_time=result.execution_time,
                    changed_node_ids=list(result.changed_node_ids or node.impacted_by),
                )]
                self.store.update_node(
                    result.test_id,
                    history=history[-size:] if size > 0 else [],
                    last_status=result.status,
                    last_run=timestamp,
                    execution_time=result.execution_time,
                )
                known.append(result)
        return known

    def abort_cycle(self) -> bool:
        """Drop the open cycle without feedback. Returns whether one was open."""
        with self._cycle_lock:
            session_id, self._active_session = self._active_session, None
        if session_id is None:
            return False
        self.coordinator.feedback.discard_session(session_id)
        logger.info(f"Aborted cycle {session_id}")
        return True

    # ------------------------------------------------------------------
    # Sessions across processes
    # ------------------------------------------------------------------

    def export_session(self) -> dict | None:
        if self._active_session is None:
            return None
        session = self.coordinator.feedback.get_session(self._active_session)
        return session.model_dump(mode="json") if session else None

    def restore_session(self, session: TestSession) -> bool:
        self._require_initialized()
        self.coordinator.feedback.restore_session(session)
        if self.coordinator.feedback.get_session(session.session_id) is None:
            self._active_session = None
            return False
        self._active_session = session.session_id
        logger.info(f"Restored pending session {session.session_id}")
        return True

    # ------------------------------------------------------------------
    # Persistence and reporting
    # ------------------------------------------------------------------

    def save(self) -> None:
        self._require_initialized()
        self.store.save(self.graph_path, metadata={"root": str(self.root), "saved_at": self.clock()})
        atomic_write_text(self.rl_state_path, json.dumps(self.coordinator.export_state(), indent=2))
        session = self.export_session()
        if session is not None:
            atomic_write_text(self.session_path, json.dumps(session, indent=2))
        else:
            self.session_path.unlink(missing_ok=True)

    def export_state(self, path: Path) -> None:
        self._require_initialized()
        atomic_write_text(Path(path), json.dumps(self.coordinator.export_state(), indent=2))

    def import_state(self, path: Path) -> bool:
        """Import RL state from a file; unreadable files reset to defaults."""
        self._require_initialized()
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read RL state {path}, resetting to defaults: {e}")
            self.coordinator.reset()
            return False
        return self.coordinator.import_state(data)

    def get_rl_status(self) -> dict:
        self._require_initialized()
        return {
            **self.coordinator.get_status(),
            "active_cycle": self._active_session,
            "recommendations": self.coordinator.get_recommendations(),
        }

    def get_stats(self) -> dict:
        self._require_initialized()
        return self.query.get_stats()

    def export_graph_for_visualization(self) -> dict:
        self._require_initialized()
        return self.query.export_for_visualization()
