"""Change-impact propagation and test scoring."""

from sikg.impact.history import HistoryEnhancer
from sikg.impact.propagator import ChangeSet, ImpactPropagator, rank_impacts, select_tests

__all__ = ["ChangeSet", "HistoryEnhancer", "ImpactPropagator", "rank_impacts", "select_tests"]
