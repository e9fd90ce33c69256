"""Closed-loop learning: MDP abstraction, feedback, policy and weight updates."""

from sikg.learning.coordinator import RLCoordinator, RLSystemState
from sikg.learning.feedback import FeedbackProcessor, LearningSignal, ProcessedFeedback
from sikg.learning.mdp import MDPFramework
from sikg.learning.policy import PolicyManager
from sikg.learning.weights import WeightUpdateEngine

__all__ = [
    "FeedbackProcessor",
    "LearningSignal",
    "MDPFramework",
    "PolicyManager",
    "ProcessedFeedback",
    "RLCoordinator",
    "RLSystemState",
    "WeightUpdateEngine",
]
