"""Custom exceptions for SIKG."""


class SIKGError(Exception):
    """Base exception for all SIKG errors."""


class ConfigError(SIKGError):
    """Configuration-related errors."""


class GraphError(SIKGError):
    """Knowledge graph errors."""


class GraphLoadError(GraphError):
    """A persisted graph snapshot exists but could not be read or parsed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Failed to load graph snapshot '{path}': {reason}")
        self.path = path


class UnknownNodeError(GraphError):
    """Raised when an operation names a node that is not in the graph."""

    def __init__(self, node_id: str):
        super().__init__(f"Unknown node: {node_id}")
        self.node_id = node_id


class SessionError(SIKGError):
    """Test session lifecycle errors."""


class CycleInProgressError(SessionError):
    """Raised when a second analysis cycle is started against the same graph."""

    def __init__(self, session_id: str):
        super().__init__(
            f"Analysis cycle already in progress (session '{session_id}'). "
            "Ingest its results or abort it first."
        )
        self.session_id = session_id


class PolicyStateError(SIKGError):
    """Persisted policy / RL state could not be interpreted."""
