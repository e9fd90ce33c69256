"""SIKG - adaptive change-impact graph for regression test selection."""

__version__ = "0.1.0"
