"""Orchestrator dependencies, overridable in tests."""
from powerchain.core.cascade_engine import CascadeEngine, cascade_engine


def get_cascade_engine() -> CascadeEngine:
    """Return the process-wide cascade engine."""
    return cascade_engine
