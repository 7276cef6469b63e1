"""FastAPI dependencies."""
from powerchain.api.dependencies.engine import get_cascade_engine

__all__ = ["get_cascade_engine"]
