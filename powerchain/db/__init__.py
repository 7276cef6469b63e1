"""Database module."""
from powerchain.db.database import close_db, get_db, init_db
from powerchain.db.models import (
    Base,
    Cascade,
    DependencyLink,
    InactivityRule,
    Node,
    OperationLog,
)

__all__ = [
    "get_db",
    "init_db",
    "close_db",
    "Base",
    "Node",
    "DependencyLink",
    "Cascade",
    "InactivityRule",
    "OperationLog",
]
