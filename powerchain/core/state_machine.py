"""Node status vocabulary and the cascade state machine."""
from enum import Enum
from typing import ClassVar


class NodeKind(str, Enum):
    """What a node is, which decides how it is controlled."""

    PHYSICAL = "physical"
    HYPERVISOR_HOST = "hypervisor_host"
    CONTAINER_HOST = "container_host"
    VM = "vm"
    CONTAINER = "container"


HOST_KINDS = (NodeKind.HYPERVISOR_HOST.value, NodeKind.CONTAINER_HOST.value)
GUEST_KINDS = (NodeKind.VM.value, NodeKind.CONTAINER.value)


class NodeStatus(str, Enum):
    """Status shared by every connector."""

    ONLINE = "online"
    OFFLINE = "offline"
    RUNNING = "running"
    STOPPED = "stopped"
    PAUSED = "paused"
    UNKNOWN = "unknown"
    ERROR = "error"


ACTIVE_STATUSES = frozenset({NodeStatus.ONLINE.value, NodeStatus.RUNNING.value})
INACTIVE_STATUSES = frozenset(
    {NodeStatus.OFFLINE.value, NodeStatus.STOPPED.value, NodeStatus.PAUSED.value}
)


def is_active(status: str | None) -> bool:
    """Return True for online-equivalent statuses (online, running)."""
    return status in ACTIVE_STATUSES


def is_inactive(status: str | None) -> bool:
    """Return True for stopped-equivalent statuses (offline, stopped, paused)."""
    return status in INACTIVE_STATUSES


class StepStatus(str, Enum):
    """Per-node sub-state reported in cascade progress events only."""

    PENDING = "pending"
    SKIPPED = "skipped"
    STARTING = "starting"
    STOPPING = "stopping"
    DONE = "done"
    FAILED = "failed"


class InvalidStateTransition(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from '{from_state}' to '{to_state}'"
        )


class CascadeStateMachine:
    """State machine for a single cascade run.

    States:
        pending: Created, waiting for the engine to pick it up
        in_progress: Steps are executing
        completed: Every step reached a terminal outcome without a fatal error
        failed: A step failed fatally; earlier steps are not rolled back
    """

    STATES: ClassVar[list[str]] = [
        "pending",
        "in_progress",
        "completed",
        "failed",
    ]

    ACTIVE_STATES: ClassVar[tuple[str, ...]] = ("pending", "in_progress")

    TRANSITIONS: ClassVar[dict[str, list[str]]] = {
        "pending": ["in_progress", "failed"],
        "in_progress": ["completed", "failed"],
        "completed": [],
        "failed": [],
    }

    @classmethod
    def can_transition(cls, from_state: str, to_state: str) -> bool:
        """Check if a state transition is valid."""
        return to_state in cls.TRANSITIONS.get(from_state, [])

    @classmethod
    def transition(cls, from_state: str, to_state: str) -> str:
        """Perform a state transition.

        Raises:
            InvalidStateTransition: If the transition is not valid
        """
        if not cls.can_transition(from_state, to_state):
            raise InvalidStateTransition(from_state, to_state)
        return to_state

    @classmethod
    def is_terminal(cls, state: str) -> bool:
        """Terminal states accept no further transitions."""
        return state in cls.STATES and not cls.TRANSITIONS[state]
