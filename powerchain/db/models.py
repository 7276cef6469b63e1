"""SQLAlchemy database models."""
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, ForeignKey, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Node(Base):
    """A controllable unit: machine, host, VM or container."""

    __tablename__ = "nodes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, index=True
    )  # physical, hypervisor_host, container_host, vm, container
    status: Mapped[str] = mapped_column(
        String(20), default="unknown", nullable=False, index=True
    )  # online, offline, running, stopped, paused, unknown, error

    # Network identity
    ip_address: Mapped[str | None] = mapped_column(String(45))  # IPv6 compatible
    mac_address: Mapped[str | None] = mapped_column(String(17))

    # SSH access
    ssh_user: Mapped[str | None] = mapped_column(String(100))
    ssh_credentials_encrypted: Mapped[str | None] = mapped_column(Text)

    # Platform API access (hosts only)
    api_url: Mapped[str | None] = mapped_column(String(500))
    api_credentials_encrypted: Mapped[str | None] = mapped_column(Text)  # Encrypted JSON bundle
    capabilities: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    # Reference understood only by the owning connector,
    # e.g. {"node": "pve1", "vmid": 101, "type": "qemu"} or {"container_id": "abc"}
    platform_ref: Mapped[dict[str, Any] | None] = mapped_column(JSON)

    # Structural owner (hypervisor/container host)
    parent_id: Mapped[str | None] = mapped_column(
        ForeignKey("nodes.id", ondelete="CASCADE"), nullable=True, index=True
    )

    configured: Mapped[bool] = mapped_column(default=True)
    confirm_before_shutdown: Mapped[bool] = mapped_column(default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )

    parent: Mapped["Node | None"] = relationship(
        "Node",
        back_populates="children",
        remote_side="Node.id",
    )
    children: Mapped[list["Node"]] = relationship(
        "Node",
        back_populates="parent",
    )


class DependencyLink(Base):
    """Directed edge parent -> child.

    Structural links mean the parent hosts the child. Logical links mean the
    child needs the parent available.
    """

    __tablename__ = "dependency_links"
    __table_args__ = (
        UniqueConstraint("parent_id", "child_id", name="uq_dependency_parent_child"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    parent_id: Mapped[str] = mapped_column(
        ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    child_id: Mapped[str] = mapped_column(
        ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    is_structural: Mapped[bool] = mapped_column(default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(default=func.now())


class Cascade(Base):
    """One start or stop orchestration run."""

    __tablename__ = "cascades"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    node_id: Mapped[str] = mapped_column(
        ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(10), nullable=False)  # start, stop
    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False, index=True
    )  # pending, in_progress, completed, failed

    current_step: Mapped[int] = mapped_column(default=0)
    total_steps: Mapped[int] = mapped_column(default=0)

    # Failure details (1-based step index)
    failed_step: Mapped[int | None] = mapped_column(nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(default=func.now())
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)


class InactivityRule(Base):
    """Automatic shutdown rule for one node."""

    __tablename__ = "inactivity_rules"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    node_id: Mapped[str] = mapped_column(
        ForeignKey("nodes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    timeout_minutes: Mapped[int] = mapped_column(default=30)
    # {"last_access": bool, "network_connections": bool, "cpu_ram_activity": bool,
    #  "cpu_threshold": float, "ram_threshold": float}
    monitoring_criteria: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    is_enabled: Mapped[bool] = mapped_column(default=True)

    created_at: Mapped[datetime] = mapped_column(default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        default=func.now(), onupdate=func.now()
    )


class OperationLog(Base):
    """Append-only log of orchestration decisions."""

    __tablename__ = "operation_logs"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    timestamp: Mapped[datetime] = mapped_column(default=func.now(), index=True)
    level: Mapped[str] = mapped_column(String(10), nullable=False)  # info, warn, error
    source: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    node_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    cascade_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
