"""Pydantic schemas for API request/response validation."""
from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator

from powerchain.utils.network import MAC_PATTERN, normalize_mac

T = TypeVar("T")

NodeKindLiteral = Literal["physical", "hypervisor_host", "container_host", "vm", "container"]


# ============== Node Schemas ==============


class NodeCreate(BaseModel):
    """Schema for registering a node.

    Example:
        ```json
        {
            "name": "nas",
            "kind": "physical",
            "ip_address": "192.168.1.10",
            "mac_address": "00:11:22:33:44:55",
            "ssh_user": "admin",
            "ssh_password": "secret"
        }
        ```
    """

    name: str = Field(..., min_length=1, max_length=100, examples=["nas", "pve1"])
    kind: NodeKindLiteral
    ip_address: str | None = Field(None, examples=["192.168.1.10"])
    mac_address: str | None = Field(
        None,
        description="MAC address in format XX:XX:XX:XX:XX:XX (required for Wake-on-LAN)",
    )
    ssh_user: str | None = None
    ssh_password: str | None = Field(None, description="Stored encrypted")
    api_url: str | None = Field(
        None,
        description="Platform API base URL (hypervisor/container hosts)",
        examples=["https://pve1:8006", "http://docker1:2375"],
    )
    api_credentials: dict[str, Any] | None = Field(
        None,
        description="Platform API credentials, stored encrypted. Proxmox: "
        "token_id + token_secret, or username + password",
    )
    capabilities: dict[str, Any] | None = Field(
        None, description="Platform options such as verify_ssl or api_version"
    )
    platform_ref: dict[str, Any] | None = None
    parent_id: str | None = Field(None, description="Structural host of a VM/container")
    confirm_before_shutdown: bool = False

    @field_validator("mac_address")
    @classmethod
    def validate_mac(cls, v: str | None) -> str | None:
        """Validate and normalize MAC address."""
        if v is None:
            return v
        if not MAC_PATTERN.match(v):
            raise ValueError(f"Invalid MAC address format: {v}")
        return normalize_mac(v)


class NodeResponse(BaseModel):
    """Schema for node response. Credentials are never returned."""

    id: str
    name: str
    kind: str
    status: str
    ip_address: str | None
    mac_address: str | None
    ssh_user: str | None
    api_url: str | None
    capabilities: dict[str, Any] | None
    platform_ref: dict[str, Any] | None
    parent_id: str | None
    configured: bool
    confirm_before_shutdown: bool
    has_ssh_credentials: bool
    has_api_credentials: bool
    created_at: datetime | None
    updated_at: datetime | None

    @classmethod
    def from_node(cls, node) -> "NodeResponse":
        """Create response from Node model."""
        return cls(
            id=node.id,
            name=node.name,
            kind=node.kind,
            status=node.status,
            ip_address=node.ip_address,
            mac_address=node.mac_address,
            ssh_user=node.ssh_user,
            api_url=node.api_url,
            capabilities=node.capabilities,
            platform_ref=node.platform_ref,
            parent_id=node.parent_id,
            configured=node.configured,
            confirm_before_shutdown=node.confirm_before_shutdown,
            has_ssh_credentials=bool(node.ssh_credentials_encrypted),
            has_api_credentials=bool(node.api_credentials_encrypted),
            created_at=node.created_at,
            updated_at=node.updated_at,
        )


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str


class DiscoveredResourceSchema(BaseModel):
    """A VM, LXC or container reported by a host's platform API."""

    model_config = ConfigDict(from_attributes=True)

    name: str
    kind: Literal["vm", "container"]
    status: str
    platform_ref: dict[str, Any]


class ImportRequest(BaseModel):
    resources: list[DiscoveredResourceSchema] = Field(..., min_length=1)


# ============== Dependency Schemas ==============


class DependencyLinkCreate(BaseModel):
    """Logical dependency: ``child_id`` needs ``parent_id`` available."""

    parent_id: str
    child_id: str


class DependencyLinkResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    parent_id: str
    child_id: str
    is_structural: bool
    created_at: datetime | None


class GraphNode(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    kind: str
    status: str
    parent_id: str | None


class DependencyGraphResponse(BaseModel):
    nodes: list[GraphNode]
    links: list[DependencyLinkResponse]


class NodeDependenciesResponse(BaseModel):
    """Dependency view of one node."""

    upstream_chain: list[GraphNode]
    structural_descendants: list[GraphNode]
    downstream_dependents: list[GraphNode]
    is_shared_dependency: bool


# ============== Cascade Schemas ==============


class CascadeRequest(BaseModel):
    node_id: str


class CascadeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    node_id: str
    type: str
    status: str
    current_step: int
    total_steps: int
    failed_step: int | None
    error_code: str | None
    error_message: str | None
    started_at: datetime | None
    completed_at: datetime | None


# ============== Inactivity Rule Schemas ==============


class MonitoringCriteria(BaseModel):
    """Activity checks, OR'd together. No enabled check means always active."""

    last_access: bool = True
    network_connections: bool = False
    cpu_ram_activity: bool = False
    cpu_threshold: float | None = Field(None, ge=0)
    ram_threshold: float | None = Field(None, ge=0, le=1)


class InactivityRuleCreate(BaseModel):
    node_id: str
    timeout_minutes: int = Field(30, ge=1, le=10080)
    monitoring_criteria: MonitoringCriteria = Field(default_factory=MonitoringCriteria)
    is_enabled: bool = True


class InactivityRuleUpdate(BaseModel):
    timeout_minutes: int | None = Field(None, ge=1, le=10080)
    monitoring_criteria: MonitoringCriteria | None = None
    is_enabled: bool | None = None


class InactivityRuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    node_id: str
    timeout_minutes: int
    monitoring_criteria: dict[str, Any]
    is_enabled: bool
    created_at: datetime | None
    updated_at: datetime | None


# ============== Operation Log Schemas ==============


class OperationLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    timestamp: datetime | None
    level: str
    source: str
    message: str
    reason: str | None
    details: dict[str, Any] | None
    node_id: str | None
    cascade_id: str | None
    error_code: str | None


# ============== Generic Responses ==============


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper."""

    success: bool = True
    data: T
    message: str | None = None


class ApiListResponse(BaseModel, Generic[T]):
    """Generic API list response wrapper."""

    success: bool = True
    data: list[T]
    total: int
