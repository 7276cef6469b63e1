"""Node management API endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from powerchain.api.schemas import (
    ApiListResponse,
    ApiResponse,
    ConnectionTestResponse,
    DiscoveredResourceSchema,
    ImportRequest,
    NodeCreate,
    NodeResponse,
)
from powerchain.connectors.base import ConnectorError, DiscoveredResource
from powerchain.core.dependency_graph import LinkValidationError, NodeNotFoundError
from powerchain.core.node_service import NodeService, NodeValidationError
from powerchain.db.database import get_db

router = APIRouter()

# Configuration problems on our side rather than a failing remote platform
CAPABILITY_ERRORS = {"NO_API_URL", "NO_MAC_ADDRESS", "DECRYPT_FAILED"}


@router.get("/nodes", response_model=ApiListResponse[NodeResponse])
async def list_nodes(
    kind: str | None = Query(None, description="Filter by kind"),
    parent_id: str | None = Query(None, description="Filter by structural host"),
    status: str | None = Query(None, description="Filter by status"),
    db: AsyncSession = Depends(get_db),
):
    """List all nodes with optional filtering."""
    nodes = await NodeService.list_nodes(db, kind=kind, parent_id=parent_id, status=status)
    return ApiListResponse(
        data=[NodeResponse.from_node(n) for n in nodes],
        total=len(nodes),
    )


@router.post("/nodes", response_model=ApiResponse[NodeResponse], status_code=201)
async def create_node(
    node_data: NodeCreate,
    db: AsyncSession = Depends(get_db),
):
    """Register a new node."""
    try:
        node = await NodeService.register_node(db, **node_data.model_dump())
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Parent node not found")
    except (NodeValidationError, LinkValidationError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    return ApiResponse(
        data=NodeResponse.from_node(node),
        message="Node registered successfully",
    )


@router.get("/nodes/{node_id}", response_model=ApiResponse[NodeResponse])
async def get_node(
    node_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Get node details."""
    try:
        node = await NodeService.get_node(db, node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Node not found")
    return ApiResponse(data=NodeResponse.from_node(node))


@router.delete("/nodes/{node_id}", response_model=ApiResponse[dict])
async def delete_node(
    node_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Delete a node together with everything it hosts."""
    try:
        deleted = await NodeService.delete_node(db, node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Node not found")
    return ApiResponse(
        data={"id": node_id, "deleted": deleted},
        message=f"Deleted {len(deleted)} nodes",
    )


@router.post("/nodes/{node_id}/test", response_model=ApiResponse[ConnectionTestResponse])
async def test_node_connection(
    node_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Test the node's control plane with its stored credentials."""
    try:
        result = await NodeService.test_connection(db, node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Node not found")
    return ApiResponse(
        data=ConnectionTestResponse(success=result.success, message=result.message)
    )


@router.get(
    "/nodes/{node_id}/discover",
    response_model=ApiListResponse[DiscoveredResourceSchema],
)
async def discover_resources(
    node_id: str,
    db: AsyncSession = Depends(get_db),
):
    """List VMs/LXCs or containers available on a host."""
    try:
        resources = await NodeService.discover_resources(db, node_id)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Node not found")
    except ConnectorError as e:
        raise HTTPException(
            status_code=400 if e.code in CAPABILITY_ERRORS else 502,
            detail=f"{e.code}: {e.message}",
        )
    return ApiListResponse(
        data=[DiscoveredResourceSchema.model_validate(r) for r in resources],
        total=len(resources),
    )


@router.post(
    "/nodes/{node_id}/import",
    response_model=ApiListResponse[NodeResponse],
    status_code=201,
)
async def import_resources(
    node_id: str,
    request: ImportRequest,
    db: AsyncSession = Depends(get_db),
):
    """Create child nodes for discovered resources. Already imported ones are skipped."""
    resources = [DiscoveredResource(**r.model_dump()) for r in request.resources]
    try:
        nodes = await NodeService.import_discovered(db, node_id, resources)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Node not found")
    except (NodeValidationError, LinkValidationError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ApiListResponse(
        data=[NodeResponse.from_node(n) for n in nodes],
        total=len(nodes),
    )
