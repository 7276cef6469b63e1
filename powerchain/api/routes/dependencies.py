"""Dependency link API endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from powerchain.api.schemas import (
    ApiListResponse,
    ApiResponse,
    DependencyGraphResponse,
    DependencyLinkCreate,
    DependencyLinkResponse,
    GraphNode,
    NodeDependenciesResponse,
)
from powerchain.core.dependency_graph import (
    DependencyGraphService,
    LinkNotFoundError,
    LinkValidationError,
    StructuralLinkProtected,
)
from powerchain.db.database import get_db
from powerchain.db.models import Node

router = APIRouter()

LINK_ERROR_STATUS = {
    LinkValidationError.NODE_NOT_FOUND: 404,
    LinkValidationError.DUPLICATE_LINK: 409,
}


@router.post(
    "/dependencies",
    response_model=ApiResponse[DependencyLinkResponse],
    status_code=201,
)
async def create_dependency(
    link_data: DependencyLinkCreate,
    db: AsyncSession = Depends(get_db),
):
    """Declare that ``child_id`` needs ``parent_id`` available."""
    try:
        link = await DependencyGraphService.create_link(
            db, link_data.parent_id, link_data.child_id
        )
    except LinkValidationError as e:
        raise HTTPException(
            status_code=LINK_ERROR_STATUS.get(e.code, 400),
            detail=f"{e.code}: {e.message}",
        )
    return ApiResponse(
        data=DependencyLinkResponse.model_validate(link),
        message="Dependency created",
    )


@router.get("/dependencies", response_model=ApiListResponse[DependencyLinkResponse])
async def list_dependencies(
    node_id: str | None = Query(None, description="Only links touching this node"),
    db: AsyncSession = Depends(get_db),
):
    """List dependency links."""
    links = await DependencyGraphService.list_links(db, node_id=node_id)
    return ApiListResponse(
        data=[DependencyLinkResponse.model_validate(link) for link in links],
        total=len(links),
    )


@router.get("/dependencies/graph", response_model=ApiResponse[DependencyGraphResponse])
async def get_dependency_graph(
    db: AsyncSession = Depends(get_db),
):
    """Full graph: every node and every link."""
    result = await db.execute(select(Node).order_by(Node.name))
    nodes = result.scalars().all()
    links = await DependencyGraphService.list_links(db)
    return ApiResponse(
        data=DependencyGraphResponse(
            nodes=[GraphNode.model_validate(n) for n in nodes],
            links=[DependencyLinkResponse.model_validate(link) for link in links],
        )
    )


@router.get(
    "/nodes/{node_id}/dependencies",
    response_model=ApiResponse[NodeDependenciesResponse],
)
async def get_node_dependencies(
    node_id: str,
    db: AsyncSession = Depends(get_db),
):
    """What a node needs, what it hosts and what relies on it."""
    if await db.get(Node, node_id) is None:
        raise HTTPException(status_code=404, detail="Node not found")

    upstream = await DependencyGraphService.get_upstream_chain(db, node_id)
    hosted = await DependencyGraphService.get_structural_descendants(db, node_id)
    dependents = await DependencyGraphService.get_downstream_logical_dependents(db, node_id)
    shared = await DependencyGraphService.is_shared_dependency(db, node_id)

    return ApiResponse(
        data=NodeDependenciesResponse(
            upstream_chain=[GraphNode.model_validate(n) for n in upstream],
            structural_descendants=[GraphNode.model_validate(n) for n in hosted],
            downstream_dependents=[GraphNode.model_validate(n) for n in dependents],
            is_shared_dependency=shared,
        )
    )


@router.delete("/dependencies/{link_id}", response_model=ApiResponse[dict])
async def delete_dependency(
    link_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Delete a logical dependency. Structural links cannot be deleted."""
    try:
        await DependencyGraphService.delete_link(db, link_id)
    except LinkNotFoundError:
        raise HTTPException(status_code=404, detail="Dependency not found")
    except StructuralLinkProtected as e:
        raise HTTPException(status_code=403, detail=str(e))
    return ApiResponse(data={"id": link_id}, message="Dependency deleted")
