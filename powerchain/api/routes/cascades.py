"""Cascade API endpoints.

Start and stop return the pending cascade immediately; execution continues
in the background and is followed through GET or the events WebSocket.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from powerchain.api.dependencies import get_cascade_engine
from powerchain.api.schemas import (
    ApiListResponse,
    ApiResponse,
    CascadeRequest,
    CascadeResponse,
)
from powerchain.core.cascade_engine import CascadeAlreadyRunning, CascadeEngine
from powerchain.core.dependency_graph import NodeNotFoundError
from powerchain.db.database import get_db
from powerchain.db.models import Cascade

router = APIRouter()


async def _trigger(
    db: AsyncSession, engine: CascadeEngine, node_id: str, cascade_type: str
) -> Cascade:
    try:
        cascade = await engine.create_cascade(db, node_id, cascade_type)
    except NodeNotFoundError:
        raise HTTPException(status_code=404, detail="Node not found")
    except CascadeAlreadyRunning as e:
        raise HTTPException(
            status_code=409,
            detail=f"Cascade {e.cascade_id} is already running for this node",
        )
    # The background run reads the row from its own session
    await db.commit()
    engine.launch(cascade)
    return cascade


@router.post(
    "/cascades/start",
    response_model=ApiResponse[CascadeResponse],
    status_code=202,
)
async def start_cascade(
    request: CascadeRequest,
    db: AsyncSession = Depends(get_db),
    engine: CascadeEngine = Depends(get_cascade_engine),
):
    """Start a node and everything it depends on."""
    cascade = await _trigger(db, engine, request.node_id, "start")
    return ApiResponse(
        data=CascadeResponse.model_validate(cascade),
        message="Start cascade launched",
    )


@router.post(
    "/cascades/stop",
    response_model=ApiResponse[CascadeResponse],
    status_code=202,
)
async def stop_cascade(
    request: CascadeRequest,
    db: AsyncSession = Depends(get_db),
    engine: CascadeEngine = Depends(get_cascade_engine),
):
    """Stop a node, what it hosts, and dependencies nobody else needs."""
    cascade = await _trigger(db, engine, request.node_id, "stop")
    return ApiResponse(
        data=CascadeResponse.model_validate(cascade),
        message="Stop cascade launched",
    )


@router.get("/cascades", response_model=ApiListResponse[CascadeResponse])
async def list_cascades(
    node_id: str | None = Query(None, description="Filter by target node"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """List recent cascades, newest first."""
    query = select(Cascade)
    if node_id:
        query = query.where(Cascade.node_id == node_id)
    if status:
        query = query.where(Cascade.status == status)
    query = query.order_by(Cascade.started_at.desc()).limit(limit)
    result = await db.execute(query)
    cascades = result.scalars().all()
    return ApiListResponse(
        data=[CascadeResponse.model_validate(c) for c in cascades],
        total=len(cascades),
    )


@router.get("/cascades/{cascade_id}", response_model=ApiResponse[CascadeResponse])
async def get_cascade(
    cascade_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Get live progress of a cascade."""
    cascade = await db.get(Cascade, cascade_id)
    if cascade is None:
        raise HTTPException(status_code=404, detail="Cascade not found")
    return ApiResponse(data=CascadeResponse.model_validate(cascade))
