"""Operation log API endpoints."""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from powerchain.api.schemas import ApiListResponse, OperationLogResponse
from powerchain.core.operation_log import OperationLogService
from powerchain.db.database import get_db

router = APIRouter()


@router.get("/logs", response_model=ApiListResponse[OperationLogResponse])
async def list_logs(
    node_id: str | None = Query(None, description="Filter by node"),
    cascade_id: str | None = Query(None, description="Filter by cascade"),
    source: str | None = Query(None, description="Filter by component"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Orchestration decisions, newest first."""
    entries = await OperationLogService.list_entries(
        db,
        node_id=node_id,
        cascade_id=cascade_id,
        source=source,
        limit=limit,
        offset=offset,
    )
    return ApiListResponse(
        data=[OperationLogResponse.model_validate(e) for e in entries],
        total=len(entries),
    )
