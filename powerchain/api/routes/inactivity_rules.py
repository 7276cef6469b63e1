"""Inactivity rule API endpoints."""
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from powerchain.api.schemas import (
    ApiListResponse,
    ApiResponse,
    InactivityRuleCreate,
    InactivityRuleResponse,
    InactivityRuleUpdate,
)
from powerchain.db.database import get_db
from powerchain.db.models import InactivityRule, Node

router = APIRouter()


@router.get("/inactivity-rules", response_model=ApiListResponse[InactivityRuleResponse])
async def list_rules(
    node_id: str | None = Query(None, description="Filter by node"),
    db: AsyncSession = Depends(get_db),
):
    """List inactivity rules."""
    query = select(InactivityRule)
    if node_id:
        query = query.where(InactivityRule.node_id == node_id)
    result = await db.execute(query.order_by(InactivityRule.created_at))
    rules = result.scalars().all()
    return ApiListResponse(
        data=[InactivityRuleResponse.model_validate(r) for r in rules],
        total=len(rules),
    )


@router.post(
    "/inactivity-rules",
    response_model=ApiResponse[InactivityRuleResponse],
    status_code=201,
)
async def create_rule(
    rule_data: InactivityRuleCreate,
    db: AsyncSession = Depends(get_db),
):
    """Create the inactivity rule of a node (one per node)."""
    if await db.get(Node, rule_data.node_id) is None:
        raise HTTPException(status_code=404, detail="Node not found")

    existing = await db.execute(
        select(InactivityRule).where(InactivityRule.node_id == rule_data.node_id)
    )
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=409, detail="Node already has an inactivity rule"
        )

    rule = InactivityRule(
        node_id=rule_data.node_id,
        timeout_minutes=rule_data.timeout_minutes,
        monitoring_criteria=rule_data.monitoring_criteria.model_dump(exclude_none=True),
        is_enabled=rule_data.is_enabled,
    )
    db.add(rule)
    await db.flush()
    await db.refresh(rule)

    return ApiResponse(
        data=InactivityRuleResponse.model_validate(rule),
        message="Inactivity rule created",
    )


@router.patch(
    "/inactivity-rules/{rule_id}",
    response_model=ApiResponse[InactivityRuleResponse],
)
async def update_rule(
    rule_id: str,
    rule_data: InactivityRuleUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Update timeout, criteria or enabled flag."""
    rule = await db.get(InactivityRule, rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Inactivity rule not found")

    if rule_data.timeout_minutes is not None:
        rule.timeout_minutes = rule_data.timeout_minutes
    if rule_data.monitoring_criteria is not None:
        rule.monitoring_criteria = rule_data.monitoring_criteria.model_dump(
            exclude_none=True
        )
    if rule_data.is_enabled is not None:
        rule.is_enabled = rule_data.is_enabled

    await db.flush()
    await db.refresh(rule)
    return ApiResponse(
        data=InactivityRuleResponse.model_validate(rule),
        message="Inactivity rule updated",
    )


@router.delete("/inactivity-rules/{rule_id}", response_model=ApiResponse[dict])
async def delete_rule(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
):
    """Delete an inactivity rule."""
    rule = await db.get(InactivityRule, rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Inactivity rule not found")
    await db.delete(rule)
    await db.flush()
    return ApiResponse(data={"id": rule_id}, message="Inactivity rule deleted")
