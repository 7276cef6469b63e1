"""Service for recording orchestration decisions."""
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from powerchain.db.models import OperationLog

logger = logging.getLogger(__name__)

_LEVELS = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class OperationLogService:
    """Append-only operation log, mirrored to the application logger."""

    @staticmethod
    async def log(
        db: AsyncSession,
        level: str,
        source: str,
        message: str,
        reason: str | None = None,
        details: dict[str, Any] | None = None,
        node_id: str | None = None,
        cascade_id: str | None = None,
        error_code: str | None = None,
    ) -> OperationLog:
        """
        Record an orchestration decision.

        Args:
            db: Database session (caller commits)
            level: info, warn or error
            source: Emitting component (cascade, monitor, nodes, ...)
            message: Human readable summary
            reason: Why the decision was taken
            details: Optional structured context
            node_id: Node the entry is about
            cascade_id: Cascade the entry belongs to
            error_code: Failure code, if any

        Returns:
            Created OperationLog
        """
        entry = OperationLog(
            level=level,
            source=source,
            message=message,
            reason=reason,
            details=details,
            node_id=node_id,
            cascade_id=cascade_id,
            error_code=error_code,
        )
        db.add(entry)

        suffix = f" ({reason})" if reason else ""
        logger.log(_LEVELS.get(level, logging.INFO), f"[{source}] {message}{suffix}")

        return entry

    @staticmethod
    async def list_entries(
        db: AsyncSession,
        node_id: str | None = None,
        cascade_id: str | None = None,
        source: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[OperationLog]:
        """Newest entries first."""
        query = select(OperationLog)
        if node_id:
            query = query.where(OperationLog.node_id == node_id)
        if cascade_id:
            query = query.where(OperationLog.cascade_id == cascade_id)
        if source:
            query = query.where(OperationLog.source == source)
        query = query.order_by(OperationLog.timestamp.desc()).offset(offset).limit(limit)
        result = await db.execute(query)
        return list(result.scalars().all())
