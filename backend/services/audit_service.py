"""Audit logger: append-only workflow log.

Every lifecycle event is written as a WorkflowLog row and mirrored to
structlog. Entries are never updated; the read path is filter + paginate.
"""

from datetime import datetime, timezone
from typing import Any, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import LogLevel
from db.models.workflow_log import WorkflowLog
from services.base import BaseService

logger = structlog.get_logger(__name__)

_STRUCTLOG_LEVELS = {
    LogLevel.DEBUG.value: "debug",
    LogLevel.INFO.value: "info",
    LogLevel.WARNING.value: "warning",
    LogLevel.ERROR.value: "error",
}
_RESERVED_KEYS = {"event", "tenant_id", "workflow_id", "execution_id", "audit"}


class AuditLogger(BaseService[WorkflowLog]):
    """Writes and queries workflow audit entries."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowLog, db)

    async def log(
        self,
        tenant_id: str,
        workflow_id: str,
        level: LogLevel | str,
        message: str,
        context: Optional[dict[str, Any]] = None,
        execution_id: Optional[str] = None,
    ) -> WorkflowLog:
        """Append one entry."""
        level = LogLevel(level).value
        entry = WorkflowLog(
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            execution_id=execution_id,
            level=level,
            message=message,
            context=context or {},
            timestamp=datetime.now(timezone.utc),
        )
        self.db.add(entry)
        await self.db.flush()

        emit = getattr(logger, _STRUCTLOG_LEVELS[level])
        emit(
            message,
            audit=True,
            tenant_id=tenant_id,
            workflow_id=workflow_id,
            execution_id=execution_id,
            **{k: v for k, v in (context or {}).items() if k not in _RESERVED_KEYS},
        )
        return entry

    async def get_logs(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        execution_id: Optional[str] = None,
        level: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[Sequence[WorkflowLog], int]:
        """Query entries, newest first."""
        conditions = []
        if start is not None:
            conditions.append(WorkflowLog.timestamp >= start)
        if end is not None:
            conditions.append(WorkflowLog.timestamp <= end)
        return await self.list(
            tenant_id,
            offset=offset,
            limit=limit,
            order_by="timestamp",
            order_desc=True,
            filters={"workflow_id": workflow_id, "execution_id": execution_id, "level": level},
            conditions=conditions,
        )
