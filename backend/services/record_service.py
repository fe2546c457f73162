"""Database-backed record store for the record actions.

Each call opens its own short session and commits immediately: record
actions are side effects and are not rolled back if a later step fails.
"""

import copy
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models.workflow_record import WorkflowRecord


def _to_dict(record: WorkflowRecord) -> dict:
    return {
        **copy.deepcopy(record.data or {}),
        "id": record.id,
        "collection": record.collection,
        "createdAt": record.created_at.isoformat() if record.created_at else None,
        "updatedAt": record.updated_at.isoformat() if record.updated_at else None,
    }


class RecordService:
    """Implements the record store used by create/update/delete_record."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _find(self, session: AsyncSession, tenant_id: str, collection: str, record_id: str):
        result = await session.execute(
            select(WorkflowRecord).where(
                WorkflowRecord.id == record_id,
                WorkflowRecord.tenant_id == tenant_id,
                WorkflowRecord.collection == collection,
            )
        )
        return result.scalar_one_or_none()

    async def create(self, tenant_id: str, collection: str, data: dict) -> dict:
        async with self._session_factory() as session:
            record = WorkflowRecord(tenant_id=tenant_id, collection=collection, data=copy.deepcopy(data))
            session.add(record)
            await session.commit()
            await session.refresh(record)
            return _to_dict(record)

    async def update(self, tenant_id: str, collection: str, record_id: str, data: dict) -> Optional[dict]:
        async with self._session_factory() as session:
            record = await self._find(session, tenant_id, collection, record_id)
            if record is None:
                return None
            # Reassign so the JSON column is marked dirty
            record.data = {**(record.data or {}), **copy.deepcopy(data)}
            await session.commit()
            await session.refresh(record)
            return _to_dict(record)

    async def delete(self, tenant_id: str, collection: str, record_id: str) -> bool:
        async with self._session_factory() as session:
            record = await self._find(session, tenant_id, collection, record_id)
            if record is None:
                return False
            await session.delete(record)
            await session.commit()
            return True

    async def get(self, tenant_id: str, collection: str, record_id: str) -> Optional[dict]:
        async with self._session_factory() as session:
            record = await self._find(session, tenant_id, collection, record_id)
            return _to_dict(record) if record else None
