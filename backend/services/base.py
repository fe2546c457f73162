"""Base service with tenant-scoped queries.

Every workflow-engine service inherits from this. Provides lookup by id,
filtered and paginated listing and creation; every query is scoped to a
``tenant_id`` and nothing is ever read across tenants.
"""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.base import TenantModel

ModelType = TypeVar("ModelType", bound=TenantModel)


class BaseService(Generic[ModelType]):
    """Generic CRUD service for any tenant-owned SQLAlchemy model.

    Usage:
        class ScheduleService(BaseService[WorkflowSchedule]):
            def __init__(self, db: AsyncSession):
                super().__init__(WorkflowSchedule, db)
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    # ─── Read ──────────────────────────────────────────────

    async def get_by_id(self, id: str, tenant_id: str) -> Optional[ModelType]:
        """Get a single record scoped to a tenant."""
        query = select(self.model).where(
            self.model.id == id,
            self.model.tenant_id == tenant_id,
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list(
        self,
        tenant_id: str,
        offset: int = 0,
        limit: int = 50,
        order_by: str = "created_at",
        order_desc: bool = True,
        filters: dict[str, Any] = None,
        conditions: Sequence[Any] = (),
    ) -> tuple[Sequence[ModelType], int]:
        """List records with pagination, filtering, and sorting.

        ``filters`` are column equality (or IN for lists) checks; ``conditions``
        are arbitrary SQL expressions, e.g. time-range bounds.

        Returns:
            Tuple of (items, total_count)
        """
        query = select(self.model).where(self.model.tenant_id == tenant_id)
        count_query = select(func.count()).select_from(self.model).where(
            self.model.tenant_id == tenant_id
        )

        # Additional filters
        if filters:
            for field, value in filters.items():
                if value is None or not hasattr(self.model, field):
                    continue
                col = getattr(self.model, field)
                if isinstance(value, list):
                    query = query.where(col.in_(value))
                    count_query = count_query.where(col.in_(value))
                else:
                    query = query.where(col == value)
                    count_query = count_query.where(col == value)

        for condition in conditions:
            query = query.where(condition)
            count_query = count_query.where(condition)

        # Sorting
        if hasattr(self.model, order_by):
            col = getattr(self.model, order_by)
            query = query.order_by(col.desc() if order_desc else col.asc())

        # Pagination
        query = query.offset(offset).limit(limit)

        # Execute
        result = await self.db.execute(query)
        items = result.scalars().all()

        count_result = await self.db.execute(count_query)
        total = count_result.scalar() or 0

        return items, total

    # ─── Create ────────────────────────────────────────────

    async def create(self, data: dict[str, Any]) -> ModelType:
        """Create a new record.

        Args:
            data: Dict of field values, including ``tenant_id``

        Returns:
            Created model instance
        """
        if "id" not in data:
            data["id"] = str(uuid4())

        instance = self.model(**data)
        self.db.add(instance)
        await self.db.flush()
        await self.db.refresh(instance)
        return instance
