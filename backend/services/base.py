"""Base read service for SQLAlchemy models.

The SQL workflow store uses these for the plain lookups; writes that need
optimistic concurrency are issued directly by the store.
"""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.base import BaseModel

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseService(Generic[ModelType]):
    """Generic lookups for any SQLAlchemy model.

    Usage:
        class TemplateRecords(BaseService[WorkflowTemplate]):
            def __init__(self, db: AsyncSession):
                super().__init__(WorkflowTemplate, db)
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    async def get_by_id(self, id: str) -> Optional[ModelType]:
        """Get a single record by ID."""
        result = await self.db.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def list(
        self,
        order_by: str = "created_at",
        order_desc: bool = False,
        filters: dict[str, Any] = None,
    ) -> Sequence[ModelType]:
        """List records matching ``filters`` (lists become IN clauses)."""
        query = select(self.model)

        if filters:
            for field, value in filters.items():
                if hasattr(self.model, field):
                    col = getattr(self.model, field)
                    if isinstance(value, list):
                        query = query.where(col.in_(value))
                    else:
                        query = query.where(col == value)

        if hasattr(self.model, order_by):
            col = getattr(self.model, order_by)
            query = query.order_by(col.desc() if order_desc else col.asc())

        result = await self.db.execute(query)
        return result.scalars().all()

    async def exists(self, id: str) -> bool:
        query = select(func.count()).select_from(self.model).where(self.model.id == id)
        result = await self.db.execute(query)
        return (result.scalar() or 0) > 0
