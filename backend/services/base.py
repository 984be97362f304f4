"""Base CRUD service with soft-delete aware, tenant-scoped queries.

Service classes for tenant-owned models inherit from this. Provides
get/list/create/update/soft-delete with automatic soft-delete filtering,
pagination and organization scoping.
"""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.base import BaseModel

ModelType = TypeVar("ModelType", bound=BaseModel)


class BaseService(Generic[ModelType]):
    """Generic CRUD service for any SQLAlchemy model.

    Usage:
        class AssignmentService(BaseService[AssignmentRule]):
            def __init__(self, db: AsyncSession):
                super().__init__(AssignmentRule, db)
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    def _scoped(self, query: Select, organization_id: Optional[str], include_deleted: bool = False) -> Select:
        """Apply tenant and soft-delete filters to ``query``."""
        if organization_id and hasattr(self.model, "organization_id"):
            query = query.where(self.model.organization_id == organization_id)
        if not include_deleted:
            query = query.where(self.model.is_deleted == False)  # noqa: E712
        return query

    # ─── Read ──────────────────────────────────────────────

    async def get(
        self,
        id: str,
        organization_id: Optional[str] = None,
        include_deleted: bool = False,
    ) -> Optional[ModelType]:
        """Get a single record by ID, optionally scoped to a tenant."""
        query = self._scoped(select(self.model).where(self.model.id == id), organization_id, include_deleted)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def list(
        self,
        organization_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
        order_by: Sequence[Any] = (),
        filters: Optional[dict[str, Any]] = None,
        conditions: Sequence[Any] = (),
    ) -> tuple[Sequence[ModelType], int]:
        """List records with pagination and filtering.

        Args:
            filters: Column equality filters; list values become IN filters
                and None values are ignored.
            conditions: Extra SQLAlchemy boolean clauses.
            order_by: Order clauses; defaults to newest first.

        Returns:
            Tuple of (items, total_count)
        """
        query = self._scoped(select(self.model), organization_id)
        count_query = self._scoped(select(func.count()).select_from(self.model), organization_id)

        clauses = list(conditions)
        for field, value in (filters or {}).items():
            if value is None or not hasattr(self.model, field):
                continue
            col = getattr(self.model, field)
            clauses.append(col.in_(value) if isinstance(value, list) else col == value)
        if clauses:
            query = query.where(*clauses)
            count_query = count_query.where(*clauses)

        query = query.order_by(*(order_by or (self.model.created_at.desc(),)))
        result = await self.db.execute(query.offset(offset).limit(limit))
        items = result.scalars().all()

        total = (await self.db.execute(count_query)).scalar() or 0
        return items, total

    # ─── Write ─────────────────────────────────────────────

    async def create(self, data: dict[str, Any]) -> ModelType:
        """Create and flush a new record."""
        instance = self.model(**data)
        self.db.add(instance)
        await self.db.flush()
        return instance

    async def update(
        self,
        id: str,
        data: dict[str, Any],
        organization_id: Optional[str] = None,
    ) -> Optional[ModelType]:
        """Partially update a record. None values are skipped.

        Returns:
            Updated model instance or None if not found
        """
        instance = await self.get(id, organization_id)
        if not instance:
            return None

        for key, value in data.items():
            if value is not None and hasattr(instance, key):
                setattr(instance, key, value)

        await self.db.flush()
        return instance

    async def soft_delete(self, id: str, organization_id: Optional[str] = None) -> bool:
        """Soft-delete a record.

        Returns:
            True if deleted, False if not found
        """
        instance = await self.get(id, organization_id)
        if not instance:
            return False

        instance.soft_delete()
        await self.db.flush()
        return True
