"""Base repository: primary-key lookup, insert and delete shared by all repositories."""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crm_sync.domain.exceptions import ResourceNotFoundException
from crm_sync.infrastructure.persistence.database import Base


class BaseRepository[ModelType: Base]:
    """Subclasses expose DTO-returning methods; ORM objects stay inside."""

    def __init__(self, db: AsyncSession, model: type[ModelType]) -> None:
        self.db = db
        self.model = model

    async def _get(
        self, entity_id: str, *, for_update: bool = False, fresh: bool = False
    ) -> ModelType | None:
        """Row by primary key. ``fresh`` reloads attributes after a bulk UPDATE."""
        model: Any = self.model
        stmt = select(self.model).where(model.id == entity_id)
        if for_update:
            stmt = stmt.with_for_update()
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_or_raise(self, entity_id: str, **kwargs: Any) -> ModelType:
        obj = await self._get(entity_id, **kwargs)
        if obj is None:
            raise ResourceNotFoundException(self.model.__name__, entity_id)
        return obj

    async def _add(self, obj: ModelType) -> ModelType:
        """Insert, flush and refresh (server defaults such as timestamps)."""
        self.db.add(obj)
        await self.db.flush()
        await self.db.refresh(obj)
        return obj

    async def _save(self, obj: ModelType) -> ModelType:
        await self.db.flush()
        await self.db.refresh(obj)
        return obj
