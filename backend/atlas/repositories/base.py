"""
Base repository class with common CRUD operations.

Subclass with the `model` attribute set to a SQLAlchemy model. Repositories
commit their own writes so callers can treat each call as one unit of work.
"""
from typing import Generic, Optional, Type, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

T = TypeVar("T", bound=DeclarativeBase)


class BaseRepository(Generic[T]):
    """Generic base repository for CRUD operations."""

    model: Type[T]

    def __init__(self, db: AsyncSession):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy async session
        """
        self.db = db

    async def get_by_id(self, id: UUID) -> Optional[T]:
        """
        Get a single record by ID.

        Returns:
            Record if found, None otherwise
        """
        result = await self.db.execute(
            select(self.model).where(self.model.id == id)
        )
        return result.scalar_one_or_none()

    async def create(self, entity: T) -> T:
        """
        Create a new record.

        Returns:
            Created entity with ID populated
        """
        self.db.add(entity)
        await self.db.commit()
        await self.db.refresh(entity)
        return entity

    async def update(self, entity: T) -> T:
        """Commit pending changes on an entity and reload it."""
        await self.db.commit()
        await self.db.refresh(entity)
        return entity

    async def count_where(self, *conditions) -> int:
        stmt = select(func.count()).select_from(self.model)
        if conditions:
            stmt = stmt.where(*conditions)
        result = await self.db.execute(stmt)
        return result.scalar_one()
