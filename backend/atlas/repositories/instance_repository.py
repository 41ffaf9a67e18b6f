"""
Repository for Instance entity database operations.
"""
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import desc, select, update

from atlas.models.instance import Instance, InstanceStatus, LIVE_INSTANCE_STATUSES
from atlas.repositories.base import BaseRepository


class InstanceRepository(BaseRepository[Instance]):
    """Repository for Instance database operations."""

    model = Instance

    async def list_by_status(self, statuses: Iterable[str]) -> List[Instance]:
        result = await self.db.execute(
            select(Instance)
            .where(Instance.status.in_(list(statuses)))
            .order_by(Instance.created_at)
        )
        return list(result.scalars().all())

    async def list_for_project(self, project_id: UUID, live_only: bool = False) -> List[Instance]:
        query = select(Instance).where(Instance.project_id == project_id)
        if live_only:
            query = query.where(Instance.status.in_(LIVE_INSTANCE_STATUSES))
        result = await self.db.execute(query.order_by(desc(Instance.created_at)))
        return list(result.scalars().all())

    async def count_live_for_user(self, user_id: UUID) -> int:
        """Count instances holding a port lease for a user."""
        return await self.count_where(
            Instance.user_id == user_id,
            Instance.status.in_(LIVE_INSTANCE_STATUSES),
        )

    async def update_status(self, id: UUID, status: str, **fields) -> Optional[Instance]:
        instance = await self.get_by_id(id)
        if not instance:
            return None

        instance.status = status
        for key, value in fields.items():
            setattr(instance, key, value)
        if status in (InstanceStatus.STOPPED.value, InstanceStatus.FAILED.value):
            instance.stopped_at = instance.stopped_at or datetime.utcnow()

        return await self.update(instance)

    async def touch(self, id: UUID, now: datetime) -> bool:
        """Record an access: bump the request counter and last_accessed."""
        result = await self.db.execute(
            update(Instance)
            .where(Instance.id == id)
            .values(request_count=Instance.request_count + 1, last_accessed=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount > 0
