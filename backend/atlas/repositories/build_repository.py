"""
Repository for Build entity database operations.
"""
from datetime import datetime
from typing import List, Optional
from uuid import UUID

from sqlalchemy import desc, select

from atlas.models.build import Build, BuildStatus, TERMINAL_BUILD_STATUSES
from atlas.repositories.base import BaseRepository


class BuildRepository(BaseRepository[Build]):
    """Repository for Build database operations."""

    model = Build

    async def list_for_project(self, project_id: UUID, limit: int = 50) -> List[Build]:
        """List builds for a project, newest first."""
        result = await self.db.execute(
            select(Build)
            .where(Build.project_id == project_id)
            .order_by(desc(Build.queued_at))
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_unfinished(self) -> List[Build]:
        """Builds left queued or running, e.g. by a process restart."""
        result = await self.db.execute(
            select(Build).where(Build.status.notin_(TERMINAL_BUILD_STATUSES))
        )
        return list(result.scalars().all())

    async def create_build(self, project_id: UUID, user_id: UUID) -> Build:
        build = Build(
            project_id=project_id,
            user_id=user_id,
            status=BuildStatus.QUEUED.value,
            queued_at=datetime.utcnow(),
        )
        return await self.create(build)

    async def update_status(self, id: UUID, status: str, **fields) -> Optional[Build]:
        """
        Set a build's status together with any other columns.

        Moving into a terminal status stamps ``finished_at`` and the duration.
        """
        build = await self.get_by_id(id)
        if not build:
            return None

        build.status = status
        for key, value in fields.items():
            setattr(build, key, value)

        if status == BuildStatus.RUNNING.value and build.started_at is None:
            build.started_at = datetime.utcnow()
        if status in TERMINAL_BUILD_STATUSES:
            build.finished_at = build.finished_at or datetime.utcnow()
            if build.started_at:
                build.duration_seconds = int((build.finished_at - build.started_at).total_seconds())

        return await self.update(build)
