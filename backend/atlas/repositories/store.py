"""
Persistence boundary for the orchestrator and quota gate.

The orchestration layer depends only on the ``DeploymentStore`` protocol.
``SqlDeploymentStore`` implements it on the async SQLAlchemy repositories,
opening one short session per call so no session is shared across tasks.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Protocol
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from atlas.core.exceptions import DatabaseError
from atlas.models.build import Build
from atlas.models.instance import Instance
from atlas.models.project import Project
from atlas.models.quota import UserQuota
from atlas.repositories.build_repository import BuildRepository
from atlas.repositories.event_repository import EventRepository, UsageRepository
from atlas.repositories.instance_repository import InstanceRepository
from atlas.repositories.project_repository import ProjectRepository
from atlas.repositories.quota_repository import QuotaRepository

logger = logging.getLogger(__name__)


class DeploymentStore(Protocol):
    """Narrow persistence interface used by the orchestration layer."""

    async def get_project(self, project_id: UUID) -> Optional[Project]: ...

    async def create_build(self, project_id: UUID, user_id: UUID) -> Build: ...

    async def update_build_status(self, build_id: UUID, status: str, **fields) -> Optional[Build]: ...

    async def get_build(self, build_id: UUID) -> Optional[Build]: ...

    async def list_project_builds(self, project_id: UUID, limit: int = 50) -> List[Build]: ...

    async def list_unfinished_builds(self) -> List[Build]: ...

    async def create_instance(self, **fields) -> Instance: ...

    async def update_instance_status(self, instance_id: UUID, status: str, **fields) -> Optional[Instance]: ...

    async def get_instance(self, instance_id: UUID) -> Optional[Instance]: ...

    async def list_instances(self, statuses: Iterable[str]) -> List[Instance]: ...

    async def list_project_instances(self, project_id: UUID, live_only: bool = False) -> List[Instance]: ...

    async def count_active_instances(self, user_id: UUID) -> int: ...

    async def touch_instance(self, instance_id: UUID, now: datetime) -> bool: ...

    async def get_quota(self, user_id: UUID, defaults: Dict[str, Any], now: datetime) -> UserQuota: ...

    async def consume_quota(self, user_id: UUID, now: datetime, count_build: bool) -> Optional[str]: ...

    async def update_quota_counters(self, user_id: UUID, tokens: int, cost: Decimal, now: datetime) -> None: ...

    async def mark_quota_exceeded(self, user_id: UUID, reason: str, limit: str, now: datetime) -> None: ...

    async def rollover_quota(self, user_id: Optional[UUID], now: datetime) -> int: ...

    async def record_event(
        self,
        kind: str,
        status: Optional[str],
        message: Optional[str],
        user_id: Optional[UUID] = None,
        project_id: Optional[UUID] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    async def record_usage(
        self,
        user_id: UUID,
        kind: str,
        amount: int,
        cost: Decimal = Decimal("0"),
        project_id: Optional[UUID] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None: ...


class SqlDeploymentStore:
    """``DeploymentStore`` backed by PostgreSQL through SQLAlchemy."""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        async with self._session_maker() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Database error during {operation}: {e}")
                raise DatabaseError(operation, str(e))

    # -- projects -----------------------------------------------------------

    async def get_project(self, project_id: UUID) -> Optional[Project]:
        async with self._session("get_project") as db:
            return await ProjectRepository(db).get_by_id(project_id)

    # -- builds -------------------------------------------------------------

    async def create_build(self, project_id: UUID, user_id: UUID) -> Build:
        async with self._session("create_build") as db:
            return await BuildRepository(db).create_build(project_id, user_id)

    async def update_build_status(self, build_id: UUID, status: str, **fields) -> Optional[Build]:
        async with self._session("update_build_status") as db:
            return await BuildRepository(db).update_status(build_id, status, **fields)

    async def get_build(self, build_id: UUID) -> Optional[Build]:
        async with self._session("get_build") as db:
            return await BuildRepository(db).get_by_id(build_id)

    async def list_project_builds(self, project_id: UUID, limit: int = 50) -> List[Build]:
        async with self._session("list_project_builds") as db:
            return await BuildRepository(db).list_for_project(project_id, limit)

    async def list_unfinished_builds(self) -> List[Build]:
        async with self._session("list_unfinished_builds") as db:
            return await BuildRepository(db).list_unfinished()

    # -- instances ----------------------------------------------------------

    async def create_instance(self, **fields) -> Instance:
        async with self._session("create_instance") as db:
            return await InstanceRepository(db).create(Instance(**fields))

    async def update_instance_status(self, instance_id: UUID, status: str, **fields) -> Optional[Instance]:
        async with self._session("update_instance_status") as db:
            return await InstanceRepository(db).update_status(instance_id, status, **fields)

    async def get_instance(self, instance_id: UUID) -> Optional[Instance]:
        async with self._session("get_instance") as db:
            return await InstanceRepository(db).get_by_id(instance_id)

    async def list_instances(self, statuses: Iterable[str]) -> List[Instance]:
        async with self._session("list_instances") as db:
            return await InstanceRepository(db).list_by_status(statuses)

    async def list_project_instances(self, project_id: UUID, live_only: bool = False) -> List[Instance]:
        async with self._session("list_project_instances") as db:
            return await InstanceRepository(db).list_for_project(project_id, live_only)

    async def count_active_instances(self, user_id: UUID) -> int:
        async with self._session("count_active_instances") as db:
            return await InstanceRepository(db).count_live_for_user(user_id)

    async def touch_instance(self, instance_id: UUID, now: datetime) -> bool:
        async with self._session("touch_instance") as db:
            return await InstanceRepository(db).touch(instance_id, now)

    # -- quota --------------------------------------------------------------

    async def get_quota(self, user_id: UUID, defaults: Dict[str, Any], now: datetime) -> UserQuota:
        async with self._session("get_quota") as db:
            return await QuotaRepository(db).get_or_create(user_id, defaults, now)

    async def consume_quota(self, user_id: UUID, now: datetime, count_build: bool) -> Optional[str]:
        async with self._session("consume_quota") as db:
            return await QuotaRepository(db).consume(user_id, now, count_build)

    async def update_quota_counters(self, user_id: UUID, tokens: int, cost: Decimal, now: datetime) -> None:
        async with self._session("update_quota_counters") as db:
            await QuotaRepository(db).add_usage(user_id, tokens, cost, now)

    async def mark_quota_exceeded(self, user_id: UUID, reason: str, limit: str, now: datetime) -> None:
        async with self._session("mark_quota_exceeded") as db:
            await QuotaRepository(db).mark_exceeded(user_id, reason, limit, now)

    async def rollover_quota(self, user_id: Optional[UUID], now: datetime) -> int:
        async with self._session("rollover_quota") as db:
            return await QuotaRepository(db).rollover(user_id, now)

    # -- audit --------------------------------------------------------------

    async def record_event(
        self,
        kind: str,
        status: Optional[str],
        message: Optional[str],
        user_id: Optional[UUID] = None,
        project_id: Optional[UUID] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._session("record_event") as db:
            await EventRepository(db).record(kind, status, message, user_id, project_id, meta)

    async def record_usage(
        self,
        user_id: UUID,
        kind: str,
        amount: int,
        cost: Decimal = Decimal("0"),
        project_id: Optional[UUID] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._session("record_usage") as db:
            await UsageRepository(db).record(user_id, kind, amount, cost, project_id, meta)
