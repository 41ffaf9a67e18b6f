"""
In-memory ``DeploymentStore`` for local development and tests.

Entities are plain model instances kept in dicts. No method awaits between
reading and writing state, so each call is atomic on the event loop.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from atlas.models.build import Build, BuildStatus, TERMINAL_BUILD_STATUSES
from atlas.models.instance import Instance, InstanceStatus, LIVE_INSTANCE_STATUSES
from atlas.models.lifecycle_event import LifecycleEventRecord
from atlas.models.project import Project
from atlas.models.quota import (
    DAILY_STICKY_LIMITS,
    HOURLY_STICKY_LIMITS,
    MONTHLY_STICKY_LIMITS,
    QuotaLimit,
    UserQuota,
    day_window_elapsed,
    hour_window_elapsed,
    month_window_elapsed,
)
from atlas.models.usage import UsageLedgerEntry


def _with_defaults(entity):
    """Fill unset columns from their declared defaults, as an INSERT would."""
    for column in entity.__table__.columns:
        if getattr(entity, column.key) is not None or column.default is None:
            continue
        default = column.default
        if default.is_callable:
            setattr(entity, column.key, default.arg(None))
        elif default.is_scalar:
            setattr(entity, column.key, default.arg)
    return entity


class MemoryDeploymentStore:
    """Dict-backed store with the same semantics as ``SqlDeploymentStore``."""

    def __init__(self):
        self.projects: Dict[UUID, Project] = {}
        self.builds: Dict[UUID, Build] = {}
        self.instances: Dict[UUID, Instance] = {}
        self.quotas: Dict[UUID, UserQuota] = {}
        self.events: List[LifecycleEventRecord] = []
        self.usage: List[UsageLedgerEntry] = []

    def add_project(self, project: Project) -> Project:
        project = _with_defaults(project)
        self.projects[project.id] = project
        return project

    async def get_project(self, project_id: UUID) -> Optional[Project]:
        return self.projects.get(project_id)

    async def create_build(self, project_id: UUID, user_id: UUID) -> Build:
        build = _with_defaults(Build(
            project_id=project_id,
            user_id=user_id,
            status=BuildStatus.QUEUED.value,
            queued_at=datetime.utcnow(),
        ))
        self.builds[build.id] = build
        return build

    async def update_build_status(self, build_id: UUID, status: str, **fields) -> Optional[Build]:
        build = self.builds.get(build_id)
        if build is None:
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
        return build

    async def get_build(self, build_id: UUID) -> Optional[Build]:
        return self.builds.get(build_id)

    async def list_project_builds(self, project_id: UUID, limit: int = 50) -> List[Build]:
        builds = [b for b in self.builds.values() if b.project_id == project_id]
        builds.sort(key=lambda b: b.queued_at, reverse=True)
        return builds[:limit]

    async def list_unfinished_builds(self) -> List[Build]:
        return [b for b in self.builds.values() if b.status not in TERMINAL_BUILD_STATUSES]

    async def create_instance(self, **fields) -> Instance:
        instance = _with_defaults(Instance(**fields))
        self.instances[instance.id] = instance
        return instance

    async def update_instance_status(self, instance_id: UUID, status: str, **fields) -> Optional[Instance]:
        instance = self.instances.get(instance_id)
        if instance is None:
            return None
        instance.status = status
        for key, value in fields.items():
            setattr(instance, key, value)
        if status in (InstanceStatus.STOPPED.value, InstanceStatus.FAILED.value):
            instance.stopped_at = instance.stopped_at or datetime.utcnow()
        instance.updated_at = datetime.utcnow()
        return instance

    async def get_instance(self, instance_id: UUID) -> Optional[Instance]:
        return self.instances.get(instance_id)

    async def list_instances(self, statuses: Iterable[str]) -> List[Instance]:
        wanted = set(statuses)
        return [i for i in self.instances.values() if i.status in wanted]

    async def list_project_instances(self, project_id: UUID, live_only: bool = False) -> List[Instance]:
        return [
            i for i in self.instances.values()
            if i.project_id == project_id and (not live_only or i.status in LIVE_INSTANCE_STATUSES)
        ]

    async def count_active_instances(self, user_id: UUID) -> int:
        return sum(
            1 for i in self.instances.values()
            if i.user_id == user_id and i.status in LIVE_INSTANCE_STATUSES
        )

    async def touch_instance(self, instance_id: UUID, now: datetime) -> bool:
        instance = self.instances.get(instance_id)
        if instance is None:
            return False
        instance.request_count += 1
        instance.last_accessed = now
        return True

    async def get_quota(self, user_id: UUID, defaults: Dict[str, Any], now: datetime) -> UserQuota:
        quota = self.quotas.get(user_id)
        if quota is None:
            quota = _with_defaults(UserQuota(
                user_id=user_id,
                hour_window_start=now,
                day_window_start=now,
                last_reset=now,
                created_at=now,
                updated_at=now,
                **defaults,
            ))
            self.quotas[user_id] = quota
        return quota

    async def consume_quota(self, user_id: UUID, now: datetime, count_build: bool) -> Optional[str]:
        quota = self.quotas[user_id]
        hour_rolled = hour_window_elapsed(quota, now)
        day_rolled = day_window_elapsed(quota, now)

        if count_build and not day_rolled and quota.builds_today >= quota.max_builds_per_day:
            return QuotaLimit.DAILY_BUILD.value
        if not hour_rolled and quota.requests_this_hour >= quota.requests_per_hour:
            return QuotaLimit.RATE.value

        if hour_rolled:
            quota.requests_this_hour = 1
            quota.hour_window_start = now
        else:
            quota.requests_this_hour += 1
        if count_build:
            if day_rolled:
                quota.builds_today = 1
                quota.day_window_start = now
            else:
                quota.builds_today += 1
        quota.updated_at = now
        return None

    async def update_quota_counters(self, user_id: UUID, tokens: int, cost: Decimal, now: datetime) -> None:
        quota = self.quotas.get(user_id)
        if quota is None:
            return
        quota.tokens_used_this_month += tokens
        quota.cost_this_month = Decimal(quota.cost_this_month) + Decimal(cost)
        quota.updated_at = now

    async def mark_quota_exceeded(self, user_id: UUID, reason: str, limit: str, now: datetime) -> None:
        quota = self.quotas.get(user_id)
        if quota is None:
            return
        quota.quota_exceeded = True
        quota.quota_exceeded_reason = reason
        quota.quota_exceeded_limit = limit
        quota.updated_at = now

    async def rollover_quota(self, user_id: Optional[UUID], now: datetime) -> int:
        quotas = list(self.quotas.values()) if user_id is None else [q for q in [self.quotas.get(user_id)] if q]
        touched = 0
        for quota in quotas:
            clear = False
            if month_window_elapsed(quota, now):
                quota.tokens_used_this_month = 0
                quota.cost_this_month = Decimal("0")
                quota.last_reset = now
                clear = quota.quota_exceeded_limit in MONTHLY_STICKY_LIMITS
                touched += 1
            if quota.quota_exceeded_limit in HOURLY_STICKY_LIMITS and hour_window_elapsed(quota, now):
                clear = True
            if quota.quota_exceeded_limit in DAILY_STICKY_LIMITS and day_window_elapsed(quota, now):
                clear = True
            if clear and quota.quota_exceeded:
                quota.quota_exceeded = False
                quota.quota_exceeded_reason = None
                quota.quota_exceeded_limit = None
                touched += 1
        return touched

    async def record_event(
        self,
        kind: str,
        status: Optional[str],
        message: Optional[str],
        user_id: Optional[UUID] = None,
        project_id: Optional[UUID] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.events.append(_with_defaults(LifecycleEventRecord(
            kind=kind,
            status=status,
            message=message,
            user_id=user_id,
            project_id=project_id,
            meta=meta or {},
        )))

    async def record_usage(
        self,
        user_id: UUID,
        kind: str,
        amount: int,
        cost: Decimal = Decimal("0"),
        project_id: Optional[UUID] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.usage.append(_with_defaults(UsageLedgerEntry(
            user_id=user_id,
            project_id=project_id,
            kind=kind,
            amount=amount,
            cost=cost,
            meta=meta or {},
        )))
