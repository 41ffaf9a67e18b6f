"""
Tests for the deployment stores.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from atlas.core.exceptions import DatabaseError
from atlas.models.build import BuildStatus
from atlas.models.instance import InstanceStatus
from atlas.models.quota import QuotaLimit
from atlas.repositories.store import SqlDeploymentStore


class TestMemoryStore:
    """Tests for MemoryDeploymentStore semantics."""

    @pytest.mark.asyncio
    async def test_build_timestamps(self, store, user_id):
        build = await store.create_build(uuid4(), user_id)
        assert build.status == BuildStatus.QUEUED.value
        assert build.id is not None

        await store.update_build_status(build.id, BuildStatus.RUNNING.value, builder_sandbox_id="abc")
        await store.update_build_status(build.id, BuildStatus.SUCCEEDED.value)

        assert build.started_at is not None
        assert build.finished_at is not None
        assert build.duration_seconds is not None
        assert await store.list_unfinished_builds() == []

    @pytest.mark.asyncio
    async def test_instance_defaults_and_counts(self, store, user_id):
        project_id = uuid4()
        live = await store.create_instance(project_id=project_id, user_id=user_id, host="h", port=3001)
        await store.create_instance(
            project_id=project_id, user_id=user_id, host="h", port=3002, status=InstanceStatus.STOPPED.value,
        )

        assert live.status == InstanceStatus.STARTING.value
        assert live.request_count == 0
        assert await store.count_active_instances(user_id) == 1
        assert len(await store.list_project_instances(project_id)) == 2
        assert len(await store.list_project_instances(project_id, live_only=True)) == 1

    @pytest.mark.asyncio
    async def test_stopped_instance_gets_timestamp(self, store, user_id):
        instance = await store.create_instance(project_id=uuid4(), user_id=user_id, host="h", port=3001)

        await store.update_instance_status(instance.id, InstanceStatus.STOPPED.value)

        assert instance.stopped_at is not None

    @pytest.mark.asyncio
    async def test_consume_quota_hour_window(self, store, user_id, limits):
        now = datetime(2026, 3, 10, 12, 0)
        limits["requests_per_hour"] = 1
        await store.get_quota(user_id, limits, now)

        assert await store.consume_quota(user_id, now, count_build=False) is None
        assert await store.consume_quota(user_id, now, count_build=False) == QuotaLimit.RATE.value
        assert await store.consume_quota(user_id, now + timedelta(hours=1), count_build=False) is None

    @pytest.mark.asyncio
    async def test_rollover_clears_only_matching_window(self, store, user_id, limits):
        now = datetime(2026, 3, 10, 12, 0)
        await store.get_quota(user_id, limits, now)
        await store.mark_quota_exceeded(user_id, "too many tokens", QuotaLimit.TOKEN.value, now)

        await store.rollover_quota(user_id, now + timedelta(days=1))
        assert store.quotas[user_id].quota_exceeded is True

        await store.rollover_quota(user_id, datetime(2026, 4, 1, 0, 1))
        assert store.quotas[user_id].quota_exceeded is False

    @pytest.mark.asyncio
    async def test_record_usage(self, store, user_id):
        await store.record_usage(user_id, "tokens", 10, Decimal("0.01"), meta={"model": "claude-haiku-4"})

        [entry] = store.usage
        assert entry.amount == 10
        assert entry.meta == {"model": "claude-haiku-4"}


class TestSqlStore:

    @pytest.mark.asyncio
    async def test_sqlalchemy_errors_become_database_errors(self):
        session = AsyncMock()
        session.execute = AsyncMock(
            side_effect=OperationalError("SELECT 1", {}, Exception("connection refused"))
        )
        session_maker = MagicMock()
        session_maker.return_value.__aenter__.return_value = session
        session_maker.return_value.__aexit__.return_value = False

        store = SqlDeploymentStore(session_maker)

        with pytest.raises(DatabaseError) as exc_info:
            await store.get_project(uuid4())

        assert exc_info.value.details["operation"] == "get_project"
        session.rollback.assert_awaited_once()
