"""
Tests for QuotaGate admission control.
"""
import asyncio
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from atlas.core.exceptions import QuotaExceededError
from atlas.models.instance import Instance, InstanceStatus
from atlas.models.quota import QuotaLimit
from atlas.services.quota.pricing import estimate_cost
from atlas.services.quota.quota_gate import AdmissionDecision, AdmissionKind, QuotaGate


@pytest.fixture
def gate(store, clock, limits):
    return QuotaGate(store, clock=clock, defaults=limits)


async def add_live_instance(store, user_id, status=InstanceStatus.HEALTHY.value):
    return await store.create_instance(
        project_id=uuid4(),
        user_id=user_id,
        host="proj.localhost",
        port=3001,
        status=status,
    )


class TestTokenAndCostLimits:
    """Tests for the monthly token and cost checks."""

    @pytest.mark.asyncio
    async def test_token_boundary(self, store, clock, limits, user_id):
        limits["monthly_token_limit"] = 1_000_000
        limits["tokens_used_this_month"] = 999_999
        gate = QuotaGate(store, clock=clock, defaults=limits)

        assert (await gate.admit(user_id, AdmissionKind.AI_REQUEST)).allowed

        await gate.record(user_id, 2, cost=Decimal("0"))
        decision = await gate.admit(user_id, AdmissionKind.AI_REQUEST)

        assert not decision.allowed
        assert decision.code == QuotaLimit.TOKEN.value
        assert "token limit" in decision.reason.lower()

    @pytest.mark.asyncio
    async def test_breach_is_sticky(self, store, clock, limits, user_id):
        limits["tokens_used_this_month"] = limits["monthly_token_limit"]
        gate = QuotaGate(store, clock=clock, defaults=limits)

        first = await gate.admit(user_id, AdmissionKind.BUILD)
        second = await gate.admit(user_id, AdmissionKind.BUILD)

        assert first.code == QuotaLimit.TOKEN.value
        assert second.code == QuotaLimit.EXCEEDED.value
        assert second.reason == first.reason
        quota = store.quotas[user_id]
        assert quota.quota_exceeded is True
        assert quota.quota_exceeded_limit == QuotaLimit.TOKEN.value

    @pytest.mark.asyncio
    async def test_cost_limit(self, store, clock, limits, user_id):
        limits["monthly_cost_limit"] = Decimal("1.00")
        gate = QuotaGate(store, clock=clock, defaults=limits)

        await gate.record(user_id, 10, cost=Decimal("1.00"))
        decision = await gate.admit(user_id, AdmissionKind.AI_REQUEST)

        assert decision.code == QuotaLimit.COST.value
        assert "$1.00" in decision.reason

    @pytest.mark.asyncio
    async def test_monthly_rollover_clears_token_breach(self, store, clock, limits, user_id):
        limits["tokens_used_this_month"] = limits["monthly_token_limit"]
        gate = QuotaGate(store, clock=clock, defaults=limits)
        assert not (await gate.admit(user_id, AdmissionKind.AI_REQUEST)).allowed

        clock.now = datetime(2026, 4, 1, 0, 5, 0)
        assert await gate.reset_monthly() > 0

        quota = store.quotas[user_id]
        assert quota.tokens_used_this_month == 0
        assert quota.quota_exceeded is False
        assert (await gate.admit(user_id, AdmissionKind.AI_REQUEST)).allowed


class TestWindowedLimits:
    """Tests for the hourly request and daily build windows."""

    @pytest.mark.asyncio
    async def test_concurrent_admits_at_hourly_boundary(self, store, clock, limits, user_id):
        limits["requests_per_hour"] = 5
        limits["max_builds_per_day"] = 100
        gate = QuotaGate(store, clock=clock, defaults=limits)

        decisions = await asyncio.gather(
            *(gate.admit(user_id, AdmissionKind.BUILD) for _ in range(20))
        )

        assert sum(1 for d in decisions if d.allowed) == 5
        assert store.quotas[user_id].requests_this_hour == 5
        denied_codes = {d.code for d in decisions if not d.allowed}
        assert denied_codes <= {QuotaLimit.RATE.value, QuotaLimit.EXCEEDED.value}

    @pytest.mark.asyncio
    async def test_rate_breach_clears_next_hour(self, store, clock, limits, user_id):
        limits["requests_per_hour"] = 1
        gate = QuotaGate(store, clock=clock, defaults=limits)

        assert (await gate.admit(user_id, AdmissionKind.AI_REQUEST)).allowed
        assert (await gate.admit(user_id, AdmissionKind.AI_REQUEST)).code == QuotaLimit.RATE.value
        assert (await gate.admit(user_id, AdmissionKind.AI_REQUEST)).code == QuotaLimit.EXCEEDED.value

        clock.advance(hours=1)

        assert (await gate.admit(user_id, AdmissionKind.AI_REQUEST)).allowed
        assert store.quotas[user_id].requests_this_hour == 1

    @pytest.mark.asyncio
    async def test_daily_build_limit(self, store, clock, limits, user_id):
        limits["max_builds_per_day"] = 2
        gate = QuotaGate(store, clock=clock, defaults=limits)

        assert (await gate.admit(user_id, AdmissionKind.BUILD)).allowed
        assert (await gate.admit(user_id, AdmissionKind.BUILD)).allowed
        decision = await gate.admit(user_id, AdmissionKind.BUILD)

        assert decision.code == QuotaLimit.DAILY_BUILD.value
        assert store.quotas[user_id].builds_today == 2

        clock.advance(hours=24)
        assert (await gate.admit(user_id, AdmissionKind.BUILD)).allowed

    @pytest.mark.asyncio
    async def test_ai_requests_do_not_count_as_builds(self, gate, store, user_id):
        await gate.admit(user_id, AdmissionKind.AI_REQUEST)

        assert store.quotas[user_id].builds_today == 0
        assert store.quotas[user_id].requests_this_hour == 1


class TestConcurrencyLimit:
    """Tests for the live-instance limit on deploys."""

    @pytest.mark.asyncio
    async def test_deploy_denied_at_limit(self, gate, store, user_id):
        await add_live_instance(store, user_id)

        decision = await gate.admit(user_id, AdmissionKind.DEPLOY_INSTANCE)

        assert decision.code == QuotaLimit.CONCURRENCY.value
        assert "1 of 1" in decision.reason

    @pytest.mark.asyncio
    async def test_replaced_instances_do_not_count(self, gate, store, user_id):
        await add_live_instance(store, user_id)

        decision = await gate.admit(user_id, AdmissionKind.DEPLOY_INSTANCE, replacing=1)

        assert decision.allowed

    @pytest.mark.asyncio
    async def test_stopped_instances_do_not_count(self, gate, store, user_id):
        await add_live_instance(store, user_id, status=InstanceStatus.STOPPED.value)

        assert (await gate.admit(user_id, AdmissionKind.DEPLOY_INSTANCE)).allowed

    @pytest.mark.asyncio
    async def test_builds_ignore_concurrency(self, gate, store, user_id):
        await add_live_instance(store, user_id)

        assert (await gate.admit(user_id, AdmissionKind.BUILD)).allowed


class TestFailClosed:
    """The gate denies rather than raising when it cannot decide."""

    @pytest.mark.asyncio
    async def test_store_error_denies(self, user_id):
        store = MagicMock()
        store.get_quota = AsyncMock(side_effect=RuntimeError("database unavailable"))
        gate = QuotaGate(store)

        decision = await gate.admit(user_id, AdmissionKind.BUILD)

        assert decision.allowed is False
        assert decision.code == QuotaLimit.INTERNAL.value

    @pytest.mark.asyncio
    async def test_unknown_kind_denies(self, gate, user_id):
        decision = await gate.admit(user_id, "launch-rocket")

        assert decision.allowed is False
        assert decision.code == QuotaLimit.INTERNAL.value


class TestRecord:
    """Tests for recording completed usage."""

    @pytest.mark.asyncio
    async def test_cost_estimated_from_model(self, gate, store, user_id):
        cost = await gate.record(
            user_id, 3000, model="claude-sonnet-4", prompt_tokens=2000, completion_tokens=1000
        )

        assert cost == estimate_cost("claude-sonnet-4", 2000, 1000)
        assert cost == Decimal("0.0210")
        quota = store.quotas[user_id]
        assert quota.tokens_used_this_month == 3000
        assert Decimal(quota.cost_this_month) == Decimal("0.0210")

    @pytest.mark.asyncio
    async def test_writes_usage_ledger(self, gate, store, user_id):
        project_id = uuid4()

        await gate.record(user_id, 42, cost=Decimal("0.01"), model="claude-haiku-4", project_id=project_id)

        assert len(store.usage) == 1
        entry = store.usage[0]
        assert entry.amount == 42
        assert entry.project_id == project_id
        assert entry.meta["model"] == "claude-haiku-4"

    @pytest.mark.asyncio
    async def test_negative_tokens_rejected(self, gate, user_id):
        with pytest.raises(ValueError):
            await gate.record(user_id, -1)

    @pytest.mark.asyncio
    async def test_record_does_not_consume_requests(self, gate, store, user_id):
        await gate.record(user_id, 10, cost=Decimal("0"))

        assert store.quotas[user_id].requests_this_hour == 0


class TestSummary:

    @pytest.mark.asyncio
    async def test_summary(self, gate, store, user_id):
        await gate.admit(user_id, AdmissionKind.BUILD)
        await gate.record(user_id, 250_000, cost=Decimal("5"))
        await add_live_instance(store, user_id)

        summary = await gate.summary(user_id)

        assert summary["tokens"]["used"] == 250_000
        assert summary["tokens"]["percentage"] == 25.0
        assert summary["cost"]["remaining"] == 45.0
        assert summary["builds_today"]["used"] == 1
        assert summary["containers"]["active"] == 1
        assert summary["exceeded"] is False
        assert summary["next_reset"] == datetime(2026, 4, 1)

    @pytest.mark.asyncio
    async def test_container_ceiling(self, gate, user_id):
        assert await gate.container_ceiling(user_id) == (512, 0.5)


class TestAdmissionDecision:

    def test_raise_if_denied(self):
        AdmissionDecision.admit().raise_if_denied()

        with pytest.raises(QuotaExceededError) as exc_info:
            AdmissionDecision.deny("Too many builds", QuotaLimit.DAILY_BUILD.value).raise_if_denied()

        assert exc_info.value.limit == QuotaLimit.DAILY_BUILD.value
        assert exc_info.value.details["reason"] == "Too many builds"
