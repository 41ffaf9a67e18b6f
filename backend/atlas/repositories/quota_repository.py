"""
Repository for UserQuota rows.

Counter updates are single conditional UPDATE statements so that concurrent
admissions for the same user cannot over-admit at a window boundary.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import and_, case, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert

from atlas.models.quota import (
    DAY_WINDOW,
    DAILY_STICKY_LIMITS,
    HOUR_WINDOW,
    HOURLY_STICKY_LIMITS,
    MONTHLY_STICKY_LIMITS,
    QuotaLimit,
    UserQuota,
    day_window_elapsed,
    month_start,
)
from atlas.repositories.base import BaseRepository


class QuotaRepository(BaseRepository[UserQuota]):
    """Repository for per-user quota records."""

    model = UserQuota

    async def get_by_user(self, user_id: UUID) -> Optional[UserQuota]:
        result = await self.db.execute(
            select(UserQuota)
            .where(UserQuota.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, user_id: UUID, defaults: Dict[str, Any], now: datetime) -> UserQuota:
        """Load a user's quota, inserting one with default limits if missing."""
        quota = await self.get_by_user(user_id)
        if quota is not None:
            return quota

        stmt = pg_insert(UserQuota).values(
            user_id=user_id,
            hour_window_start=now,
            day_window_start=now,
            last_reset=now,
            created_at=now,
            updated_at=now,
            **defaults,
        ).on_conflict_do_nothing(index_elements=[UserQuota.user_id])
        await self.db.execute(stmt)
        await self.db.commit()
        return await self.get_by_user(user_id)

    async def consume(self, user_id: UUID, now: datetime, count_build: bool) -> Optional[str]:
        """
        Atomically check and increment the hourly (and optionally daily) counters.

        A window whose start is at least one period old is reset to start at
        ``now`` with a count of 1 in the same statement.

        Returns:
            None if admitted, otherwise the QuotaLimit code that denied
        """
        hour_rolled = UserQuota.hour_window_start <= now - HOUR_WINDOW
        day_rolled = UserQuota.day_window_start <= now - DAY_WINDOW

        conditions = [
            UserQuota.user_id == user_id,
            or_(hour_rolled, UserQuota.requests_this_hour < UserQuota.requests_per_hour),
        ]
        values = {
            "requests_this_hour": case((hour_rolled, 1), else_=UserQuota.requests_this_hour + 1),
            "hour_window_start": case((hour_rolled, now), else_=UserQuota.hour_window_start),
            "updated_at": now,
        }
        if count_build:
            conditions.append(or_(day_rolled, UserQuota.builds_today < UserQuota.max_builds_per_day))
            values["builds_today"] = case((day_rolled, 1), else_=UserQuota.builds_today + 1)
            values["day_window_start"] = case((day_rolled, now), else_=UserQuota.day_window_start)

        result = await self.db.execute(
            update(UserQuota)
            .where(*conditions)
            .values(**values)
            .returning(UserQuota.user_id)
            .execution_options(synchronize_session=False)
        )
        admitted = result.first() is not None
        await self.db.commit()
        if admitted:
            return None

        quota = await self.get_by_user(user_id)
        if (
            count_build
            and quota is not None
            and not day_window_elapsed(quota, now)
            and quota.builds_today >= quota.max_builds_per_day
        ):
            return QuotaLimit.DAILY_BUILD.value
        return QuotaLimit.RATE.value

    async def add_usage(self, user_id: UUID, tokens: int, cost: Decimal, now: datetime) -> None:
        """Increment the monthly token and cost counters in place."""
        await self.db.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)
            .values(
                tokens_used_this_month=UserQuota.tokens_used_this_month + tokens,
                cost_this_month=UserQuota.cost_this_month + cost,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def mark_exceeded(self, user_id: UUID, reason: str, limit: str, now: datetime) -> None:
        await self.db.execute(
            update(UserQuota)
            .where(UserQuota.user_id == user_id)
            .values(
                quota_exceeded=True,
                quota_exceeded_reason=reason,
                quota_exceeded_limit=limit,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def rollover(self, user_id: Optional[UUID], now: datetime) -> int:
        """
        Apply window rollovers for one user (or all users when ``user_id`` is None).

        Monthly rollover zeroes the token and cost counters. A sticky exceeded
        flag is cleared only when the window of the limit that set it has rolled.

        Returns:
            Number of rows touched
        """
        scope = [] if user_id is None else [UserQuota.user_id == user_id]
        touched = 0

        current_month = month_start(now)
        monthly_sticky = and_(
            UserQuota.quota_exceeded.is_(True),
            UserQuota.quota_exceeded_limit.in_(MONTHLY_STICKY_LIMITS),
        )
        result = await self.db.execute(
            update(UserQuota)
            .where(*scope, UserQuota.last_reset < current_month)
            .values(
                tokens_used_this_month=0,
                cost_this_month=Decimal("0"),
                last_reset=now,
                quota_exceeded=case((monthly_sticky, False), else_=UserQuota.quota_exceeded),
                quota_exceeded_reason=case((monthly_sticky, None), else_=UserQuota.quota_exceeded_reason),
                quota_exceeded_limit=case((monthly_sticky, None), else_=UserQuota.quota_exceeded_limit),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        touched += result.rowcount

        result = await self.db.execute(
            update(UserQuota)
            .where(
                *scope,
                UserQuota.quota_exceeded.is_(True),
                or_(
                    and_(
                        UserQuota.quota_exceeded_limit.in_(HOURLY_STICKY_LIMITS),
                        UserQuota.hour_window_start <= now - HOUR_WINDOW,
                    ),
                    and_(
                        UserQuota.quota_exceeded_limit.in_(DAILY_STICKY_LIMITS),
                        UserQuota.day_window_start <= now - DAY_WINDOW,
                    ),
                ),
            )
            .values(
                quota_exceeded=False,
                quota_exceeded_reason=None,
                quota_exceeded_limit=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        touched += result.rowcount

        await self.db.commit()
        return touched
