"""
Per-user quota record. Written only through the quota gate.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, BigInteger, Boolean, Numeric, Text
from sqlalchemy.dialects.postgresql import UUID

from atlas.core.database import Base


class UserQuota(Base):
    """Limits and rolling counters for one user."""

    __tablename__ = "user_quotas"

    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)

    # Token and cost limits (monthly window)
    monthly_token_limit = Column(BigInteger, nullable=False, default=1000000)
    tokens_used_this_month = Column(BigInteger, nullable=False, default=0)
    monthly_cost_limit = Column(Numeric(10, 2), nullable=False, default=Decimal("50.00"))
    cost_this_month = Column(Numeric(10, 4), nullable=False, default=Decimal("0"))

    # Container limits
    max_concurrent_containers = Column(Integer, nullable=False, default=1)
    max_container_memory_mb = Column(Integer, nullable=False, default=512)
    max_container_vcpu = Column(Numeric(4, 2), nullable=False, default=Decimal("0.50"))

    # Rate limits (hourly window)
    requests_per_hour = Column(Integer, nullable=False, default=50)
    requests_this_hour = Column(Integer, nullable=False, default=0)
    hour_window_start = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Build limits (daily window)
    max_builds_per_day = Column(Integer, nullable=False, default=10)
    builds_today = Column(Integer, nullable=False, default=0)
    day_window_start = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Status
    quota_exceeded = Column(Boolean, nullable=False, default=False, index=True)
    quota_exceeded_reason = Column(Text, nullable=True)
    quota_exceeded_limit = Column(String(30), nullable=True)  # which limit set the flag
    last_reset = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)


class QuotaLimit(str, Enum):
    """Machine-readable code for the limit behind a denial."""
    EXCEEDED = "quota_exceeded"
    TOKEN = "token_limit"
    COST = "cost_limit"
    CONCURRENCY = "concurrency_limit"
    DAILY_BUILD = "daily_build_limit"
    RATE = "rate_limit"
    INTERNAL = "internal_error"


HOUR_WINDOW = timedelta(hours=1)
DAY_WINDOW = timedelta(hours=24)


def month_start(now: datetime) -> datetime:
    """First instant of the calendar month containing ``now``."""
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def next_month_start(now: datetime) -> datetime:
    start = month_start(now)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


def hour_window_elapsed(quota: "UserQuota", now: datetime) -> bool:
    return quota.hour_window_start is None or now - quota.hour_window_start >= HOUR_WINDOW


def day_window_elapsed(quota: "UserQuota", now: datetime) -> bool:
    return quota.day_window_start is None or now - quota.day_window_start >= DAY_WINDOW


def month_window_elapsed(quota: "UserQuota", now: datetime) -> bool:
    return quota.last_reset is None or quota.last_reset < month_start(now)


# Which window rollover clears a sticky flag set by each limit
HOURLY_STICKY_LIMITS = (QuotaLimit.RATE.value, QuotaLimit.CONCURRENCY.value)
DAILY_STICKY_LIMITS = (QuotaLimit.DAILY_BUILD.value,)
MONTHLY_STICKY_LIMITS = (QuotaLimit.TOKEN.value, QuotaLimit.COST.value)
