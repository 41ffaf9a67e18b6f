"""
Quota gate: admission control for builds, instance launches and AI requests.

The gate is the only writer of quota counters. Checks for one user run under a
per-user lock, and the windowed counters are advanced with the store's atomic
compare-and-increment, so concurrent admissions never over-admit.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional
from uuid import UUID

from atlas.core.config import settings
from atlas.core.exceptions import QuotaExceededError
from atlas.core.locks import KeyedLocks
from atlas.models.quota import QuotaLimit, UserQuota, next_month_start
from atlas.repositories.store import DeploymentStore
from atlas.services.quota.pricing import estimate_cost

logger = logging.getLogger(__name__)


class AdmissionKind(str, Enum):
    """Operation being admitted."""
    BUILD = "build"
    DEPLOY_INSTANCE = "deploy-instance"
    AI_REQUEST = "ai-request"


@dataclass
class AdmissionDecision:
    """Outcome of an admission check."""
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def admit(cls) -> "AdmissionDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, code: str) -> "AdmissionDecision":
        return cls(allowed=False, reason=reason, code=code)

    def raise_if_denied(self) -> None:
        if not self.allowed:
            raise QuotaExceededError(self.reason, self.code)


def default_limits() -> Dict[str, Any]:
    """Limits given to a user the first time their quota is loaded."""
    return {
        "monthly_token_limit": settings.DEFAULT_MONTHLY_TOKEN_LIMIT,
        "monthly_cost_limit": Decimal(str(settings.DEFAULT_MONTHLY_COST_LIMIT)),
        "max_concurrent_containers": settings.DEFAULT_MAX_CONCURRENT_CONTAINERS,
        "max_container_memory_mb": settings.DEFAULT_MAX_CONTAINER_MEMORY_MB,
        "max_container_vcpu": Decimal(str(settings.DEFAULT_MAX_CONTAINER_VCPU)),
        "requests_per_hour": settings.DEFAULT_REQUESTS_PER_HOUR,
        "max_builds_per_day": settings.DEFAULT_MAX_BUILDS_PER_DAY,
        "tokens_used_this_month": 0,
        "cost_this_month": Decimal("0"),
        "requests_this_hour": 0,
        "builds_today": 0,
        "quota_exceeded": False,
    }


class QuotaGate:
    """
    Admission control over per-user quota records.

    Evaluation order: sticky exceeded flag, monthly tokens, monthly cost,
    concurrent instances (deploy only), daily builds (build only), hourly
    requests. The first breach sets the sticky flag and denies.
    """

    def __init__(
        self,
        store: DeploymentStore,
        clock: Callable[[], datetime] = datetime.utcnow,
        defaults: Optional[Dict[str, Any]] = None,
    ):
        self.store = store
        self._clock = clock
        self._defaults = defaults if defaults is not None else default_limits()
        self._locks = KeyedLocks()

    async def _load(self, user_id: UUID, now: datetime) -> UserQuota:
        await self.store.get_quota(user_id, self._defaults, now)
        if await self.store.rollover_quota(user_id, now):
            logger.info(f"Rolled over quota windows for user {user_id}")
        return await self.store.get_quota(user_id, self._defaults, now)

    async def admit(self, user_id: UUID, kind: AdmissionKind, replacing: int = 0) -> AdmissionDecision:
        """
        Decide whether ``user_id`` may perform ``kind`` now.

        Args:
            user_id: User requesting the operation
            kind: Operation being admitted
            replacing: Live instances the deploy will replace; they do not
                       count against the concurrency limit

        Never raises: an internal error denies with code ``internal_error``.
        """
        try:
            kind = AdmissionKind(kind)
            async with self._locks.hold(user_id):
                decision = await self._evaluate(user_id, kind, self._clock(), replacing)
        except Exception as e:
            logger.exception(f"Quota check failed for user {user_id}: {e}")
            return AdmissionDecision.deny(
                "Quota check failed; request denied",
                QuotaLimit.INTERNAL.value,
            )

        if not decision.allowed:
            logger.warning(f"Denied {kind.value} for user {user_id}: {decision.reason}")
        return decision

    async def _evaluate(self, user_id: UUID, kind: AdmissionKind, now: datetime, replacing: int = 0) -> AdmissionDecision:
        quota = await self._load(user_id, now)

        if quota.quota_exceeded:
            return AdmissionDecision.deny(
                quota.quota_exceeded_reason or "Quota exceeded",
                QuotaLimit.EXCEEDED.value,
            )

        if quota.tokens_used_this_month >= quota.monthly_token_limit:
            return await self._breach(
                user_id, now, QuotaLimit.TOKEN,
                f"Monthly token limit reached: {quota.tokens_used_this_month:,} of "
                f"{quota.monthly_token_limit:,} tokens used",
            )

        if Decimal(quota.cost_this_month) >= Decimal(quota.monthly_cost_limit):
            return await self._breach(
                user_id, now, QuotaLimit.COST,
                f"Monthly cost limit reached: ${Decimal(quota.cost_this_month):.2f} of "
                f"${Decimal(quota.monthly_cost_limit):.2f} spent",
            )

        if kind == AdmissionKind.DEPLOY_INSTANCE:
            active = await self.store.count_active_instances(user_id) - replacing
            if active >= quota.max_concurrent_containers:
                return await self._breach(
                    user_id, now, QuotaLimit.CONCURRENCY,
                    f"Concurrent instance limit reached: {active} of "
                    f"{quota.max_concurrent_containers} running",
                )

        limit = await self.store.consume_quota(user_id, now, count_build=kind == AdmissionKind.BUILD)
        if limit == QuotaLimit.DAILY_BUILD.value:
            return await self._breach(
                user_id, now, QuotaLimit.DAILY_BUILD,
                f"Daily build limit reached: {quota.max_builds_per_day} builds per day",
            )
        if limit is not None:
            return await self._breach(
                user_id, now, QuotaLimit.RATE,
                f"Hourly request limit reached: {quota.requests_per_hour} requests per hour",
            )

        return AdmissionDecision.admit()

    async def _breach(self, user_id: UUID, now: datetime, limit: QuotaLimit, reason: str) -> AdmissionDecision:
        await self.store.mark_quota_exceeded(user_id, reason, limit.value, now)
        return AdmissionDecision.deny(reason, limit.value)

    async def record(
        self,
        user_id: UUID,
        tokens_used: int,
        cost: Optional[Decimal] = None,
        model: Optional[str] = None,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
        project_id: Optional[UUID] = None,
    ) -> Decimal:
        """
        Add completed token usage to the user's monthly counters.

        Independent of ``admit``: a request that failed records nothing. When
        ``cost`` is omitted it is estimated from the model's rates.

        Returns:
            The cost that was recorded
        """
        if tokens_used < 0:
            raise ValueError("tokens_used must not be negative")

        if cost is None:
            if prompt_tokens is None and completion_tokens is None:
                prompt_tokens = tokens_used
            cost = estimate_cost(model, prompt_tokens or 0, completion_tokens or 0)
        cost = Decimal(str(cost))

        now = self._clock()
        async with self._locks.hold(user_id):
            await self.store.get_quota(user_id, self._defaults, now)
            await self.store.update_quota_counters(user_id, tokens_used, cost, now)

        await self.store.record_usage(
            user_id,
            "tokens",
            tokens_used,
            cost,
            project_id=project_id,
            meta={
                "model": model or "unknown",
                "input_tokens": prompt_tokens or 0,
                "output_tokens": completion_tokens or 0,
            },
        )
        logger.info(f"Recorded {tokens_used} tokens (${cost}) for user {user_id}")
        return cost

    async def summary(self, user_id: UUID) -> Dict[str, Any]:
        """Usage against every limit, for display."""
        now = self._clock()
        async with self._locks.hold(user_id):
            quota = await self._load(user_id, now)
        active = await self.store.count_active_instances(user_id)

        def usage(used, limit) -> Dict[str, Any]:
            used_f, limit_f = float(used), float(limit)
            return {
                "used": used_f if isinstance(used, Decimal) else used,
                "limit": limit_f if isinstance(limit, Decimal) else limit,
                "remaining": max(limit_f - used_f, 0),
                "percentage": round(used_f / limit_f * 100, 2) if limit_f else 100.0,
            }

        return {
            "tokens": usage(quota.tokens_used_this_month, quota.monthly_token_limit),
            "cost": usage(Decimal(quota.cost_this_month), Decimal(quota.monthly_cost_limit)),
            "requests_this_hour": usage(quota.requests_this_hour, quota.requests_per_hour),
            "builds_today": usage(quota.builds_today, quota.max_builds_per_day),
            "containers": {
                "active": active,
                "max_concurrent": quota.max_concurrent_containers,
                "max_memory_mb": quota.max_container_memory_mb,
                "max_vcpu": float(quota.max_container_vcpu),
            },
            "exceeded": quota.quota_exceeded,
            "exceeded_reason": quota.quota_exceeded_reason,
            "exceeded_limit": quota.quota_exceeded_limit,
            "next_reset": next_month_start(now),
        }

    async def container_ceiling(self, user_id: UUID) -> tuple[int, float]:
        """Per-instance (memory_mb, vcpu) ceiling from the user's plan."""
        quota = await self.store.get_quota(user_id, self._defaults, self._clock())
        return quota.max_container_memory_mb, float(quota.max_container_vcpu)

    async def reset_monthly(self, now: Optional[datetime] = None) -> int:
        """Apply window rollovers for every user. Returns rows touched."""
        touched = await self.store.rollover_quota(None, now or self._clock())
        if touched:
            logger.info(f"Quota rollover touched {touched} records")
        return touched
