"""
API endpoints for quota usage.
"""
from uuid import UUID

from fastapi import APIRouter, Depends, status

from atlas.api.deps import get_quota_gate
from atlas.core.security import get_current_user_id
from atlas.schemas.quota import AdmissionResponse, QuotaSummary, UsageRecordRequest, UsageRecordResponse
from atlas.services.quota.quota_gate import AdmissionKind, QuotaGate

router = APIRouter()


@router.get("", response_model=QuotaSummary)
async def get_quota(
    user_id: UUID = Depends(get_current_user_id),
    gate: QuotaGate = Depends(get_quota_gate),
) -> QuotaSummary:
    return QuotaSummary(**await gate.summary(user_id))


@router.post("/ai-requests", response_model=AdmissionResponse)
async def admit_ai_request(
    user_id: UUID = Depends(get_current_user_id),
    gate: QuotaGate = Depends(get_quota_gate),
) -> AdmissionResponse:
    """
    Admit one AI request against the caller's quota.

    Counts toward the hourly request limit when allowed. A denial is reported
    as 429 with the limit that was hit.
    """
    decision = await gate.admit(user_id, AdmissionKind.AI_REQUEST)
    decision.raise_if_denied()
    return AdmissionResponse(allowed=decision.allowed, reason=decision.reason, code=decision.code)


@router.post("/usage", response_model=UsageRecordResponse, status_code=status.HTTP_201_CREATED)
async def record_usage(
    usage: UsageRecordRequest,
    user_id: UUID = Depends(get_current_user_id),
    gate: QuotaGate = Depends(get_quota_gate),
) -> UsageRecordResponse:
    """Add completed token usage to the caller's monthly counters."""
    cost = await gate.record(
        user_id,
        usage.tokens_used,
        cost=usage.cost,
        model=usage.model,
        prompt_tokens=usage.prompt_tokens,
        completion_tokens=usage.completion_tokens,
        project_id=usage.project_id,
    )
    return UsageRecordResponse(tokens_used=usage.tokens_used, cost=cost)
