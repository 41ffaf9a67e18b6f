"""
Pydantic schemas for quota usage.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class UsageCounter(BaseModel):
    """Usage against one limit."""
    used: float
    limit: float
    remaining: float
    percentage: float


class ContainerAllowance(BaseModel):
    active: int
    max_concurrent: int
    max_memory_mb: int
    max_vcpu: float


class QuotaSummary(BaseModel):
    """Usage against every limit for the calling user."""
    tokens: UsageCounter
    cost: UsageCounter
    requests_this_hour: UsageCounter
    builds_today: UsageCounter
    containers: ContainerAllowance
    exceeded: bool
    exceeded_reason: Optional[str] = None
    exceeded_limit: Optional[str] = None
    next_reset: datetime


class UsageRecordRequest(BaseModel):
    """Completed AI usage to add to the monthly counters."""
    tokens_used: int = Field(..., ge=0)
    cost: Optional[Decimal] = Field(None, ge=0)
    model: Optional[str] = Field(None, max_length=100)
    prompt_tokens: Optional[int] = Field(None, ge=0)
    completion_tokens: Optional[int] = Field(None, ge=0)
    project_id: Optional[UUID] = None


class UsageRecordResponse(BaseModel):
    tokens_used: int
    cost: Decimal


class AdmissionResponse(BaseModel):
    """Result of an admission check."""
    allowed: bool
    reason: Optional[str] = None
    code: Optional[str] = None
