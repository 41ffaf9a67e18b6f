"""
Pydantic schemas for Instance.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class DeployRequest(BaseModel):
    """Schema for deploying an existing build."""
    build_id: UUID


class InstanceResponse(BaseModel):
    """Schema for Instance response."""
    id: UUID
    project_id: UUID
    build_id: Optional[UUID] = None
    status: str
    port: int
    host: str
    url: str
    image: Optional[str] = None
    error_message: Optional[str] = None
    failure_reason: Optional[str] = None
    memory_limit_mb: int
    cpu_limit: float
    health_check_count: int = 0
    last_health_check: Optional[datetime] = None
    request_count: int = 0
    last_accessed: Optional[datetime] = None
    created_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InstanceLogsResponse(BaseModel):
    """Runner output, newest lines last."""
    instance_id: UUID
    logs: str
