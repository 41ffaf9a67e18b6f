"""
Pydantic schemas for Build.
"""
from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class BuildSubmitRequest(BaseModel):
    """Schema for submitting a build."""
    deploy: bool = False  # deploy the artifact once the build succeeds


class BuildResponse(BaseModel):
    """Schema for Build response."""
    id: UUID
    project_id: UUID
    status: str
    artifact_ref: Optional[str] = None
    error_message: Optional[str] = None
    failure_reason: Optional[str] = None
    exit_code: Optional[int] = None
    queued_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    memory_used_mb: Optional[int] = None
    cpu_time_seconds: Optional[float] = None

    class Config:
        from_attributes = True


class BuildLogsResponse(BaseModel):
    """Captured builder output."""
    build_id: UUID
    status: str
    logs: str
