"""
Build model for tracking builder-sandbox runs.
"""
import uuid
from datetime import datetime
from enum import Enum
from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Float, Text
from sqlalchemy.dialects.postgresql import UUID

from atlas.core.database import Base


class BuildStatus(str, Enum):
    """Status of a build."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_BUILD_STATUSES = frozenset({
    BuildStatus.SUCCEEDED.value,
    BuildStatus.FAILED.value,
    BuildStatus.CANCELLED.value,
})


class Build(Base):
    """One run of the isolated builder for a project."""

    __tablename__ = "builds"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=BuildStatus.QUEUED.value, index=True)

    # Sandbox and artifact
    builder_sandbox_id = Column(String(128), nullable=True)
    artifact_ref = Column(String(1000), nullable=True)

    # Logs and errors
    build_logs = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    failure_reason = Column(String(50), nullable=True)  # 'exit_code', 'timeout', 'cancelled', ...
    exit_code = Column(Integer, nullable=True)

    # Timing
    queued_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Integer, nullable=True)

    # Resources used
    memory_used_mb = Column(Integer, nullable=True)
    cpu_time_seconds = Column(Float, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_BUILD_STATUSES
