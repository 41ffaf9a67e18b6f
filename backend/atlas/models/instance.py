"""
Instance model for hardened runner sandboxes (previews/deployments).
"""
import uuid
from datetime import datetime, timedelta
from enum import Enum
from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Float, Boolean, BigInteger, Text
from sqlalchemy.dialects.postgresql import UUID

from atlas.core.database import Base


class InstanceStatus(str, Enum):
    """Status of an instance."""
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STOPPED = "stopped"
    FAILED = "failed"


# Statuses that hold a port lease and count against concurrency quota
LIVE_INSTANCE_STATUSES = frozenset({
    InstanceStatus.STARTING.value,
    InstanceStatus.HEALTHY.value,
    InstanceStatus.UNHEALTHY.value,
})


class Instance(Base):
    """A running (or formerly running) instance of a build."""

    __tablename__ = "instances"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    build_id = Column(UUID(as_uuid=True), ForeignKey("builds.id", ondelete="SET NULL"), nullable=True, index=True)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    # Runtime handle
    sandbox_id = Column(String(128), nullable=True, unique=True, index=True)
    sandbox_name = Column(String(255), nullable=True, unique=True)
    image = Column(String(500), nullable=True)

    # Network
    host = Column(String(255), nullable=False, index=True)
    port = Column(Integer, nullable=False, index=True)

    # Status
    status = Column(String(20), nullable=False, default=InstanceStatus.STARTING.value, index=True)
    health_check_count = Column(Integer, nullable=False, default=0)
    last_health_check = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    failure_reason = Column(String(50), nullable=True)

    # Resource limits
    memory_limit_mb = Column(Integer, nullable=False, default=256)
    cpu_limit = Column(Float, nullable=False, default=0.25)

    # Usage tracking
    request_count = Column(BigInteger, nullable=False, default=0)
    last_accessed = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # Auto-sleep
    auto_sleep_enabled = Column(Boolean, nullable=False, default=True)
    sleep_after_minutes = Column(Integer, nullable=False, default=30)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    stopped_at = Column(DateTime, nullable=True)

    @property
    def is_live(self) -> bool:
        """Check if the instance still holds a port lease."""
        return self.status in LIVE_INSTANCE_STATUSES

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def is_idle(self, now: datetime) -> bool:
        """Check if the instance has been idle past its auto-sleep threshold."""
        if not self.auto_sleep_enabled or not self.last_accessed:
            return False
        return now - self.last_accessed >= timedelta(minutes=self.sleep_after_minutes)
