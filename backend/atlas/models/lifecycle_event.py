"""
Persisted lifecycle events (audit trail of builds and instances).
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, BigInteger, Text
from sqlalchemy.dialects.postgresql import UUID, JSONB

from atlas.core.database import Base


class LifecycleEventRecord(Base):
    """One emitted lifecycle event."""

    __tablename__ = "events"

    id = Column(BigInteger, primary_key=True, autoincrement=True)
    user_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    project_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    kind = Column(String(50), nullable=False, index=True)  # build.started, instance.healthy, ...
    status = Column(String(20), nullable=True, index=True)  # success, failure, warning, info
    message = Column(Text, nullable=True)
    meta = Column(JSONB, default=dict, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
