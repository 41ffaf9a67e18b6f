"""
Project model. The orchestrator only reads projects: ownership and source path.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID

from atlas.core.database import Base


class Project(Base):
    """A user's source tree on the host filesystem."""

    __tablename__ = "projects"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    path = Column(String(1000), nullable=False)
    framework = Column(String(50), nullable=True)  # 'nextjs', 'vite', 'express', ...
    status = Column(String(20), nullable=False, default="active", index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def is_owned_by(self, user_id) -> bool:
        return str(self.user_id) == str(user_id)
