"""
Usage ledger entries recorded alongside quota counter updates.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import Column, String, DateTime, BigInteger, Numeric
from sqlalchemy.dialects.postgresql import UUID, JSONB

from atlas.core.database import Base


class UsageLedgerEntry(Base):
    """A single metered usage record."""

    __tablename__ = "usage_ledger"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    project_id = Column(UUID(as_uuid=True), nullable=True, index=True)
    kind = Column(String(20), nullable=False, index=True)  # 'tokens', 'build_minutes', ...
    amount = Column(BigInteger, nullable=False)
    cost = Column(Numeric(10, 4), nullable=False, default=Decimal("0"))
    meta = Column(JSONB, default=dict, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
