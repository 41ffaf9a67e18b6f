"""
Repository for persisted lifecycle events and the usage ledger.
"""
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID

from atlas.models.lifecycle_event import LifecycleEventRecord
from atlas.models.usage import UsageLedgerEntry
from atlas.repositories.base import BaseRepository


class EventRepository(BaseRepository[LifecycleEventRecord]):
    """Append-only store for lifecycle events."""

    model = LifecycleEventRecord

    async def record(
        self,
        kind: str,
        status: Optional[str],
        message: Optional[str],
        user_id: Optional[UUID] = None,
        project_id: Optional[UUID] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> LifecycleEventRecord:
        return await self.create(LifecycleEventRecord(
            kind=kind,
            status=status,
            message=message,
            user_id=user_id,
            project_id=project_id,
            meta=meta or {},
        ))


class UsageRepository(BaseRepository[UsageLedgerEntry]):
    """Append-only usage ledger."""

    model = UsageLedgerEntry

    async def record(
        self,
        user_id: UUID,
        kind: str,
        amount: int,
        cost: Decimal = Decimal("0"),
        project_id: Optional[UUID] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> UsageLedgerEntry:
        return await self.create(UsageLedgerEntry(
            user_id=user_id,
            project_id=project_id,
            kind=kind,
            amount=amount,
            cost=cost,
            meta=meta or {},
        ))
