"""
Pydantic schemas for system information.
"""
from typing import Dict, List, Optional

from pydantic import BaseModel


class PortPoolStats(BaseModel):
    """Port lease pool occupancy."""
    total: int
    free: int
    leased: int
    utilization_percent: float
    range_start: int
    range_end: int
    leases: Dict[int, str]


class ActiveBuildInfo(BaseModel):
    build_id: str
    project_id: str
    sandbox_id: Optional[str] = None
    started_at: Optional[str] = None
    cancel_requested: bool = False


class SystemStatus(BaseModel):
    ports: PortPoolStats
    active_builds: List[ActiveBuildInfo]
    background_tasks: int
    pending_events: int
