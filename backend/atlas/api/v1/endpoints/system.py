"""
API endpoints for system information.
"""
from uuid import UUID

from fastapi import APIRouter, Depends

from atlas.api.deps import get_build_runner, get_event_bus, get_orchestrator, get_port_registry
from atlas.core.events import EventBus
from atlas.core.security import get_current_user_id
from atlas.schemas.system import ActiveBuildInfo, PortPoolStats, SystemStatus
from atlas.services.build.build_runner import IsolatedBuildRunner
from atlas.services.deployment.orchestrator import DeploymentOrchestrator
from atlas.services.deployment.port_registry import PortLeaseRegistry

router = APIRouter()


def _port_stats(registry: PortLeaseRegistry) -> PortPoolStats:
    leases = {port: str(project_id) for port, project_id in registry.leases().items()}
    return PortPoolStats(**registry.stats(), leases=leases)


@router.get("/ports", response_model=PortPoolStats)
async def get_port_stats(
    user_id: UUID = Depends(get_current_user_id),
    registry: PortLeaseRegistry = Depends(get_port_registry),
) -> PortPoolStats:
    """
    Get port lease pool occupancy.

    Returns:
        PortPoolStats where ``free + leased == total``
    """
    return _port_stats(registry)


@router.get("/status", response_model=SystemStatus)
async def get_system_status(
    user_id: UUID = Depends(get_current_user_id),
    registry: PortLeaseRegistry = Depends(get_port_registry),
    runner: IsolatedBuildRunner = Depends(get_build_runner),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
    bus: EventBus = Depends(get_event_bus),
) -> SystemStatus:
    return SystemStatus(
        ports=_port_stats(registry),
        active_builds=[ActiveBuildInfo(**b) for b in runner.active_builds()],
        background_tasks=orchestrator.pending_tasks,
        pending_events=bus.pending,
    )
