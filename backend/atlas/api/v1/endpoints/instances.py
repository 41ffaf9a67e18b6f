"""
API endpoints for running instances.
"""
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from atlas.api.deps import get_orchestrator
from atlas.core.security import get_current_user_id
from atlas.schemas.instance import InstanceLogsResponse, InstanceResponse
from atlas.services.deployment.orchestrator import DeploymentOrchestrator

router = APIRouter()


@router.get("/{instance_id}", response_model=InstanceResponse)
async def get_instance(
    instance_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> InstanceResponse:
    instance = await orchestrator.get_instance(user_id, instance_id)
    return InstanceResponse.model_validate(instance)


@router.delete("/{instance_id}", response_model=InstanceResponse)
async def stop_instance(
    instance_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> InstanceResponse:
    """
    Stop an instance and release its port.

    Stopping an instance that is still health-gating cancels the deploy.
    """
    instance = await orchestrator.stop(user_id, instance_id)
    return InstanceResponse.model_validate(instance)


@router.post("/{instance_id}/heartbeat", response_model=InstanceResponse)
async def heartbeat(
    instance_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> InstanceResponse:
    """Record an access so the instance is not put to sleep."""
    instance = await orchestrator.touch(user_id, instance_id)
    return InstanceResponse.model_validate(instance)


@router.get("/{instance_id}/logs", response_model=InstanceLogsResponse)
async def get_instance_logs(
    instance_id: UUID,
    tail: int = Query(200, ge=1, le=10000),
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> InstanceLogsResponse:
    logs = await orchestrator.instance_logs(user_id, instance_id, tail=tail)
    return InstanceLogsResponse(instance_id=instance_id, logs=logs)
