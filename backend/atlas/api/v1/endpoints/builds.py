"""
API endpoints for builds.
"""
from uuid import UUID

from fastapi import APIRouter, Depends

from atlas.api.deps import get_orchestrator
from atlas.core.security import get_current_user_id
from atlas.schemas.build import BuildLogsResponse, BuildResponse
from atlas.services.deployment.orchestrator import DeploymentOrchestrator

router = APIRouter()


@router.get("/{build_id}", response_model=BuildResponse)
async def get_build(
    build_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> BuildResponse:
    build = await orchestrator.get_build(user_id, build_id)
    return BuildResponse.model_validate(build)


@router.get("/{build_id}/logs", response_model=BuildLogsResponse)
async def get_build_logs(
    build_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> BuildLogsResponse:
    """Captured builder output. Empty until the build finishes."""
    build = await orchestrator.get_build(user_id, build_id)
    return BuildLogsResponse(build_id=build.id, status=build.status, logs=build.build_logs or "")


@router.post("/{build_id}/cancel", response_model=BuildResponse)
async def cancel_build(
    build_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> BuildResponse:
    """
    Cancel a queued or running build.

    Raises:
        InvalidStateError: Build already finished (409)
    """
    build = await orchestrator.cancel_build(user_id, build_id)
    return BuildResponse.model_validate(build)
