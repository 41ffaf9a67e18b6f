"""
API endpoints for project builds and deploys.
"""
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status

from atlas.api.deps import get_orchestrator
from atlas.core.security import get_current_user_id
from atlas.schemas.build import BuildResponse, BuildSubmitRequest
from atlas.schemas.instance import DeployRequest, InstanceResponse
from atlas.services.deployment.orchestrator import DeploymentOrchestrator

router = APIRouter()


@router.post("/{project_id}/builds", response_model=BuildResponse, status_code=status.HTTP_202_ACCEPTED)
async def submit_build(
    project_id: UUID,
    response: Response,
    body: Optional[BuildSubmitRequest] = None,
    wait: bool = Query(False, description="Block until the build finishes"),
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> BuildResponse:
    """
    Start a build of the project's source tree.

    By default the build is admitted and queued, and 202 is returned with the
    queued build. With ``wait=true`` the call returns the finished build;
    a failed build surfaces as 422 with its logs.

    Raises:
        QuotaExceededError: Admission denied (429)
        ProjectNotFoundError: Unknown project (404)
    """
    deploy = body.deploy if body else False
    if wait and not deploy:
        build, _ = await orchestrator.build(user_id, project_id)
        response.status_code = status.HTTP_201_CREATED
        return BuildResponse.model_validate(build)

    build = await orchestrator.submit_build(user_id, project_id, deploy=deploy)
    return BuildResponse.model_validate(build)


@router.get("/{project_id}/builds", response_model=List[BuildResponse])
async def list_builds(
    project_id: UUID,
    limit: int = Query(50, ge=1, le=200),
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> List[BuildResponse]:
    builds = await orchestrator.list_builds(user_id, project_id, limit)
    return [BuildResponse.model_validate(b) for b in builds]


@router.post("/{project_id}/deploy", response_model=InstanceResponse, status_code=status.HTTP_201_CREATED)
async def deploy_build(
    project_id: UUID,
    request: DeployRequest,
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> InstanceResponse:
    """
    Deploy a succeeded build and wait for it to pass the health gate.

    Raises:
        QuotaExceededError: Concurrency or rate limit reached (429)
        PortPoolExhaustedError: No free port (503)
        HealthCheckTimeoutError: Instance never became healthy (502)
    """
    instance = await orchestrator.deploy(user_id, project_id, request.build_id)
    return InstanceResponse.model_validate(instance)


@router.get("/{project_id}/instances", response_model=List[InstanceResponse])
async def list_instances(
    project_id: UUID,
    live_only: bool = Query(False),
    user_id: UUID = Depends(get_current_user_id),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> List[InstanceResponse]:
    instances = await orchestrator.list_instances(user_id, project_id, live_only=live_only)
    return [InstanceResponse.model_validate(i) for i in instances]
