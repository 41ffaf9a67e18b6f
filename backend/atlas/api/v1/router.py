"""
API v1 router that includes all endpoint routers.
"""
from fastapi import APIRouter

from atlas.api.v1.endpoints import (
    builds,
    events,
    instances,
    projects,
    quota,
    system,
)

# Create main API router
api_router = APIRouter()

# Include endpoint routers
api_router.include_router(
    projects.router,
    prefix="/projects",
    tags=["projects"],
)

api_router.include_router(
    builds.router,
    prefix="/builds",
    tags=["builds"],
)

api_router.include_router(
    instances.router,
    prefix="/instances",
    tags=["instances"],
)

api_router.include_router(
    quota.router,
    prefix="/quota",
    tags=["quota"],
)

api_router.include_router(
    system.router,
    prefix="/system",
    tags=["system"],
)

api_router.include_router(
    events.router,
    prefix="/events",
    tags=["events"],
)
