"""
Shared FastAPI dependencies.

Services are created once at startup and stored on ``app.state``; endpoints
reach them through these functions so tests can override them.
"""
from fastapi import Request

from atlas.core.events import EventBus
from atlas.core.exceptions import ServiceUnavailableError
from atlas.services.build.build_runner import IsolatedBuildRunner
from atlas.services.deployment.orchestrator import DeploymentOrchestrator
from atlas.services.deployment.port_registry import PortLeaseRegistry
from atlas.services.quota.quota_gate import QuotaGate


def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise ServiceUnavailableError(name, "not initialized")
    return service


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    return _state(request, "orchestrator")


def get_quota_gate(request: Request) -> QuotaGate:
    return _state(request, "quota_gate")


def get_port_registry(request: Request) -> PortLeaseRegistry:
    return _state(request, "port_registry")


def get_build_runner(request: Request) -> IsolatedBuildRunner:
    return _state(request, "build_runner")


def get_event_bus(request: Request) -> EventBus:
    return _state(request, "event_bus")
