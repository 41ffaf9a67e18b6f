"""
Hardened instance launcher.

Starts a runner sandbox for a built artifact and holds it behind the health
gate: the instance is only handed back once the port registry's health check
succeeds. On any failure the sandbox is torn down before the error propagates,
so the caller only has to release the port.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional
from uuid import UUID

from atlas.core.config import settings
from atlas.core.exceptions import DeploymentCancelledError, HealthCheckTimeoutError, SandboxRuntimeError
from atlas.services.build.build_runner import BuildArtifact
from atlas.services.deployment.port_registry import PortLeaseRegistry
from atlas.services.sandbox.runtime_base import SandboxRuntime, SandboxSpec

logger = logging.getLogger(__name__)


@dataclass
class InstanceLimits:
    """Memory and CPU ceilings for one runner."""

    memory_mb: int = field(default_factory=lambda: settings.DEFAULT_CONTAINER_MEMORY_MB)
    cpu: float = field(default_factory=lambda: settings.DEFAULT_CONTAINER_CPU)


@dataclass
class LaunchedInstance:
    """A runner that has passed the health gate."""

    sandbox_id: str
    sandbox_name: str
    image: str
    host: str
    port: int
    started_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class HardenedInstanceLauncher:
    """
    Launches runner sandboxes with a locked-down security profile.

    Responsibilities:
    - Assemble the runner sandbox spec (non-root, read-only root, tmpfs scratch)
    - Start the runner and gate it on the registry health check
    - Tear down runners, fetch their logs, probe them for liveness
    """

    def __init__(
        self,
        runtime: SandboxRuntime,
        registry: PortLeaseRegistry,
        network: str = None,
        command: str = None,
        container_port: int = None,
        user: str = None,
        tmpfs_size: str = None,
        max_restarts: int = None,
        container_prefix: str = None,
        domain: str = None,
        health_max_attempts: int = None,
        health_interval_ms: int = None,
        stop_grace_seconds: int = None,
    ):
        self.runtime = runtime
        self.registry = registry
        self.network = network or settings.RUNNER_NETWORK
        self.command = command or settings.RUNNER_COMMAND
        self.container_port = container_port or settings.RUNNER_CONTAINER_PORT
        self.user = user or settings.RUNNER_USER
        self.tmpfs_size = tmpfs_size or settings.RUNNER_TMPFS_SIZE
        self.max_restarts = max_restarts if max_restarts is not None else settings.RUNNER_MAX_RESTARTS
        self.container_prefix = container_prefix or settings.CONTAINER_PREFIX
        self.domain = domain or settings.INSTANCE_DOMAIN
        self.health_max_attempts = health_max_attempts or settings.HEALTH_CHECK_MAX_ATTEMPTS
        self.health_interval_ms = (
            health_interval_ms if health_interval_ms is not None else settings.HEALTH_CHECK_INTERVAL_MS
        )
        self.stop_grace_seconds = (
            stop_grace_seconds if stop_grace_seconds is not None else settings.CONTAINER_STOP_GRACE_SECONDS
        )

    def host_for(self, project_id: UUID) -> str:
        return f"proj-{str(project_id)[:8]}.{self.domain}"

    def sandbox_name_for(self, project_id: UUID) -> str:
        return f"{self.container_prefix}-{str(project_id)[:8]}-{int(time.time() * 1000)}"

    def runner_spec(
        self,
        artifact: BuildArtifact,
        port: int,
        limits: InstanceLimits,
        name: str,
    ) -> SandboxSpec:
        """Sandbox spec for a runner serving ``artifact`` on host ``port``."""
        restart_policy = f"on-failure:{self.max_restarts}" if self.max_restarts else "no"
        return SandboxSpec(
            image=artifact.image,
            command=["sh", "-c", self.command],
            name=name,
            binds={artifact.source_path: "/app:ro"},
            network=self.network,
            user=self.user,
            workdir="/app",
            read_only_rootfs=True,
            tmpfs={"/tmp": f"rw,noexec,nosuid,size={self.tmpfs_size}"},
            cap_drop=["ALL"],
            security_opt=["no-new-privileges:true", "seccomp=runtime/default"],
            memory_limit=f"{limits.memory_mb}m",
            cpu_limit=limits.cpu,
            env={"PORT": str(self.container_port), "NODE_ENV": "production"},
            labels={
                "app": "atlas",
                "purpose": "runner",
                "project-id": str(artifact.project_id),
                "build-id": str(artifact.build_id),
            },
            port_bindings={self.container_port: port},
            restart_policy=restart_policy,
        )

    async def launch(
        self,
        artifact: BuildArtifact,
        port: int,
        limits: Optional[InstanceLimits] = None,
        cancel: Optional[asyncio.Event] = None,
        on_created: Optional[Callable[[str, str], Awaitable[None]]] = None,
    ) -> LaunchedInstance:
        """
        Start a runner and wait for it to pass the health gate.

        Args:
            artifact: Successful build output
            port: Host port leased for this instance
            limits: Resource ceilings (defaults from settings)
            cancel: When set, the health gate stops within one probe interval
            on_created: Awaited with (sandbox_id, sandbox_name) right after creation

        Returns:
            LaunchedInstance once a health probe succeeds

        Raises:
            HealthCheckTimeoutError: Probe budget exhausted
            DeploymentCancelledError: ``cancel`` was set during gating
            SandboxRuntimeError: The runtime failed, or the runner exited
        """
        limits = limits or InstanceLimits()
        name = self.sandbox_name_for(artifact.project_id)
        sandbox_id: Optional[str] = None

        try:
            sandbox_id = await self.runtime.create(self.runner_spec(artifact, port, limits, name))
            if on_created is not None:
                await on_created(sandbox_id, name)
            await self.runtime.start(sandbox_id)
            logger.info(f"Runner {name} started on port {port}, waiting for health check")

            healthy = await self.registry.health_check(
                port,
                max_attempts=self.health_max_attempts,
                interval_ms=self.health_interval_ms,
                cancel=cancel,
                abort=lambda: self._has_exited(sandbox_id),
            )
            if healthy:
                return LaunchedInstance(
                    sandbox_id=sandbox_id,
                    sandbox_name=name,
                    image=artifact.image,
                    host=self.host_for(artifact.project_id),
                    port=port,
                )

            if cancel is not None and cancel.is_set():
                raise DeploymentCancelledError(name)
            if await self._has_exited(sandbox_id):
                state = await self.runtime.inspect(sandbox_id)
                detail = "out of memory" if state.oom_killed else f"exit code {state.exit_code}"
                raise SandboxRuntimeError("health_gate", f"runner exited before becoming healthy ({detail})")
            raise HealthCheckTimeoutError(port, self.health_max_attempts)
        except (Exception, asyncio.CancelledError):
            if sandbox_id is not None:
                await self.safe_teardown(sandbox_id)
            raise

    async def _has_exited(self, sandbox_id: str) -> bool:
        try:
            state = await self.runtime.inspect(sandbox_id)
        except Exception as e:
            logger.debug(f"Inspect failed for runner {sandbox_id[:12]}: {e}")
            return False
        return not state.running and state.status in ("exited", "dead")

    async def probe(self, port: int) -> bool:
        """Single liveness probe, for periodic monitoring."""
        return await self.registry.probe(port)

    async def teardown(self, sandbox_id: str) -> None:
        """
        Stop and remove a runner.

        Raises:
            SandboxRuntimeError: If the runtime could not stop or remove it
        """
        try:
            await self.runtime.stop(sandbox_id, grace_seconds=self.stop_grace_seconds)
        finally:
            await self.runtime.remove(sandbox_id, force=True)
        logger.info(f"Runner {sandbox_id[:12]} torn down")

    async def safe_teardown(self, sandbox_id: str) -> bool:
        """Teardown that logs instead of raising. Returns True on success."""
        try:
            await self.teardown(sandbox_id)
            return True
        except Exception as e:
            logger.error(f"Failed to tear down runner {sandbox_id[:12]}: {e}")
            return False

    async def logs(self, sandbox_id: str, tail: int = 200) -> str:
        return await self.runtime.get_logs(sandbox_id, tail=tail)
