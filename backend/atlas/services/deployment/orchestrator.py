"""
Deployment orchestration service.

Coordinates between:
- QuotaGate for admission
- IsolatedBuildRunner for builds
- PortLeaseRegistry for host ports
- HardenedInstanceLauncher for runners and the health gate
- DeploymentStore for persistence and EventBus for lifecycle notifications

The orchestrator is the only component that links a Build to an Instance.
Builds and deploys for one project are serialized by a per-project lock, and
every failure after a port was leased releases it before the error surfaces.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Coroutine, Dict, List, Optional, Set, Tuple
from uuid import UUID

from atlas.core.config import settings
from atlas.core.events import (
    BuildCancelledEvent,
    BuildFailedEvent,
    BuildStartedEvent,
    BuildSucceededEvent,
    EventBus,
    InstanceFailedEvent,
    InstanceHealthyEvent,
    InstanceStoppedEvent,
    InstanceUnhealthyEvent,
)
from atlas.core.exceptions import (
    BuildFailedError,
    BuildNotFoundError,
    DeploymentCancelledError,
    DomainException,
    ForbiddenError,
    InstanceNotFoundError,
    InvalidStateError,
    ProjectNotFoundError,
)
from atlas.core.locks import KeyedLocks
from atlas.models.build import Build, BuildStatus
from atlas.models.instance import Instance, InstanceStatus, LIVE_INSTANCE_STATUSES
from atlas.models.project import Project
from atlas.repositories.store import DeploymentStore
from atlas.services.build.build_runner import BuildArtifact, IsolatedBuildRunner
from atlas.services.deployment.instance_launcher import HardenedInstanceLauncher, InstanceLimits
from atlas.services.deployment.port_registry import PortLeaseRegistry
from atlas.services.quota.quota_gate import AdmissionKind, QuotaGate

logger = logging.getLogger(__name__)


@dataclass
class _GatingHandle:
    """Signals shared between a deploy in its health gate and ``stop``."""
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    done: asyncio.Event = field(default_factory=asyncio.Event)


class DeploymentOrchestrator:
    """
    Orchestration service for builds and instances.

    Provides high-level methods for the build -> deploy -> stop lifecycle.
    """

    def __init__(
        self,
        store: DeploymentStore,
        gate: QuotaGate,
        registry: PortLeaseRegistry,
        builder: IsolatedBuildRunner,
        launcher: HardenedInstanceLauncher,
        bus: EventBus,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.gate = gate
        self.registry = registry
        self.builder = builder
        self.launcher = launcher
        self.bus = bus
        self._clock = clock

        self._project_locks = KeyedLocks()
        self._gating: Dict[UUID, _GatingHandle] = {}
        self._tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Lookups and ownership
    # =========================================================================

    async def _owned_project(self, user_id: UUID, project_id: UUID) -> Project:
        project = await self.store.get_project(project_id)
        if not project:
            raise ProjectNotFoundError(str(project_id))
        if not project.is_owned_by(user_id):
            raise ForbiddenError("project", str(project_id))
        return project

    async def get_build(self, user_id: UUID, build_id: UUID) -> Build:
        build = await self.store.get_build(build_id)
        if not build:
            raise BuildNotFoundError(str(build_id))
        if str(build.user_id) != str(user_id):
            raise ForbiddenError("build", str(build_id))
        return build

    async def get_instance(self, user_id: UUID, instance_id: UUID) -> Instance:
        instance = await self.store.get_instance(instance_id)
        if not instance:
            raise InstanceNotFoundError(str(instance_id))
        if str(instance.user_id) != str(user_id):
            raise ForbiddenError("instance", str(instance_id))
        return instance

    async def list_builds(self, user_id: UUID, project_id: UUID, limit: int = 50) -> List[Build]:
        await self._owned_project(user_id, project_id)
        return await self.store.list_project_builds(project_id, limit)

    async def list_instances(self, user_id: UUID, project_id: UUID, live_only: bool = False) -> List[Instance]:
        await self._owned_project(user_id, project_id)
        return await self.store.list_project_instances(project_id, live_only)

    # =========================================================================
    # Builds
    # =========================================================================

    async def build(self, user_id: UUID, project_id: UUID) -> Tuple[Build, BuildArtifact]:
        """
        Admit and run a build, waiting for it to finish.

        Raises:
            QuotaExceededError: Admission denied; no Build row is created
            BuildFailedError: The build failed (persisted as failed, with logs)
        """
        project = await self._owned_project(user_id, project_id)
        async with self._project_locks.hold(project_id):
            (await self.gate.admit(user_id, AdmissionKind.BUILD)).raise_if_denied()
            build = await self.store.create_build(project_id, user_id)
            return await self._execute_build(project, build)

    async def submit_build(self, user_id: UUID, project_id: UUID, deploy: bool = False) -> Build:
        """
        Admit a build and run it in the background.

        Returns:
            The queued Build; poll ``get_build`` for progress
        """
        project = await self._owned_project(user_id, project_id)
        (await self.gate.admit(user_id, AdmissionKind.BUILD)).raise_if_denied()
        build = await self.store.create_build(project_id, user_id)
        self._spawn(self._background_build(project, build, deploy), f"build-{build.id}")
        logger.info(f"Queued build {build.id} for project {project_id} (deploy: {deploy})")
        return build

    async def _background_build(self, project: Project, build: Build, deploy: bool) -> None:
        async with self._project_locks.hold(project.id):
            current = await self.store.get_build(build.id)
            if current is None or current.status != BuildStatus.QUEUED.value:
                logger.info(f"Skipping build {build.id}: status is {current.status if current else 'gone'}")
                return
            try:
                build, artifact = await self._execute_build(project, current)
            except DomainException as e:
                logger.info(f"Background build {build.id} ended: {e.message}")
                return

            if deploy:
                try:
                    await self._execute_deploy(build.user_id, project, build, artifact)
                except DomainException as e:
                    logger.info(f"Background deploy of build {build.id} ended: {e.message}")

    async def _execute_build(self, project: Project, build: Build) -> Tuple[Build, BuildArtifact]:
        """Run the builder and persist the outcome. Caller holds the project lock."""
        self.bus.emit(BuildStartedEvent(user_id=build.user_id, project_id=project.id, build_id=build.id))

        async def on_started(sandbox_id: str) -> None:
            await self.store.update_build_status(
                build.id, BuildStatus.RUNNING.value, builder_sandbox_id=sandbox_id
            )

        try:
            artifact = await self.builder.build(
                project.id, project.path, build_id=build.id, on_started=on_started
            )
        except BuildFailedError as e:
            await self._record_build_failure(project, build, e.reason, e.message, e.logs, e.exit_code)
            raise
        except DomainException as e:
            await self._record_build_failure(project, build, e.code, e.message, "", None)
            raise
        except asyncio.CancelledError:
            await self._record_build_failure(project, build, "cancelled", "Build interrupted", "", None)
            raise

        updated = await self.store.update_build_status(
            build.id,
            BuildStatus.SUCCEEDED.value,
            artifact_ref=artifact.ref,
            build_logs=artifact.logs,
            exit_code=0,
            memory_used_mb=int(artifact.memory_peak_mb) or None,
            cpu_time_seconds=artifact.cpu_seconds or None,
        )
        self.bus.emit(BuildSucceededEvent(
            user_id=build.user_id,
            project_id=project.id,
            build_id=build.id,
            artifact_ref=artifact.ref,
        ))
        return updated or build, artifact

    async def _record_build_failure(
        self,
        project: Project,
        build: Build,
        reason: str,
        message: str,
        logs: str,
        exit_code: Optional[int],
    ) -> None:
        cancelled = reason == "cancelled"
        status = BuildStatus.CANCELLED.value if cancelled else BuildStatus.FAILED.value
        await self.store.update_build_status(
            build.id,
            status,
            build_logs=logs or None,
            error_message=message,
            failure_reason=reason,
            exit_code=exit_code,
        )
        if cancelled:
            self.bus.emit(BuildCancelledEvent(user_id=build.user_id, project_id=project.id, build_id=build.id))
        else:
            self.bus.emit(BuildFailedEvent(
                user_id=build.user_id,
                project_id=project.id,
                build_id=build.id,
                reason=reason,
                exit_code=exit_code,
                error_message=message,
            ))

    async def cancel_build(self, user_id: UUID, build_id: UUID) -> Build:
        """Cancel a queued or running build."""
        build = await self.get_build(user_id, build_id)
        if build.is_terminal:
            raise InvalidStateError("build", str(build_id), build.status, "cancel")

        if self.builder.cancel(build.id):
            return build

        # Queued behind the project lock; the background task skips it
        updated = await self.store.update_build_status(
            build.id,
            BuildStatus.CANCELLED.value,
            failure_reason="cancelled",
            error_message=f"Build {build.id} cancelled before it started",
        )
        self.bus.emit(BuildCancelledEvent(user_id=build.user_id, project_id=build.project_id, build_id=build.id))
        return updated or build

    # =========================================================================
    # Deploys
    # =========================================================================

    async def deploy(self, user_id: UUID, project_id: UUID, build_id: UUID) -> Instance:
        """
        Deploy a successful build and wait for the health gate.

        Raises:
            QuotaExceededError: Admission denied
            PortPoolExhaustedError: No port free; nothing was started
            HealthCheckTimeoutError: Gate failed; instance torn down, port freed
        """
        project = await self._owned_project(user_id, project_id)
        async with self._project_locks.hold(project_id):
            build = await self.store.get_build(build_id)
            if not build or build.project_id != project.id:
                raise BuildNotFoundError(str(build_id))
            if build.status != BuildStatus.SUCCEEDED.value or not build.artifact_ref:
                raise InvalidStateError("build", str(build_id), build.status, "deploy")

            artifact = BuildArtifact.from_ref(build.artifact_ref, build.id, project.id)
            return await self._execute_deploy(user_id, project, build, artifact)

    async def build_and_deploy(self, user_id: UUID, project_id: UUID) -> Instance:
        """
        Full pipeline: admit, build, admit the instance, lease a port, launch.

        A deploy denied by quota leaves the Build as succeeded.
        """
        project = await self._owned_project(user_id, project_id)
        async with self._project_locks.hold(project_id):
            (await self.gate.admit(user_id, AdmissionKind.BUILD)).raise_if_denied()
            build = await self.store.create_build(project_id, user_id)
            build, artifact = await self._execute_build(project, build)
            return await self._execute_deploy(user_id, project, build, artifact)

    async def _instance_limits(self, user_id: UUID) -> InstanceLimits:
        max_memory_mb, max_vcpu = await self.gate.container_ceiling(user_id)
        return InstanceLimits(
            memory_mb=min(settings.DEFAULT_CONTAINER_MEMORY_MB, max_memory_mb),
            cpu=min(settings.DEFAULT_CONTAINER_CPU, max_vcpu),
        )

    async def _execute_deploy(
        self,
        user_id: UUID,
        project: Project,
        build: Build,
        artifact: BuildArtifact,
    ) -> Instance:
        """Admit, lease, launch and gate. Caller holds the project lock."""
        replaced = await self.store.list_project_instances(project.id, live_only=True)
        decision = await self.gate.admit(user_id, AdmissionKind.DEPLOY_INSTANCE, replacing=len(replaced))
        decision.raise_if_denied()

        # One lease per project: the old instance gives up the port before the new one starts
        for old in replaced:
            await self._stop_instance(old, reason="replaced")

        port = await self.registry.allocate(project.id)
        limits = await self._instance_limits(user_id)

        try:
            instance = await self.store.create_instance(
                project_id=project.id,
                build_id=build.id,
                user_id=user_id,
                host=self.launcher.host_for(project.id),
                port=port,
                status=InstanceStatus.STARTING.value,
                memory_limit_mb=limits.memory_mb,
                cpu_limit=limits.cpu,
                auto_sleep_enabled=settings.DEFAULT_AUTO_SLEEP_ENABLED,
                sleep_after_minutes=settings.DEFAULT_SLEEP_AFTER_MINUTES,
                last_accessed=self._clock(),
            )
        except BaseException:
            await self.registry.release(port)
            raise

        handle = _GatingHandle()
        self._gating[instance.id] = handle

        async def on_created(sandbox_id: str, sandbox_name: str) -> None:
            await self.store.update_instance_status(
                instance.id,
                InstanceStatus.STARTING.value,
                sandbox_id=sandbox_id,
                sandbox_name=sandbox_name,
                image=artifact.image,
            )

        try:
            try:
                launched = await self.launcher.launch(
                    artifact, port, limits, cancel=handle.cancel, on_created=on_created
                )
            except (DeploymentCancelledError, asyncio.CancelledError):
                await self.registry.release(port)
                await self.store.update_instance_status(instance.id, InstanceStatus.STOPPED.value)
                self.bus.emit(InstanceStoppedEvent(
                    user_id=user_id, project_id=project.id, instance_id=instance.id, port=port, reason="cancelled",
                ))
                raise
            except Exception as e:
                await self.registry.release(port)
                await self._mark_instance_failed(instance, build, e)
                raise

            try:
                now = self._clock()
                healthy = await self.store.update_instance_status(
                    instance.id,
                    InstanceStatus.HEALTHY.value,
                    sandbox_id=launched.sandbox_id,
                    sandbox_name=launched.sandbox_name,
                    image=launched.image,
                    health_check_count=1,
                    last_health_check=now,
                    last_accessed=now,
                )
            except BaseException:
                await self.launcher.safe_teardown(launched.sandbox_id)
                await self.registry.release(port)
                raise
        finally:
            self._gating.pop(instance.id, None)
            handle.done.set()

        self.bus.emit(InstanceHealthyEvent(
            user_id=user_id,
            project_id=project.id,
            instance_id=instance.id,
            build_id=build.id,
            port=port,
            host=launched.host,
        ))
        logger.info(f"Instance {instance.id} for project {project.id} healthy at {launched.url}")
        return healthy

    async def _mark_instance_failed(self, instance: Instance, build: Build, error: Exception) -> None:
        reason = getattr(error, "code", "runtime_error")
        message = getattr(error, "message", str(error))
        logger.error(f"Deploy of instance {instance.id} failed ({reason}): {message}")
        await self.store.update_instance_status(
            instance.id,
            InstanceStatus.FAILED.value,
            failure_reason=reason,
            error_message=message,
        )
        self.bus.emit(InstanceFailedEvent(
            user_id=instance.user_id,
            project_id=instance.project_id,
            instance_id=instance.id,
            build_id=build.id,
            reason=reason,
            error_message=message,
        ))

    # =========================================================================
    # Stop
    # =========================================================================

    async def _release_lease(self, instance: Instance) -> None:
        """
        Release the instance's port if the lease still belongs to it.

        The lease is kept when another project holds the port, or when another
        live instance of the same project is serving on it.
        """
        holder = self.registry.holder_of(instance.port)
        if holder is None:
            return
        if holder != instance.project_id:
            logger.warning(
                f"Port {instance.port} of instance {instance.id} is now leased to {holder}; not releasing"
            )
            return
        siblings = [
            other for other in await self.store.list_project_instances(instance.project_id, live_only=True)
            if other.id != instance.id and other.port == instance.port
        ]
        if siblings:
            logger.info(
                f"Port {instance.port} of instance {instance.id} is in use by instance {siblings[0].id}; not releasing"
            )
            return
        await self.registry.release(instance.port)

    async def stop(self, user_id: UUID, instance_id: UUID) -> Instance:
        """
        Stop an instance and release its port.

        The port is released even when container teardown fails. Stopping an
        instance that is still in its health gate cancels the gate.
        Stopping an instance that already ended changes nothing.
        """
        instance = await self.get_instance(user_id, instance_id)

        handle = self._gating.get(instance.id)
        if handle is not None:
            logger.info(f"Cancelling health gate of instance {instance.id}")
            handle.cancel.set()
            wait_seconds = settings.HEALTH_CHECK_INTERVAL_MS / 1000 + settings.CONTAINER_STOP_GRACE_SECONDS + 30
            try:
                await asyncio.wait_for(handle.done.wait(), timeout=wait_seconds)
            except asyncio.TimeoutError:
                logger.warning(f"Deploy of instance {instance.id} did not finish after cancellation")
            instance = await self.store.get_instance(instance.id) or instance
            # The gate may have passed before the cancel was seen
            if instance.status in (InstanceStatus.HEALTHY.value, InstanceStatus.UNHEALTHY.value):
                return await self._stop_instance(instance, reason="requested")
            await self._release_lease(instance)
            return instance

        # Stopped and failed instances gave their port back when they ended
        if not instance.is_live:
            return instance

        return await self._stop_instance(instance, reason="requested")

    async def _stop_instance(self, instance: Instance, reason: str) -> Instance:
        teardown_error: Optional[Exception] = None
        try:
            if instance.sandbox_id:
                await self.launcher.teardown(instance.sandbox_id)
        except Exception as e:
            teardown_error = e
            logger.error(f"Teardown of instance {instance.id} failed, releasing port anyway: {e}")
        finally:
            await self._release_lease(instance)

        fields = {}
        if teardown_error is not None:
            fields["error_message"] = f"Teardown failed: {teardown_error}"
        updated = await self.store.update_instance_status(instance.id, InstanceStatus.STOPPED.value, **fields)

        self.bus.emit(InstanceStoppedEvent(
            user_id=instance.user_id,
            project_id=instance.project_id,
            instance_id=instance.id,
            port=instance.port,
            reason=reason,
        ))
        logger.info(f"Instance {instance.id} stopped ({reason}), port {instance.port} released")
        return updated or instance

    async def touch(self, user_id: UUID, instance_id: UUID) -> Instance:
        """Record an access so the idle sweep does not put the instance to sleep."""
        instance = await self.get_instance(user_id, instance_id)
        if not instance.is_live:
            raise InvalidStateError("instance", str(instance_id), instance.status, "touch")
        await self.store.touch_instance(instance.id, self._clock())
        return await self.store.get_instance(instance.id) or instance

    async def instance_logs(self, user_id: UUID, instance_id: UUID, tail: int = 200) -> str:
        instance = await self.get_instance(user_id, instance_id)
        if not instance.sandbox_id:
            return ""
        return await self.launcher.logs(instance.sandbox_id, tail=tail)

    # =========================================================================
    # Periodic jobs
    # =========================================================================

    async def monitor_instances(self) -> Dict[str, int]:
        """
        Probe every gated instance once and move it between healthy and unhealthy.

        Unhealthy instances are kept running for inspection.
        """
        instances = await self.store.list_instances(
            [InstanceStatus.HEALTHY.value, InstanceStatus.UNHEALTHY.value]
        )
        instances = [i for i in instances if i.id not in self._gating]
        results = await asyncio.gather(*(self.launcher.probe(i.port) for i in instances))

        counts = {"healthy": 0, "unhealthy": 0, "changed": 0}
        now = self._clock()
        for instance, ok in zip(instances, results):
            previous = instance.status
            new_status = InstanceStatus.HEALTHY.value if ok else InstanceStatus.UNHEALTHY.value
            counts["healthy" if ok else "unhealthy"] += 1
            await self.store.update_instance_status(
                instance.id,
                new_status,
                health_check_count=(instance.health_check_count or 0) + 1,
                last_health_check=now,
            )
            if new_status == previous:
                continue

            counts["changed"] += 1
            if ok:
                logger.info(f"Instance {instance.id} recovered on port {instance.port}")
                self.bus.emit(InstanceHealthyEvent(
                    user_id=instance.user_id,
                    project_id=instance.project_id,
                    instance_id=instance.id,
                    build_id=instance.build_id,
                    port=instance.port,
                    host=instance.host,
                ))
            else:
                logger.warning(f"Instance {instance.id} failed liveness probe on port {instance.port}")
                self.bus.emit(InstanceUnhealthyEvent(
                    user_id=instance.user_id,
                    project_id=instance.project_id,
                    instance_id=instance.id,
                    port=instance.port,
                ))
        return counts

    async def sleep_idle_instances(self, now: Optional[datetime] = None) -> int:
        """Stop instances idle past their auto-sleep threshold. Returns how many."""
        now = now or self._clock()
        instances = await self.store.list_instances(
            [InstanceStatus.HEALTHY.value, InstanceStatus.UNHEALTHY.value]
        )
        stopped = 0
        for instance in instances:
            if instance.id in self._gating or not instance.is_idle(now):
                continue
            if self._project_locks.is_locked(instance.project_id):
                continue
            async with self._project_locks.hold(instance.project_id):
                await self._stop_instance(instance, reason="idle")
            stopped += 1
        return stopped

    async def recover_leases(self) -> int:
        """
        Rebuild port leases from persisted live instances after a restart.

        Instances left mid-gate and builds left running by the previous
        process are failed, since nothing is watching them any more.

        Returns:
            Number of leases restored
        """
        recovered = 0
        for instance in await self.store.list_instances(LIVE_INSTANCE_STATUSES):
            if instance.status == InstanceStatus.STARTING.value:
                if instance.sandbox_id:
                    await self.launcher.safe_teardown(instance.sandbox_id)
                await self.store.update_instance_status(
                    instance.id,
                    InstanceStatus.FAILED.value,
                    failure_reason="interrupted",
                    error_message="Deploy interrupted by a restart",
                )
                continue

            if await self.registry.reserve(instance.port, instance.project_id):
                recovered += 1
            else:
                logger.warning(f"Could not restore lease on port {instance.port} for instance {instance.id}")

        for build in await self.store.list_unfinished_builds():
            await self.store.update_build_status(
                build.id,
                BuildStatus.FAILED.value,
                failure_reason="interrupted",
                error_message="Build interrupted by a restart",
            )

        logger.info(f"Recovered {recovered} port leases")
        return recovered

    async def reconcile_leases(self) -> int:
        """Release leases with no live instance behind them. Returns how many."""
        live = await self.store.list_instances(LIVE_INSTANCE_STATUSES)
        expected = {(i.port, i.project_id) for i in live}
        released = 0
        for port, project_id in self.registry.leases().items():
            if (port, project_id) in expected or self._project_locks.is_locked(project_id):
                continue
            logger.warning(f"Releasing stale lease on port {port} held by project {project_id}")
            await self.registry.release(port)
            released += 1
        return released

    # =========================================================================
    # Background tasks
    # =========================================================================

    def _spawn(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task {task.get_name()} failed: {task.exception()}")

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def wait_for_tasks(self) -> None:
        """Wait for every background build/deploy to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel health gates and background work."""
        for handle in list(self._gating.values()):
            handle.cancel.set()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("Orchestrator shut down")
