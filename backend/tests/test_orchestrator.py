"""
Tests for DeploymentOrchestrator.

Run against the in-memory store, the fake runtime and a scripted probe. The
properties checked throughout: a failed or stopped deploy never holds a port,
and no sandbox outlives a failed pipeline.
"""
import asyncio
from uuid import uuid4

import pytest

from atlas.core.exceptions import (
    BuildFailedError,
    DeploymentCancelledError,
    ForbiddenError,
    HealthCheckTimeoutError,
    InstanceNotFoundError,
    InvalidStateError,
    PortPoolExhaustedError,
    ProjectNotFoundError,
    QuotaExceededError,
    SandboxRuntimeError,
)
from atlas.models.build import BuildStatus
from atlas.models.instance import InstanceStatus
from atlas.models.project import Project
from atlas.services.deployment.instance_launcher import HardenedInstanceLauncher
from atlas.services.deployment.orchestrator import DeploymentOrchestrator
from atlas.services.deployment.port_registry import PortLeaseRegistry


def runner_specs(runtime):
    return [spec for spec in runtime.specs() if spec.labels.get("purpose") == "runner"]


async def event_kinds(bus, store):
    await bus.drain()
    return [event.kind for event in store.events]


class TestBuildAndDeploy:
    """Tests for the full pipeline."""

    @pytest.mark.asyncio
    async def test_success(self, orchestrator, store, registry, runtime, bus, user_id, project):
        instance = await orchestrator.build_and_deploy(user_id, project.id)

        assert instance.status == InstanceStatus.HEALTHY.value
        assert instance.port == 3001
        assert instance.health_check_count == 1
        assert instance.memory_limit_mb == 256
        assert registry.lease_for(project.id) == 3001

        build = await store.get_build(instance.build_id)
        assert build.status == BuildStatus.SUCCEEDED.value
        assert build.artifact_ref.endswith(f"::{project.path}")
        assert "building" in build.build_logs

        assert runtime.running_sandboxes() == [instance.sandbox_id]
        assert await event_kinds(bus, store) == ["build.started", "build.succeeded", "instance.healthy"]

    @pytest.mark.asyncio
    async def test_health_gate_failure_releases_everything(
        self, orchestrator, store, registry, runtime, probe, bus, user_id, project
    ):
        probe.default = False

        with pytest.raises(HealthCheckTimeoutError):
            await orchestrator.build_and_deploy(user_id, project.id)

        [instance] = await store.list_project_instances(project.id)
        assert instance.status == InstanceStatus.FAILED.value
        assert instance.failure_reason == "health_check_timeout"
        assert registry.lease_for(project.id) is None
        assert registry.is_available(instance.port)
        assert runtime.live_sandboxes() == []
        assert probe.calls == [instance.port] * 3

        build = await store.get_build(instance.build_id)
        assert build.status == BuildStatus.SUCCEEDED.value
        assert "instance.failed" in await event_kinds(bus, store)

    @pytest.mark.asyncio
    async def test_runtime_failure_marks_instance_failed(self, orchestrator, store, registry, runtime, user_id, project):
        original_create = runtime.create

        async def create(spec):
            if spec.labels.get("purpose") == "runner":
                raise SandboxRuntimeError("create", "port is already allocated")
            return await original_create(spec)

        runtime.create = create

        with pytest.raises(SandboxRuntimeError):
            await orchestrator.build_and_deploy(user_id, project.id)

        [instance] = await store.list_project_instances(project.id)
        assert instance.status == InstanceStatus.FAILED.value
        assert instance.failure_reason == "runtime_error"
        assert registry.leases() == {}

    @pytest.mark.asyncio
    async def test_port_exhaustion_starts_nothing(self, store, gate, builder, runtime, probe, bus, user_id, project):
        registry = PortLeaseRegistry(port_range_start=3001, port_range_end=3001, probe=probe)
        other_project = uuid4()
        await registry.reserve(3001, other_project)
        orchestrator = DeploymentOrchestrator(
            store=store,
            gate=gate,
            registry=registry,
            builder=builder,
            launcher=HardenedInstanceLauncher(runtime, registry, health_max_attempts=3, health_interval_ms=0),
            bus=bus,
        )

        with pytest.raises(PortPoolExhaustedError):
            await orchestrator.build_and_deploy(user_id, project.id)

        assert runner_specs(runtime) == []
        assert await store.list_project_instances(project.id) == []
        assert registry.leases() == {3001: other_project}
        [build] = await store.list_project_builds(project.id)
        assert build.status == BuildStatus.SUCCEEDED.value

    @pytest.mark.asyncio
    async def test_deploy_denied_keeps_build(self, orchestrator, store, registry, runtime, limits, user_id, project):
        limits["max_concurrent_containers"] = 0

        with pytest.raises(QuotaExceededError) as exc_info:
            await orchestrator.build_and_deploy(user_id, project.id)

        assert exc_info.value.limit == "concurrency_limit"
        [build] = await store.list_project_builds(project.id)
        assert build.status == BuildStatus.SUCCEEDED.value
        assert await store.list_project_instances(project.id) == []
        assert registry.leases() == {}
        assert runner_specs(runtime) == []

    @pytest.mark.asyncio
    async def test_build_denied_creates_nothing(self, orchestrator, store, runtime, limits, user_id, project):
        limits["max_builds_per_day"] = 0

        with pytest.raises(QuotaExceededError):
            await orchestrator.build_and_deploy(user_id, project.id)

        assert store.builds == {}
        assert runtime.calls == []

    @pytest.mark.asyncio
    async def test_build_failure_is_persisted(self, orchestrator, store, registry, runtime, bus, user_id, project):
        runtime.exit_code = 1

        with pytest.raises(BuildFailedError):
            await orchestrator.build_and_deploy(user_id, project.id)

        [build] = await store.list_project_builds(project.id)
        assert build.status == BuildStatus.FAILED.value
        assert build.failure_reason == "exit_code"
        assert build.exit_code == 1
        assert "building" in build.build_logs
        assert build.finished_at is not None
        assert registry.leases() == {}
        assert await event_kinds(bus, store) == ["build.started", "build.failed"]

    @pytest.mark.asyncio
    async def test_redeploy_replaces_live_instance(self, orchestrator, store, registry, runtime, limits, user_id, project):
        limits["max_concurrent_containers"] = 1

        first = await orchestrator.build_and_deploy(user_id, project.id)
        second = await orchestrator.build_and_deploy(user_id, project.id)

        first = await store.get_instance(first.id)
        assert first.status == InstanceStatus.STOPPED.value
        assert second.status == InstanceStatus.HEALTHY.value
        assert registry.leases() == {second.port: project.id}
        assert runtime.running_sandboxes() == [second.sandbox_id]

    @pytest.mark.asyncio
    async def test_failed_redeploy_leaves_project_without_instance(
        self, orchestrator, store, registry, runtime, probe, user_id, project
    ):
        first = await orchestrator.build_and_deploy(user_id, project.id)
        probe.default = False

        with pytest.raises(HealthCheckTimeoutError):
            await orchestrator.build_and_deploy(user_id, project.id)

        first = await store.get_instance(first.id)
        assert first.status == InstanceStatus.STOPPED.value
        statuses = sorted(i.status for i in await store.list_project_instances(project.id))
        assert statuses == [InstanceStatus.FAILED.value, InstanceStatus.STOPPED.value]
        assert registry.leases() == {}
        assert runtime.running_sandboxes() == []

    @pytest.mark.asyncio
    async def test_other_user_is_forbidden(self, orchestrator, user_id, project):
        with pytest.raises(ForbiddenError):
            await orchestrator.build_and_deploy(uuid4(), project.id)

    @pytest.mark.asyncio
    async def test_unknown_project(self, orchestrator, user_id):
        with pytest.raises(ProjectNotFoundError):
            await orchestrator.build_and_deploy(user_id, uuid4())


class TestBuildAndDeploySeparately:

    @pytest.mark.asyncio
    async def test_deploy_existing_build(self, orchestrator, runtime, user_id, project):
        build, artifact = await orchestrator.build(user_id, project.id)

        instance = await orchestrator.deploy(user_id, project.id, build.id)

        assert instance.build_id == build.id
        assert instance.image == artifact.image
        assert runtime.running_sandboxes() == [instance.sandbox_id]

    @pytest.mark.asyncio
    async def test_deploy_failed_build_rejected(self, orchestrator, store, runtime, user_id, project):
        runtime.exit_code = 2
        with pytest.raises(BuildFailedError):
            await orchestrator.build(user_id, project.id)
        [build] = await store.list_project_builds(project.id)

        with pytest.raises(InvalidStateError):
            await orchestrator.deploy(user_id, project.id, build.id)

    @pytest.mark.asyncio
    async def test_submit_build_with_deploy(self, orchestrator, store, user_id, project):
        build = await orchestrator.submit_build(user_id, project.id, deploy=True)
        assert build.status == BuildStatus.QUEUED.value

        await orchestrator.wait_for_tasks()

        build = await store.get_build(build.id)
        assert build.status == BuildStatus.SUCCEEDED.value
        [instance] = await store.list_project_instances(project.id, live_only=True)
        assert instance.status == InstanceStatus.HEALTHY.value
        assert orchestrator.pending_tasks == 0

    @pytest.mark.asyncio
    async def test_cancel_queued_build(self, orchestrator, store, runtime, user_id, project):
        build = await orchestrator.submit_build(user_id, project.id)

        cancelled = await orchestrator.cancel_build(user_id, build.id)
        await orchestrator.wait_for_tasks()

        assert cancelled.status == BuildStatus.CANCELLED.value
        assert (await store.get_build(build.id)).status == BuildStatus.CANCELLED.value
        assert runtime.calls == []

        with pytest.raises(InvalidStateError):
            await orchestrator.cancel_build(user_id, build.id)


class TestStop:
    """Tests for stopping instances."""

    @pytest.mark.asyncio
    async def test_stop_releases_port(self, orchestrator, registry, runtime, bus, store, user_id, project):
        instance = await orchestrator.build_and_deploy(user_id, project.id)

        stopped = await orchestrator.stop(user_id, instance.id)

        assert stopped.status == InstanceStatus.STOPPED.value
        assert stopped.stopped_at is not None
        assert registry.leases() == {}
        assert runtime.live_sandboxes() == []
        assert (await event_kinds(bus, store))[-1] == "instance.stopped"

    @pytest.mark.asyncio
    async def test_teardown_failure_still_releases_port(self, orchestrator, registry, runtime, user_id, project):
        instance = await orchestrator.build_and_deploy(user_id, project.id)
        runtime.failures["stop"] = SandboxRuntimeError("stop", "daemon unreachable")
        runtime.failures["remove"] = SandboxRuntimeError("remove", "daemon unreachable")

        stopped = await orchestrator.stop(user_id, instance.id)

        assert stopped.status == InstanceStatus.STOPPED.value
        assert stopped.error_message.startswith("Teardown failed")
        assert registry.leases() == {}

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, orchestrator, user_id, project):
        instance = await orchestrator.build_and_deploy(user_id, project.id)
        await orchestrator.stop(user_id, instance.id)

        again = await orchestrator.stop(user_id, instance.id)

        assert again.status == InstanceStatus.STOPPED.value

    @pytest.mark.asyncio
    async def test_stopping_old_instance_keeps_lease_of_current_one(
        self, orchestrator, registry, runtime, user_id, project
    ):
        first = await orchestrator.build_and_deploy(user_id, project.id)
        await orchestrator.stop(user_id, first.id)
        second = await orchestrator.build_and_deploy(user_id, project.id)
        assert second.port == first.port

        again = await orchestrator.stop(user_id, first.id)

        assert again.status == InstanceStatus.STOPPED.value
        assert registry.lease_for(project.id) == second.port
        assert registry.leases() == {second.port: project.id}
        assert runtime.running_sandboxes() == [second.sandbox_id]

    @pytest.mark.asyncio
    async def test_stopping_failed_instance_keeps_lease_of_current_one(
        self, orchestrator, store, registry, probe, user_id, project
    ):
        probe.default = False
        with pytest.raises(HealthCheckTimeoutError):
            await orchestrator.build_and_deploy(user_id, project.id)
        [failed] = await store.list_project_instances(project.id)
        probe.default = True
        live = await orchestrator.build_and_deploy(user_id, project.id)
        assert live.port == failed.port

        await orchestrator.stop(user_id, failed.id)

        assert registry.leases() == {live.port: project.id}

    @pytest.mark.asyncio
    async def test_port_shared_with_live_instance_is_kept(self, orchestrator, store, registry, user_id, project):
        instance = await orchestrator.build_and_deploy(user_id, project.id)
        other = await store.create_instance(
            project_id=project.id,
            build_id=instance.build_id,
            user_id=user_id,
            host=instance.host,
            port=instance.port,
            status=InstanceStatus.HEALTHY.value,
        )

        await orchestrator.stop(user_id, instance.id)

        assert registry.holder_of(instance.port) == project.id
        assert (await store.get_instance(other.id)).status == InstanceStatus.HEALTHY.value

    @pytest.mark.asyncio
    async def test_stop_during_health_gate(
        self, orchestrator, launcher, store, registry, runtime, probe, user_id, project
    ):
        probe.default = False
        launcher.health_max_attempts = 100
        launcher.health_interval_ms = 50

        task = asyncio.create_task(orchestrator.build_and_deploy(user_id, project.id))
        while not probe.calls:
            await asyncio.sleep(0.01)
        [instance] = await store.list_project_instances(project.id)

        stopped = await orchestrator.stop(user_id, instance.id)

        with pytest.raises(DeploymentCancelledError):
            await asyncio.wait_for(task, timeout=2)

        assert stopped.status == InstanceStatus.STOPPED.value
        assert registry.leases() == {}
        assert runtime.live_sandboxes() == []

    @pytest.mark.asyncio
    async def test_stop_other_users_instance(self, orchestrator, user_id, project):
        instance = await orchestrator.build_and_deploy(user_id, project.id)

        with pytest.raises(ForbiddenError):
            await orchestrator.stop(uuid4(), instance.id)

    @pytest.mark.asyncio
    async def test_stop_unknown_instance(self, orchestrator, user_id):
        with pytest.raises(InstanceNotFoundError):
            await orchestrator.stop(user_id, uuid4())

    @pytest.mark.asyncio
    async def test_touch_counts_requests(self, orchestrator, user_id, project, clock):
        instance = await orchestrator.build_and_deploy(user_id, project.id)
        clock.advance(minutes=5)

        touched = await orchestrator.touch(user_id, instance.id)

        assert touched.request_count == 1
        assert touched.last_accessed == clock.now


class TestPeriodicJobs:
    """Tests for monitoring, idle sweep and lease recovery."""

    @pytest.mark.asyncio
    async def test_monitor_flags_and_recovers(self, orchestrator, store, probe, bus, user_id, project):
        instance = await orchestrator.build_and_deploy(user_id, project.id)

        probe.default = False
        counts = await orchestrator.monitor_instances()
        assert counts == {"healthy": 0, "unhealthy": 1, "changed": 1}
        assert (await store.get_instance(instance.id)).status == InstanceStatus.UNHEALTHY.value

        probe.default = True
        counts = await orchestrator.monitor_instances()
        assert counts == {"healthy": 1, "unhealthy": 0, "changed": 1}
        assert (await store.get_instance(instance.id)).status == InstanceStatus.HEALTHY.value

        kinds = await event_kinds(bus, store)
        assert kinds[-2:] == ["instance.unhealthy", "instance.healthy"]

    @pytest.mark.asyncio
    async def test_unhealthy_instance_keeps_running(self, orchestrator, registry, runtime, probe, user_id, project):
        instance = await orchestrator.build_and_deploy(user_id, project.id)
        probe.default = False

        await orchestrator.monitor_instances()

        assert registry.lease_for(project.id) == instance.port
        assert runtime.running_sandboxes() == [instance.sandbox_id]

    @pytest.mark.asyncio
    async def test_sleep_idle_instances(self, orchestrator, store, registry, clock, user_id, project):
        instance = await orchestrator.build_and_deploy(user_id, project.id)

        assert await orchestrator.sleep_idle_instances() == 0

        clock.advance(hours=1)
        assert await orchestrator.sleep_idle_instances() == 1

        assert (await store.get_instance(instance.id)).status == InstanceStatus.STOPPED.value
        assert registry.leases() == {}

    @pytest.mark.asyncio
    async def test_recover_leases_after_restart(self, orchestrator, store, registry, runtime, user_id, project):
        healthy = await store.create_instance(
            project_id=project.id, user_id=user_id, host="h", port=3005, status=InstanceStatus.HEALTHY.value,
        )
        other = store.add_project(Project(user_id=user_id, name="other", path=project.path))
        starting = await store.create_instance(
            project_id=other.id, user_id=user_id, host="h", port=3006, status=InstanceStatus.STARTING.value,
        )
        build = await store.create_build(project.id, user_id)
        await store.update_build_status(build.id, BuildStatus.RUNNING.value)

        assert await orchestrator.recover_leases() == 1

        assert registry.leases() == {3005: project.id}
        assert (await store.get_instance(healthy.id)).status == InstanceStatus.HEALTHY.value
        starting = await store.get_instance(starting.id)
        assert starting.status == InstanceStatus.FAILED.value
        assert starting.failure_reason == "interrupted"
        assert (await store.get_build(build.id)).failure_reason == "interrupted"

    @pytest.mark.asyncio
    async def test_reconcile_releases_stale_leases(self, orchestrator, registry, user_id, project):
        instance = await orchestrator.build_and_deploy(user_id, project.id)
        stray = uuid4()
        stray_port = await registry.allocate(stray)

        assert await orchestrator.reconcile_leases() == 1

        assert registry.is_available(stray_port)
        assert registry.lease_for(project.id) == instance.port

    @pytest.mark.asyncio
    async def test_shutdown_cancels_background_work(self, orchestrator, runtime, user_id, project):
        runtime.run_seconds = None
        await orchestrator.submit_build(user_id, project.id)
        await asyncio.sleep(0.05)

        await orchestrator.shutdown()

        assert orchestrator.pending_tasks == 0
        assert runtime.live_sandboxes() == []
