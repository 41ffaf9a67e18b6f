"""
Tests for IsolatedBuildRunner.

Every test checks that no builder sandbox outlives the build call.
"""
import asyncio
from uuid import uuid4

import pytest

from atlas.core.exceptions import BuildFailedError, SandboxRuntimeError
from atlas.services.build.build_runner import BuildArtifact, IsolatedBuildRunner, LogCapture
from tests.fakes import FakeRuntime


def make_runner(runtime, **overrides):
    options = {"timeout_seconds": 5, "usage_sample_seconds": 0.01}
    options.update(overrides)
    return IsolatedBuildRunner(runtime, **options)


class TestBuilderSpec:
    """Tests for the builder sandbox profile."""

    def test_spec_is_isolated(self, runtime, source_tree):
        runner = make_runner(runtime)
        build_id, project_id = uuid4(), uuid4()

        spec = runner.builder_spec(build_id, project_id, str(source_tree))

        assert spec.network == "none"
        assert spec.binds == {str(source_tree): "/workspace:rw"}
        assert spec.cap_drop == ["ALL"]
        assert "no-new-privileges:true" in spec.security_opt
        assert spec.memory_limit and spec.cpu_limit and spec.pids_limit
        assert spec.env == {"CI": "true"}
        assert spec.name == f"atlas-build-{str(build_id)[:8]}"
        assert spec.labels["project-id"] == str(project_id)


class TestBuild:
    """Tests for the build lifecycle."""

    @pytest.mark.asyncio
    async def test_success_returns_artifact(self, runtime, source_tree):
        runner = make_runner(runtime)
        project_id = uuid4()
        started = []

        async def on_started(sandbox_id):
            started.append(sandbox_id)

        artifact = await runner.build(project_id, str(source_tree), on_started=on_started)

        assert artifact.exit_code == 0
        assert artifact.project_id == project_id
        assert artifact.source_path == str(source_tree)
        assert "building" in artifact.logs
        assert artifact.ref == f"{artifact.image}::{source_tree}"
        assert len(started) == 1
        assert runtime.live_sandboxes() == []
        assert runner.active_builds() == []

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_with_logs(self, source_tree):
        runtime = FakeRuntime(exit_code=2, log_lines=["npm ERR! missing script: build"])
        runner = make_runner(runtime)

        with pytest.raises(BuildFailedError) as exc_info:
            await runner.build(uuid4(), str(source_tree))

        assert exc_info.value.reason == "exit_code"
        assert exc_info.value.exit_code == 2
        assert "missing script" in exc_info.value.logs
        assert runtime.live_sandboxes() == []

    @pytest.mark.asyncio
    async def test_crash_mid_build_leaves_no_sandbox(self, runtime, source_tree):
        runtime.failures["wait"] = RuntimeError("daemon connection reset")
        runner = make_runner(runtime)

        with pytest.raises(RuntimeError):
            await runner.build(uuid4(), str(source_tree))

        assert runtime.running_sandboxes() == []
        assert runtime.live_sandboxes() == []

    @pytest.mark.asyncio
    async def test_start_failure_tears_down(self, runtime, source_tree):
        runtime.failures["start"] = SandboxRuntimeError("start", "image not found")
        runner = make_runner(runtime)

        with pytest.raises(SandboxRuntimeError):
            await runner.build(uuid4(), str(source_tree))

        assert runtime.live_sandboxes() == []

    @pytest.mark.asyncio
    async def test_timeout_keeps_partial_logs(self, source_tree):
        runtime = FakeRuntime(run_seconds=None, log_lines=["step 1/3", "step 2/3"])
        runner = make_runner(runtime, timeout_seconds=0.1)

        with pytest.raises(BuildFailedError) as exc_info:
            await runner.build(uuid4(), str(source_tree))

        assert exc_info.value.reason == "timeout"
        assert "step 2/3" in exc_info.value.logs
        assert runtime.live_sandboxes() == []

    @pytest.mark.asyncio
    async def test_cancel_running_build(self, source_tree):
        runtime = FakeRuntime(run_seconds=None)
        runner = make_runner(runtime, timeout_seconds=30)
        build_id = uuid4()
        running = asyncio.Event()

        async def on_started(sandbox_id):
            running.set()

        task = asyncio.create_task(runner.build(uuid4(), str(source_tree), build_id=build_id, on_started=on_started))
        await asyncio.wait_for(running.wait(), timeout=2)

        assert runner.is_active(build_id)
        assert runner.cancel(build_id) is True

        with pytest.raises(BuildFailedError) as exc_info:
            await asyncio.wait_for(task, timeout=2)

        assert exc_info.value.reason == "cancelled"
        assert runtime.live_sandboxes() == []
        assert runner.is_active(build_id) is False

    @pytest.mark.asyncio
    async def test_cancel_unknown_build(self, runtime):
        assert make_runner(runtime).cancel(uuid4()) is False

    @pytest.mark.asyncio
    async def test_task_cancellation_still_tears_down(self, source_tree):
        runtime = FakeRuntime(run_seconds=None)
        runner = make_runner(runtime, timeout_seconds=30)
        running = asyncio.Event()

        async def on_started(sandbox_id):
            running.set()

        task = asyncio.create_task(runner.build(uuid4(), str(source_tree), on_started=on_started))
        await asyncio.wait_for(running.wait(), timeout=2)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert runtime.live_sandboxes() == []

    @pytest.mark.asyncio
    async def test_remove_failure_retries_through_stop(self, runtime, source_tree):
        runtime.fail_once["remove"] = SandboxRuntimeError("remove", "device busy")
        runner = make_runner(runtime)

        await runner.build(uuid4(), str(source_tree))

        operations = [call[0] for call in runtime.calls]
        assert operations[-3:] == ["remove", "stop", "remove"]
        assert runtime.live_sandboxes() == []

    @pytest.mark.asyncio
    async def test_missing_manifest_never_creates_sandbox(self, runtime, tmp_path):
        runner = make_runner(runtime)

        with pytest.raises(BuildFailedError) as exc_info:
            await runner.build(uuid4(), str(tmp_path))

        assert exc_info.value.reason == "missing_manifest"
        assert runtime.calls == []

    @pytest.mark.asyncio
    async def test_missing_source_directory(self, runtime, tmp_path):
        runner = make_runner(runtime)

        with pytest.raises(BuildFailedError) as exc_info:
            await runner.build(uuid4(), str(tmp_path / "nope"))

        assert exc_info.value.reason == "missing_source"


class TestArtifactRef:

    def test_from_ref(self):
        build_id, project_id = uuid4(), uuid4()

        artifact = BuildArtifact.from_ref("node:20-alpine::/srv/projects/demo", build_id, project_id)

        assert artifact.image == "node:20-alpine"
        assert artifact.source_path == "/srv/projects/demo"

    def test_malformed_ref(self):
        with pytest.raises(ValueError):
            BuildArtifact.from_ref("node:20-alpine", uuid4(), uuid4())


class TestLogCapture:

    def test_keeps_most_recent_output(self):
        capture = LogCapture(max_bytes=20)
        for i in range(10):
            capture.append(f"line {i}")

        text = capture.text()

        assert text.startswith("[... earlier output truncated ...]")
        assert "line 9" in text
        assert "line 0" not in text
