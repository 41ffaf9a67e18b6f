"""
Isolated build runner.

Runs a project's build command inside a throwaway builder sandbox: no network,
no inherited environment, bounded memory/CPU/pids, every capability dropped,
and the source tree as the only writable bind. Output is captured line by line
while the build runs, so a timed-out build still reports what it printed. The
sandbox is removed on every exit path.
"""
import asyncio
import logging
import os
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Deque, Dict, List, Optional
from uuid import UUID, uuid4

from atlas.core.config import settings
from atlas.core.exceptions import BuildFailedError
from atlas.services.sandbox.runtime_base import SandboxRuntime, SandboxSpec

logger = logging.getLogger(__name__)

ARTIFACT_REF_SEPARATOR = "::"


@dataclass
class BuildArtifact:
    """Output of a successful build: the runner image plus the built tree."""

    build_id: UUID
    project_id: UUID
    image: str
    source_path: str
    logs: str = ""
    exit_code: int = 0
    duration_seconds: float = 0.0
    memory_peak_mb: float = 0.0
    cpu_seconds: float = 0.0

    @property
    def ref(self) -> str:
        return f"{self.image}{ARTIFACT_REF_SEPARATOR}{self.source_path}"

    @classmethod
    def from_ref(cls, ref: str, build_id: UUID, project_id: UUID) -> "BuildArtifact":
        """Rebuild an artifact from a persisted reference."""
        image, sep, source_path = ref.partition(ARTIFACT_REF_SEPARATOR)
        if not sep or not image or not source_path:
            raise ValueError(f"Malformed artifact reference: {ref!r}")
        return cls(build_id=build_id, project_id=project_id, image=image, source_path=source_path)


class LogCapture:
    """Keeps the most recent output of a build within a byte budget."""

    def __init__(self, max_bytes: int):
        self.max_bytes = max_bytes
        self._lines: Deque[str] = deque()
        self._size = 0
        self.truncated = False

    def append(self, line: str) -> None:
        self._lines.append(line)
        self._size += len(line) + 1
        while self._size > self.max_bytes and len(self._lines) > 1:
            dropped = self._lines.popleft()
            self._size -= len(dropped) + 1
            self.truncated = True

    def extend(self, text: str) -> None:
        for line in text.splitlines():
            self.append(line)

    def __len__(self) -> int:
        return len(self._lines)

    def text(self) -> str:
        body = "\n".join(self._lines)
        if self.truncated:
            return f"[... earlier output truncated ...]\n{body}"
        return body


@dataclass
class _ResourceTally:
    memory_peak_mb: float = 0.0
    cpu_seconds: float = 0.0


@dataclass
class ActiveBuild:
    """Bookkeeping for an in-flight build."""

    build_id: UUID
    project_id: UUID
    started_at: datetime = field(default_factory=datetime.utcnow)
    sandbox_id: Optional[str] = None
    cancel: asyncio.Event = field(default_factory=asyncio.Event)

    def to_dict(self) -> dict:
        return {
            "build_id": str(self.build_id),
            "project_id": str(self.project_id),
            "sandbox_id": self.sandbox_id,
            "started_at": self.started_at.isoformat(),
            "cancel_requested": self.cancel.is_set(),
        }


class IsolatedBuildRunner:
    """
    Runs builds in ephemeral, locked-down builder sandboxes.

    Responsibilities:
    - Assemble the builder sandbox spec
    - Run the build with a timeout and cooperative cancellation
    - Capture logs incrementally and sample resource usage
    - Tear the sandbox down unconditionally
    """

    def __init__(
        self,
        runtime: SandboxRuntime,
        builder_image: str = None,
        build_command: str = None,
        manifest_file: str = None,
        memory_limit: str = None,
        cpu_limit: float = None,
        pids_limit: int = None,
        timeout_seconds: float = None,
        log_max_bytes: int = None,
        usage_sample_seconds: float = None,
        runner_image: str = None,
        container_prefix: str = None,
    ):
        self.runtime = runtime
        self.builder_image = builder_image or settings.BUILDER_IMAGE
        self.build_command = build_command or settings.BUILD_COMMAND
        self.manifest_file = manifest_file or settings.BUILD_MANIFEST_FILE
        self.memory_limit = memory_limit or settings.BUILDER_MEMORY_LIMIT
        self.cpu_limit = cpu_limit or settings.BUILDER_CPU_LIMIT
        self.pids_limit = pids_limit or settings.BUILDER_PIDS_LIMIT
        self.timeout_seconds = timeout_seconds or settings.BUILD_TIMEOUT_SECONDS
        self.log_max_bytes = log_max_bytes or settings.BUILD_LOG_MAX_BYTES
        self.usage_sample_seconds = usage_sample_seconds or settings.BUILD_USAGE_SAMPLE_SECONDS
        self.runner_image = runner_image or settings.RUNNER_IMAGE
        self.container_prefix = container_prefix or settings.CONTAINER_PREFIX

        self._active: Dict[UUID, ActiveBuild] = {}

    def builder_spec(self, build_id: UUID, project_id: UUID, source_path: str) -> SandboxSpec:
        """Sandbox spec for one build. The source tree is the only writable input."""
        return SandboxSpec(
            image=self.builder_image,
            command=["sh", "-c", self.build_command],
            name=f"{self.container_prefix}-build-{str(build_id)[:8]}",
            binds={os.path.abspath(source_path): "/workspace:rw"},
            network="none",
            workdir="/workspace",
            read_only_rootfs=False,  # npm ci writes node_modules into the bind
            cap_drop=["ALL"],
            security_opt=["no-new-privileges:true"],
            memory_limit=self.memory_limit,
            cpu_limit=self.cpu_limit,
            pids_limit=self.pids_limit,
            env={"CI": "true"},
            labels={
                "app": "atlas",
                "purpose": "builder",
                "project-id": str(project_id),
                "build-id": str(build_id),
            },
        )

    def _check_source(self, source_path: str) -> None:
        if not os.path.isdir(source_path):
            raise BuildFailedError(
                "missing_source",
                message=f"Project directory not found: {source_path}",
            )
        if not os.path.isfile(os.path.join(source_path, self.manifest_file)):
            raise BuildFailedError(
                "missing_manifest",
                message=f"{self.manifest_file} not found in project directory",
            )

    async def build(
        self,
        project_id: UUID,
        source_path: str,
        build_id: Optional[UUID] = None,
        on_started: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> BuildArtifact:
        """
        Build a project in a fresh builder sandbox.

        Args:
            project_id: Project being built
            source_path: Host path of the source tree
            build_id: Id to track the build under (generated if omitted)
            on_started: Awaited with the sandbox id once the build is running

        Returns:
            BuildArtifact on exit code 0

        Raises:
            BuildFailedError: Non-zero exit, timeout, cancellation or bad source tree
            SandboxRuntimeError: The runtime failed to create or run the sandbox
        """
        build_id = build_id or uuid4()
        self._check_source(source_path)

        active = ActiveBuild(build_id=build_id, project_id=project_id)
        self._active[build_id] = active
        capture = LogCapture(self.log_max_bytes)
        tally = _ResourceTally()
        log_task: Optional[asyncio.Task] = None
        sampler: Optional[asyncio.Task] = None
        loop = asyncio.get_running_loop()
        started = loop.time()

        logger.info(f"Starting build {build_id} for project {project_id}")

        try:
            active.sandbox_id = await self.runtime.create(
                self.builder_spec(build_id, project_id, source_path)
            )
            if active.cancel.is_set():
                raise BuildFailedError("cancelled", message=f"Build {build_id} cancelled")

            await self.runtime.start(active.sandbox_id)
            log_task = asyncio.create_task(self._follow_logs(active.sandbox_id, capture))
            sampler = asyncio.create_task(self._sample_usage(active.sandbox_id, tally))

            if on_started is not None:
                await on_started(active.sandbox_id)

            exit_code, interrupted = await self._wait_for_exit(active)

            if interrupted is None:
                await self._finish_logs(log_task, active.sandbox_id, capture)
            else:
                log_task.cancel()

            duration = loop.time() - started
            if interrupted == "timeout":
                logger.warning(f"Build {build_id} timed out after {self.timeout_seconds}s")
                raise BuildFailedError(
                    "timeout",
                    logs=capture.text(),
                    message=f"Build timed out after {self.timeout_seconds} seconds",
                )
            if interrupted == "cancelled":
                logger.info(f"Build {build_id} cancelled")
                raise BuildFailedError("cancelled", logs=capture.text(), message=f"Build {build_id} cancelled")
            if exit_code != 0:
                logger.warning(f"Build {build_id} failed with exit code {exit_code}")
                raise BuildFailedError("exit_code", exit_code=exit_code, logs=capture.text())

            logger.info(f"Build {build_id} succeeded in {duration:.1f}s")
            return BuildArtifact(
                build_id=build_id,
                project_id=project_id,
                image=self.runner_image,
                source_path=os.path.abspath(source_path),
                logs=capture.text(),
                exit_code=0,
                duration_seconds=duration,
                memory_peak_mb=tally.memory_peak_mb,
                cpu_seconds=round(tally.cpu_seconds, 2),
            )
        finally:
            for task in (sampler, log_task):
                if task is not None and not task.done():
                    task.cancel()
            if active.sandbox_id is not None:
                await self._teardown(active.sandbox_id)
            self._active.pop(build_id, None)

    async def _wait_for_exit(self, active: ActiveBuild) -> tuple[Optional[int], Optional[str]]:
        """
        Wait for the builder to exit, time out, or be cancelled.

        Returns:
            (exit_code, None) on exit, (None, "timeout") or (None, "cancelled")
        """
        wait_task = asyncio.create_task(
            self.runtime.wait(active.sandbox_id, timeout=self.timeout_seconds)
        )
        cancel_task = asyncio.create_task(active.cancel.wait())
        try:
            done, _ = await asyncio.wait(
                {wait_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (wait_task, cancel_task):
                if not task.done():
                    task.cancel()

        if wait_task in done:
            exit_code = wait_task.result()
            if exit_code is None:
                return None, "timeout"
            return exit_code, None
        return None, "cancelled"

    async def _follow_logs(self, sandbox_id: str, capture: LogCapture) -> None:
        try:
            async for line in self.runtime.stream_logs(sandbox_id):
                capture.append(line)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Log stream for sandbox {sandbox_id[:12]} ended with error: {e}")

    async def _finish_logs(self, log_task: asyncio.Task, sandbox_id: str, capture: LogCapture) -> None:
        """Let the follower drain after exit, falling back to a one-shot read."""
        try:
            await asyncio.wait_for(log_task, timeout=5)
        except asyncio.TimeoutError:
            logger.debug(f"Log stream for sandbox {sandbox_id[:12]} did not close after exit")

        if len(capture) == 0:
            try:
                capture.extend(await self.runtime.get_logs(sandbox_id))
            except Exception as e:
                logger.warning(f"Could not read logs for sandbox {sandbox_id[:12]}: {e}")

    async def _sample_usage(self, sandbox_id: str, tally: _ResourceTally) -> None:
        while True:
            await asyncio.sleep(self.usage_sample_seconds)
            try:
                usage = await self.runtime.stats(sandbox_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"Usage sample failed for sandbox {sandbox_id[:12]}: {e}")
                continue
            tally.memory_peak_mb = max(tally.memory_peak_mb, usage.memory_mb)
            tally.cpu_seconds += usage.cpu_percent / 100 * self.usage_sample_seconds

    async def _teardown(self, sandbox_id: str) -> None:
        """Force-remove the builder; retry once through stop if removal fails."""
        try:
            await self.runtime.remove(sandbox_id, force=True)
            logger.debug(f"Removed builder sandbox {sandbox_id[:12]}")
            return
        except Exception as e:
            logger.warning(f"Failed to remove builder sandbox {sandbox_id[:12]}: {e}")

        try:
            await self.runtime.stop(sandbox_id, grace_seconds=0)
            await self.runtime.remove(sandbox_id, force=True)
        except Exception as e:
            logger.error(f"Builder sandbox {sandbox_id[:12]} could not be torn down: {e}")

    def cancel(self, build_id: UUID) -> bool:
        """
        Request cancellation of an in-flight build.

        Returns:
            False if the build is not running in this process
        """
        active = self._active.get(build_id)
        if active is None:
            return False
        active.cancel.set()
        logger.info(f"Cancellation requested for build {build_id}")
        return True

    def is_active(self, build_id: UUID) -> bool:
        return build_id in self._active

    def active_builds(self) -> List[dict]:
        return [active.to_dict() for active in self._active.values()]
