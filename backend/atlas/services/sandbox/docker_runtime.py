"""
Sandbox runtime backed by the Docker CLI.

Every operation shells out to ``docker`` through asyncio subprocesses, so the
API process never links against the daemon's socket protocol directly.
"""
import asyncio
import json
import logging
from datetime import datetime
from typing import AsyncIterator, List, Optional

from atlas.core.exceptions import SandboxNotFoundError, SandboxRuntimeError
from atlas.services.sandbox.runtime_base import (
    ExecResult,
    ResourceUsage,
    SandboxRuntime,
    SandboxSpec,
    SandboxState,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = ("No such container", "No such object")


def _is_not_found(stderr: str) -> bool:
    return any(marker in stderr for marker in _NOT_FOUND_MARKERS)


def _parse_docker_time(value: Optional[str]) -> Optional[datetime]:
    """Parse Docker's RFC3339 timestamps, ignoring the zero value."""
    if not value or value.startswith("0001-01-01"):
        return None
    try:
        # Docker uses nanosecond precision; fromisoformat handles microseconds
        base = value.split(".")[0].rstrip("Z")
        return datetime.fromisoformat(base)
    except (ValueError, IndexError):
        return None


def _parse_size_mb(value: str) -> float:
    """Convert a docker stats size like ``12.5MiB`` to megabytes."""
    units = {
        "b": 1 / (1024 * 1024),
        "kib": 1 / 1024, "kb": 1 / 1000,
        "mib": 1.0, "mb": 1.0,
        "gib": 1024.0, "gb": 1000.0,
    }
    value = value.strip()
    for suffix in sorted(units, key=len, reverse=True):
        if value.lower().endswith(suffix):
            try:
                return float(value[: -len(suffix)]) * units[suffix]
            except ValueError:
                return 0.0
    try:
        return float(value) / (1024 * 1024)
    except ValueError:
        return 0.0


class DockerCliRuntime(SandboxRuntime):
    """
    ``SandboxRuntime`` driving the local Docker daemon.

    Responsibilities:
    - Translate ``SandboxSpec`` into ``docker create`` flags
    - Container lifecycle (start/wait/stop/remove)
    - State inspection, log retrieval and streaming, resource sampling
    """

    def __init__(self, docker_binary: str = "docker", command_timeout: int = 60):
        self.docker_binary = docker_binary
        self.command_timeout = command_timeout

    async def _run_docker_command(
        self,
        args: List[str],
        timeout: Optional[float] = None,
    ) -> tuple[int, str, str]:
        """
        Run a docker command via subprocess.

        Args:
            args: Arguments after the docker binary
            timeout: Timeout in seconds (default: command_timeout)

        Returns:
            Tuple of (return_code, stdout, stderr)

        Raises:
            asyncio.TimeoutError: If the command did not finish in time
        """
        cmd = [self.docker_binary, *args]
        logger.debug(f"Running Docker command: {' '.join(cmd)}")

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout or self.command_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Docker command timed out: {' '.join(cmd)}")
            process.kill()
            await process.wait()
            raise

        return (
            process.returncode,
            stdout.decode(errors="replace").strip() if stdout else "",
            stderr.decode(errors="replace").strip() if stderr else "",
        )

    async def _checked(self, stage: str, args: List[str], sandbox_id: Optional[str] = None,
                       timeout: Optional[float] = None) -> str:
        """Run a command and raise the matching domain error on failure."""
        try:
            return_code, stdout, stderr = await self._run_docker_command(args, timeout)
        except asyncio.TimeoutError:
            raise SandboxRuntimeError(stage, "docker command timed out")
        except OSError as e:
            raise SandboxRuntimeError(stage, f"docker unavailable: {e}")

        if return_code != 0:
            if sandbox_id and _is_not_found(stderr):
                raise SandboxNotFoundError(sandbox_id)
            raise SandboxRuntimeError(stage, stderr or f"docker exited with {return_code}")
        return stdout

    def build_create_args(self, spec: SandboxSpec) -> List[str]:
        """
        Build the ``docker create`` arguments for a spec.

        Returns:
            List of command arguments (without the docker binary)
        """
        args = ["create"]
        if spec.name:
            args.extend(["--name", spec.name])

        args.extend(["--network", spec.network])

        if spec.user:
            args.extend(["--user", spec.user])
        if spec.workdir:
            args.extend(["--workdir", spec.workdir])
        if spec.read_only_rootfs:
            args.append("--read-only")
        for mount_point, options in spec.tmpfs.items():
            args.extend(["--tmpfs", f"{mount_point}:{options}" if options else mount_point])

        for capability in spec.cap_drop:
            args.extend(["--cap-drop", capability])
        for option in spec.security_opt:
            args.extend(["--security-opt", option])

        # Resource limits; swap equal to memory disables swap
        if spec.memory_limit:
            args.extend(["--memory", spec.memory_limit, "--memory-swap", spec.memory_limit])
        if spec.cpu_limit:
            args.extend(["--cpus", str(spec.cpu_limit)])
        if spec.pids_limit:
            args.extend(["--pids-limit", str(spec.pids_limit)])

        for host_path, target in spec.binds.items():
            args.extend(["-v", f"{host_path}:{target}"])

        for container_port, host_port in spec.port_bindings.items():
            args.extend(["-p", f"{host_port}:{container_port}"])

        if spec.restart_policy:
            args.extend(["--restart", spec.restart_policy])

        for key, value in spec.env.items():
            args.extend(["-e", f"{key}={value}"])
        for key, value in spec.labels.items():
            args.extend(["--label", f"{key}={value}"])

        args.append(spec.image)
        args.extend(spec.command)
        return args

    async def create(self, spec: SandboxSpec) -> str:
        stdout = await self._checked("create", self.build_create_args(spec))
        sandbox_id = stdout.splitlines()[-1][:64] if stdout else ""
        if not sandbox_id:
            raise SandboxRuntimeError("create", "docker create returned no container id")
        logger.info(f"Created sandbox {sandbox_id[:12]} ({spec.name or spec.image})")
        return sandbox_id

    async def start(self, sandbox_id: str) -> None:
        await self._checked("start", ["start", sandbox_id], sandbox_id)

    async def wait(self, sandbox_id: str, timeout: Optional[float] = None) -> Optional[int]:
        try:
            return_code, stdout, stderr = await self._run_docker_command(
                ["wait", sandbox_id],
                timeout=timeout if timeout is not None else 24 * 3600,
            )
        except asyncio.TimeoutError:
            return None

        if return_code != 0:
            if _is_not_found(stderr):
                raise SandboxNotFoundError(sandbox_id)
            raise SandboxRuntimeError("wait", stderr)
        try:
            return int(stdout.splitlines()[-1])
        except (ValueError, IndexError):
            raise SandboxRuntimeError("wait", f"unexpected docker wait output: {stdout!r}")

    async def stop(self, sandbox_id: str, grace_seconds: int = 10) -> None:
        try:
            await self._checked(
                "stop",
                ["stop", "-t", str(grace_seconds), sandbox_id],
                sandbox_id,
                timeout=grace_seconds + 30,
            )
        except SandboxNotFoundError:
            logger.warning(f"Sandbox {sandbox_id[:12]} not found, considering it stopped")

    async def remove(self, sandbox_id: str, force: bool = True) -> None:
        args = ["rm", "-f", sandbox_id] if force else ["rm", sandbox_id]
        try:
            await self._checked("remove", args, sandbox_id)
        except SandboxNotFoundError:
            logger.debug(f"Sandbox {sandbox_id[:12]} already removed")

    async def inspect(self, sandbox_id: str) -> SandboxState:
        stdout = await self._checked(
            "inspect",
            ["inspect", sandbox_id, "--format", '{"state": {{json .State}}, "restart_count": {{.RestartCount}}}'],
            sandbox_id,
        )
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise SandboxRuntimeError("inspect", f"failed to parse state: {e}")

        state = data.get("state") or {}
        running = bool(state.get("Running", False))
        return SandboxState(
            running=running,
            exit_code=None if running else state.get("ExitCode"),
            oom_killed=bool(state.get("OOMKilled", False)),
            restart_count=int(data.get("restart_count") or 0),
            status=state.get("Status"),
            started_at=_parse_docker_time(state.get("StartedAt")),
            finished_at=_parse_docker_time(state.get("FinishedAt")),
            error=state.get("Error") or None,
        )

    async def get_logs(self, sandbox_id: str, tail: Optional[int] = None) -> str:
        args = ["logs"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        args.append(sandbox_id)

        try:
            return_code, stdout, stderr = await self._run_docker_command(args, timeout=30)
        except asyncio.TimeoutError:
            raise SandboxRuntimeError("logs", "docker logs timed out")
        if return_code != 0:
            if _is_not_found(stderr):
                raise SandboxNotFoundError(sandbox_id)
            raise SandboxRuntimeError("logs", stderr)

        # Logs can go to either stream
        return f"{stdout}\n{stderr}" if stdout and stderr else stdout or stderr

    async def stream_logs(self, sandbox_id: str) -> AsyncIterator[str]:
        process = await asyncio.create_subprocess_exec(
            self.docker_binary, "logs", "-f", sandbox_id,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                yield line.decode(errors="replace").rstrip("\n")
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

    async def stats(self, sandbox_id: str) -> ResourceUsage:
        stdout = await self._checked(
            "stats",
            ["stats", "--no-stream", "--format", "{{json .}}", sandbox_id],
            sandbox_id,
            timeout=15,
        )
        try:
            data = json.loads(stdout.splitlines()[-1])
        except (json.JSONDecodeError, IndexError) as e:
            raise SandboxRuntimeError("stats", f"failed to parse stats: {e}")

        memory = (data.get("MemUsage") or "0B / 0B").split("/")[0]
        cpu = (data.get("CPUPerc") or "0%").rstrip("%")
        try:
            cpu_percent = float(cpu)
        except ValueError:
            cpu_percent = 0.0
        return ResourceUsage(memory_mb=_parse_size_mb(memory), cpu_percent=cpu_percent)

    async def exec(self, sandbox_id: str, command: List[str], timeout: Optional[float] = None) -> ExecResult:
        try:
            return_code, stdout, stderr = await self._run_docker_command(
                ["exec", sandbox_id, *command], timeout=timeout
            )
        except asyncio.TimeoutError:
            raise SandboxRuntimeError("exec", "docker exec timed out")

        if return_code != 0 and _is_not_found(stderr):
            raise SandboxNotFoundError(sandbox_id)
        output = f"{stdout}\n{stderr}" if stdout and stderr else stdout or stderr
        return ExecResult(exit_code=return_code, output=output)

    async def ensure_network(self, name: str) -> None:
        """Create a bridge network if it does not already exist."""
        return_code, _, _ = await self._run_docker_command(["network", "inspect", name], timeout=15)
        if return_code == 0:
            logger.info(f"Docker network '{name}' already exists")
            return
        await self._checked(
            "network",
            ["network", "create", "--driver", "bridge", "--label", "app=atlas", name],
        )
        logger.info(f"Created Docker network '{name}'")
