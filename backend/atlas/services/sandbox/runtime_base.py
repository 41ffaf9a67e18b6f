"""
Abstract base class for sandbox runtimes.

Defines the interface the build runner and instance launcher use to create and
control isolated execution contexts. The runtime enforces the resource limits
and security profile carried by ``SandboxSpec``.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional


@dataclass
class SandboxSpec:
    """Everything needed to create one sandbox."""

    image: str
    command: List[str]
    name: Optional[str] = None
    binds: Dict[str, str] = field(default_factory=dict)  # host_path: container_path[:mode]
    network: str = "none"
    user: Optional[str] = None
    workdir: Optional[str] = None
    read_only_rootfs: bool = False
    tmpfs: Dict[str, str] = field(default_factory=dict)  # mount point: options
    cap_drop: List[str] = field(default_factory=lambda: ["ALL"])
    security_opt: List[str] = field(default_factory=lambda: ["no-new-privileges:true"])
    memory_limit: Optional[str] = None  # e.g. "512m"
    cpu_limit: Optional[float] = None   # e.g. 0.5
    pids_limit: Optional[int] = None
    env: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    port_bindings: Dict[int, int] = field(default_factory=dict)  # container_port: host_port
    restart_policy: Optional[str] = None  # e.g. "on-failure:3"


@dataclass
class SandboxState:
    """Point-in-time state of a sandbox."""

    running: bool
    exit_code: Optional[int] = None
    oom_killed: bool = False
    restart_count: int = 0
    status: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def crashed(self) -> bool:
        """Exited on its own with a failure."""
        return not self.running and (self.oom_killed or (self.exit_code not in (None, 0)))


@dataclass
class ResourceUsage:
    """One resource sample for a running sandbox."""

    memory_mb: float = 0.0
    cpu_percent: float = 0.0


@dataclass
class ExecResult:
    """Outcome of a command run inside a sandbox."""

    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SandboxRuntime(ABC):
    """
    Abstract base class for sandbox runtimes.

    Implementations raise ``SandboxRuntimeError`` when the runtime itself fails
    and ``SandboxNotFoundError`` for unknown sandbox ids. ``stop`` and
    ``remove`` treat an already-gone sandbox as success.
    """

    @abstractmethod
    async def create(self, spec: SandboxSpec) -> str:
        """
        Create (but do not start) a sandbox.

        Returns:
            Runtime-assigned sandbox id
        """
        pass

    @abstractmethod
    async def start(self, sandbox_id: str) -> None:
        pass

    @abstractmethod
    async def wait(self, sandbox_id: str, timeout: Optional[float] = None) -> Optional[int]:
        """
        Wait for the sandbox to exit.

        Returns:
            Exit code, or None if ``timeout`` elapsed first
        """
        pass

    @abstractmethod
    async def stop(self, sandbox_id: str, grace_seconds: int = 10) -> None:
        pass

    @abstractmethod
    async def remove(self, sandbox_id: str, force: bool = True) -> None:
        pass

    @abstractmethod
    async def inspect(self, sandbox_id: str) -> SandboxState:
        pass

    @abstractmethod
    async def get_logs(self, sandbox_id: str, tail: Optional[int] = None) -> str:
        """Combined stdout and stderr, optionally limited to the last ``tail`` lines."""
        pass

    @abstractmethod
    def stream_logs(self, sandbox_id: str) -> AsyncIterator[str]:
        """
        Follow combined output from the start until the sandbox exits.

        Yields:
            Log lines as they arrive
        """
        pass

    @abstractmethod
    async def stats(self, sandbox_id: str) -> ResourceUsage:
        pass

    @abstractmethod
    async def exec(self, sandbox_id: str, command: List[str], timeout: Optional[float] = None) -> ExecResult:
        """Run ``command`` inside a running sandbox and collect its combined output."""
        pass
