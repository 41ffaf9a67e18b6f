"""
Port lease registry for runner instances.

Owns a fixed, contiguous pool of host ports. Each project holds at most one
lease; every mutation of the free set happens under a single asyncio lock so
two callers can never lease the same port.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, Set
from uuid import UUID

import httpx

from atlas.core.config import settings
from atlas.core.exceptions import PortPoolExhaustedError
from atlas.core.retry import retry_until

logger = logging.getLogger(__name__)

PortProbe = Callable[[int], Awaitable[bool]]


class PortLeaseRegistry:
    """
    In-process authority for port leases.

    Responsibilities:
    - Allocate and release ports from the pool
    - Map projects to ports and back
    - Probe a leased port for liveness (without touching lease state)
    """

    def __init__(
        self,
        port_range_start: int = None,
        port_range_end: int = None,
        probe: Optional[PortProbe] = None,
        probe_host: str = None,
        probe_path: str = None,
        probe_timeout_ms: int = None,
    ):
        """
        Initialize the registry.

        Args:
            port_range_start: First port of the pool (default from settings)
            port_range_end: Last port of the pool, inclusive (default from settings)
            probe: Optional liveness probe; defaults to an HTTP HEAD request
            probe_host: Host the default probe connects to
            probe_path: Path the default probe requests
            probe_timeout_ms: Per-request timeout for the default probe
        """
        self.port_range_start = port_range_start or settings.PORT_RANGE_START
        self.port_range_end = port_range_end or settings.PORT_RANGE_END
        if self.port_range_end < self.port_range_start:
            raise ValueError(
                f"Invalid port range {self.port_range_start}-{self.port_range_end}"
            )

        self.probe_host = probe_host or settings.PROBE_HOST
        self.probe_path = probe_path or settings.HEALTH_CHECK_PATH
        self.probe_timeout_ms = probe_timeout_ms or settings.HEALTH_CHECK_TIMEOUT_MS
        self._probe = probe or self._http_probe

        self._lock = asyncio.Lock()
        self._free: Set[int] = set(range(self.port_range_start, self.port_range_end + 1))
        self._by_project: Dict[UUID, int] = {}
        self._by_port: Dict[int, UUID] = {}

        logger.info(
            f"Port registry initialized: {self.port_range_start}-{self.port_range_end} "
            f"({self.pool_size} ports)"
        )

    @property
    def pool_size(self) -> int:
        return self.port_range_end - self.port_range_start + 1

    def _in_range(self, port: int) -> bool:
        return self.port_range_start <= port <= self.port_range_end

    def _lease(self, port: int, project_id: UUID) -> None:
        self._free.discard(port)
        self._by_project[project_id] = port
        self._by_port[port] = project_id

    def _unlease(self, port: int) -> Optional[UUID]:
        project_id = self._by_port.pop(port, None)
        if project_id is not None and self._by_project.get(project_id) == port:
            del self._by_project[project_id]
        if self._in_range(port):
            self._free.add(port)
        return project_id

    async def allocate(self, project_id: UUID) -> int:
        """
        Lease a port to a project.

        Idempotent: a project that already holds a lease gets the same port
        back and the pool is not touched.

        Raises:
            PortPoolExhaustedError: If the free set is empty
        """
        async with self._lock:
            existing = self._by_project.get(project_id)
            if existing is not None:
                logger.debug(f"Port {existing} already allocated to project {project_id}")
                return existing

            if not self._free:
                logger.warning(f"Port pool exhausted, cannot allocate for project {project_id}")
                raise PortPoolExhaustedError(self.port_range_start, self.port_range_end)

            port = min(self._free)
            self._lease(port, project_id)

        logger.info(f"Allocated port {port} to project {project_id}")
        return port

    async def release(self, port: int) -> bool:
        """
        Return a port to the free set.

        Releasing a port that is already free is a no-op.

        Returns:
            True if a lease was actually released
        """
        async with self._lock:
            was_leased = port in self._by_port
            project_id = self._unlease(port)

        if was_leased:
            logger.info(f"Released port {port} from project {project_id}")
        return was_leased

    async def release_project(self, project_id: UUID) -> Optional[int]:
        """Release whatever port the project holds. Returns the port, if any."""
        async with self._lock:
            port = self._by_project.get(project_id)
            if port is None:
                return None
            self._unlease(port)

        logger.info(f"Released port {port} from project {project_id}")
        return port

    async def reserve(self, port: int, project_id: UUID) -> bool:
        """
        Lease a specific port to a project, used when rebuilding state on startup.

        Returns:
            False if the port is outside the pool or held by another project
        """
        async with self._lock:
            if not self._in_range(port):
                logger.warning(f"Cannot reserve port {port}: outside pool range")
                return False
            holder = self._by_port.get(port)
            if holder is not None and holder != project_id:
                logger.warning(f"Cannot reserve port {port} for {project_id}: held by {holder}")
                return False
            previous = self._by_project.get(project_id)
            if previous is not None and previous != port:
                self._unlease(previous)
            self._lease(port, project_id)
        return True

    def lease_for(self, project_id: UUID) -> Optional[int]:
        return self._by_project.get(project_id)

    def holder_of(self, port: int) -> Optional[UUID]:
        return self._by_port.get(port)

    def is_available(self, port: int) -> bool:
        return port in self._free

    def leases(self) -> Dict[int, UUID]:
        """Snapshot of port -> project leases."""
        return dict(self._by_port)

    def stats(self) -> dict:
        """
        Pool statistics.

        ``free + leased`` always equals ``total``.
        """
        leased = len(self._by_port)
        return {
            "total": self.pool_size,
            "free": len(self._free),
            "leased": leased,
            "utilization_percent": round(leased / self.pool_size * 100, 2),
            "range_start": self.port_range_start,
            "range_end": self.port_range_end,
        }

    async def reset(self) -> None:
        """Drop every lease and refill the pool."""
        async with self._lock:
            self._free = set(range(self.port_range_start, self.port_range_end + 1))
            self._by_project.clear()
            self._by_port.clear()

    async def _http_probe(self, port: int) -> bool:
        url = f"http://{self.probe_host}:{port}{self.probe_path}"
        try:
            async with httpx.AsyncClient(timeout=self.probe_timeout_ms / 1000) as client:
                response = await client.head(url)
                return response.is_success
        except httpx.HTTPError as e:
            logger.debug(f"Health probe failed for {url}: {e}")
            return False

    async def probe(self, port: int) -> bool:
        """Single liveness probe. Errors count as unhealthy."""
        try:
            return await self._probe(port)
        except Exception as e:
            logger.debug(f"Health probe raised for port {port}: {e}")
            return False

    async def health_check(
        self,
        port: int,
        max_attempts: int = None,
        interval_ms: int = None,
        cancel: Optional[asyncio.Event] = None,
        abort: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> bool:
        """
        Probe a port until it answers or the attempt budget is spent.

        Does not mutate lease state; callers decide what to do with the result.

        Args:
            port: Port to probe
            max_attempts: Maximum probes (default from settings)
            interval_ms: Sleep between probes (default from settings)
            cancel: Ends the loop within one interval when set
            abort: Checked after each failed probe; True ends the loop early

        Returns:
            True as soon as one probe succeeds
        """
        max_attempts = max_attempts or settings.HEALTH_CHECK_MAX_ATTEMPTS
        interval_ms = interval_ms if interval_ms is not None else settings.HEALTH_CHECK_INTERVAL_MS

        logger.info(
            f"Starting health check for port {port} "
            f"(project: {self.holder_of(port) or 'unknown'}, attempts: {max_attempts})"
        )

        outcome = await retry_until(
            lambda: self._probe(port),
            max_attempts=max_attempts,
            interval_seconds=interval_ms / 1000,
            cancel=cancel,
            abort=abort,
        )

        if outcome.succeeded:
            logger.info(f"Health check passed for port {port} (attempt {outcome.attempts}/{max_attempts})")
        elif outcome.cancelled:
            logger.info(f"Health check for port {port} cancelled after {outcome.attempts} attempts")
        else:
            logger.warning(f"Health check failed for port {port} after {outcome.attempts} attempts")
        return outcome.succeeded
