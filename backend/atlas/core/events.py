"""
Lifecycle event bus for loose coupling between the orchestrator and its sinks.

The orchestrator emits events with ``emit()``, which only enqueues and never
blocks or raises. A background worker drains the queue and hands each event to
the registered handlers (persistence, logging) and to live subscribers such as
the server-sent events stream.
"""
import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, ClassVar, Dict, List, Optional, Set, Type
from uuid import UUID

logger = logging.getLogger(__name__)


# =============================================================================
# Base Event Class
# =============================================================================

@dataclass
class LifecycleEvent:
    """Base class for all lifecycle events."""
    user_id: Optional[UUID] = None
    project_id: Optional[UUID] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)

    name: ClassVar[str] = "lifecycle"
    status: ClassVar[str] = "info"

    @property
    def event_type(self) -> str:
        """Return the dotted event name, e.g. ``build.started``."""
        return self.name

    @property
    def message(self) -> str:
        return self.name

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-friendly dict."""
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, UUID):
                data[key] = str(value)
            elif isinstance(value, datetime):
                data[key] = value.isoformat()
        data["event"] = self.name
        data["status"] = self.status
        return data

    def meta(self) -> Dict[str, Any]:
        """Event-specific fields, without the common envelope."""
        data = self.to_dict()
        for key in ("user_id", "project_id", "timestamp", "event", "status"):
            data.pop(key, None)
        return data


# =============================================================================
# Build Events
# =============================================================================

@dataclass
class BuildStartedEvent(LifecycleEvent):
    """Emitted when the builder sandbox is about to run."""
    build_id: UUID = None

    name: ClassVar[str] = "build.started"

    @property
    def message(self) -> str:
        return f"Build {self.build_id} started"


@dataclass
class BuildSucceededEvent(LifecycleEvent):
    """Emitted when a build exits zero and produced an artifact."""
    build_id: UUID = None
    artifact_ref: str = None

    name: ClassVar[str] = "build.succeeded"
    status: ClassVar[str] = "success"

    @property
    def message(self) -> str:
        return f"Build {self.build_id} completed successfully"


@dataclass
class BuildFailedEvent(LifecycleEvent):
    """Emitted when a build fails for any reason other than cancellation."""
    build_id: UUID = None
    reason: str = None
    exit_code: Optional[int] = None
    error_message: str = None

    name: ClassVar[str] = "build.failed"
    status: ClassVar[str] = "failure"

    @property
    def message(self) -> str:
        return f"Build {self.build_id} failed: {self.error_message}"


@dataclass
class BuildCancelledEvent(LifecycleEvent):
    """Emitted when an in-flight build is cancelled."""
    build_id: UUID = None

    name: ClassVar[str] = "build.cancelled"
    status: ClassVar[str] = "warning"

    @property
    def message(self) -> str:
        return f"Build {self.build_id} cancelled"


# =============================================================================
# Instance Events
# =============================================================================

@dataclass
class InstanceHealthyEvent(LifecycleEvent):
    """Emitted when an instance passes the health gate (or recovers)."""
    instance_id: UUID = None
    build_id: UUID = None
    port: int = None
    host: str = None

    name: ClassVar[str] = "instance.healthy"
    status: ClassVar[str] = "success"

    @property
    def message(self) -> str:
        return f"Instance {self.instance_id} healthy on port {self.port}"


@dataclass
class InstanceUnhealthyEvent(LifecycleEvent):
    """Emitted when a previously healthy instance fails a probe."""
    instance_id: UUID = None
    port: int = None

    name: ClassVar[str] = "instance.unhealthy"
    status: ClassVar[str] = "warning"

    @property
    def message(self) -> str:
        return f"Instance {self.instance_id} failed a liveness probe on port {self.port}"


@dataclass
class InstanceFailedEvent(LifecycleEvent):
    """Emitted when a deploy attempt fails and has been rolled back."""
    instance_id: UUID = None
    build_id: UUID = None
    reason: str = None
    error_message: str = None

    name: ClassVar[str] = "instance.failed"
    status: ClassVar[str] = "failure"

    @property
    def message(self) -> str:
        return f"Instance {self.instance_id} failed: {self.error_message}"


@dataclass
class InstanceStoppedEvent(LifecycleEvent):
    """Emitted when an instance is stopped and its port released."""
    instance_id: UUID = None
    port: int = None
    reason: str = "requested"

    name: ClassVar[str] = "instance.stopped"

    @property
    def message(self) -> str:
        return f"Instance {self.instance_id} stopped ({self.reason})"


# =============================================================================
# Event Bus
# =============================================================================

class EventBus:
    """
    In-process, queue-backed event bus.

    ``emit`` is synchronous and fire-and-forget. Handlers run on the worker
    started with ``start()``, or inline when ``drain()`` is awaited.
    """

    def __init__(self, max_pending: int = 10000, subscriber_buffer: int = 100):
        self._handlers: Dict[Type[LifecycleEvent], List[Callable]] = {}
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._subscribers: Set[asyncio.Queue] = set()
        self._subscriber_buffer = subscriber_buffer
        self._worker: Optional[asyncio.Task] = None

    def register(
        self,
        event_type: Type[LifecycleEvent],
        handler: Callable[[LifecycleEvent], Any],
    ) -> None:
        """
        Register a handler for an event type.

        Handlers registered for a base class receive all subclass events.
        """
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Registered handler {handler.__name__} for {event_type.__name__}")

    def unregister(
        self,
        event_type: Type[LifecycleEvent],
        handler: Callable[[LifecycleEvent], Any],
    ) -> None:
        if event_type in self._handlers:
            self._handlers[event_type] = [
                h for h in self._handlers[event_type] if h != handler
            ]

    def emit(self, event: LifecycleEvent) -> None:
        """Enqueue an event without waiting. Drops the event if the queue is full."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Event queue full, dropping {event.event_type}")

        for subscriber in list(self._subscribers):
            try:
                subscriber.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug(f"Subscriber buffer full, dropping {event.event_type}")

    def _handlers_for(self, event: LifecycleEvent) -> List[Callable]:
        handlers = []
        for event_type, registered in self._handlers.items():
            if isinstance(event, event_type):
                handlers.extend(registered)
        return handlers

    async def dispatch(self, event: LifecycleEvent) -> None:
        """
        Deliver an event to all matching handlers.

        Handlers can be either sync or async functions. Handler failures are
        logged and never propagate.
        """
        handlers = self._handlers_for(event)
        logger.debug(f"Dispatching {event.event_type} to {len(handlers)} handlers")

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(f"Handler {handler.__name__} failed for {event.event_type}: {e}")

    async def drain(self) -> int:
        """Dispatch every queued event. Returns the number dispatched."""
        count = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            await self.dispatch(event)
            count += 1
        return count

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            await self.dispatch(event)

    def start(self) -> None:
        """Start the background delivery worker on the running loop."""
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the worker and deliver anything still queued."""
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.drain()

    async def subscribe(self) -> AsyncIterator[LifecycleEvent]:
        """
        Yield events as they are emitted, until the consumer stops iterating.

        Each subscriber gets a bounded buffer; a slow subscriber loses events
        rather than slowing the emitter.
        """
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._subscriber_buffer)
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    def clear(self) -> None:
        """Clear all registered handlers."""
        self._handlers.clear()


# Application-wide bus; the orchestrator receives it by injection.
event_bus = EventBus()

