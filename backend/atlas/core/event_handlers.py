"""
Event handlers for lifecycle events.

Persists every event to the audit table and logs the ones operators care
about. Handlers run on the bus worker, off the orchestration path.
"""
import logging

from atlas.core.events import (
    BuildFailedEvent,
    EventBus,
    InstanceFailedEvent,
    InstanceUnhealthyEvent,
    LifecycleEvent,
)
from atlas.repositories.store import DeploymentStore

logger = logging.getLogger(__name__)


def make_persist_handler(store: DeploymentStore):
    """Build a handler that writes each event to the store."""

    async def persist_event(event: LifecycleEvent):
        await store.record_event(
            kind=event.event_type,
            status=event.status,
            message=event.message,
            user_id=event.user_id,
            project_id=event.project_id,
            meta=event.meta(),
        )

    return persist_event


def on_build_failed(event: BuildFailedEvent):
    logger.warning(f"Build {event.build_id} failed ({event.reason}): {event.error_message}")


def on_instance_failed(event: InstanceFailedEvent):
    logger.warning(f"Instance {event.instance_id} failed ({event.reason}): {event.error_message}")


def on_instance_unhealthy(event: InstanceUnhealthyEvent):
    logger.warning(f"Instance {event.instance_id} is unhealthy on port {event.port}")


def register_all_handlers(bus: EventBus, store: DeploymentStore) -> None:
    """
    Register all handlers on a bus.

    Call this during application startup, before the orchestrator emits.
    """
    bus.register(LifecycleEvent, make_persist_handler(store))
    bus.register(BuildFailedEvent, on_build_failed)
    bus.register(InstanceFailedEvent, on_instance_failed)
    bus.register(InstanceUnhealthyEvent, on_instance_unhealthy)
    logger.info("Event handlers registered")
