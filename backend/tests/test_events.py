"""
Tests for the lifecycle event bus and its handlers.
"""
import asyncio
from uuid import uuid4

import pytest

from atlas.core.event_handlers import make_persist_handler, register_all_handlers
from atlas.core.events import (
    BuildFailedEvent,
    BuildStartedEvent,
    EventBus,
    InstanceHealthyEvent,
    LifecycleEvent,
)


class TestEventBus:
    """Tests for emit and dispatch."""

    @pytest.mark.asyncio
    async def test_emit_only_enqueues(self, bus):
        received = []
        bus.register(BuildStartedEvent, received.append)

        bus.emit(BuildStartedEvent(build_id=uuid4()))

        assert received == []
        assert bus.pending == 1
        assert await bus.drain() == 1
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_base_class_handler_sees_subclasses(self, bus):
        received = []
        bus.register(LifecycleEvent, received.append)

        bus.emit(BuildStartedEvent(build_id=uuid4()))
        bus.emit(InstanceHealthyEvent(instance_id=uuid4(), port=3001))
        await bus.drain()

        assert [e.event_type for e in received] == ["build.started", "instance.healthy"]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self, bus):
        received = []

        def broken(event):
            raise RuntimeError("sink down")

        async def recorder(event):
            received.append(event)

        bus.register(BuildStartedEvent, broken)
        bus.register(BuildStartedEvent, recorder)

        await bus.dispatch(BuildStartedEvent(build_id=uuid4()))

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unregister(self, bus):
        received = []
        bus.register(BuildStartedEvent, received.append)
        bus.unregister(BuildStartedEvent, received.append)

        await bus.dispatch(BuildStartedEvent(build_id=uuid4()))

        assert received == []

    @pytest.mark.asyncio
    async def test_full_queue_drops_event(self):
        bus = EventBus(max_pending=1)

        bus.emit(BuildStartedEvent(build_id=uuid4()))
        bus.emit(BuildStartedEvent(build_id=uuid4()))

        assert bus.pending == 1

    @pytest.mark.asyncio
    async def test_worker_delivers_in_background(self, bus):
        delivered = asyncio.Event()
        bus.register(BuildStartedEvent, lambda event: delivered.set())
        bus.start()

        bus.emit(BuildStartedEvent(build_id=uuid4()))
        await asyncio.wait_for(delivered.wait(), timeout=1)

        await bus.stop()
        assert bus.pending == 0

    @pytest.mark.asyncio
    async def test_subscribe_receives_emitted_events(self, bus):
        stream = bus.subscribe()
        next_event = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)

        event = BuildStartedEvent(build_id=uuid4())
        bus.emit(event)

        assert await asyncio.wait_for(next_event, timeout=1) is event
        await stream.aclose()


class TestLifecycleEvent:

    def test_to_dict_is_json_friendly(self):
        user_id, build_id = uuid4(), uuid4()
        event = BuildFailedEvent(user_id=user_id, build_id=build_id, reason="timeout", error_message="too slow")

        data = event.to_dict()

        assert data["event"] == "build.failed"
        assert data["status"] == "failure"
        assert data["user_id"] == str(user_id)
        assert data["build_id"] == str(build_id)
        assert isinstance(data["timestamp"], str)

    def test_meta_drops_envelope(self):
        event = InstanceHealthyEvent(project_id=uuid4(), port=3001, host="proj.localhost")

        meta = event.meta()

        assert meta["port"] == 3001
        assert "project_id" not in meta
        assert "event" not in meta


class TestHandlers:

    @pytest.mark.asyncio
    async def test_persist_handler_records_event(self, store, user_id):
        handler = make_persist_handler(store)
        project_id = uuid4()

        await handler(BuildFailedEvent(
            user_id=user_id, project_id=project_id, build_id=uuid4(), reason="exit_code", error_message="exit 1",
        ))

        [record] = store.events
        assert record.kind == "build.failed"
        assert record.status == "failure"
        assert record.user_id == user_id
        assert record.project_id == project_id
        assert record.meta["reason"] == "exit_code"

    @pytest.mark.asyncio
    async def test_register_all_handlers(self, bus, store):
        register_all_handlers(bus, store)

        bus.emit(BuildFailedEvent(build_id=uuid4(), reason="timeout", error_message="too slow"))
        bus.emit(BuildStartedEvent(build_id=uuid4()))
        await bus.drain()

        assert [record.kind for record in store.events] == ["build.failed", "build.started"]
