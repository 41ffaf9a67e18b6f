"""
API endpoint streaming lifecycle events via Server-Sent Events.
"""
import json
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from atlas.api.deps import get_event_bus
from atlas.core.events import EventBus
from atlas.core.security import get_current_user_id

router = APIRouter()


@router.get("/stream")
async def stream_events(
    project_id: Optional[UUID] = Query(None),
    user_id: UUID = Depends(get_current_user_id),
    bus: EventBus = Depends(get_event_bus),
):
    """
    Stream the caller's build and instance events as they happen.

    Each message is ``event: <kind>`` followed by a JSON ``data`` line.
    """
    async def event_stream():
        async for event in bus.subscribe():
            if str(event.user_id) != str(user_id):
                continue
            if project_id is not None and str(event.project_id) != str(project_id):
                continue
            yield f"event: {event.event_type}\ndata: {json.dumps(event.to_dict())}\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
    )
