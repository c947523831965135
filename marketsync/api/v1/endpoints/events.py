from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from marketsync.api.v1.deps import get_engines
from marketsync.core.security import get_current_user
from marketsync.models.user import User
from marketsync.services.events import Event, UserEventQueue
from marketsync.services.runtime import Engines


router = APIRouter()

KEEPALIVE_SECONDS = 15.0


def format_sse(event: Event) -> str:
    data = json.dumps(
        {"type": str(event.type), "emittedAt": event.emitted_at.isoformat(), "payload": event.payload},
        default=str,
    )
    return f"event: {event.type}\ndata: {data}\n\n"


async def stream_events(request: Request, listener: UserEventQueue) -> AsyncIterator[str]:
    try:
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(listener.queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
    finally:
        listener.close()


@router.get("/stream")
async def event_stream(
    request: Request,
    user: User = Depends(get_current_user),
    engines: Engines = Depends(get_engines),
) -> StreamingResponse:
    listener = UserEventQueue(engines.bus, user.id)
    return StreamingResponse(
        stream_events(request, listener),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
