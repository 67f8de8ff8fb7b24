"""Realtime cabinet event stream."""

import asyncio
from collections.abc import AsyncGenerator

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from cabinet_scheduler.dependencies import CurrentActor, EventChannel, Guard
from cabinet_scheduler.schemas.access import Operation
from cabinet_scheduler.services.realtime_service import CabinetEventChannel, encode_sse

logger = structlog.get_logger(__name__)

router = APIRouter()

SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"}
POLL_TIMEOUT_SECONDS = 1.0
KEEPALIVE_POLLS = 15


async def stream_cabinet_events(
    request: Request, channel: CabinetEventChannel, cabinet_id: str
) -> AsyncGenerator[str, None]:
    """Relay cabinet topic messages as server-sent events until the client leaves."""
    async with channel.subscribe(cabinet_id) as subscription:
        idle_polls = 0
        while not await request.is_disconnected():
            message = await asyncio.to_thread(subscription.get_message, POLL_TIMEOUT_SECONDS)
            if message is None:
                idle_polls += 1
                if idle_polls >= KEEPALIVE_POLLS:
                    idle_polls = 0
                    yield ": keepalive\n\n"
                continue
            idle_polls = 0
            yield encode_sse(message)

    logger.info("event_stream_closed", cabinet_id=cabinet_id)


@router.get(
    "/cabinets/{cabinet_id}/events",
    summary="Stream cabinet events",
    response_class=StreamingResponse,
)
async def cabinet_events(
    cabinet_id: str,
    request: Request,
    actor: CurrentActor,
    guard: Guard,
    channel: EventChannel,
) -> StreamingResponse:
    """
    Server-sent events for one cabinet.

    Only actors with read access to the cabinet may subscribe.
    """
    await guard.require(actor, cabinet_id, Operation.READ)
    logger.info("event_stream_opened", cabinet_id=cabinet_id, actor_id=actor.user_id)

    return StreamingResponse(
        stream_cabinet_events(request, channel, cabinet_id),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
