from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import StreamingResponse

from dispatch_engine.engine import DispatchEngine
from dispatch_engine.identity import get_actor
from dispatch_engine.models import ActorContext
from dispatch_engine.realtime import encode_sse
from dispatch_engine.routes.orders import get_engine

router = APIRouter(prefix="/realtime", tags=["realtime"])

KEEPALIVE_SECONDS = 15.0


@router.get("/{channel}")
async def stream_channel(
    channel: str,
    request: Request,
    actor: ActorContext = Depends(get_actor),
    engine: DispatchEngine = Depends(get_engine),
    last_event_id: str | None = Header(default=None),
) -> StreamingResponse:
    """
    Server-Sent Events for `order:<id>` or `courier:<id>`.
    Authorization happens before the stream opens; clients drop repeated event ids.
    """
    subscription = await engine.subscribe(channel, actor, last_event_id=last_event_id)

    async def events():
        try:
            while not await request.is_disconnected():
                event = await subscription.next_event(timeout=KEEPALIVE_SECONDS)
                if event is None:
                    if subscription.closed:
                        break
                    yield ": keepalive\n\n"
                    continue
                yield encode_sse(event)
        finally:
            await subscription.close()

    return StreamingResponse(events(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})
