"""FastAPI router the monitored page talks to."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.responses import Response, StreamingResponse

from .config import Config
from .errors import DeliveryError
from .media.preview import FramePreview
from .messages import Message, MessageType, PreviewStatus, Sender
from .runtime import PreviewRuntime

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/preview", tags=["preview"])


def get_runtime(request: Request) -> PreviewRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Preview runtime not started",
        )
    return runtime


async def _relay_page_message(runtime: PreviewRuntime, message: Message, origin: Optional[str]) -> Any:
    try:
        return await runtime.relay.receive_from_page(message, origin)
    except DeliveryError as error:
        logger.warning("Could not deliver %s: %s", message.type.value, error)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(error),
        ) from error
    except Exception as error:
        logger.error("Failed to handle page message %s: %s", message.type.value, error, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(error),
        ) from error


@router.post("/message")
async def post_message(
    message: Message,
    runtime: PreviewRuntime = Depends(get_runtime),
    origin: Optional[str] = Header(default=None),
):
    """Accept a page envelope, the equivalent of window.postMessage."""
    if not runtime.relay.accepts_page_message(message, origin):
        logger.debug("Rejected %s from origin %s", message.type.value, origin)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Message rejected")

    result = await _relay_page_message(runtime, message, origin)
    return {"status": "ok", "result": result}


@router.get("/status", response_model=PreviewStatus)
async def get_status(runtime: PreviewRuntime = Depends(get_runtime)):
    """Shorthand for CHECK_PREVIEW."""
    message = Message(sender=Sender.CLIENT, type=MessageType.CHECK_PREVIEW)
    result = await _relay_page_message(runtime, message, runtime.relay.page_origin)
    return PreviewStatus.model_validate(result)


@router.get("/events")
async def stream_events(runtime: PreviewRuntime = Depends(get_runtime)):
    """Stream relay notifications to the page via Server-Sent Events.

    Each connection gets its own queue, so concurrent listeners all see every event.
    """
    relay = runtime.relay
    event_queue = relay.subscribe()

    async def event_generator():
        yield f"data: {json.dumps({'type': 'ready'})}\n\n"
        try:
            while True:
                try:
                    event = await asyncio.wait_for(event_queue.get(), timeout=30.0)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event)}\n\n"
        except asyncio.CancelledError:
            logger.info("Preview event stream cancelled")
        finally:
            relay.unsubscribe(event_queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/frame.jpg")
async def get_frame(runtime: PreviewRuntime = Depends(get_runtime)):
    """Latest preview frame as JPEG."""
    preview = runtime.preview
    frame = preview.snapshot_jpeg() if isinstance(preview, FramePreview) else None
    if frame is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No preview frame yet")
    return Response(content=frame, media_type="image/jpeg", headers={"Cache-Control": "no-store"})


@router.get("/ice-servers")
async def get_ice_servers():
    """Return ICE server configuration for the client."""
    return {"iceServers": Config.ice_servers()}
