from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from typing import Optional

from ..broadcast import hub, stream_events
from ..config import settings
from ..deps import require_device

router = APIRouter(prefix="/events", tags=["events"])


@router.get("/stream")
async def event_stream(request: Request, device=Depends(require_device)):
    """
    Server-Sent Events push channel. Each `data-change` event names the entity
    that changed; terminals re-fetch it.
    """
    return StreamingResponse(
        stream_events(hub, request.is_disconnected, settings.broadcast_heartbeat_seconds),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "Connection": "keep-alive",
            # Disable response buffering in nginx.
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/recent")
def recent_events(after: int = 0, instance_id: Optional[str] = None, device=Depends(require_device)):
    """Polling fallback for terminals that cannot hold the stream open."""
    if after < 0:
        raise HTTPException(status_code=400, detail="after must be >= 0")
    out = hub.recent(after, instance_id)
    out["poll_interval_seconds"] = settings.poll_interval_seconds
    return out
