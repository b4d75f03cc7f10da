"""
Change broadcaster: tells every connected terminal that an entity changed.

Events are pointers (data_type, action, entity_id), never copies of the data.
Delivery is best-effort: nothing is persisted, a slow subscriber is cut off
with a `reset`, and terminals reconcile by re-fetching. A bounded in-memory
ring buffer backs the polling fallback (`recent`).

`publish` is called from sync route handlers running in the threadpool, so
it hands events to each subscriber's event loop with call_soon_threadsafe.
"""

from __future__ import annotations

import asyncio
import json
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional

from .config import settings
from .jsonlog import json_log


@dataclass(frozen=True)
class ChangeNotice:
    data_type: str
    action: str
    entity_id: str


class Subscriber:
    def __init__(self, loop: asyncio.AbstractEventLoop, queue_size: int):
        self.id = uuid.uuid4().hex
        self.loop = loop
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.overflowed = False

    def _put(self, event: dict) -> None:
        if self.overflowed:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self.overflowed = True

    def offer(self, event: dict) -> bool:
        try:
            self.loop.call_soon_threadsafe(self._put, event)
            return True
        except RuntimeError:
            # Event loop already closed.
            return False


class ChangeBroadcaster:
    def __init__(self, queue_size: int = 256, buffer_size: int = 1000):
        self.queue_size = queue_size
        self.instance_id = uuid.uuid4().hex
        self._lock = threading.Lock()
        self._subscribers: set[Subscriber] = set()
        self._recent: deque = deque(maxlen=buffer_size)
        self._seq = 0

    @property
    def current_seq(self) -> int:
        with self._lock:
            return self._seq

    def client_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def subscribe(self) -> Subscriber:
        sub = Subscriber(asyncio.get_running_loop(), self.queue_size)
        with self._lock:
            self._subscribers.add(sub)
            total = len(self._subscribers)
        json_log("info", "broadcast.client_connected", subscriber_id=sub.id, clients=total)
        return sub

    def unsubscribe(self, sub: Subscriber) -> None:
        with self._lock:
            self._subscribers.discard(sub)
            total = len(self._subscribers)
        json_log("info", "broadcast.client_disconnected", subscriber_id=sub.id, clients=total)

    def publish(self, changes: Iterable[ChangeNotice]) -> list[dict]:
        """Emit one event per distinct changed entity. Call only after commit."""
        emitted_at = datetime.now(timezone.utc).isoformat()
        events: list[dict] = []
        seen = set()
        with self._lock:
            for change in changes:
                ident = (change.data_type, change.action, str(change.entity_id))
                if ident in seen:
                    continue
                seen.add(ident)
                self._seq += 1
                event = {
                    "type": "data-change",
                    "seq": self._seq,
                    "data_type": change.data_type,
                    "action": change.action,
                    "entity_id": str(change.entity_id),
                    "emitted_at": emitted_at,
                }
                self._recent.append(event)
                events.append(event)
            subscribers = list(self._subscribers)
        if not events:
            return events

        dead = []
        for sub in subscribers:
            if sub.overflowed:
                # Its stream is ending with a reset (or never started); stop feeding it.
                dead.append(sub)
                continue
            for event in events:
                if not sub.offer(event):
                    dead.append(sub)
                    break
        for sub in dead:
            self.unsubscribe(sub)
        json_log(
            "info",
            "broadcast.published",
            events=len(events),
            clients=len(subscribers) - len(dead),
            first_seq=events[0]["seq"],
            last_seq=events[-1]["seq"],
        )
        return events

    def recent(self, after: int, instance_id: Optional[str] = None) -> dict:
        """Events with seq > after, or reset=True when the caller has a gap we cannot fill."""
        with self._lock:
            seq = self._seq
            buffered = list(self._recent)
        out = {"instance_id": self.instance_id, "seq": seq, "reset": False, "events": []}
        if instance_id and instance_id != self.instance_id:
            out["reset"] = True
            return out
        if after > seq:
            out["reset"] = True
            return out
        if after == seq:
            return out
        oldest = buffered[0]["seq"] if buffered else seq + 1
        if after < oldest - 1:
            out["reset"] = True
            return out
        out["events"] = [e for e in buffered if e["seq"] > after]
        return out


def format_sse(event: dict) -> str:
    lines = []
    if event.get("seq") is not None and event.get("type") == "data-change":
        lines.append(f"id: {event['seq']}")
    lines.append(f"data: {json.dumps(event, default=str)}")
    return "\n".join(lines) + "\n\n"


async def stream_events(
    broadcaster: ChangeBroadcaster,
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat_seconds: float,
    sub: Optional[Subscriber] = None,
):
    # Subscribed on first iteration, so a response that is never started holds no queue.
    if sub is None:
        sub = broadcaster.subscribe()
    try:
        # Terminals use the reconnect hint and resume from `seq` via the polling endpoint.
        yield "retry: 3000\n\n"
        yield format_sse(
            {
                "type": "connected",
                "seq": broadcaster.current_seq,
                "instance_id": broadcaster.instance_id,
                "timestamp": int(time.time() * 1000),
            }
        )
        while True:
            if sub.overflowed:
                yield format_sse({"type": "reset", "reason": "subscriber queue overflow"})
                break
            if await is_disconnected():
                break
            try:
                event = await asyncio.wait_for(sub.queue.get(), timeout=heartbeat_seconds)
            except asyncio.TimeoutError:
                yield f": heartbeat {int(time.time() * 1000)}\n\n"
                continue
            yield format_sse(event)
    finally:
        broadcaster.unsubscribe(sub)


hub = ChangeBroadcaster(
    queue_size=settings.broadcast_queue_size,
    buffer_size=settings.broadcast_buffer_size,
)
