"""
Keeps the Local Entity Store converged with the server.

Listens on the server's event stream; when the stream keeps failing it
falls back to polling `/events/recent`. Events only say *what* changed, so
every event turns into a refetch of that entity. Anything that suggests
events were missed (reconnect, `reset`, unknown instance) turns into a full
refresh of the tracked collections.
"""

import http.client
import json
import threading
from typing import Callable, Iterable, Iterator, Optional
from urllib.parse import quote

from .jsonlog import json_log
from .local_store import COLLECTIONS, STALE_AFTER_SECONDS_DEFAULT, LocalEntityStore
from .transport import ApiClient, TransportError

RECONNECT_BASE_SECONDS = 1
RECONNECT_MAX_SECONDS = 30
MAX_STREAM_FAILURES = 10
POLL_INTERVAL_SECONDS = 5
STREAM_RETRY_EVERY_POLLS = 12
# Server heartbeats every 30s; a silent socket past this is dead.
STREAM_READ_TIMEOUT_SECONDS = 75
PAGE_SIZE = 1000


def reconnect_delay(failures: int) -> int:
    return min(RECONNECT_MAX_SECONDS, RECONNECT_BASE_SECONDS * 2 ** max(failures - 1, 0))


def iter_sse_events(lines: Iterable) -> Iterator[dict]:
    """Parse a text/event-stream into JSON payloads. Comments (heartbeats) and `retry:` are skipped."""
    data: list = []
    for raw in lines:
        line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        line = line.rstrip("\r\n")
        if not line:
            if data:
                payload = "\n".join(data)
                data = []
                try:
                    yield json.loads(payload)
                except ValueError:
                    json_log("warning", "realtime.bad_event", payload=payload[:200])
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            data.append(value[1:] if value.startswith(" ") else value)


class Reconciler:
    def __init__(
        self,
        client: ApiClient,
        store: LocalEntityStore,
        collections: Iterable[str] = COLLECTIONS,
        stale_after_seconds: float = STALE_AFTER_SECONDS_DEFAULT,
    ):
        self.client = client
        self.store = store
        self.collections = tuple(collections)
        self.stale_after_seconds = stale_after_seconds

    def full_refresh(self, collections: Optional[Iterable[str]] = None) -> dict:
        counts = {}
        for collection in self.collections if collections is None else collections:
            try:
                items, cursor = self._pull_all(collection)
            except TransportError as ex:
                json_log("warning", "realtime.refresh_failed", collection=collection, error=str(ex))
                continue
            if items is None:
                continue
            counts[collection] = self.store.save_all(collection, items, cursor)
        if counts:
            json_log("info", "realtime.full_refresh", counts=counts)
        return counts

    def _pull_all(self, collection: str):
        items: list = []
        cursor = None
        while True:
            query = {"limit": PAGE_SIZE}
            if cursor:
                query.update(cursor)
            resp = self.client.get_json(f"/sync/{collection}", query)
            if resp.status != 200 or not isinstance(resp.body, dict):
                json_log("warning", "realtime.refresh_rejected", collection=collection, status_code=resp.status)
                return None, None
            items.extend(resp.body.get("items") or [])
            cursor = resp.body.get("cursor") or cursor
            if not resp.body.get("has_more") or not cursor:
                return items, cursor

    def refresh_entity(self, collection: str, entity_id: str) -> Optional[str]:
        """Refetch one entity. Returns 'saved', 'deleted', or None when it stays stale."""
        try:
            resp = self.client.get_json(f"/sync/{collection}/{quote(str(entity_id), safe='')}")
        except TransportError as ex:
            json_log("warning", "realtime.refetch_failed", collection=collection, entity_id=entity_id, error=str(ex))
            return None
        if resp.status == 200 and isinstance(resp.body, dict) and resp.body.get("item"):
            self.store.save_item(collection, resp.body["item"])
            return "saved"
        if resp.status == 404:
            self.store.delete_item(collection, entity_id)
            return "deleted"
        json_log("warning", "realtime.refetch_rejected", collection=collection, entity_id=entity_id, status_code=resp.status)
        return None

    def apply_change(self, event: dict) -> Optional[str]:
        collection = event.get("data_type")
        entity_id = event.get("entity_id")
        if collection not in self.collections or not entity_id:
            return None
        # Mark first so a failed refetch leaves a trace the sweep will pick up.
        self.store.invalidate(collection, entity_id)
        if event.get("action") == "delete":
            self.store.delete_item(collection, entity_id)
            return "deleted"
        return self.refresh_entity(collection, entity_id)

    def sweep_stale(self) -> dict:
        refreshed = self.full_refresh(self.store.stale_collections(self.collections, self.stale_after_seconds))
        for collection in self.collections:
            if collection in refreshed:
                continue
            for entity_id in self.store.stale_entities(collection):
                self.refresh_entity(collection, entity_id)
        return refreshed


class RealtimeListener:
    def __init__(
        self,
        client: ApiClient,
        reconciler: Reconciler,
        *,
        max_stream_failures: int = MAX_STREAM_FAILURES,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
        stream_retry_every_polls: int = STREAM_RETRY_EVERY_POLLS,
        on_change: Optional[Callable[[dict], None]] = None,
        on_connected: Optional[Callable[[], None]] = None,
    ):
        self.client = client
        self.reconciler = reconciler
        self.max_stream_failures = max_stream_failures
        self.poll_interval_seconds = poll_interval_seconds
        self.stream_retry_every_polls = max(1, stream_retry_every_polls)
        self.on_change = on_change
        self.on_connected = on_connected
        self.failures = 0
        self.polls = 0
        self.last_seq: Optional[int] = None
        self.instance_id: Optional[str] = None
        self.connected = False

    @property
    def mode(self) -> str:
        return "polling" if self.failures >= self.max_stream_failures else "stream"

    def status(self) -> dict:
        return {
            "mode": self.mode,
            "connected": self.connected,
            "failures": self.failures,
            "last_seq": self.last_seq,
            "instance_id": self.instance_id,
        }

    def handle_event(self, event: dict) -> None:
        kind = event.get("type")
        if kind == "connected":
            self.connected = True
            self.failures = 0
            self.instance_id = event.get("instance_id")
            self.last_seq = event.get("seq")
            json_log("info", "realtime.connected", instance_id=self.instance_id, seq=self.last_seq)
            # We cannot know what happened while disconnected.
            self.reconciler.full_refresh()
            if self.on_connected:
                self.on_connected()
        elif kind == "data-change":
            if event.get("seq") is not None:
                self.last_seq = event["seq"]
            self.reconciler.apply_change(event)
            if self.on_change:
                self.on_change(event)
        elif kind == "reset":
            json_log("warning", "realtime.reset", reason=event.get("reason"))
            self.reconciler.full_refresh()

    def poll_once(self) -> dict:
        resp = self.client.get_json(
            "/events/recent",
            {"after": self.last_seq or 0, "instance_id": self.instance_id},
        )
        if resp.status != 200 or not isinstance(resp.body, dict):
            raise TransportError(f"poll failed: HTTP {resp.status}")
        body = resp.body
        first_poll = self.last_seq is None
        if body.get("reset") or first_poll:
            self.reconciler.full_refresh()
        else:
            for event in body.get("events") or []:
                self.handle_event(event)
        self.instance_id = body.get("instance_id")
        self.last_seq = body.get("seq")
        return body

    def consume_stream(self, stop: threading.Event) -> None:
        resp = self.client.open_stream("/events/stream", timeout=STREAM_READ_TIMEOUT_SECONDS)
        try:
            for event in iter_sse_events(resp):
                self.handle_event(event)
                if stop.is_set():
                    return
        finally:
            self.connected = False
            resp.close()

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            if self.mode == "stream":
                self._stream_attempt(stop)
                if stop.is_set():
                    return
                delay = reconnect_delay(self.failures)
                if self.mode == "polling":
                    json_log("warning", "realtime.polling_fallback", failures=self.failures)
                    delay = self.poll_interval_seconds
                stop.wait(delay)
                continue

            self.polls += 1
            try:
                self.poll_once()
            except TransportError as ex:
                json_log("warning", "realtime.poll_failed", error=str(ex))
            if self.polls % self.stream_retry_every_polls == 0:
                # A successful `connected` event resets failures and leaves polling mode.
                self._stream_attempt(stop)
            stop.wait(self.poll_interval_seconds)

    def _stream_attempt(self, stop: threading.Event) -> None:
        try:
            self.consume_stream(stop)
        except (TransportError, http.client.HTTPException, OSError) as ex:
            json_log("info", "realtime.stream_error", error=str(ex), failures=self.failures + 1)
        if not stop.is_set():
            self.failures += 1


def run_stale_sweeper(reconciler: Reconciler, stop: threading.Event, interval_seconds: float = 30) -> None:
    while not stop.wait(interval_seconds):
        try:
            reconciler.sweep_stale()
        except TransportError as ex:
            json_log("warning", "realtime.sweep_failed", error=str(ex))
